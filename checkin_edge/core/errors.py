"""
Exception types and shared error-handling helpers for the check-in core.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")


class CheckinError(Exception):
    """Base exception for the check-in core."""


class ConfigError(CheckinError):
    """Raised when the configuration file contains invalid values."""


class OutboxWriteError(CheckinError):
    """Raised when an event could not be committed to the local outbox."""


class CameraBusyError(CheckinError):
    """Raised when a camera is acquired while another session holds it."""


class DeliveryError(CheckinError):
    """Base class for backend delivery failures."""


class DeliveryTransientError(DeliveryError):
    """Network or server-side failure; the event is retried later."""


class DeliveryPermanentError(DeliveryError):
    """The backend rejected the event; it is kept for operator inspection."""


def log_exception(logger: logging.Logger, msg: str, exc: BaseException, **context: Any) -> None:
    """Log ``msg`` with ``key=value`` context and the traceback of ``exc``."""
    fields = " ".join(f"{key}={value}" for key, value in context.items() if value is not None)
    if fields:
        logger.error("%s %s: %s", msg, fields, exc, exc_info=exc)
    else:
        logger.error("%s: %s", msg, exc, exc_info=exc)


def guarded_call(
    name: str,
    fn: Callable[[], T],
    *,
    logger: logging.Logger,
    default: Optional[T] = None,
    **context: Any,
) -> Optional[T]:
    """
    Run an observer callback or probe; a failure is logged and ``default``
    is returned. Outbox writes must never go through here.
    """
    try:
        return fn()
    except Exception as exc:
        log_exception(logger, f"{name} failed", exc, **context)
        return default
