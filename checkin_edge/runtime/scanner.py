"""
Scanner identification channel.

QR codes and badge scanners identify a person directly, so they skip the
matcher and the stability tracker and feed the arbitrator with
confidence 100. USB/HID scanners behave like a keyboard: they type the
code very quickly and finish with Enter. ``ScanBuffer`` separates those
bursts from human typing by the gap between keystrokes.
"""

from __future__ import annotations

import datetime
import enum
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from ..policy.arbitrator import CheckinArbitrator, CheckinDecision

USER_PREFIX = "EDUCHECK_USER:"
_BARE_CODE_RE = re.compile(r"^[A-Za-z0-9]{4,20}$")
_EVENT_RE = re.compile(r"event=([A-Z0-9]+)")
_VERIFY_RE = re.compile(r"code=([A-Z0-9]+)")


class ScanKind(str, enum.Enum):
    USER = "user"
    EVENT = "event"
    CERTIFICATE = "certificate"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ScanResult:
    content: str
    kind: ScanKind
    code: str


def parse_scan_content(content: str) -> ScanResult:
    """Classify raw scanned text. Only ``USER`` results identify a person."""
    content = content.strip()
    if content.startswith(USER_PREFIX):
        return ScanResult(content, ScanKind.USER, content[len(USER_PREFIX):].strip())
    if "/checkin?event=" in content:
        m = _EVENT_RE.search(content)
        return ScanResult(content, ScanKind.EVENT, m.group(1) if m else "")
    if "/verify?code=" in content:
        m = _VERIFY_RE.search(content)
        return ScanResult(content, ScanKind.CERTIFICATE, m.group(1) if m else "")
    if _BARE_CODE_RE.match(content):
        return ScanResult(content, ScanKind.USER, content)
    return ScanResult(content, ScanKind.UNKNOWN, content)


class ScanBuffer:
    """
    Collects HID scanner keystrokes.

    ``feed`` returns the completed scan when Enter arrives, else ``None``.
    A gap longer than ``max_gap_sec`` between keys means a human is typing,
    so the buffer starts over from that key.
    """

    def __init__(self, *, max_gap_sec: float = 0.05, min_length: int = 4) -> None:
        self.max_gap_sec = float(max_gap_sec)
        self.min_length = int(min_length)
        self._chars: list[str] = []
        self._last_key_at: Optional[float] = None

    def reset(self) -> None:
        self._chars = []
        self._last_key_at = None

    def feed(self, key: str, now: float) -> Optional[str]:
        if key in ("\n", "\r", "Enter"):
            content = "".join(self._chars)
            self.reset()
            return content if len(content) >= self.min_length else None
        if len(key) != 1:
            # Shift, Tab and other named keys.
            return None
        if self._last_key_at is not None and now - self._last_key_at > self.max_gap_sec:
            self._chars = []
        self._chars.append(key)
        self._last_key_at = now
        return None


@dataclass(frozen=True)
class ScanOutcome:
    result: ScanResult
    identity_id: Optional[str] = None
    decision: Optional[CheckinDecision] = None


class ScannerChannel:
    """Resolves scanned codes to identities and submits them for check-in."""

    def __init__(
        self,
        arbitrator: CheckinArbitrator,
        resolve_code: Callable[[str], Optional[str]],
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.arbitrator = arbitrator
        self.resolve_code = resolve_code

    def handle_scan(self, content: str, *, now: Optional[datetime.datetime] = None) -> ScanOutcome:
        """
        Raises ``OutboxWriteError`` when an accepted check-in could not be
        stored, like the camera path.
        """
        result = parse_scan_content(content)
        if result.kind is not ScanKind.USER or not result.code:
            self.logger.info("Ignoring scan kind=%s", result.kind.value)
            return ScanOutcome(result=result)
        identity_id = self.resolve_code(result.code)
        if identity_id is None:
            self.logger.warning("Scanned code %s is not on the roster", result.code)
            return ScanOutcome(result=result)
        decision = self.arbitrator.submit(identity_id, now=now, confidence=100.0, source="scan")
        return ScanOutcome(result=result, identity_id=identity_id, decision=decision)


__all__ = [
    'ScanKind',
    'ScanResult',
    'ScanBuffer',
    'ScanOutcome',
    'ScannerChannel',
    'parse_scan_content',
]
