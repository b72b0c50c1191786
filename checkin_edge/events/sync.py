"""
Sync manager: drains the outbox into the backend.

The manager is the only component that marks outbox rows delivered, failed
or dead. A flush attempts events oldest first and stops at the first
transient failure, leaving the rest of the queue untouched for the next
round. Permanent rejections are dead-lettered and the flush moves on.

Flushes are triggered by a periodic worker thread while online, by the
offline to online transition, and right after each enqueue while online.
"""

from __future__ import annotations

import datetime
import logging
import threading
import time
from typing import Optional, Tuple

from ..core.errors import DeliveryPermanentError, DeliveryTransientError, log_exception
from ..models.event import SyncState, utc_iso
from .outbox import Outbox, OutboxSettings


class SyncManager:
    """
    Parameters
    ----------
    outbox: Outbox
        Durable queue of pending check-ins.
    backend:
        Anything with ``submit_checkin(event) -> SubmitResult``.
    settings: OutboxSettings
        Flush interval, batch size and summary cadence.
    online: bool
        Initial connectivity state.
    """

    def __init__(
        self,
        outbox: Outbox,
        backend,
        settings: OutboxSettings,
        *,
        online: bool = False,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.outbox = outbox
        self.backend = backend
        self.settings = settings
        self._online = threading.Event()
        if online:
            self._online.set()
        self._flush_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_sync_at: Optional[datetime.datetime] = None
        self._last_summary = time.monotonic()

    @property
    def online(self) -> bool:
        return self._online.is_set()

    @property
    def last_sync_at(self) -> Optional[datetime.datetime]:
        return self._last_sync_at

    def pending_count(self) -> int:
        return self.outbox.pending_count()

    def try_flush(
        self,
        *,
        max_items: Optional[int] = None,
        ignore_backoff: bool = False,
    ) -> Tuple[int, int]:
        """
        Deliver due events. Returns ``(delivered_count, remaining_count)``.

        Only one flush runs at a time; a concurrent caller waits for the
        running one and then flushes whatever is left.
        """
        limit = max_items if max_items is not None else self.settings.batch_size
        delivered = 0
        with self._flush_lock:
            for _ in range(max(0, int(limit))):
                try:
                    event = self.outbox.claim_next(ignore_backoff=ignore_backoff)
                except Exception as exc:
                    log_exception(self.logger, "Outbox claim failed", exc)
                    break
                if event is None:
                    break
                try:
                    outcome = self._deliver(event)
                except Exception as exc:
                    # Recording the outcome failed; the row must not stay in flight.
                    log_exception(self.logger, "Outbox update failed", exc, event_id=event.event_id)
                    self._release(event.event_id)
                    break
                if outcome is None:
                    break
                if outcome:
                    delivered += 1
        return delivered, self.outbox.pending_count()

    def _deliver(self, event) -> Optional[bool]:
        """
        Submit one claimed event and record the result. Returns True when
        delivered, False when dead-lettered and None when the flush should
        stop.
        """
        try:
            result = self.backend.submit_checkin(event)
        except DeliveryPermanentError as exc:
            self.outbox.mark_dead(event.event_id, error=str(exc))
            self.logger.error(
                "Check-in rejected by backend event_id=%s identity=%s slot=%s: %s",
                event.event_id,
                event.identity_id,
                event.slot_id,
                exc,
            )
            return False
        except DeliveryTransientError as exc:
            state = self.outbox.mark_failed(event.event_id, error=str(exc))
            if state is not SyncState.DEAD:
                self.logger.warning(
                    "Check-in delivery deferred event_id=%s attempt=%s: %s",
                    event.event_id,
                    event.attempt_count + 1,
                    exc,
                )
            return None
        except Exception as exc:
            # Unknown failure: treat as transient so the event is retried.
            self.outbox.mark_failed(event.event_id, error=f"unexpected: {exc}")
            log_exception(self.logger, "Check-in delivery failed", exc, event_id=event.event_id)
            return None
        self.outbox.mark_delivered(event.event_id)
        self._last_sync_at = datetime.datetime.now(datetime.timezone.utc)
        self.logger.info(
            "Check-in delivered event_id=%s identity=%s result=%s",
            event.event_id,
            event.identity_id,
            getattr(result, "value", result),
        )
        return True

    def _release(self, event_id: str) -> None:
        try:
            self.outbox.release(event_id)
        except Exception as exc:
            log_exception(self.logger, "Outbox release failed", exc, event_id=event_id)

    def set_online(self, online: bool) -> None:
        """
        Connectivity transition. Going online flushes immediately, ignoring
        any retry backoff accumulated while the network was down.
        """
        was_online = self._online.is_set()
        if online:
            self._online.set()
        else:
            self._online.clear()
        if online == was_online:
            return
        self.logger.info("Connectivity changed online=%s pending=%s", online, self.pending_count())
        if online:
            try:
                self.try_flush(ignore_backoff=True)
            except Exception as exc:
                log_exception(self.logger, "Reconnect flush failed", exc)
            self._wake.set()

    def notify_enqueued(self, _event=None) -> None:
        """Opportunistic flush trigger after a new event was committed."""
        if self._online.is_set():
            self._wake.set()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="CheckinSync", daemon=True)
        self._thread.start()
        self.logger.info(
            "Sync worker started interval=%ss db=%s",
            self.settings.flush_interval_sec,
            self.outbox.db_path,
        )

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=5)

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._wake.clear()
            if self._online.is_set():
                try:
                    self.try_flush()
                except Exception as exc:
                    log_exception(self.logger, "Outbox flush failed", exc)
            self._maybe_log_summary()
            self._wake.wait(timeout=self.settings.flush_interval_sec)

    def _maybe_log_summary(self) -> None:
        now = time.monotonic()
        if now - self._last_summary < self.settings.summary_interval_sec:
            return
        stats = self.outbox.stats()
        self.logger.info(
            "Outbox summary pending=%s failed=%s dead=%s online=%s last_sync=%s",
            stats.get("pending", 0),
            stats.get("failed", 0),
            stats.get("dead", 0),
            self.online,
            utc_iso(self._last_sync_at) if self._last_sync_at else None,
        )
        self._last_summary = now

    def status(self) -> dict:
        stats = self.outbox.stats()
        return {
            "online": self.online,
            "pending_count": stats["pending"] + stats["in_flight"] + stats["failed"],
            "dead_count": stats["dead"],
            "last_sync_utc": utc_iso(self._last_sync_at) if self._last_sync_at else None,
        }


__all__ = ['SyncManager']
