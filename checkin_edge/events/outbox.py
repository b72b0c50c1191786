"""
Disk-backed outbox for check-in events.

Every accepted check-in is committed to a local SQLite database before
``enqueue`` returns, so a crash, reboot or network outage never loses it.
The sync manager claims rows in capture order, delivers them and removes
them once the backend has acknowledged the event.

Row lifecycle::

    pending --claim--> in_flight --delivered--> (deleted)
                           |
                           +--transient error--> failed --claim--> in_flight ...
                           +--permanent error / max attempts--> dead
"""

from __future__ import annotations

import datetime
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.errors import OutboxWriteError
from ..models.event import PendingCheckinEvent, SyncState, utc_iso


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _read_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _read_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


@dataclass
class OutboxSettings:
    db_path: Path
    flush_interval_sec: float
    batch_size: int
    max_attempts: int
    max_queue: int
    summary_interval_sec: float


def load_outbox_settings() -> OutboxSettings:
    configured = os.getenv("CHECKIN_OUTBOX_DB_PATH")
    db_path = Path(configured) if configured else Path("data/outbox.db")
    return OutboxSettings(
        db_path=db_path,
        flush_interval_sec=_read_float("CHECKIN_OUTBOX_FLUSH_INTERVAL_SEC", 5.0),
        batch_size=_read_int("CHECKIN_OUTBOX_BATCH_SIZE", 50),
        max_attempts=_read_int("CHECKIN_OUTBOX_MAX_ATTEMPTS", 20),
        max_queue=_read_int("CHECKIN_OUTBOX_MAX_QUEUE", 50000),
        summary_interval_sec=_read_float("CHECKIN_OUTBOX_SUMMARY_INTERVAL_SEC", 60.0),
    )


_ACTIVE_STATUSES = ("pending", "in_flight", "failed")


class Outbox:
    def __init__(
        self,
        db_path: Path,
        *,
        max_queue: int = 50000,
        max_attempts: int = 20,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger("Outbox")
        self.db_path = Path(db_path)
        self.max_queue = max(0, int(max_queue))
        self.max_attempts = max(1, int(max_attempts))
        self._lock = threading.Lock()
        self._conn = self._open_connection(self.db_path)
        self._init_db()
        recovered = self._recover_in_flight()
        if recovered:
            self.logger.warning("Outbox recovered %s in-flight events from previous run", recovered)

    def _open_connection(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        # A committed check-in must survive power loss.
        conn.execute("PRAGMA synchronous=FULL;")
        return conn

    def _init_db(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS checkin_outbox (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT NOT NULL UNIQUE,
                    identity_id TEXT NOT NULL,
                    slot_id TEXT NOT NULL,
                    captured_at_utc TEXT NOT NULL,
                    created_at_utc TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    attempts INTEGER DEFAULT 0,
                    next_attempt_at_utc TEXT,
                    last_error TEXT,
                    status TEXT DEFAULT 'pending'
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_checkin_outbox_status ON checkin_outbox(status, captured_at_utc)"
            )

    def _recover_in_flight(self) -> int:
        # A row left in_flight means the process died mid-delivery.
        with self._lock:
            cur = self._conn.execute(
                "UPDATE checkin_outbox SET status='failed' WHERE status='in_flight'"
            )
            return int(cur.rowcount or 0)

    def enqueue(self, event: PendingCheckinEvent) -> str:
        """
        Persist ``event`` and return its ``event_id``.

        Re-enqueueing an event id that is already stored is a no-op. Raises
        ``OutboxWriteError`` when the event could not be committed, including
        when the queue is full; nothing is ever dropped silently.
        """
        now = utc_iso(_utcnow())
        payload_json = event.model_copy(
            update={"sync_state": SyncState.PENDING, "attempt_count": 0}
        ).model_dump_json()
        with self._lock:
            try:
                if self.max_queue > 0:
                    count = self._count_locked(_ACTIVE_STATUSES)
                    if count >= self.max_queue:
                        raise OutboxWriteError(
                            f"outbox full ({count} events); refusing event {event.event_id}"
                        )
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO checkin_outbox (
                        event_id,
                        identity_id,
                        slot_id,
                        captured_at_utc,
                        created_at_utc,
                        payload_json,
                        attempts,
                        next_attempt_at_utc,
                        last_error,
                        status
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, NULL, 'pending')
                    """,
                    (
                        event.event_id,
                        event.identity_id,
                        event.slot_id,
                        utc_iso(event.captured_at),
                        now,
                        payload_json,
                        now,
                    ),
                )
            except sqlite3.Error as exc:
                self.logger.error(
                    "Outbox enqueue failed identity=%s slot=%s event_id=%s: %s",
                    event.identity_id,
                    event.slot_id,
                    event.event_id,
                    exc,
                )
                raise OutboxWriteError(f"could not persist event {event.event_id}: {exc}") from exc
        return event.event_id

    def _count_locked(self, statuses: tuple) -> int:
        marks = ",".join("?" for _ in statuses)
        cur = self._conn.execute(
            f"SELECT COUNT(*) AS cnt FROM checkin_outbox WHERE status IN ({marks})",
            statuses,
        )
        return int(cur.fetchone()["cnt"])

    def _row_to_event(self, row: sqlite3.Row) -> PendingCheckinEvent:
        event = PendingCheckinEvent.model_validate_json(row["payload_json"])
        return event.model_copy(
            update={"sync_state": SyncState(row["status"]), "attempt_count": int(row["attempts"] or 0)}
        )

    def claim_next(self, *, ignore_backoff: bool = False) -> Optional[PendingCheckinEvent]:
        """
        Atomically take the oldest deliverable event and mark it in flight.

        Rows still waiting out their retry backoff are skipped unless
        ``ignore_backoff`` is set. Two concurrent callers never receive the
        same event.
        """
        now = utc_iso(_utcnow())
        with self._lock:
            if ignore_backoff:
                cur = self._conn.execute(
                    """
                    SELECT * FROM checkin_outbox
                    WHERE status IN ('pending', 'failed')
                    ORDER BY captured_at_utc ASC, id ASC
                    LIMIT 1
                    """
                )
            else:
                cur = self._conn.execute(
                    """
                    SELECT * FROM checkin_outbox
                    WHERE status IN ('pending', 'failed')
                      AND (next_attempt_at_utc IS NULL OR next_attempt_at_utc <= ?)
                    ORDER BY captured_at_utc ASC, id ASC
                    LIMIT 1
                    """,
                    (now,),
                )
            row = cur.fetchone()
            if row is None:
                return None
            self._conn.execute(
                "UPDATE checkin_outbox SET status='in_flight' WHERE id=?",
                (int(row["id"]),),
            )
            event = self._row_to_event(row)
        return event.model_copy(update={"sync_state": SyncState.IN_FLIGHT})

    def mark_delivered(self, event_id: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM checkin_outbox WHERE event_id=?", (event_id,))

    def release(self, event_id: str) -> None:
        """Put an in-flight row back in the queue without counting an attempt."""
        with self._lock:
            self._conn.execute(
                "UPDATE checkin_outbox SET status='failed' WHERE event_id=? AND status='in_flight'",
                (event_id,),
            )

    def mark_failed(
        self,
        event_id: str,
        *,
        error: str,
        backoff_seconds: Optional[int] = None,
    ) -> SyncState:
        """
        Record a failed delivery attempt. Returns ``SyncState.DEAD`` once the
        attempt limit is reached, ``SyncState.FAILED`` otherwise.
        """
        with self._lock:
            cur = self._conn.execute("SELECT attempts FROM checkin_outbox WHERE event_id=?", (event_id,))
            row = cur.fetchone()
            if row is None:
                return SyncState.DELIVERED
            attempts = int(row["attempts"] or 0) + 1
            if backoff_seconds is None:
                backoff_seconds = min(60, 2 ** min(attempts, 6))
            else:
                backoff_seconds = min(60, max(1, int(backoff_seconds)))
            next_attempt = utc_iso(_utcnow() + datetime.timedelta(seconds=backoff_seconds))
            state = SyncState.DEAD if attempts >= self.max_attempts else SyncState.FAILED
            self._conn.execute(
                """
                UPDATE checkin_outbox
                SET attempts=?, next_attempt_at_utc=?, last_error=?, status=?
                WHERE event_id=?
                """,
                (attempts, next_attempt, (error or "")[:300], state.value, event_id),
            )
        if state is SyncState.DEAD:
            self.logger.error("Outbox event dead after %s attempts event_id=%s: %s", attempts, event_id, error)
        return state

    def mark_dead(self, event_id: str, *, error: str) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE checkin_outbox SET status='dead', attempts=attempts+1, last_error=? WHERE event_id=?",
                ((error or "")[:300], event_id),
            )

    def get(self, event_id: str) -> Optional[PendingCheckinEvent]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM checkin_outbox WHERE event_id=?", (event_id,)
            ).fetchone()
        return self._row_to_event(row) if row is not None else None

    def dead_letters(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Dead events with their last error, oldest first."""
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT event_id, identity_id, slot_id, captured_at_utc, attempts, last_error
                FROM checkin_outbox
                WHERE status='dead'
                ORDER BY captured_at_utc ASC, id ASC
                LIMIT ?
                """,
                (int(limit),),
            )
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    def requeue_dead(self, event_id: Optional[str] = None) -> int:
        """Return dead events (one, or all) to the pending state with a fresh attempt budget."""
        now = utc_iso(_utcnow())
        with self._lock:
            if event_id is None:
                cur = self._conn.execute(
                    "UPDATE checkin_outbox SET status='pending', attempts=0, next_attempt_at_utc=? WHERE status='dead'",
                    (now,),
                )
            else:
                cur = self._conn.execute(
                    """
                    UPDATE checkin_outbox SET status='pending', attempts=0, next_attempt_at_utc=?
                    WHERE status='dead' AND event_id=?
                    """,
                    (now, event_id),
                )
            return int(cur.rowcount or 0)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT status, COUNT(*) AS cnt FROM checkin_outbox GROUP BY status"
            )
            rows = cur.fetchall()
        stats = {"pending": 0, "in_flight": 0, "failed": 0, "dead": 0}
        for row in rows:
            status = row["status"]
            if status in stats:
                stats[status] = int(row["cnt"])
        return stats

    def pending_count(self) -> int:
        """Events not yet delivered and not dead."""
        stats = self.stats()
        return stats["pending"] + stats["in_flight"] + stats["failed"]

    def dead_count(self) -> int:
        return int(self.stats()["dead"])

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as exc:
                self.logger.warning("Outbox close failed: %s", exc)


__all__ = ['Outbox', 'OutboxSettings', 'load_outbox_settings']
