from __future__ import annotations

import datetime
import sqlite3
import threading
import time
from pathlib import Path

from checkin_edge.config import ArbitrationConfig, TimeSlotConfig
from checkin_edge.core.errors import DeliveryPermanentError, DeliveryTransientError
from checkin_edge.events.backend import SubmitResult
from checkin_edge.events.outbox import Outbox, OutboxSettings
from checkin_edge.events.sync import SyncManager
from checkin_edge.models.event import CheckinStatus, PendingCheckinEvent, SyncState
from checkin_edge.policy.arbitrator import CheckinArbitrator

T0 = datetime.datetime(2026, 3, 10, 6, 30, tzinfo=datetime.timezone.utc)


class DummyBackend:
    """Records check-ins by event id, like an idempotent backend."""

    def __init__(self) -> None:
        self.records: dict[str, PendingCheckinEvent] = {}
        self.calls: list[str] = []
        self.transient_for: set[str] = set()
        self.permanent_for: set[str] = set()
        self.lose_ack_once: set[str] = set()
        self.delay = 0.0
        self._lock = threading.Lock()

    def submit_checkin(self, event: PendingCheckinEvent) -> SubmitResult:
        with self._lock:
            self.calls.append(event.event_id)
        if self.delay:
            time.sleep(self.delay)
        if event.identity_id in self.transient_for:
            raise DeliveryTransientError("HTTP 503")
        if event.identity_id in self.permanent_for:
            raise DeliveryPermanentError("HTTP 422: unknown slot")
        with self._lock:
            if event.event_id in self.records:
                return SubmitResult.DUPLICATE
            self.records[event.event_id] = event
        if event.identity_id in self.lose_ack_once:
            self.lose_ack_once.discard(event.identity_id)
            raise DeliveryTransientError("connection reset after write")
        return SubmitResult.ACCEPTED


def _settings(tmp_path: Path, **overrides) -> OutboxSettings:
    values = dict(
        db_path=tmp_path / "outbox.db",
        flush_interval_sec=0.05,
        batch_size=50,
        max_attempts=5,
        max_queue=100,
        summary_interval_sec=60.0,
    )
    values.update(overrides)
    return OutboxSettings(**values)


def _event(identity: str, minutes: int = 0) -> PendingCheckinEvent:
    return PendingCheckinEvent(
        identity_id=identity,
        slot_id="morning",
        captured_at=T0 + datetime.timedelta(minutes=minutes),
        status=CheckinStatus.ON_TIME,
    )


def test_offline_enqueue_then_reconnect_delivers(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    outbox = Outbox(settings.db_path)
    backend = DummyBackend()
    sync = SyncManager(outbox, backend, settings, online=False)
    arbitrator = CheckinArbitrator(
        ArbitrationConfig(),
        outbox,
        device_id="KIOSK_TEST",
        slots=[TimeSlotConfig(id="morning", name="Morning", start_time="06:00", end_time="07:00")],
        timezone="UTC",
        on_enqueued=sync.notify_enqueued,
    )

    decision = arbitrator.submit("A", now=T0, confidence=70.0)
    assert decision.accepted
    assert decision.status is CheckinStatus.ON_TIME
    assert sync.pending_count() == 1
    assert backend.calls == []

    sync.set_online(True)
    assert sync.pending_count() == 0
    assert list(backend.records) == [decision.event.event_id]
    assert sync.last_sync_at is not None


def test_transient_failure_stops_batch(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    outbox = Outbox(settings.db_path)
    backend = DummyBackend()
    backend.transient_for = {"A"}
    for i, identity in enumerate(["A", "B", "C"]):
        outbox.enqueue(_event(identity, minutes=i))
    sync = SyncManager(outbox, backend, settings, online=True)

    delivered, remaining = sync.try_flush()
    assert (delivered, remaining) == (0, 3)
    assert len(backend.calls) == 1

    # The failed event is backing off; the rest goes out on the next flush.
    delivered, remaining = sync.try_flush()
    assert (delivered, remaining) == (2, 1)
    assert {e.identity_id for e in backend.records.values()} == {"B", "C"}


def test_permanent_failure_is_dead_lettered_and_flush_continues(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    outbox = Outbox(settings.db_path)
    backend = DummyBackend()
    backend.permanent_for = {"A"}
    bad = _event("A", minutes=0)
    outbox.enqueue(bad)
    outbox.enqueue(_event("B", minutes=1))
    sync = SyncManager(outbox, backend, settings, online=True)

    assert sync.try_flush() == (1, 0)
    assert outbox.get(bad.event_id).sync_state is SyncState.DEAD
    assert sync.status()["dead_count"] == 1


def test_retry_after_lost_ack_records_once(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    outbox = Outbox(settings.db_path)
    backend = DummyBackend()
    backend.lose_ack_once = {"A"}
    event = _event("A")
    outbox.enqueue(event)
    sync = SyncManager(outbox, backend, settings, online=True)

    assert sync.try_flush() == (0, 1)
    assert sync.try_flush(ignore_backoff=True) == (1, 0)
    assert backend.calls == [event.event_id, event.event_id]
    assert len(backend.records) == 1


def test_concurrent_flushes_never_double_submit(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    outbox = Outbox(settings.db_path)
    backend = DummyBackend()
    backend.delay = 0.005
    for i in range(10):
        outbox.enqueue(_event(f"P{i}", minutes=i))
    sync = SyncManager(outbox, backend, settings, online=True)

    results = []
    threads = [threading.Thread(target=lambda: results.append(sync.try_flush())) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(delivered for delivered, _ in results) == 10
    assert len(backend.calls) == 10
    assert len(set(backend.calls)) == 10
    assert outbox.pending_count() == 0


def test_set_online_only_reacts_to_transitions(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    outbox = Outbox(settings.db_path)
    backend = DummyBackend()
    sync = SyncManager(outbox, backend, settings, online=True)
    outbox.enqueue(_event("A"))

    sync.set_online(True)
    assert backend.calls == []

    sync.set_online(False)
    assert sync.online is False
    sync.set_online(True)
    assert len(backend.calls) == 1


def test_worker_flushes_after_enqueue_while_online(tmp_path: Path) -> None:
    settings = _settings(tmp_path, flush_interval_sec=5.0)
    outbox = Outbox(settings.db_path)
    backend = DummyBackend()
    sync = SyncManager(outbox, backend, settings, online=True)
    sync.start()
    try:
        # Let the worker reach its wait before the wake-up.
        time.sleep(0.1)
        outbox.enqueue(_event("A"))
        sync.notify_enqueued()
        deadline = time.monotonic() + 2.0
        while sync.pending_count() and time.monotonic() < deadline:
            time.sleep(0.02)
        assert sync.pending_count() == 0
    finally:
        sync.stop()


def test_storage_error_after_delivery_requeues_row(tmp_path: Path, monkeypatch) -> None:
    settings = _settings(tmp_path)
    outbox = Outbox(settings.db_path)
    backend = DummyBackend()
    sync = SyncManager(outbox, backend, settings, online=True)
    event = _event("A")
    outbox.enqueue(event)

    real_mark_delivered = outbox.mark_delivered

    def locked(_event_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(outbox, "mark_delivered", locked)
    assert sync.try_flush() == (0, 1)
    stats = outbox.stats()
    assert stats["in_flight"] == 0
    assert stats["failed"] == 1
    assert outbox.get(event.event_id).attempt_count == 0

    monkeypatch.setattr(outbox, "mark_delivered", real_mark_delivered)
    assert sync.try_flush(ignore_backoff=True) == (1, 0)
    # The backend saw the event twice but recorded it once.
    assert backend.calls == [event.event_id, event.event_id]
    assert list(backend.records) == [event.event_id]


def test_claim_error_ends_flush_without_raising(tmp_path: Path, monkeypatch) -> None:
    settings = _settings(tmp_path)
    outbox = Outbox(settings.db_path)
    sync = SyncManager(outbox, DummyBackend(), settings, online=True)
    outbox.enqueue(_event("A"))

    def broken(**_kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(outbox, "claim_next", broken)
    assert sync.try_flush() == (0, 1)
