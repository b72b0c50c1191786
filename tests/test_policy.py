import datetime
from zoneinfo import ZoneInfo

import pytest

from checkin_edge.config import ArbitrationConfig, TimeSlotConfig
from checkin_edge.core.errors import OutboxWriteError
from checkin_edge.models.event import CheckinStatus
from checkin_edge.policy.arbitrator import CheckinArbitrator, RejectReason, decide_checkin
from checkin_edge.policy.cooldown import CooldownRegistry
from checkin_edge.policy.slots import resolve_active_slot

UTC = ZoneInfo("UTC")
MORNING = TimeSlotConfig(id="morning", name="Morning", start_time="06:00", end_time="07:00")
LATE_STUDY = TimeSlotConfig(id="late_study", name="Late study", start_time="23:30", end_time="00:30")
DISABLED = TimeSlotConfig(id="off", name="Off", start_time="00:00", end_time="23:59", is_active=False)
GRACE = datetime.timedelta(minutes=15)


def _at(hour, minute, second=0, day=10):
    return datetime.datetime(2026, 3, day, hour, minute, second, tzinfo=UTC)


class DummyOutbox:
    def __init__(self):
        self.events = []
        self.fail = False

    def enqueue(self, event):
        if self.fail:
            raise OutboxWriteError("disk full")
        self.events.append(event)
        return event.event_id


def _arbitrator(outbox, **kwargs):
    return CheckinArbitrator(
        ArbitrationConfig(grace_minutes=15, min_cooldown_sec=60, failure_cooldown_sec=5),
        outbox,
        device_id="KIOSK_TEST",
        slots=[DISABLED, MORNING, LATE_STUDY],
        timezone="UTC",
        **kwargs,
    )


def test_resolve_active_slot_window_and_grace():
    assert resolve_active_slot([MORNING], _at(6, 30), UTC, GRACE).id == "morning"
    assert resolve_active_slot([MORNING], _at(7, 10), UTC, GRACE).id == "morning"
    assert resolve_active_slot([MORNING], _at(7, 16), UTC, GRACE) is None
    assert resolve_active_slot([MORNING], _at(5, 59), UTC, GRACE) is None
    assert resolve_active_slot([DISABLED], _at(12, 0), UTC, GRACE) is None


def test_resolve_overnight_slot():
    after_midnight = resolve_active_slot([LATE_STUDY], _at(0, 10), UTC, GRACE)
    assert after_midnight is not None
    assert after_midnight.starts_at == _at(23, 30, day=9)
    assert after_midnight.is_late(_at(0, 10)) is False

    before_midnight = resolve_active_slot([LATE_STUDY], _at(23, 45), UTC, GRACE)
    assert before_midnight.starts_at == _at(23, 30)


def test_resolve_uses_local_time():
    tz = ZoneInfo("Asia/Ho_Chi_Minh")
    # 23:30 UTC is 06:30 in UTC+7.
    now = datetime.datetime(2026, 3, 9, 23, 30, tzinfo=UTC)
    assert resolve_active_slot([MORNING], now, tz, GRACE).id == "morning"


def test_decide_outside_window_sets_no_cooldown():
    cooldowns = CooldownRegistry()
    decision = decide_checkin("A", _at(12, 0), None, cooldowns)
    assert decision.accepted is False
    assert decision.reason is RejectReason.OUTSIDE_WINDOW
    assert len(cooldowns) == 0


def test_on_time_then_duplicate_suppressed():
    outbox = DummyOutbox()
    arbitrator = _arbitrator(outbox)

    first = arbitrator.submit("A", now=_at(6, 30), confidence=70.0)
    assert first.accepted is True
    assert first.status is CheckinStatus.ON_TIME
    assert first.cooldown_until == _at(7, 15)
    assert len(outbox.events) == 1
    event = outbox.events[0]
    assert event.identity_id == "A"
    assert event.slot_id == "morning"
    assert event.device_id == "KIOSK_TEST"

    again = arbitrator.submit("A", now=_at(6, 31))
    assert again.accepted is False
    assert again.reason is RejectReason.ALREADY_CHECKED_IN
    assert len(outbox.events) == 1

    # Other people are unaffected.
    assert arbitrator.submit("B", now=_at(6, 31)).accepted is True


def test_late_within_grace():
    outbox = DummyOutbox()
    decision = _arbitrator(outbox).submit("A", now=_at(7, 5))
    assert decision.accepted is True
    assert decision.status is CheckinStatus.LATE


def test_outside_window_rejected():
    outbox = DummyOutbox()
    arbitrator = _arbitrator(outbox)
    decision = arbitrator.submit("A", now=_at(12, 0))
    assert decision.reason is RejectReason.OUTSIDE_WINDOW
    assert outbox.events == []
    assert len(arbitrator.cooldowns) == 0


def test_cooldown_expires_for_next_occurrence():
    outbox = DummyOutbox()
    arbitrator = _arbitrator(outbox)
    assert arbitrator.submit("A", now=_at(6, 30)).accepted
    assert arbitrator.submit("A", now=_at(6, 30, day=11)).accepted
    assert len(outbox.events) == 2


def test_min_cooldown_outlasts_slot_end():
    outbox = DummyOutbox()
    arbitrator = _arbitrator(outbox)
    decision = arbitrator.submit("A", now=_at(7, 14, 30))
    assert decision.cooldown_until == _at(7, 15, 30)


def test_outbox_failure_sets_short_cooldown_and_raises():
    outbox = DummyOutbox()
    outbox.fail = True
    arbitrator = _arbitrator(outbox)
    with pytest.raises(OutboxWriteError):
        arbitrator.submit("A", now=_at(6, 30))

    blocked = arbitrator.submit("A", now=_at(6, 30, 3))
    assert blocked.reason is RejectReason.ALREADY_CHECKED_IN

    outbox.fail = False
    retried = arbitrator.submit("A", now=_at(6, 30, 6))
    assert retried.accepted is True
    assert len(outbox.events) == 1


def test_on_enqueued_callback_errors_are_contained():
    outbox = DummyOutbox()
    calls = []

    def on_enqueued(event):
        calls.append(event.event_id)
        raise RuntimeError("observer broke")

    decision = _arbitrator(outbox, on_enqueued=on_enqueued).submit("A", now=_at(6, 30))
    assert decision.accepted is True
    assert calls == [decision.event.event_id]


def test_cooldown_registry_lazy_expiry():
    registry = CooldownRegistry()
    registry.set("A", _at(7, 0))
    registry.set("A", _at(6, 45))
    assert registry.get("A", _at(6, 50)).expires_at == _at(7, 0)
    assert registry.is_live("A", _at(7, 0)) is False
    assert len(registry) == 0

    registry.set("B", _at(7, 0))
    registry.set("C", _at(8, 0))
    assert registry.purge(_at(7, 30)) == 1
    assert len(registry) == 1


def test_running_slot_wins_over_previous_slot_grace():
    breakfast = TimeSlotConfig(id="breakfast", name="Breakfast", start_time="07:00", end_time="08:00")
    assert resolve_active_slot([MORNING, breakfast], _at(7, 5), UTC, GRACE).id == "breakfast"
    # Only the grace period left: the earlier slot still takes late check-ins.
    assert resolve_active_slot([MORNING], _at(7, 5), UTC, GRACE).id == "morning"

    outbox = DummyOutbox()
    arbitrator = CheckinArbitrator(
        ArbitrationConfig(grace_minutes=15, min_cooldown_sec=60),
        outbox,
        device_id="KIOSK_TEST",
        slots=[MORNING, breakfast],
        timezone="UTC",
    )
    decision = arbitrator.submit("A", now=_at(7, 5))
    assert decision.accepted is True
    assert decision.slot_id == "breakfast"
    assert decision.status is CheckinStatus.ON_TIME
    assert decision.cooldown_until == _at(8, 15)
