"""
Check-in arbitration.

``decide_checkin`` is the pure policy: given an identity, the current time,
the active slot and the cooldown registry it says whether a check-in may be
recorded and with which status. ``CheckinArbitrator`` applies a positive
decision: it builds the event, commits it to the outbox and sets the
cooldown, all under one lock so two producers (camera and scanner) cannot
both emit for the same person.
"""

from __future__ import annotations

import datetime
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from ..config import ArbitrationConfig, TimeSlotConfig
from ..core.errors import OutboxWriteError, guarded_call
from ..models.event import CheckinStatus, PendingCheckinEvent
from .cooldown import CooldownRegistry
from .slots import ActiveSlot, resolve_active_slot, resolve_zone


class RejectReason(str, enum.Enum):
    OUTSIDE_WINDOW = "outside_window"
    ALREADY_CHECKED_IN = "already_checked_in"


@dataclass(frozen=True)
class CheckinDecision:
    accepted: bool
    status: Optional[CheckinStatus] = None
    reason: Optional[RejectReason] = None
    slot_id: Optional[str] = None
    cooldown_until: Optional[datetime.datetime] = None
    event: Optional[PendingCheckinEvent] = None


def decide_checkin(
    identity_id: str,
    now: datetime.datetime,
    active_slot: Optional[ActiveSlot],
    cooldowns: CooldownRegistry,
    *,
    min_cooldown: datetime.timedelta = datetime.timedelta(seconds=60),
) -> CheckinDecision:
    """
    Decide whether ``identity_id`` may check in at ``now``.

    The cooldown check always runs before anything is emitted. An accepted
    decision carries the cooldown expiry to apply: the end of the slot's
    grace window, or ``now + min_cooldown`` if that is later.
    """
    if active_slot is None:
        return CheckinDecision(accepted=False, reason=RejectReason.OUTSIDE_WINDOW)
    if cooldowns.is_live(identity_id, now):
        return CheckinDecision(
            accepted=False,
            reason=RejectReason.ALREADY_CHECKED_IN,
            slot_id=active_slot.id,
        )
    status = CheckinStatus.LATE if active_slot.is_late(now) else CheckinStatus.ON_TIME
    return CheckinDecision(
        accepted=True,
        status=status,
        slot_id=active_slot.id,
        cooldown_until=max(active_slot.closes_at, now + min_cooldown),
    )


class CheckinArbitrator:
    """
    Turns confirmed identities into durable check-in events.

    Parameters
    ----------
    config: ArbitrationConfig
        Grace period and cooldown durations.
    outbox:
        Anything with ``enqueue(PendingCheckinEvent) -> str``.
    device_id: str
        Stamped on every event.
    slots: Iterable[TimeSlotConfig]
        Configured slots, used by ``submit`` to find the active one.
    timezone: str
        IANA zone the slot times are expressed in.
    cooldowns: Optional[CooldownRegistry]
        Shared registry; a new one is created when omitted.
    on_enqueued: Optional[Callable[[PendingCheckinEvent], None]]
        Called after each successful enqueue (used to wake the sync worker).
    """

    def __init__(
        self,
        config: ArbitrationConfig,
        outbox,
        *,
        device_id: str,
        slots: Iterable[TimeSlotConfig] = (),
        timezone: str = "UTC",
        cooldowns: Optional[CooldownRegistry] = None,
        on_enqueued: Optional[Callable[[PendingCheckinEvent], None]] = None,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.config = config
        self.outbox = outbox
        self.device_id = device_id
        self.slots: List[TimeSlotConfig] = list(slots)
        self.tz = resolve_zone(timezone)
        self.cooldowns = cooldowns or CooldownRegistry()
        self.on_enqueued = on_enqueued
        self._lock = threading.Lock()

    @property
    def grace(self) -> datetime.timedelta:
        return datetime.timedelta(minutes=max(0, int(self.config.grace_minutes)))

    def active_slot(self, now: datetime.datetime) -> Optional[ActiveSlot]:
        return resolve_active_slot(self.slots, now, self.tz, self.grace)

    def arbitrate(
        self,
        identity_id: str,
        now: datetime.datetime,
        active_slot: Optional[ActiveSlot],
        *,
        confidence: float = 100.0,
        source: str = "face",
    ) -> CheckinDecision:
        """
        Decide and, on acceptance, enqueue the event and set the cooldown.

        Raises ``OutboxWriteError`` if the event could not be persisted. In
        that case only a short failure cooldown is set, so the person can
        retry within seconds once storage recovers.
        """
        if now.tzinfo is None:
            now = now.replace(tzinfo=self.tz)
        min_cooldown = datetime.timedelta(seconds=max(0, int(self.config.min_cooldown_sec)))
        with self._lock:
            decision = decide_checkin(
                identity_id, now, active_slot, self.cooldowns, min_cooldown=min_cooldown
            )
            if not decision.accepted:
                self.logger.info(
                    "Check-in rejected identity=%s reason=%s slot=%s",
                    identity_id,
                    decision.reason.value if decision.reason else None,
                    decision.slot_id,
                )
                return decision

            event = PendingCheckinEvent(
                identity_id=identity_id,
                slot_id=decision.slot_id,
                captured_at=now,
                status=decision.status,
                device_id=self.device_id,
                confidence=float(confidence),
                source=source,
            )
            try:
                self.outbox.enqueue(event)
            except OutboxWriteError:
                failure_cooldown = datetime.timedelta(seconds=max(0, int(self.config.failure_cooldown_sec)))
                self.cooldowns.set(identity_id, now + failure_cooldown, slot_id=decision.slot_id)
                raise
            self.cooldowns.set(identity_id, decision.cooldown_until, slot_id=decision.slot_id)

        self.logger.info(
            "Check-in accepted identity=%s slot=%s status=%s source=%s event_id=%s",
            identity_id,
            decision.slot_id,
            decision.status.value,
            source,
            event.event_id,
        )
        if self.on_enqueued is not None:
            guarded_call(
                "on_enqueued",
                lambda: self.on_enqueued(event),
                logger=self.logger,
                event_id=event.event_id,
            )
        return CheckinDecision(
            accepted=True,
            status=decision.status,
            slot_id=decision.slot_id,
            cooldown_until=decision.cooldown_until,
            event=event,
        )

    def submit(
        self,
        identity_id: str,
        *,
        now: Optional[datetime.datetime] = None,
        confidence: float = 100.0,
        source: str = "face",
    ) -> CheckinDecision:
        """Arbitrate against whichever configured slot is active at ``now``."""
        now = now or datetime.datetime.now(self.tz)
        return self.arbitrate(
            identity_id,
            now,
            self.active_slot(now),
            confidence=confidence,
            source=source,
        )


__all__ = ['RejectReason', 'CheckinDecision', 'decide_checkin', 'CheckinArbitrator']
