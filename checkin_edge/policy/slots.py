"""
Time slot resolution.

Slots are configured as local ``HH:MM`` windows. A slot whose end time is
not after its start time spans midnight. Check-ins are accepted from the
start time until ``end_time + grace``; anything after ``end_time`` is late.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from ..config import TimeSlotConfig


def parse_time_string(time_str: str) -> datetime.time:
    """Parse a HH:MM string into a datetime.time object."""
    return datetime.datetime.strptime(time_str.strip(), "%H:%M").time()


def resolve_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except Exception:
        return ZoneInfo("UTC")


@dataclass(frozen=True)
class ActiveSlot:
    """A slot anchored to concrete datetimes for one occurrence."""
    config: TimeSlotConfig
    starts_at: datetime.datetime
    ends_at: datetime.datetime
    # ends_at plus the grace period; the slot stops accepting check-ins here.
    closes_at: datetime.datetime

    @property
    def id(self) -> str:
        return self.config.id

    def is_late(self, now: datetime.datetime) -> bool:
        return now > self.ends_at


def anchor_slot(
    slot: TimeSlotConfig,
    day: datetime.date,
    tz: ZoneInfo,
    grace: datetime.timedelta,
) -> ActiveSlot:
    """Build the occurrence of ``slot`` that starts on ``day``."""
    start_t = parse_time_string(slot.start_time)
    end_t = parse_time_string(slot.end_time)
    starts_at = datetime.datetime.combine(day, start_t, tzinfo=tz)
    end_day = day if end_t > start_t else day + datetime.timedelta(days=1)
    ends_at = datetime.datetime.combine(end_day, end_t, tzinfo=tz)
    return ActiveSlot(config=slot, starts_at=starts_at, ends_at=ends_at, closes_at=ends_at + grace)


def resolve_active_slot(
    slots: Iterable[TimeSlotConfig],
    now: datetime.datetime,
    tz: ZoneInfo,
    grace: datetime.timedelta = datetime.timedelta(0),
) -> Optional[ActiveSlot]:
    """
    Return the active slot whose window ``[start, end + grace]`` contains
    ``now``. A slot that is running on time wins over one that is only in
    its grace period; otherwise configured order decides.

    A naive ``now`` is taken to be local time in ``tz``. Occurrences that
    started yesterday are considered too, which covers overnight slots and
    grace periods running past midnight.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=tz)
    local_now = now.astimezone(tz)
    today = local_now.date()
    in_grace: Optional[ActiveSlot] = None
    for slot in slots:
        if not slot.is_active:
            continue
        try:
            occurrences = [
                anchor_slot(slot, today, tz, grace),
                anchor_slot(slot, today - datetime.timedelta(days=1), tz, grace),
            ]
        except ValueError:
            continue
        for occurrence in occurrences:
            if not occurrence.starts_at <= local_now <= occurrence.closes_at:
                continue
            if not occurrence.is_late(local_now):
                return occurrence
            if in_grace is None:
                in_grace = occurrence
    return in_grace


__all__ = [
    'ActiveSlot',
    'anchor_slot',
    'parse_time_string',
    'resolve_active_slot',
    'resolve_zone',
]
