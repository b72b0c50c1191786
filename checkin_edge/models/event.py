"""
Pydantic models for check-in events and status snapshots.

``PendingCheckinEvent`` is the unit of durability: the arbitrator creates
it, the outbox persists it as JSON and the sync manager turns it into the
``CheckinEventModel`` wire payload when delivering it to the backend.
"""

from __future__ import annotations

import datetime
import enum
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CheckinStatus(str, enum.Enum):
    ON_TIME = "on_time"
    LATE = "late"


class SyncState(str, enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    FAILED = "failed"
    # Terminal failure kept for operator inspection.
    DEAD = "dead"


def new_event_id() -> str:
    return str(uuid.uuid4())


def utc_iso(value: datetime.datetime) -> str:
    """Render an aware datetime as a UTC ISO-8601 string with a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class PendingCheckinEvent(BaseModel):
    """A check-in accepted on this device and waiting for backend delivery."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=new_event_id)
    identity_id: str
    slot_id: str
    captured_at: datetime.datetime
    status: CheckinStatus
    device_id: Optional[str] = None
    confidence: float = 0.0
    # "face" for the camera path, "scan" for QR/HID scanner input.
    source: str = "face"
    sync_state: SyncState = SyncState.PENDING
    attempt_count: int = 0


class CheckinEventModel(BaseModel):
    """Representation of a check-in as submitted to the backend."""

    schema_version: str = Field("1.0")
    event_id: str
    device_id: Optional[str] = None
    identity_id: str
    slot_id: str
    occurred_at: str
    status: CheckinStatus
    confidence: float
    source: str

    @classmethod
    def from_pending(cls, event: PendingCheckinEvent) -> "CheckinEventModel":
        return cls(
            event_id=event.event_id,
            device_id=event.device_id,
            identity_id=event.identity_id,
            slot_id=event.slot_id,
            occurred_at=utc_iso(event.captured_at),
            status=event.status,
            confidence=round(float(event.confidence), 2),
            source=event.source,
        )


class TrackerStatusModel(BaseModel):
    state: str
    tracked_id: Optional[str] = None
    progress: int = 0
    guidance: Optional[str] = None


class StatusModel(BaseModel):
    """Observability snapshot consumed by the check-in UI."""

    device_id: Optional[str] = None
    online: bool
    pending_count: int
    dead_count: int
    last_sync_utc: Optional[str] = None
    roster_size: int = 0
    tracker: Optional[TrackerStatusModel] = None
    timestamp_utc: str


__all__ = [
    'CheckinStatus',
    'SyncState',
    'PendingCheckinEvent',
    'CheckinEventModel',
    'TrackerStatusModel',
    'StatusModel',
    'new_event_id',
    'utc_iso',
]
