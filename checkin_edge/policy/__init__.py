"""
Check-in policy package.

Slot resolution, per-identity cooldowns and the arbitrator that decides
whether a confirmed identity may produce a check-in event.
"""

from .arbitrator import CheckinArbitrator, CheckinDecision, RejectReason, decide_checkin
from .cooldown import CooldownEntry, CooldownRegistry
from .slots import ActiveSlot, resolve_active_slot

__all__ = [
    'CheckinArbitrator',
    'CheckinDecision',
    'RejectReason',
    'decide_checkin',
    'CooldownEntry',
    'CooldownRegistry',
    'ActiveSlot',
    'resolve_active_slot',
]
