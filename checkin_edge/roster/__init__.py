"""Roster sync for check-in devices."""

from .manager import RosterManager

__all__ = ["RosterManager"]
