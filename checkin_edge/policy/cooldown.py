"""
Per-identity cooldown registry.

An identity with a live entry must not produce another check-in. Entries
are removed lazily when a lookup finds them expired, or in bulk by
``purge``.
"""

from __future__ import annotations

import datetime
import threading
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class CooldownEntry:
    identity_id: str
    expires_at: datetime.datetime
    slot_id: Optional[str] = None

    def is_live(self, now: datetime.datetime) -> bool:
        return now < self.expires_at


class CooldownRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, CooldownEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, identity_id: str, now: datetime.datetime) -> Optional[CooldownEntry]:
        """Return the live entry for ``identity_id``; expired ones are dropped."""
        with self._lock:
            entry = self._entries.get(identity_id)
            if entry is None:
                return None
            if not entry.is_live(now):
                del self._entries[identity_id]
                return None
            return entry

    def is_live(self, identity_id: str, now: datetime.datetime) -> bool:
        return self.get(identity_id, now) is not None

    def set(
        self,
        identity_id: str,
        expires_at: datetime.datetime,
        *,
        slot_id: Optional[str] = None,
    ) -> CooldownEntry:
        """Set or extend a cooldown. An existing later expiry is kept."""
        with self._lock:
            current = self._entries.get(identity_id)
            if current is not None and current.expires_at >= expires_at:
                return current
            entry = CooldownEntry(identity_id=identity_id, expires_at=expires_at, slot_id=slot_id)
            self._entries[identity_id] = entry
            return entry

    def purge(self, now: datetime.datetime) -> int:
        with self._lock:
            expired = [key for key, entry in self._entries.items() if not entry.is_live(now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


__all__ = ['CooldownEntry', 'CooldownRegistry']
