"""
Roster sync manager for check-in devices.

Fetches the enrolled roster from the backend, caches it on disk so the
device can recognise people while offline, and pushes it into the
matcher with a single atomic ``replace_all``.

Roster payload::

    {"checksum": "...", "items": [{"id": "...", "name": "...",
      "embedding": "[0.1, ...]" | [0.1, ...], "code": "STU0042"}]}
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from hashlib import sha256
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..cv.matcher import EmbeddingMatcher, EnrolledIdentity


def decode_embedding(raw: object) -> Optional[Tuple[float, ...]]:
    """Decode an embedding stored as a JSON array string or a plain list."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, (list, tuple)) or not raw:
        return None
    try:
        return tuple(float(x) for x in raw)
    except (TypeError, ValueError):
        return None


def decode_roster_items(items: list) -> Tuple[List[EnrolledIdentity], Dict[str, str]]:
    """
    Turn raw roster items into identities plus a scan-code lookup table.

    Items without an id or with an undecodable embedding are skipped. Items
    may carry a ``code`` (badge/QR code); it maps to the identity id.
    """
    logger = logging.getLogger("roster")
    identities: List[EnrolledIdentity] = []
    codes: Dict[str, str] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        identity_id = item.get("id")
        if not identity_id:
            continue
        identity_id = str(identity_id)
        code = item.get("code")
        if code:
            codes[str(code).strip().upper()] = identity_id
        embedding = decode_embedding(item.get("embedding"))
        if embedding is None:
            logger.warning("Roster item %s has no usable embedding", identity_id)
            continue
        identities.append(
            EnrolledIdentity(
                id=identity_id,
                display_name=str(item.get("name") or identity_id),
                embedding=embedding,
            )
        )
    return identities, codes


def roster_checksum(items: list) -> str:
    return sha256(json.dumps(items, sort_keys=True, default=str).encode("utf-8")).hexdigest()


class RosterManager:
    def __init__(
        self,
        matcher: EmbeddingMatcher,
        backend,
        *,
        cache_dir: Path,
        sync_interval_sec: int = 300,
    ) -> None:
        self.logger = logging.getLogger("roster")
        self.matcher = matcher
        self.backend = backend
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.cache_path = self.cache_dir / "roster_cache.json"
        self.sync_interval_sec = max(30, int(sync_interval_sec))
        self._checksum: Optional[str] = None
        self._codes: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._load_cached()

    @property
    def checksum(self) -> Optional[str]:
        return self._checksum

    def _apply(self, items: list, checksum: Optional[str]) -> int:
        identities, codes = decode_roster_items(items)
        count = self.matcher.replace_all(identities)
        with self._lock:
            self._codes = codes
            self._checksum = checksum
        return count

    def _read_cache(self) -> Optional[dict]:
        try:
            with self.cache_path.open("r", encoding="utf-8") as f:
                payload = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            self.logger.warning("Ignoring unreadable roster cache %s: %s", self.cache_path, exc)
            return None
        return payload if isinstance(payload, dict) else None

    def _write_cache(self, payload: dict) -> None:
        # Write to a temp file in the same directory, then swap it in.
        fd, tmp_name = tempfile.mkstemp(prefix="roster_cache.", suffix=".tmp", dir=str(self.cache_dir))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.cache_path)
        except OSError as exc:
            self.logger.warning("Roster cache write failed %s: %s", self.cache_path, exc)
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def _load_cached(self) -> None:
        payload = self._read_cache()
        if not isinstance(payload, dict):
            return
        items = payload.get("items") if isinstance(payload.get("items"), list) else []
        count = self._apply(items, payload.get("checksum"))
        self.logger.info("Roster loaded from cache: %s identities", count)

    def sync_once(self) -> bool:
        """Fetch the roster; returns True when a new roster was applied."""
        payload = self.backend.get_json("/api/v1/roster/sync")
        if not isinstance(payload, dict):
            return False
        items = payload.get("items") if isinstance(payload.get("items"), list) else []
        checksum = payload.get("checksum") or roster_checksum(items)
        if checksum == self._checksum:
            return False
        count = self._apply(items, checksum)
        self._write_cache({"checksum": checksum, "items": items})
        self.logger.info("Roster synced: %s identities", count)
        return True

    def resolve_code(self, code: str) -> Optional[str]:
        """Map a scanned badge code, or a bare identity id, to an identity id."""
        key = code.strip()
        with self._lock:
            identity_id = self._codes.get(key.upper())
        if identity_id:
            return identity_id
        if key in self.matcher.ids():
            return key
        return None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="RosterSync", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.sync_once()
            except Exception as exc:
                self.logger.warning("Roster sync failed: %s", exc)
            self._stop_event.wait(timeout=self.sync_interval_sec)


__all__ = ['RosterManager', 'decode_embedding', 'decode_roster_items', 'roster_checksum']
