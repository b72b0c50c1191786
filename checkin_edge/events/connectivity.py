"""
Connectivity monitor.

Polls a probe (normally ``BackendClient.is_reachable``) and notifies
listeners only on online/offline transitions. Listeners run on the monitor
thread; a failing listener is logged and does not stop the others.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from ..core.errors import guarded_call


class ConnectivityMonitor:
    def __init__(
        self,
        probe: Callable[[], bool],
        *,
        interval_sec: float = 10.0,
        listeners: Optional[List[Callable[[bool], None]]] = None,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.probe = probe
        self.interval_sec = max(0.5, float(interval_sec))
        self._listeners: List[Callable[[bool], None]] = list(listeners or [])
        self._online: Optional[bool] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def online(self) -> bool:
        return bool(self._online)

    def add_listener(self, listener: Callable[[bool], None]) -> None:
        self._listeners.append(listener)

    def check_once(self) -> bool:
        online = bool(guarded_call("connectivity probe", self.probe, default=False, logger=self.logger))
        self.update(online)
        return online

    def update(self, online: bool) -> None:
        """Record a state; listeners fire only when it differs from the last one."""
        if online == self._online:
            return
        previous = self._online
        self._online = online
        if previous is not None:
            self.logger.info("Connectivity %s", "restored" if online else "lost")
        for listener in list(self._listeners):
            guarded_call(
                "connectivity listener",
                lambda: listener(online),
                logger=self.logger,
            )

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="ConnectivityMonitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.check_once()
            self._stop_event.wait(timeout=self.interval_sec)


__all__ = ['ConnectivityMonitor']
