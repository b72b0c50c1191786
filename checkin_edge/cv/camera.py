"""
Camera access for check-in sessions.

Only one session may hold a camera at a time. ``CameraRegistry.acquire``
hands out an exclusive lease per source and raises ``CameraBusyError`` if
the source is already leased; the previous session has to be closed
(which releases its lease) before a new one can start.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional, Protocol

from ..core.errors import CameraBusyError


class Camera(Protocol):
    source: str

    def open(self) -> None:
        ...

    def read(self) -> Optional[Any]:
        ...

    def close(self) -> None:
        ...


class CameraLease:
    def __init__(self, registry: "CameraRegistry", source: str, owner: str) -> None:
        self._registry = registry
        self.source = source
        self.owner = owner
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._registry._release(self)
        self._released = True


class CameraRegistry:
    def __init__(self) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._owners: Dict[str, str] = {}

    def acquire(self, source: str, owner: str) -> CameraLease:
        with self._lock:
            current = self._owners.get(source)
            if current is not None:
                raise CameraBusyError(f"camera {source} is held by {current}; close that session first")
            self._owners[source] = owner
        self.logger.info("Camera %s acquired by %s", source, owner)
        return CameraLease(self, source, owner)

    def _release(self, lease: CameraLease) -> None:
        with self._lock:
            if self._owners.get(lease.source) == lease.owner:
                del self._owners[lease.source]
        self.logger.info("Camera %s released by %s", lease.source, lease.owner)

    def holder(self, source: str) -> Optional[str]:
        with self._lock:
            return self._owners.get(source)


default_registry = CameraRegistry()


class OpenCVCamera:
    """
    Frames from a local device index or a stream URL via OpenCV.

    ``source`` is a device index ("0") or anything ``cv2.VideoCapture``
    accepts. Requires the optional ``vision`` dependencies.
    """

    def __init__(self, source: str, *, width: Optional[int] = None, height: Optional[int] = None) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.source = str(source)
        self.width = width
        self.height = height
        self._cap = None

    def open(self) -> None:
        try:
            import cv2  # type: ignore
        except ImportError as exc:
            raise RuntimeError("opencv-python is not installed; install the 'vision' extra") from exc
        target: Any = int(self.source) if self.source.isdigit() else self.source
        cap = cv2.VideoCapture(target)
        if not cap.isOpened():
            raise RuntimeError(f"Unable to open camera source {self.source}")
        if self.width:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        if self.height:
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        try:
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        except Exception:
            self.logger.debug("CAP_PROP_BUFFERSIZE not supported for %s", self.source)
        self._cap = cap

    def read(self) -> Optional[Any]:
        if self._cap is None:
            return None
        ok, frame = self._cap.read()
        if not ok:
            return None
        return frame

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


__all__ = ['Camera', 'CameraLease', 'CameraRegistry', 'OpenCVCamera', 'default_registry']
