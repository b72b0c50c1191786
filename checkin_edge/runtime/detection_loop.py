"""
Detection loop for one check-in session.

Each cycle reads a frame, extracts faces, matches a lone face against the
roster, feeds the tracker and, when the tracker confirms an identity, hands
it to the arbitrator. The loop runs on one thread and is throttled between
cycles (longer while offline). A bad frame or a failing extractor only
costs that frame; a failed outbox write stops the session, because a
check-in that cannot be stored must not look successful.
"""

from __future__ import annotations

import concurrent.futures
import datetime
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..config import LoopConfig
from ..core.errors import ConfigError, OutboxWriteError, guarded_call, log_exception
from ..cv.camera import Camera, CameraLease, CameraRegistry, default_registry
from ..cv.face_id import FaceExtractor
from ..cv.matcher import EmbeddingMatcher
from ..cv.stability import FrameMatch, StabilityTracker, TrackerUpdate
from ..policy.arbitrator import CheckinArbitrator, CheckinDecision


@dataclass(frozen=True)
class CycleResult:
    match: Optional[FrameMatch]
    update: Optional[TrackerUpdate]
    decision: Optional[CheckinDecision] = None
    skipped: bool = False


def _frame_width(frame: Any) -> Optional[int]:
    shape = getattr(frame, "shape", None)
    if shape is None or len(shape) < 2:
        return None
    return int(shape[1])


class CheckinSession:
    """
    Parameters
    ----------
    camera: Camera
        Frame source; opened by ``start`` and closed by ``close``.
    extractor: FaceExtractor
        Face detection + embedding model.
    matcher: EmbeddingMatcher
        Roster search.
    tracker: StabilityTracker
        Temporal debounce for this session.
    arbitrator: CheckinArbitrator
        Receives confirmed identities.
    loop_config: LoopConfig
        Pacing and extraction timeout.
    match_threshold: float
        Minimum matcher confidence (0..100).
    is_online: Callable[[], bool]
        Connectivity hint used to pick the inter-frame interval.
    on_update, on_decision:
        Optional observers for the UI; failures are logged and ignored.
    """

    def __init__(
        self,
        *,
        camera: Camera,
        extractor: FaceExtractor,
        matcher: EmbeddingMatcher,
        tracker: StabilityTracker,
        arbitrator: CheckinArbitrator,
        loop_config: LoopConfig,
        match_threshold: float,
        is_online: Callable[[], bool] = lambda: True,
        registry: Optional[CameraRegistry] = None,
        name: str = "face-checkin",
        on_update: Optional[Callable[[TrackerUpdate], None]] = None,
        on_decision: Optional[Callable[[CheckinDecision], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.camera = camera
        self.extractor = extractor
        self.matcher = matcher
        self.tracker = tracker
        self.arbitrator = arbitrator
        self.loop_config = loop_config
        self.match_threshold = float(match_threshold)
        self.is_online = is_online
        self.registry = registry or default_registry
        self.name = name
        self.on_update = on_update
        self.on_decision = on_decision
        self.clock = clock
        self.fatal_error: Optional[BaseException] = None
        self._lease: Optional[CameraLease] = None
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self._pending: Optional[concurrent.futures.Future] = None
        self._processing = False
        self._dim_warned = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_open(self) -> bool:
        return self._lease is not None

    @property
    def is_processing(self) -> bool:
        return self._processing

    def open(self) -> None:
        """Lease and open the camera without starting the loop thread."""
        if self._lease is not None:
            return
        extractor_dim = getattr(self.extractor, "embedding_dim", None)
        matcher_dim = self.matcher.dim
        if extractor_dim and matcher_dim and int(extractor_dim) != matcher_dim:
            raise ConfigError(
                f"face model produces {extractor_dim}-d embeddings but the matcher expects {matcher_dim}-d"
            )
        lease = self.registry.acquire(self.camera.source, self.name)
        try:
            self.camera.open()
        except Exception:
            lease.release()
            raise
        self._lease = lease
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="FaceExtract")
        self.tracker.reset()
        self.fatal_error = None
        self._dim_warned = False

    def start(self) -> None:
        self.open()
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=f"CheckinSession-{self.name}", daemon=True)
        self._thread.start()
        self.logger.info("Check-in session %s started camera=%s", self.name, self.camera.source)

    def close(self) -> None:
        """
        Stop the loop and release the camera. Returns only once the camera is
        free, so a new session can acquire it right after.
        """
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self._pending = None
        if self._lease is not None:
            try:
                self.camera.close()
            finally:
                self._lease.release()
                self._lease = None
            self.logger.info("Check-in session %s closed", self.name)
        self.tracker.reset()

    def _extract(self, frame: Any):
        """Run extraction with a deadline; ``None`` means "no usable result"."""
        if self._executor is None:
            return None
        if self._pending is not None:
            if not self._pending.done():
                # A previous call is still stuck; don't queue another one behind it.
                return None
            self._pending = None
        future = self._executor.submit(self.extractor.extract, frame)
        try:
            return future.result(timeout=self.loop_config.extract_timeout_sec)
        except concurrent.futures.TimeoutError:
            self._pending = future
            self.logger.warning("Face extraction timed out after %ss", self.loop_config.extract_timeout_sec)
            return None
        except Exception as exc:
            self.logger.warning("Face extraction failed: %s", exc)
            return None

    def _match_frame(self, frame: Any) -> Optional[FrameMatch]:
        faces = self._extract(frame)
        if not faces:
            return None
        width = _frame_width(frame)
        if len(faces) > 1:
            return FrameMatch(candidate_id=None, multiple_faces_present=True, frame_width=width)
        face = faces[0]
        expected = self.matcher.dim
        if expected is not None and len(face.embedding) != expected:
            if not self._dim_warned:
                self._dim_warned = True
                self.logger.warning(
                    "Face embedding has %s values, roster expects %s; no face can match session=%s",
                    len(face.embedding),
                    expected,
                    self.name,
                )
            return FrameMatch(candidate_id=None, bbox=tuple(face.bbox), frame_width=width)
        result = self.matcher.find_match(face.embedding, self.match_threshold)
        return FrameMatch(
            candidate_id=result.id if result else None,
            confidence=result.confidence if result else 0.0,
            bbox=tuple(face.bbox),
            frame_width=width,
        )

    def run_cycle(
        self,
        now: Optional[float] = None,
        wall_now: Optional[datetime.datetime] = None,
    ) -> CycleResult:
        """
        Process one frame. ``now`` is monotonic seconds for the tracker and
        ``wall_now`` the timestamp used for slot arbitration.

        Raises ``OutboxWriteError`` when an accepted check-in could not be
        stored.
        """
        if self._processing:
            return CycleResult(match=None, update=None, skipped=True)
        now = self.clock() if now is None else now
        try:
            frame = self.camera.read()
            match = self._match_frame(frame) if frame is not None else None
        except Exception as exc:
            # Counts as a lost frame: the tracker starts over.
            self.logger.warning("Frame dropped session=%s: %s", self.name, exc)
            match = None
        update = self.tracker.observe(match, now)
        if self.on_update is not None:
            guarded_call("on_update", lambda: self.on_update(update), logger=self.logger)
        if update.confirmed_id is None:
            return CycleResult(match=match, update=update)

        self._processing = True
        try:
            decision = self.arbitrator.submit(
                update.confirmed_id,
                now=wall_now,
                confidence=update.confidence,
                source="face",
            )
        finally:
            self.tracker.release()
            self._processing = False
        if self.on_decision is not None:
            guarded_call("on_decision", lambda: self.on_decision(decision), logger=self.logger)
        return CycleResult(match=match, update=update, decision=decision)

    def _interval_sec(self) -> float:
        if self.is_online():
            return self.loop_config.min_interval_online_ms / 1000.0
        return self.loop_config.min_interval_offline_ms / 1000.0

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            started = self.clock()
            try:
                self.run_cycle(now=started)
            except OutboxWriteError as exc:
                self.fatal_error = exc
                log_exception(self.logger, "Check-in could not be stored; stopping session", exc, session=self.name)
                break
            except Exception as exc:
                log_exception(self.logger, "Detection cycle failed", exc, session=self.name)
            elapsed = self.clock() - started
            self._stop_event.wait(timeout=max(0.0, self._interval_sec() - elapsed))


__all__ = ['CheckinSession', 'CycleResult']
