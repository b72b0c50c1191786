"""
Stability tracker that turns noisy per-frame matches into a confirmation.

A single matching frame is not trusted. The tracker requires the same
identity to match continuously for ``threshold_ms`` of wall-clock time
before it reports the identity as confirmed. Any interruption (no face,
no match, a different identity, a face that is too small or too large,
or more than one face in view) starts the count again from zero.

States::

    IDLE --match(id)--> CANDIDATE(id, since)
    CANDIDATE(id) --match(id), elapsed >= threshold--> CONFIRMED(id)
    CANDIDATE(id) --match(id2)--> CANDIDATE(id2, now)
    CANDIDATE --no match | multiple faces | frame lost--> IDLE
    CONFIRMED --release()--> IDLE

While ``CONFIRMED`` the tracker ignores frames, so one steady hold can
never produce a second confirmation before the caller has finished with
the first one.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from typing import Optional, Tuple


GUIDANCE_NO_FACE = "No face detected"
GUIDANCE_MULTIPLE_FACES = "Multiple faces detected"
GUIDANCE_MOVE_CLOSER = "Move closer"
GUIDANCE_MOVE_BACK = "Move back"
GUIDANCE_NOT_RECOGNIZED = "Face not recognized"
GUIDANCE_HOLD_STILL = "Hold still"
GUIDANCE_CONFIRMED = "Verifying"


class TrackerState(str, enum.Enum):
    IDLE = "idle"
    CANDIDATE = "candidate"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class FrameMatch:
    """Outcome of matching one frame against the roster."""
    candidate_id: Optional[str]
    confidence: float = 0.0
    # [x1, y1, x2, y2] in frame pixels.
    bbox: Optional[Tuple[int, int, int, int]] = None
    multiple_faces_present: bool = False
    frame_width: Optional[int] = None


@dataclass
class StabilityState:
    tracked_id: Optional[str] = None
    first_seen_at: Optional[float] = None
    last_seen_at: Optional[float] = None
    progress: int = 0


@dataclass(frozen=True)
class TrackerUpdate:
    state: TrackerState
    tracked_id: Optional[str]
    progress: int
    guidance: str
    confirmed_id: Optional[str] = None
    confidence: float = 0.0


class StabilityTracker:
    """
    Temporal debounce for one recognition session.

    Parameters
    ----------
    threshold_ms: int
        Continuous matching time required for confirmation.
    min_confidence: float
        Confidence floor (0..100) below which a match is ignored.
    min_face_ratio, max_face_ratio: float
        Accepted face width as a fraction of frame width. Only applied when
        the match carries both a bounding box and the frame width.
    """

    def __init__(
        self,
        *,
        threshold_ms: int = 500,
        min_confidence: float = 45.0,
        min_face_ratio: float = 0.2,
        max_face_ratio: float = 0.65,
    ) -> None:
        self.threshold_ms = max(0, int(threshold_ms))
        self.min_confidence = float(min_confidence)
        self.min_face_ratio = float(min_face_ratio)
        self.max_face_ratio = float(max_face_ratio)
        self._lock = threading.Lock()
        self._state = TrackerState.IDLE
        self._stability = StabilityState()
        self._guidance = GUIDANCE_NO_FACE
        self._confidence = 0.0

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def stability(self) -> StabilityState:
        return StabilityState(**vars(self._stability))

    def snapshot(self) -> TrackerUpdate:
        with self._lock:
            return self._update_locked()

    def _update_locked(self, confirmed_id: Optional[str] = None) -> TrackerUpdate:
        return TrackerUpdate(
            state=self._state,
            tracked_id=self._stability.tracked_id,
            progress=self._stability.progress,
            guidance=self._guidance,
            confirmed_id=confirmed_id,
            confidence=self._confidence,
        )

    def _reset_locked(self, guidance: str) -> TrackerUpdate:
        self._state = TrackerState.IDLE
        self._stability = StabilityState()
        self._guidance = guidance
        self._confidence = 0.0
        return self._update_locked()

    def _size_guidance(self, match: FrameMatch) -> Optional[str]:
        if match.bbox is None or not match.frame_width:
            return None
        width = max(0, match.bbox[2] - match.bbox[0])
        ratio = width / float(match.frame_width)
        if ratio < self.min_face_ratio:
            return GUIDANCE_MOVE_CLOSER
        if ratio > self.max_face_ratio:
            return GUIDANCE_MOVE_BACK
        return None

    def observe(self, match: Optional[FrameMatch], now: float) -> TrackerUpdate:
        """
        Feed one frame's result. ``now`` is a monotonic timestamp in seconds;
        ``match=None`` means the frame was lost or held no face.
        """
        with self._lock:
            if self._state is TrackerState.CONFIRMED:
                return self._update_locked()
            if match is None:
                return self._reset_locked(GUIDANCE_NO_FACE)
            if match.multiple_faces_present:
                return self._reset_locked(GUIDANCE_MULTIPLE_FACES)
            size_guidance = self._size_guidance(match)
            if size_guidance is not None:
                return self._reset_locked(size_guidance)
            if match.candidate_id is None or match.confidence < self.min_confidence:
                return self._reset_locked(GUIDANCE_NOT_RECOGNIZED)

            if self._state is TrackerState.IDLE or self._stability.tracked_id != match.candidate_id:
                self._state = TrackerState.CANDIDATE
                self._stability = StabilityState(
                    tracked_id=match.candidate_id,
                    first_seen_at=now,
                    last_seen_at=now,
                    progress=0,
                )
            self._stability.last_seen_at = now
            self._confidence = float(match.confidence)
            first_seen = self._stability.first_seen_at
            if first_seen is None:
                first_seen = now
            elapsed_ms = max(0.0, (now - first_seen) * 1000.0)
            if self.threshold_ms == 0:
                progress = 100
            else:
                progress = min(100, int(elapsed_ms / self.threshold_ms * 100))
            self._stability.progress = progress

            if elapsed_ms >= self.threshold_ms:
                self._state = TrackerState.CONFIRMED
                self._stability.progress = 100
                self._guidance = GUIDANCE_CONFIRMED
                return self._update_locked(confirmed_id=match.candidate_id)

            self._guidance = f"{GUIDANCE_HOLD_STILL}... {progress}%"
            return self._update_locked()

    def release(self) -> None:
        """Leave ``CONFIRMED`` once the confirmation has been handled."""
        with self._lock:
            self._reset_locked(GUIDANCE_NO_FACE)

    def reset(self) -> None:
        with self._lock:
            self._reset_locked(GUIDANCE_NO_FACE)


__all__ = [
    'TrackerState',
    'FrameMatch',
    'StabilityState',
    'TrackerUpdate',
    'StabilityTracker',
]
