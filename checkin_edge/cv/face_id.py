"""
Face detection and embedding extraction.

The check-in core only needs one capability from a face model: given a
frame, return every face with its bounding box and embedding. Anything
implementing ``FaceExtractor`` can be plugged into the detection loop;
``InsightFaceExtractor`` is the production implementation and needs the
optional ``vision`` dependencies.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Tuple

import numpy as np


@dataclass(frozen=True)
class DetectedFace:
    # [x1, y1, x2, y2] in frame pixels.
    bbox: Tuple[int, int, int, int]
    embedding: Tuple[float, ...]
    score: float = 1.0


class FaceExtractor(Protocol):
    # Implementations may also expose ``embedding_dim``; the detection loop
    # checks it against the matcher before opening the camera.
    def extract(self, frame: Any) -> List[DetectedFace]:
        ...


def _l2_normalize(arr: "np.ndarray") -> "np.ndarray":
    norm = float(np.linalg.norm(arr))
    if norm > 0:
        return arr / norm
    return arr


class InsightFaceExtractor:
    """
    InsightFace detector + recogniser.

    The model is loaded on first use. ``CHECKIN_FACE_MODEL`` picks the model
    pack and ``INSIGHTFACE_HOME`` where it is stored.
    """

    def __init__(
        self,
        *,
        model_name: Optional[str] = None,
        det_size: Tuple[int, int] = (640, 640),
        min_score: float = 0.5,
        normalize: bool = True,
        embedding_dim: int = 512,
    ) -> None:
        self.logger = logging.getLogger("face_id")
        self.model_name = model_name or os.getenv("CHECKIN_FACE_MODEL", "buffalo_l")
        self.root = os.getenv("INSIGHTFACE_HOME", os.path.expanduser("~/.insightface"))
        self.det_size = det_size
        self.min_score = float(min_score)
        self.normalize = normalize
        # Output length of the recognition model (512 for the buffalo and antelope packs).
        self.embedding_dim = int(embedding_dim)
        self._app = None
        self._lock = threading.Lock()

    def _ensure_model(self):
        with self._lock:
            if self._app is not None:
                return self._app
            try:
                from insightface.app import FaceAnalysis  # type: ignore
            except ImportError as exc:
                raise RuntimeError(
                    "insightface is not installed; install the 'vision' extra to use face recognition"
                ) from exc
            try:
                app = FaceAnalysis(name=self.model_name, root=self.root, allowed_modules=["detection", "recognition"])
            except AssertionError:
                self.logger.error(
                    "InsightFace model '%s' loaded without 'detection'. "
                    "Check %s/models/%s for *.onnx files (no extra subfolder).",
                    self.model_name, self.root, self.model_name,
                )
                raise
            app.prepare(ctx_id=-1, det_size=self.det_size)
            self._app = app
            return app

    def extract(self, frame: Any) -> List[DetectedFace]:
        if frame is None:
            return []
        app = self._ensure_model()
        faces = app.get(frame)
        results: List[DetectedFace] = []
        for face in faces:
            score = float(getattr(face, "det_score", 1.0))
            if score < self.min_score or face.embedding is None:
                continue
            emb = np.asarray(face.embedding, dtype=np.float32)
            if self.normalize:
                emb = _l2_normalize(emb)
            bbox = face.bbox.tolist()
            results.append(
                DetectedFace(
                    bbox=(int(bbox[0]), int(bbox[1]), int(bbox[2]), int(bbox[3])),
                    embedding=tuple(float(x) for x in emb),
                    score=score,
                )
            )
        return results


__all__ = ['DetectedFace', 'FaceExtractor', 'InsightFaceExtractor']
