"""
Embedding matcher for enrolled identities.

The roster lives in an immutable snapshot (ids, names and a stacked
embedding matrix). Every mutation builds a new snapshot and swaps the
reference under a lock, so a ``find_match`` call that already grabbed the
snapshot always sees one roster in full, never a mix of two.

Confidence is derived from the Euclidean distance between embeddings on
a 0..100 scale: distance 0 maps to 100, ``max_distance`` or more maps to
0, linear in between.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np


@dataclass(frozen=True)
class EnrolledIdentity:
    """An enrolled person and the embedding used to recognise them."""
    id: str
    display_name: str
    embedding: Tuple[float, ...]


@dataclass(frozen=True)
class MatchResult:
    """Best roster candidate for a query embedding."""
    id: str
    name: str
    confidence: float
    distance: float


def distance_to_confidence(distance: float, max_distance: float) -> float:
    if max_distance <= 0:
        return 0.0
    return max(0.0, min(100.0, (1.0 - distance / max_distance) * 100.0))


class _Roster:
    __slots__ = ("ids", "names", "matrix")

    def __init__(self, ids: Sequence[str], names: Sequence[str], matrix: "np.ndarray") -> None:
        self.ids: Tuple[str, ...] = tuple(ids)
        self.names: Tuple[str, ...] = tuple(names)
        self.matrix = matrix
        self.matrix.setflags(write=False)

    @classmethod
    def empty(cls, dim: int) -> "_Roster":
        return cls((), (), np.zeros((0, dim), dtype=np.float32))

    @property
    def dim(self) -> int:
        return int(self.matrix.shape[1])


class EmbeddingMatcher:
    """
    In-memory nearest-neighbour search over the enrolled roster.

    Parameters
    ----------
    max_distance: float
        Distance at (and beyond) which confidence drops to zero.
    embedding_dim: Optional[int]
        Expected embedding length. When ``None`` the length of the first
        registered embedding fixes it.
    """

    def __init__(self, *, max_distance: float = 0.6, embedding_dim: Optional[int] = None) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.max_distance = float(max_distance)
        self.embedding_dim = embedding_dim
        self._lock = threading.Lock()
        self._roster = _Roster.empty(embedding_dim or 0)

    def __len__(self) -> int:
        return len(self._roster.ids)

    @property
    def dim(self) -> Optional[int]:
        """Embedding length queries must have, once it is known."""
        return self._expected_dim(self._roster)

    def ids(self) -> Tuple[str, ...]:
        return self._roster.ids

    def name_of(self, identity_id: str) -> Optional[str]:
        roster = self._roster
        try:
            return roster.names[roster.ids.index(identity_id)]
        except ValueError:
            return None

    def _as_vector(self, embedding: Iterable[float], dim: Optional[int]) -> "np.ndarray":
        vec = np.asarray(list(embedding), dtype=np.float32).reshape(-1)
        if vec.size == 0:
            raise ValueError("embedding is empty")
        if not np.all(np.isfinite(vec)):
            raise ValueError("embedding contains non-finite values")
        if dim and vec.shape[0] != dim:
            raise ValueError(f"embedding has {vec.shape[0]} values, expected {dim}")
        return vec

    def _expected_dim(self, roster: _Roster) -> Optional[int]:
        if self.embedding_dim:
            return self.embedding_dim
        if roster.ids:
            return roster.dim
        return None

    def register(self, identity_id: str, embedding: Iterable[float], name: str) -> None:
        """Add or replace one identity. A replaced identity moves to the end."""
        with self._lock:
            roster = self._roster
            vec = self._as_vector(embedding, self._expected_dim(roster))
            keep = [i for i, rid in enumerate(roster.ids) if rid != identity_id]
            ids = [roster.ids[i] for i in keep] + [identity_id]
            names = [roster.names[i] for i in keep] + [name]
            rows = [roster.matrix[i] for i in keep] + [vec]
            self._roster = _Roster(ids, names, np.vstack(rows).astype(np.float32))

    def unregister(self, identity_id: str) -> bool:
        with self._lock:
            roster = self._roster
            if identity_id not in roster.ids:
                return False
            keep = [i for i, rid in enumerate(roster.ids) if rid != identity_id]
            if not keep:
                self._roster = _Roster.empty(roster.dim)
                return True
            self._roster = _Roster(
                [roster.ids[i] for i in keep],
                [roster.names[i] for i in keep],
                roster.matrix[keep].copy(),
            )
            return True

    def replace_all(self, identities: Iterable[EnrolledIdentity]) -> int:
        """
        Swap the whole roster in one step.

        Entries with an embedding of the wrong length are skipped with a
        warning; a repeated id keeps its last embedding. Returns the number
        of identities in the new roster.
        """
        ordered: dict[str, Tuple[str, "np.ndarray"]] = {}
        dim = self.embedding_dim
        for identity in identities:
            try:
                vec = self._as_vector(identity.embedding, dim)
            except ValueError as exc:
                self.logger.warning("Skipping identity %s: %s", identity.id, exc)
                continue
            dim = dim or int(vec.shape[0])
            ordered.pop(identity.id, None)
            ordered[identity.id] = (identity.display_name, vec)
        if ordered:
            roster = _Roster(
                list(ordered.keys()),
                [name for name, _ in ordered.values()],
                np.vstack([vec for _, vec in ordered.values()]).astype(np.float32),
            )
        else:
            roster = _Roster.empty(dim or 0)
        with self._lock:
            self._roster = roster
        self.logger.info("Roster replaced: %d identities", len(roster.ids))
        return len(roster.ids)

    def find_match(
        self,
        embedding: Iterable[float],
        threshold: float,
        exclude: Optional[Set[str]] = None,
    ) -> Optional[MatchResult]:
        """
        Return the closest enrolled identity whose confidence is at least
        ``threshold``, or ``None``.

        Candidates are ranked by confidence, then distance, then insertion
        order, so equal scores resolve deterministically.
        """
        roster = self._roster
        if not roster.ids:
            return None
        try:
            query = np.asarray(list(embedding), dtype=np.float32).reshape(-1)
        except (TypeError, ValueError):
            return None
        if query.shape[0] != roster.dim or not np.all(np.isfinite(query)):
            return None

        candidates = np.arange(len(roster.ids))
        if exclude:
            candidates = np.array([i for i in candidates if roster.ids[i] not in exclude], dtype=np.int64)
            if candidates.size == 0:
                return None

        distances = np.linalg.norm(roster.matrix[candidates] - query, axis=1)
        confidences = np.array([distance_to_confidence(float(d), self.max_distance) for d in distances])
        # lexsort uses the last key as primary.
        order = np.lexsort((candidates, distances, -confidences))
        best = int(order[0])
        confidence = float(confidences[best])
        if confidence < threshold:
            return None
        idx = int(candidates[best])
        return MatchResult(
            id=roster.ids[idx],
            name=roster.names[idx],
            confidence=confidence,
            distance=float(distances[best]),
        )

    def snapshot(self) -> List[EnrolledIdentity]:
        roster = self._roster
        return [
            EnrolledIdentity(id=rid, display_name=name, embedding=tuple(float(x) for x in roster.matrix[i]))
            for i, (rid, name) in enumerate(zip(roster.ids, roster.names))
        ]


__all__ = [
    'EnrolledIdentity',
    'MatchResult',
    'EmbeddingMatcher',
    'distance_to_confidence',
]
