from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

from attendance.utils.log import get_logger
from attendance.utils.math import frame_diagonal, is_finite_point, point_distance

logger = get_logger(__name__)


@dataclass
class TrackerConfig:
    # Pixel distance under which two unknown detections are the same person,
    # expressed at `reference_size` and scaled with the frame diagonal.
    distance_threshold: float = 80.0
    # Seconds an entry survives without being seen again.
    ttl_seconds: float = 5.0
    reference_size: Tuple[int, int] = (640, 480)
    # Move the entry to the latest position so slow drift stays correlated.
    follow_drift: bool = True


@dataclass
class UnknownFaceEntry:
    id: str
    position: Tuple[float, float]
    first_seen: float
    last_seen: float
    hits: int = 1


@dataclass(frozen=True)
class ReconcileResult:
    is_novel: bool
    entry_id: str
    distance: Optional[float] = None


class UnknownFaceTracker:
    """Session-scoped registry of unrecognized faces, correlated by position and recency.

    Only positions are compared: an unknown face has no enrolled descriptor to
    re-identify against, so "close to where an unknown face was recently seen"
    is the whole signal.
    """

    def __init__(self, config: Optional[TrackerConfig] = None):
        self.config = config or TrackerConfig()
        self.next_id = 1
        self.frame_size: Optional[Tuple[int, int]] = None
        self._entries: Dict[str, UnknownFaceEntry] = {}

    def effective_threshold(self, frame_size: Optional[Sequence[int]] = None) -> float:
        size = frame_size if frame_size is not None else self.frame_size
        base = float(self.config.distance_threshold)
        if not size:
            return base
        ref = frame_diagonal(self.config.reference_size)
        cur = frame_diagonal(size)
        if ref <= 0.0 or cur <= 0.0:
            return base
        return base * (cur / ref)

    def set_frame_size(self, width: int, height: int) -> None:
        size = (int(width), int(height))
        if size != self.frame_size:
            self.frame_size = size
            logger.debug(f"Unknown tracker threshold for {size[0]}x{size[1]}: {self.effective_threshold():.1f}px")

    def _new_id(self) -> str:
        tid = f"unknown-{self.next_id}"
        self.next_id += 1
        return tid

    def reconcile(self, position: Sequence[float], now: float) -> ReconcileResult:
        """Attach an unmatched detection to a nearby live entry or start a new one."""
        if not is_finite_point(position):
            raise ValueError(f"invalid face position: {position!r}")
        pos = (float(position[0]), float(position[1]))
        now = float(now)

        best: Optional[UnknownFaceEntry] = None
        best_dist = float("inf")
        for entry in self._entries.values():
            d = point_distance(entry.position, pos)
            # Equal distances: prefer the most recently seen entry.
            if d < best_dist or (d == best_dist and best is not None and entry.last_seen > best.last_seen):
                best = entry
                best_dist = d

        if best is not None and best_dist < self.effective_threshold():
            best.last_seen = max(best.last_seen, now)
            best.hits += 1
            if self.config.follow_drift:
                best.position = pos
            return ReconcileResult(is_novel=False, entry_id=best.id, distance=best_dist)

        entry = UnknownFaceEntry(id=self._new_id(), position=pos, first_seen=now, last_seen=now)
        self._entries[entry.id] = entry
        logger.debug(f"New unknown face {entry.id} at ({pos[0]:.0f}, {pos[1]:.0f})")
        return ReconcileResult(is_novel=True, entry_id=entry.id, distance=None)

    def evict_stale(self, now: float) -> List[UnknownFaceEntry]:
        """Drop entries not seen for more than the TTL and return them."""
        ttl = float(self.config.ttl_seconds)
        stale = [e for e in self._entries.values() if float(now) - e.last_seen > ttl]
        for e in stale:
            del self._entries[e.id]
        if stale:
            logger.debug(f"Evicted {len(stale)} unknown face(s), {len(self._entries)} left")
        return stale

    def count(self) -> int:
        return len(self._entries)

    def entries(self) -> List[UnknownFaceEntry]:
        return [replace(e) for e in self._entries.values()]

    def get(self, entry_id: str) -> Optional[UnknownFaceEntry]:
        e = self._entries.get(entry_id)
        return replace(e) if e is not None else None

    def reset(self) -> None:
        self._entries.clear()
