from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from attendance.config import UNKNOWN_LABEL
from attendance.face.descriptor import DESCRIPTOR_DIM, as_descriptor
from attendance.face.enrollment import EnrollmentRecord
from attendance.utils.log import get_logger

logger = get_logger(__name__)


@dataclass
class MatcherConfig:
    # Euclidean acceptance threshold; smaller is stricter.
    threshold: float = 0.6
    # Distance at which confidence reaches 0 (calibrated for 128-d dlib descriptors).
    normalization: float = 1.2
    dimension: int = DESCRIPTOR_DIM
    unknown_label: str = UNKNOWN_LABEL


@dataclass(frozen=True)
class MatchResult:
    label: str
    distance: float
    confidence: float
    unknown_label: str = UNKNOWN_LABEL

    @property
    def is_unknown(self) -> bool:
        return self.label == self.unknown_label


class DescriptorMatcher:
    """Nearest-neighbor matcher over a frozen snapshot of the enrollments.

    A label's distance to a query is the minimum over all of its enrolled
    descriptors. Rebuild the matcher when enrollments change; it never
    observes the store.
    """

    def __init__(self, config: Optional[MatcherConfig] = None):
        self.config = config or MatcherConfig()

        # Flattened index:
        # - matrix: (N, D) float64
        # - label_ids: (N,) int, mapping row -> label index
        # - labels: list[str] length P, in enrollment order
        self._labels: List[str] = []
        self._label_ids: Optional[np.ndarray] = None
        self._matrix: Optional[np.ndarray] = None

    @classmethod
    def build(
        cls,
        enrollments: Sequence[EnrollmentRecord],
        threshold: Optional[float] = None,
        config: Optional[MatcherConfig] = None,
    ) -> "DescriptorMatcher":
        cfg = config or MatcherConfig()
        if threshold is not None:
            cfg = MatcherConfig(
                threshold=float(threshold),
                normalization=cfg.normalization,
                dimension=cfg.dimension,
                unknown_label=cfg.unknown_label,
            )
        matcher = cls(cfg)
        matcher._build_index(enrollments or [])
        return matcher

    def _build_index(self, enrollments: Sequence[EnrollmentRecord]) -> None:
        per_label: Dict[str, List[np.ndarray]] = {}
        dim = int(self.config.dimension)

        reserved = str(self.config.unknown_label).casefold()

        for record in enrollments:
            if str(record.label).casefold() == reserved:
                logger.warning(f"Enrollment '{record.label}' uses the reserved unknown label, skipped")
                continue

            descs = list(getattr(record, "descriptors", None) or [])
            if not descs:
                logger.warning(f"Enrollment '{record.label}' has no descriptors, skipped")
                continue

            valid: List[np.ndarray] = []
            for i, d in enumerate(descs):
                try:
                    valid.append(as_descriptor(d, dim))
                except ValueError as e:
                    logger.warning(f"Enrollment '{record.label}' descriptor #{i} ignored: {e}")
            if not valid:
                logger.warning(f"Enrollment '{record.label}' has no usable descriptors, skipped")
                continue

            if record.label in per_label:
                logger.warning(f"Duplicate enrollment '{record.label}', keeping the later record")
            per_label[record.label] = valid

        if not per_label:
            logger.warning("No enrollments available; every face will be reported as unknown")
            return

        mats: List[np.ndarray] = []
        ids: List[np.ndarray] = []
        for idx, (label, valid) in enumerate(per_label.items()):
            self._labels.append(label)
            mats.append(np.stack(valid, axis=0))
            ids.append(np.full((len(valid),), idx, dtype=np.int64))

        self._matrix = np.ascontiguousarray(np.concatenate(mats, axis=0))
        self._label_ids = np.concatenate(ids, axis=0)
        logger.info(
            f"Matcher built: {len(self._labels)} label(s), {int(self._matrix.shape[0])} descriptor(s), "
            f"threshold={self.config.threshold}"
        )

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(self._labels)

    @property
    def threshold(self) -> float:
        return float(self.config.threshold)

    @property
    def is_empty(self) -> bool:
        return self._matrix is None or not self._labels

    def __len__(self) -> int:
        return len(self._labels)

    def _unknown(self, distance: float = float("inf"), confidence: float = 0.0) -> MatchResult:
        return MatchResult(
            label=self.config.unknown_label,
            distance=float(distance),
            confidence=float(confidence),
            unknown_label=self.config.unknown_label,
        )

    def _confidence(self, distance: float) -> float:
        norm = float(self.config.normalization)
        if norm <= 0.0:
            return 0.0
        return float(max(0.0, 1.0 - distance / norm))

    def _per_label_distances(self, query: Any) -> Optional[np.ndarray]:
        if self.is_empty:
            return None
        try:
            q = as_descriptor(query, int(self.config.dimension))
        except ValueError as e:
            logger.debug(f"Malformed query descriptor: {e}")
            return None

        # One vectorized pass over all rows, then a segmented min per label.
        dists = np.linalg.norm(self._matrix - q, axis=1)
        best_per_label = np.full((len(self._labels),), np.inf, dtype=np.float64)
        np.minimum.at(best_per_label, self._label_ids, dists)
        return best_per_label

    def find_best_match(self, query: Any) -> MatchResult:
        """Return the closest label, or unknown when it is not strictly below the threshold.

        `distance` and `confidence` always describe the closest candidate, even
        when it is rejected. Malformed queries and an empty matcher yield
        (unknown, inf, 0).
        """
        best_per_label = self._per_label_distances(query)
        if best_per_label is None:
            return self._unknown()

        # argmin returns the first minimum, so ties go to the earliest enrollment.
        best_idx = int(np.argmin(best_per_label))
        best_dist = float(best_per_label[best_idx])
        confidence = self._confidence(best_dist)

        if best_dist < float(self.config.threshold):
            return MatchResult(
                label=self._labels[best_idx],
                distance=best_dist,
                confidence=confidence,
                unknown_label=self.config.unknown_label,
            )
        return self._unknown(best_dist, confidence)

    def rank(self, query: Any, top_k: int = 5) -> List[Tuple[str, float]]:
        """Return up to `top_k` (label, distance) pairs, closest first."""
        best_per_label = self._per_label_distances(query)
        if best_per_label is None:
            return []
        order = np.argsort(best_per_label, kind="stable")
        k = int(max(1, top_k))
        return [(self._labels[int(i)], float(best_per_label[int(i)])) for i in order[:k]]
