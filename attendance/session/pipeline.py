from __future__ import annotations

import threading
import time

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

import numpy as np

from attendance.face.descriptor import is_valid_descriptor
from attendance.face.extractor import DescriptorExtractor, ExtractionGate, FaceDetector
from attendance.face.matcher import DescriptorMatcher, MatchResult
from attendance.utils.draw import draw_face_label, draw_status
from attendance.utils.log import get_logger
from attendance.utils.math import bbox_center_xyxy, pad_bbox_xyxy
from attendance.video.tracker import UnknownFaceTracker

logger = get_logger(__name__)


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    NO_MODELS = "no_models"
    NO_CAMERA = "no_camera"
    NO_ENROLLMENTS = "no_enrollments"
    READY = "ready"
    RUNNING = "running"
    STOPPED = "stopped"


# Persistent conditions: they stay reported while the session runs.
DIAGNOSTIC_STATUSES = frozenset({SessionStatus.NO_MODELS, SessionStatus.NO_CAMERA, SessionStatus.NO_ENROLLMENTS})


@dataclass
class SessionConfig:
    # Context kept around a detected face before extraction.
    crop_padding: float = 0.20
    min_crop_side: int = 60
    # Top-k candidates logged at debug level for every face.
    debug_top_k: int = 0
    draw_overlay: bool = False


@dataclass(frozen=True)
class Detection:
    position: Optional[Tuple[float, float]]
    descriptor: Optional[np.ndarray]
    bbox: Optional[Tuple[int, int, int, int]] = None


@dataclass(frozen=True)
class FaceOutcome:
    bbox: Optional[Tuple[int, int, int, int]]
    position: Optional[Tuple[float, float]]
    match: MatchResult
    entry_id: Optional[str] = None
    is_novel: bool = False

    @property
    def display_label(self) -> str:
        if self.match.is_unknown:
            return "Unknown"
        return f"{self.match.label} ({self.match.distance:.2f})"


@dataclass(frozen=True)
class SessionRoster:
    known_labels: FrozenSet[str] = frozenset()
    unknown_count: int = 0

    @property
    def total(self) -> int:
        return len(self.known_labels) + int(self.unknown_count)


@dataclass
class FrameResult:
    timestamp: float
    outcomes: List[FaceOutcome] = field(default_factory=list)
    roster: SessionRoster = field(default_factory=SessionRoster)
    skipped: int = 0


class SessionPipeline:
    """Per-frame orchestration: detect, extract, match, deduplicate unknowns, keep the roster.

    The pipeline owns its matcher and tracker for the lifetime of one session.
    Known labels are sticky once seen; unknown faces count only while the
    tracker keeps them alive.
    """

    def __init__(
        self,
        matcher: DescriptorMatcher,
        tracker: Optional[UnknownFaceTracker] = None,
        detector: Optional[FaceDetector] = None,
        extractor: Optional[DescriptorExtractor] = None,
        gate: Optional[ExtractionGate] = None,
        config: Optional[SessionConfig] = None,
    ):
        self.matcher = matcher
        self.tracker = tracker or UnknownFaceTracker()
        self.detector = detector
        self.gate = gate if gate is not None else (ExtractionGate(extractor) if extractor is not None else None)
        self.config = config or SessionConfig()

        # label -> first session timestamp, insertion ordered
        self.first_seen: Dict[str, float] = {}
        self.best_distance: Dict[str, float] = {}
        self.frames_processed = 0

        self.status = SessionStatus.INITIALIZING
        self.status_message = "Initializing..."
        self.diagnostic: Optional[SessionStatus] = None
        self.diagnostic_message = ""
        if matcher.is_empty:
            self.set_status(
                SessionStatus.NO_ENROLLMENTS, 'No enrollments. Detected faces will be marked "Unknown".'
            )
        else:
            self.set_status(SessionStatus.READY, f"Ready with {len(matcher)} enrolled person(s)")

    def set_status(self, status: SessionStatus, message: str) -> None:
        self.status = status
        self.status_message = str(message)
        if status in DIAGNOSTIC_STATUSES:
            self.diagnostic = status
            self.diagnostic_message = self.status_message
        if status in (SessionStatus.NO_MODELS, SessionStatus.NO_CAMERA):
            logger.error(f"[{status.value}] {message}")
        elif status == SessionStatus.NO_ENROLLMENTS:
            logger.warning(f"[{status.value}] {message}")
        else:
            logger.info(f"[{status.value}] {message}")

    @property
    def roster(self) -> SessionRoster:
        return SessionRoster(known_labels=frozenset(self.first_seen), unknown_count=self.tracker.count())

    def _mark_present(self, match: MatchResult, now: float) -> None:
        if match.label not in self.first_seen:
            self.first_seen[match.label] = float(now)
            logger.info(f"Present: {match.label} (distance={match.distance:.4f})")
        prev = self.best_distance.get(match.label)
        if prev is None or match.distance < prev:
            self.best_distance[match.label] = float(match.distance)

    def process_detections(
        self,
        detections: Sequence[Detection],
        now: float,
        frame_size: Optional[Tuple[int, int]] = None,
    ) -> FrameResult:
        if frame_size is not None:
            self.tracker.set_frame_size(int(frame_size[0]), int(frame_size[1]))

        result = FrameResult(timestamp=float(now))
        for det in detections:
            if det.descriptor is None:
                result.skipped += 1
                continue

            if not is_valid_descriptor(det.descriptor, self.matcher.config.dimension):
                logger.debug("Skipping detection with malformed descriptor")
                result.skipped += 1
                continue

            match = self.matcher.find_best_match(det.descriptor)
            if self.config.debug_top_k > 0:
                logger.debug(f"top-{self.config.debug_top_k}: {self.matcher.rank(det.descriptor, self.config.debug_top_k)}")

            if not match.is_unknown:
                self._mark_present(match, now)
                result.outcomes.append(FaceOutcome(bbox=det.bbox, position=det.position, match=match))
                continue

            try:
                rec = self.tracker.reconcile(det.position, now)
            except ValueError as e:
                logger.debug(f"Skipping unknown face without usable position: {e}")
                result.skipped += 1
                continue
            if rec.is_novel:
                logger.info(f"New unknown face {rec.entry_id} (closest distance={match.distance:.4f})")
            result.outcomes.append(
                FaceOutcome(
                    bbox=det.bbox,
                    position=det.position,
                    match=match,
                    entry_id=rec.entry_id,
                    is_novel=rec.is_novel,
                )
            )

        # Every frame, even one without faces, so departed unknowns expire.
        self.tracker.evict_stale(now)
        self.frames_processed += 1
        result.roster = self.roster
        return result

    def detect(self, frame: np.ndarray) -> List[Detection]:
        """Detect faces and extract one descriptor per padded face crop."""
        if self.detector is None or self.gate is None:
            raise RuntimeError("process_frame requires a detector and an extractor")

        h, w = frame.shape[:2]
        out: List[Detection] = []
        for box in self.detector.detect(frame):
            x1, y1, x2, y2 = pad_bbox_xyxy(
                box, (w, h), padding=self.config.crop_padding, min_side=self.config.min_crop_side
            )
            if x2 <= x1 or y2 <= y1:
                continue
            region = frame[y1:y2, x1:x2]
            descriptor = self.gate.try_extract(region)
            # Tracker position is the detector box center, not the edge-clipped crop.
            out.append(
                Detection(position=bbox_center_xyxy(box[:4]), descriptor=descriptor, bbox=(x1, y1, x2, y2))
            )
        return out

    def process_frame(self, frame: np.ndarray, now: Optional[float] = None) -> FrameResult:
        now = time.monotonic() if now is None else float(now)
        h, w = frame.shape[:2]
        detections = self.detect(frame)
        result = self.process_detections(detections, now, frame_size=(w, h))
        if self.config.draw_overlay:
            self.draw(frame, result)
        return result

    def draw(self, frame: np.ndarray, result: FrameResult) -> None:
        for o in result.outcomes:
            if o.bbox is not None:
                draw_face_label(frame, o.bbox, o.display_label, known=not o.match.is_unknown)
        roster = result.roster
        line = f"Present: {len(roster.known_labels)} known, {roster.unknown_count} unknown"
        if self.diagnostic is not None:
            line = f"{self.diagnostic_message} | {line}"
        draw_status(frame, line)

    def run(
        self,
        frames,
        stop_event: Optional[threading.Event] = None,
        max_frames: Optional[int] = None,
        on_frame: Optional[Callable[[np.ndarray, FrameResult], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> SessionRoster:
        """Process frames sequentially until exhausted, stopped, or `max_frames` is reached.

        `on_frame` may return False to stop after the current frame.
        """
        self.set_status(SessionStatus.RUNNING, "Session running")
        n = 0
        try:
            for frame in frames:
                if stop_event is not None and stop_event.is_set():
                    break
                if frame is None:
                    continue
                result = self.process_frame(frame, clock())
                n += 1
                if on_frame is not None and on_frame(frame, result) is False:
                    break
                if max_frames is not None and n >= int(max_frames):
                    break
        finally:
            roster = self.roster
            self.set_status(
                SessionStatus.STOPPED,
                f"Stopped after {n} frame(s): {len(roster.known_labels)} known, {roster.unknown_count} unknown",
            )
        return self.roster

    def close(self) -> None:
        if self.gate is not None:
            self.gate.close()
