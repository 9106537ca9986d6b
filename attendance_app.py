"""Command line entry: enroll people, run a live attendance session, manage enrollments.

Examples:
    python attendance_app.py enroll "Alice Martin" --captures 5
    python attendance_app.py session --output-csv outputs/presence.csv --show
    python attendance_app.py admin list
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
import time

from typing import Any, Dict, List, Optional

import cv2
import numpy as np

from attendance.config import (
    DEFAULT_CAMERA_SIZE,
    DEFAULT_EXTRACT_TIMEOUT_SECONDS,
    DEFAULT_STORE_PATH,
    ENROLL_EXTRACT_TIMEOUT_SECONDS,
)
from attendance.face.enrollment import (
    EnrollmentCollector,
    EnrollmentError,
    EnrollmentStoreError,
    PickleEnrollmentStore,
    export_backup,
)
from attendance.face.extractor import (
    DlibDescriptorExtractor,
    ExtractionGate,
    InsightFaceDetector,
    ModelUnavailableError,
)
from attendance.face.matcher import DescriptorMatcher, MatcherConfig
from attendance.session.pipeline import FrameResult, SessionConfig, SessionPipeline, SessionStatus
from attendance.session.report import build_attendance_rows, build_session_report, write_csv, write_json
from attendance.utils.log import get_logger, set_verbosity
from attendance.utils.math import pad_bbox_xyxy
from attendance.utils.serializer import serialize_outcome, serialize_unknown_entry
from attendance.video.capture import CameraUnavailableError, FrameSource
from attendance.video.tracker import TrackerConfig, UnknownFaceTracker

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_STORE_ERROR = 1
EXIT_UNAVAILABLE = 2


def _load_models(args):
    detector = InsightFaceDetector(model_name=args.det_model, det_size=int(args.det_size), device=str(args.device))
    extractor = DlibDescriptorExtractor(num_jitters=int(args.num_jitters))
    return detector, extractor


def _largest_face_region(frame: np.ndarray, detector) -> Optional[np.ndarray]:
    boxes = detector.detect(frame)
    if not boxes:
        return None
    box = max(boxes, key=lambda b: (b[2] - b[0]) * (b[3] - b[1]))
    h, w = frame.shape[:2]
    x1, y1, x2, y2 = pad_bbox_xyxy(box, (w, h))
    return frame[y1:y2, x1:x2]


STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_stop_handlers(stop_event: threading.Event) -> Dict[int, Any]:
    """Make SIGINT/SIGTERM set `stop_event`; return the handlers they replace."""

    def _on_signal(signum, _frame):
        logger.info(f"Signal {signum} received, stopping after the current frame")
        stop_event.set()

    previous = {}
    for sig in STOP_SIGNALS:
        previous[sig] = signal.getsignal(sig)
        signal.signal(sig, _on_signal)
    return previous


def restore_handlers(previous: Dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler if handler is not None else signal.SIG_DFL)


def cmd_enroll(args) -> int:
    store = PickleEnrollmentStore(args.store)
    try:
        detector, extractor = _load_models(args)
    except ModelUnavailableError as e:
        logger.error(f"Models unavailable: {e}")
        return EXIT_UNAVAILABLE

    gate = ExtractionGate(extractor, timeout=float(args.extract_timeout))
    try:
        collector = EnrollmentCollector(
            args.label, extractor=gate, min_captures=int(args.min_captures), max_captures=int(args.captures)
        )
    except EnrollmentError as e:
        logger.error(str(e))
        return EXIT_STORE_ERROR

    try:
        source = FrameSource(args.camera, size=DEFAULT_CAMERA_SIZE).open()
    except CameraUnavailableError as e:
        logger.error(f"Camera unavailable: {e}")
        return EXIT_UNAVAILABLE

    logger.info(f"Enrolling {collector.label}: {args.captures} capture(s), one every {args.interval:.1f}s")
    last_capture = 0.0
    try:
        for frame in source:
            now = time.monotonic()
            if now - last_capture >= float(args.interval):
                last_capture = now
                region = _largest_face_region(frame, detector)
                if region is None:
                    logger.info("No face in view; reposition and wait for the next capture")
                else:
                    collector.capture(region)
            if args.show:
                cv2.imshow("enroll", frame)
                if cv2.waitKey(1) & 0xFF == ord("q"):
                    break
            if collector.count >= int(args.captures):
                break
    finally:
        source.close()
        gate.close()
        if args.show:
            cv2.destroyAllWindows()

    try:
        record = collector.finalize(store)
    except EnrollmentError as e:
        logger.error(f"Enrollment not saved: {e}")
        return EXIT_STORE_ERROR
    except EnrollmentStoreError as e:
        logger.error(f"Enrollment store failure: {e}")
        return EXIT_STORE_ERROR
    logger.info(f"Enrollment saved: {record.label} ({record.count} descriptors)")
    return EXIT_OK


def cmd_session(args) -> int:
    store = PickleEnrollmentStore(args.store)
    try:
        enrollments = store.load()
    except EnrollmentStoreError as e:
        logger.error(f"Enrollment store failure: {e}")
        return EXIT_STORE_ERROR
    logger.info(f"Loaded {len(enrollments)} enrollment(s)")

    matcher = DescriptorMatcher.build(
        enrollments, config=MatcherConfig(threshold=float(args.threshold), normalization=float(args.normalization))
    )
    tracker = UnknownFaceTracker(
        TrackerConfig(distance_threshold=float(args.unknown_distance), ttl_seconds=float(args.unknown_ttl))
    )
    session_cfg = SessionConfig(draw_overlay=bool(args.show), debug_top_k=int(args.debug_top_k))
    pipeline = SessionPipeline(matcher, tracker=tracker, config=session_cfg)

    try:
        detector, extractor = _load_models(args)
    except ModelUnavailableError as e:
        pipeline.set_status(SessionStatus.NO_MODELS, f"Models unavailable: {e}")
        return EXIT_UNAVAILABLE
    pipeline.detector = detector
    pipeline.gate = ExtractionGate(extractor, timeout=float(args.extract_timeout))

    try:
        source = FrameSource(args.camera, size=DEFAULT_CAMERA_SIZE).open()
    except CameraUnavailableError as e:
        pipeline.set_status(SessionStatus.NO_CAMERA, str(e))
        pipeline.close()
        return EXIT_UNAVAILABLE

    stop_event = threading.Event()
    previous_handlers = install_stop_handlers(stop_event)

    started = time.monotonic()
    deadline = started + float(args.max_seconds) if args.max_seconds else None

    last_faces: List[dict] = []

    def _on_frame(frame: np.ndarray, result: FrameResult) -> bool:
        h, w = frame.shape[:2]
        last_faces[:] = [serialize_outcome(o, (w, h)) for o in result.outcomes]
        if args.show:
            cv2.imshow("attendance", frame)
            if cv2.waitKey(1) & 0xFF == ord("q"):
                return False
        if deadline is not None and time.monotonic() >= deadline:
            return False
        return True

    try:
        roster = pipeline.run(source, stop_event=stop_event, max_frames=args.max_frames, on_frame=_on_frame)
    finally:
        restore_handlers(previous_handlers)
        source.close()
        pipeline.close()
        if args.show:
            cv2.destroyAllWindows()

    logger.info(f"Present: {sorted(roster.known_labels)}; unknown: {roster.unknown_count}; total: {roster.total}")

    if args.output_csv:
        rows = build_attendance_rows(
            roster, first_seen=pipeline.first_seen, best_distance=pipeline.best_distance, session_start=started
        )
        fp = write_csv(rows, args.output_csv)
        logger.info(f"Attendance CSV written: {fp}")
    if args.output_json:
        report = build_session_report(
            roster,
            first_seen=pipeline.first_seen,
            best_distance=pipeline.best_distance,
            session_start=started,
            frames_processed=pipeline.frames_processed,
            status=pipeline.status.value,
            diagnostic=pipeline.diagnostic.value if pipeline.diagnostic is not None else None,
            config={
                "threshold": matcher.threshold,
                "unknown_distance_px": tracker.config.distance_threshold,
                "unknown_ttl_seconds": tracker.config.ttl_seconds,
                "dropped_extractions": pipeline.gate.dropped,
                "timed_out_extractions": pipeline.gate.timeouts,
            },
            unknown_entries=[serialize_unknown_entry(e) for e in tracker.entries()],
        )
        report["last_frame_faces"] = last_faces
        fp = write_json(report, args.output_json)
        logger.info(f"Session report written: {fp}")
    return EXIT_OK


def cmd_admin(args) -> int:
    store = PickleEnrollmentStore(args.store)
    try:
        if args.action == "list":
            records = store.load()
            if not records:
                logger.info("No enrollments")
            for r in records:
                print(f"{r.label}\t{r.count} photo(s)\tupdated {r.updated_at.isoformat()}")
        elif args.action == "delete":
            if not args.label:
                logger.error("delete requires --label")
                return EXIT_STORE_ERROR
            if not store.delete_one(args.label):
                logger.warning(f"No enrollment named {args.label!r}")
        elif args.action == "purge":
            if not args.yes:
                logger.error("purge removes every enrollment; pass --yes to confirm")
                return EXIT_STORE_ERROR
            store.clear_all()
        elif args.action == "export":
            fp = export_backup(store.load(), args.path or "enrollments_backup.json")
            logger.info(f"Backup written: {fp}")
    except (EnrollmentStoreError, EnrollmentError) as e:
        logger.error(f"Enrollment store failure: {e}")
        return EXIT_STORE_ERROR
    return EXIT_OK


def _add_model_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--camera", default="0", help="Camera index or video file path (default 0)")
    p.add_argument("--det-model", default="buffalo_l", help="InsightFace model pack used for detection")
    p.add_argument("--det-size", type=int, default=640, help="InsightFace det_size (default 640)")
    p.add_argument(
        "--device",
        type=str,
        default="auto",
        choices=["auto", "cpu", "gpu"],
        help="auto/cpu/gpu (auto: GPU when CUDA is available)",
    )
    p.add_argument("--num-jitters", type=int, default=1, help="dlib re-sampling count per descriptor")
    p.add_argument("--show", action="store_true", help="Show the video window (press q to stop)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Face recognition attendance")
    parser.add_argument("--store", default=DEFAULT_STORE_PATH, help="Enrollment store file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging (per-face distances)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_enroll = sub.add_parser("enroll", help="Capture descriptors for one person")
    p_enroll.add_argument("label", help="Full name / id of the person")
    p_enroll.add_argument("--captures", type=int, default=5, help="Number of captures to take")
    p_enroll.add_argument("--min-captures", type=int, default=3, help="Minimum captures required to save")
    p_enroll.add_argument("--interval", type=float, default=1.0, help="Seconds between captures")
    p_enroll.add_argument("--extract-timeout", type=float, default=ENROLL_EXTRACT_TIMEOUT_SECONDS)
    _add_model_args(p_enroll)
    p_enroll.set_defaults(func=cmd_enroll)

    p_session = sub.add_parser("session", help="Run a live attendance session")
    p_session.add_argument("--threshold", "-t", type=float, default=0.6, help="Match distance threshold")
    p_session.add_argument("--normalization", type=float, default=1.2, help="Distance at which confidence is 0")
    p_session.add_argument("--unknown-distance", type=float, default=80.0, help="Unknown dedup radius at 640x480")
    p_session.add_argument("--unknown-ttl", type=float, default=5.0, help="Seconds before an unseen unknown expires")
    p_session.add_argument("--extract-timeout", type=float, default=DEFAULT_EXTRACT_TIMEOUT_SECONDS)
    p_session.add_argument("--max-frames", type=int, default=None, help="Stop after this many frames")
    p_session.add_argument("--max-seconds", type=float, default=None, help="Stop after this many seconds")
    p_session.add_argument("--output-csv", default=None, help="Attendance CSV path")
    p_session.add_argument("--output-json", "-j", default=None, help="Session report JSON path")
    p_session.add_argument("--debug-top-k", type=int, default=0, help="Log top-k candidates per face")
    _add_model_args(p_session)
    p_session.set_defaults(func=cmd_session)

    p_admin = sub.add_parser("admin", help="Manage stored enrollments")
    p_admin.add_argument("action", choices=["list", "delete", "purge", "export"])
    p_admin.add_argument("--label", default=None, help="Label to delete")
    p_admin.add_argument("--path", default=None, help="Backup file for export")
    p_admin.add_argument("--yes", action="store_true", help="Confirm purge")
    p_admin.set_defaults(func=cmd_admin)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    set_verbosity(args.verbose)
    return int(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
