"""Face detection and descriptor extraction collaborators.

The matching core never runs a model itself. A session is given a
`FaceDetector` that returns face boxes for a frame and a `DescriptorExtractor`
that turns a cropped face region into a 128-d descriptor (or None). Model
backed implementations are imported lazily so the core works without them.
"""

from __future__ import annotations

import io
import threading

from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextlib import redirect_stderr, redirect_stdout
from typing import Any, Dict, List, Optional, Tuple

import cv2
import numpy as np

from attendance.config import DEFAULT_EXTRACT_TIMEOUT_SECONDS
from attendance.face.descriptor import DESCRIPTOR_DIM, as_descriptor
from attendance.utils.log import get_logger, suppress_fds

logger = get_logger(__name__)

# In-process model cache keyed by (model name, providers, ctx_id, det_size).
_FACEAPP_CACHE: Dict[Tuple, Any] = {}


class ModelUnavailableError(RuntimeError):
    """A detection or descriptor model could not be loaded."""


class FaceDetector(ABC):
    @abstractmethod
    def detect(self, frame: np.ndarray) -> List[List[int]]:
        """Return face boxes [x1, y1, x2, y2] in frame pixels."""
        pass


class DescriptorExtractor(ABC):
    @abstractmethod
    def extract(self, region: np.ndarray) -> Optional[np.ndarray]:
        """Return the descriptor of the face filling `region` (BGR), or None if there is none."""
        pass


def resolve_device(device: str = "auto") -> str:
    dev = str(device).lower().strip()
    if dev != "auto":
        return dev
    try:
        import torch

        return "gpu" if torch.cuda.is_available() else "cpu"
    except Exception:
        return "cpu"


class InsightFaceDetector(FaceDetector):
    """Face boxes from InsightFace's detection model (no recognition head loaded)."""

    def __init__(self, model_name: str = "buffalo_l", det_size: int = 640, device: str = "auto", min_score: float = 0.5):
        self.model_name = str(model_name)
        self.det_size: Tuple[int, int] = (int(det_size), int(det_size))
        self.min_score = float(min_score)

        if resolve_device(device) == "gpu":
            providers = ["CUDAExecutionProvider"]
            self.ctx_id = 0
        else:
            providers = ["CPUExecutionProvider"]
            self.ctx_id = -1

        key = (self.model_name, tuple(providers), int(self.ctx_id), self.det_size)
        cached = _FACEAPP_CACHE.get(key)
        if cached is not None:
            self._app = cached
            return

        try:
            from insightface.app import FaceAnalysis

            with suppress_fds():
                app = FaceAnalysis(name=self.model_name, providers=providers, allowed_modules=["detection"])
            buf = io.StringIO()
            with redirect_stdout(buf), redirect_stderr(buf):
                app.prepare(ctx_id=self.ctx_id, det_size=self.det_size)
        except Exception as e:
            logger.error(f"InsightFace detector failed to load: {e}")
            raise ModelUnavailableError(f"cannot load InsightFace model {self.model_name}: {e}") from e

        _FACEAPP_CACHE[key] = app
        self._app = app
        logger.info(f"Loaded InsightFace detector: {self.model_name} (ctx_id={self.ctx_id})")

    def detect(self, frame: np.ndarray) -> List[List[int]]:
        if frame is None:
            return []
        try:
            faces = self._app.get(frame) or []
        except Exception as e:
            logger.warning(f"Face detection failed on frame: {e}")
            return []

        h, w = frame.shape[:2]
        boxes: List[List[int]] = []
        for f in faces:
            score = float(getattr(f, "det_score", 1.0) or 0.0)
            if score < self.min_score:
                continue
            x1, y1, x2, y2 = [int(round(float(v))) for v in f.bbox]
            x1, y1 = max(0, x1), max(0, y1)
            x2, y2 = min(w, x2), min(h, y2)
            if x2 > x1 and y2 > y1:
                boxes.append([x1, y1, x2, y2])
        return boxes


class DlibDescriptorExtractor(DescriptorExtractor):
    """128-d descriptors from dlib's ResNet through the `face_recognition` package.

    The region is assumed to already contain one face, so no second detection
    pass runs: the whole crop is handed over as the face location.
    """

    def __init__(self, num_jitters: int = 1, model: str = "small"):
        try:
            with suppress_fds():
                import face_recognition
        except Exception as e:
            raise ModelUnavailableError(f"face_recognition (dlib) is not available: {e}") from e
        self._fr = face_recognition
        self.num_jitters = int(num_jitters)
        self.model = str(model)

    def extract(self, region: np.ndarray) -> Optional[np.ndarray]:
        if region is None or region.size == 0:
            return None
        h, w = region.shape[:2]
        rgb = cv2.cvtColor(region, cv2.COLOR_BGR2RGB)
        encs = self._fr.face_encodings(
            rgb,
            known_face_locations=[(0, w, h, 0)],
            num_jitters=self.num_jitters,
            model=self.model,
        )
        if not encs:
            return None
        return as_descriptor(encs[0], DESCRIPTOR_DIM)


class ExtractionGate(DescriptorExtractor):
    """Serializes extractor calls: at most one extraction is outstanding at any time.

    A request that arrives while another one is in flight is dropped (returns
    None), not queued. A call exceeding `timeout` also returns None; the gate
    stays closed until that call really finishes on the worker thread.
    """

    def __init__(self, extractor: DescriptorExtractor, timeout: float = DEFAULT_EXTRACT_TIMEOUT_SECONDS):
        self.extractor = extractor
        self.timeout = float(timeout)
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="descriptor")
        self.dropped = 0
        self.timeouts = 0
        self.failures = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _run(self, region: np.ndarray) -> Optional[np.ndarray]:
        # Released on the worker, before the result becomes visible to the caller.
        try:
            return self.extractor.extract(region)
        finally:
            self._lock.release()

    def try_extract(self, region: np.ndarray) -> Optional[np.ndarray]:
        if not self._lock.acquire(blocking=False):
            self.dropped += 1
            logger.debug("Extractor busy, region dropped")
            return None

        try:
            future: Future = self._executor.submit(self._run, region)
        except RuntimeError as e:
            # Executor already shut down.
            self._lock.release()
            logger.warning(f"Extraction gate closed: {e}")
            return None

        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            self.timeouts += 1
            logger.warning(f"Descriptor extraction timed out after {self.timeout:.1f}s")
            return None
        except Exception as e:
            self.failures += 1
            logger.warning(f"Descriptor extraction failed: {e}")
            return None

    def extract(self, region: np.ndarray) -> Optional[np.ndarray]:
        return self.try_extract(region)

    def close(self) -> None:
        # Pending work is abandoned; it only holds in-memory state.
        self._executor.shutdown(wait=False)
