"""OpenCV frame source for live sessions (camera index or video file)."""

from __future__ import annotations

from typing import Iterator, Optional, Tuple, Union

import cv2
import numpy as np

from attendance.utils.log import get_logger

logger = get_logger(__name__)


class CameraUnavailableError(RuntimeError):
    """The capture device or file could not be opened."""


class FrameSource:
    """Read BGR frames sequentially from a camera or a video file.

    Example:
        >>> with FrameSource(0, size=(640, 480)) as src:
        ...     for frame in src:
        ...         ...
    """

    def __init__(self, source: Union[int, str] = 0, size: Optional[Tuple[int, int]] = None):
        self.source = int(source) if isinstance(source, str) and source.isdigit() else source
        self.size = size
        self._cap: Optional[cv2.VideoCapture] = None

    def open(self) -> "FrameSource":
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            cap.release()
            raise CameraUnavailableError(f"Failed to open capture source: {self.source}")
        if self.size is not None and isinstance(self.source, int):
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, int(self.size[0]))
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, int(self.size[1]))
        self._cap = cap
        logger.info(f"Capture opened: {self.source} ({self.frame_size[0]}x{self.frame_size[1]})")
        return self

    @property
    def frame_size(self) -> Tuple[int, int]:
        if self._cap is None:
            return (0, 0)
        return (int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)), int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT)))

    def read(self) -> Optional[np.ndarray]:
        if self._cap is None:
            self.open()
        ok, frame = self._cap.read()
        if not ok or frame is None:
            return None
        return frame

    def __iter__(self) -> Iterator[np.ndarray]:
        while True:
            frame = self.read()
            if frame is None:
                return
            yield frame

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    def __enter__(self) -> "FrameSource":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()
