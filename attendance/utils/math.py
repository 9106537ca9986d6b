from __future__ import annotations

import math

from typing import Sequence, Tuple

import numpy as np


def point_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Euclidean distance between two 2D points."""
    return float(math.hypot(float(a[0]) - float(b[0]), float(a[1]) - float(b[1])))


def bbox_center_xyxy(b: Sequence[float]) -> Tuple[float, float]:
    x1, y1, x2, y2 = b
    return (float(x1 + x2) * 0.5, float(y1 + y2) * 0.5)


def frame_diagonal(size: Sequence[float]) -> float:
    w, h = size[0], size[1]
    return float(math.hypot(float(w), float(h)))


def pad_bbox_xyxy(
    b: Sequence[float],
    frame_size: Tuple[int, int],
    padding: float = 0.20,
    min_side: int = 60,
) -> Tuple[int, int, int, int]:
    """Grow a box around its center by `padding`, keep at least `min_side`, clip to the frame.

    `frame_size` is (width, height).
    """
    w_frame, h_frame = int(frame_size[0]), int(frame_size[1])
    cx, cy = bbox_center_xyxy(b)
    bw = max(1.0, float(b[2]) - float(b[0])) * (1.0 + float(padding))
    bh = max(1.0, float(b[3]) - float(b[1])) * (1.0 + float(padding))

    x1 = max(0, int(round(cx - bw / 2.0)))
    y1 = max(0, int(round(cy - bh / 2.0)))
    w = min(w_frame - x1, max(int(min_side), int(round(bw))))
    h = min(h_frame - y1, max(int(min_side), int(round(bh))))
    return (x1, y1, x1 + max(0, w), y1 + max(0, h))


def is_finite_point(p) -> bool:
    if p is None:
        return False
    try:
        arr = np.asarray(p, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError):
        return False
    return arr.shape[0] == 2 and bool(np.all(np.isfinite(arr)))
