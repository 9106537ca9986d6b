from __future__ import annotations

from typing import Any

import numpy as np

# Length of a face descriptor produced by the dlib ResNet model.
DESCRIPTOR_DIM = 128


class DescriptorDimensionError(ValueError):
    """Raised when a descriptor does not have the canonical length."""

    def __init__(self, got: Any, expected: int = DESCRIPTOR_DIM):
        super().__init__(f"descriptor dimension mismatch: got {got}, expected {expected}")
        self.got = got
        self.expected = int(expected)


def as_descriptor(values: Any, dim: int = DESCRIPTOR_DIM) -> np.ndarray:
    """Convert a list/tuple/array/float32 buffer into a canonical descriptor.

    Returns a fresh 1-D float64 array of length `dim`. Row vectors of shape
    (1, dim) are accepted; anything else raises `DescriptorDimensionError`.
    Non-finite components raise `ValueError`.
    """
    if values is None:
        raise ValueError("descriptor is None")
    try:
        arr = np.array(values, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ValueError(f"descriptor is not numeric: {e}") from e

    if arr.ndim == 2 and arr.shape[0] == 1:
        arr = arr.reshape(-1)
    if arr.ndim != 1:
        raise DescriptorDimensionError(tuple(arr.shape), dim)
    if int(arr.shape[0]) != int(dim):
        raise DescriptorDimensionError(int(arr.shape[0]), dim)
    if not np.all(np.isfinite(arr)):
        raise ValueError("descriptor contains non-finite values")
    return arr


def is_valid_descriptor(values: Any, dim: int = DESCRIPTOR_DIM) -> bool:
    try:
        as_descriptor(values, dim)
    except ValueError:
        return False
    return True


def euclidean_distance(a: Any, b: Any) -> float:
    """Euclidean distance between two descriptors of the same length.

    Mismatched lengths raise `DescriptorDimensionError` instead of producing
    an infinite distance.
    """
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.shape[0] != vb.shape[0]:
        raise DescriptorDimensionError(int(vb.shape[0]), int(va.shape[0]))
    return float(np.linalg.norm(va - vb))
