from typing import Dict, Optional, Tuple

import numpy as np


def _finite_or_none(x) -> Optional[float]:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return None
    return v if np.isfinite(v) else None


def serialize_outcome(outcome, frame_size: Optional[Tuple[int, int]] = None) -> Dict:
    """Serialize a per-face outcome into JSON-safe form and optionally add normalized coords.

    outcome: FaceOutcome-like object with bbox, position, match, entry_id, is_novel
    frame_size: (w, h)
    """
    match = getattr(outcome, "match", None)
    bbox = getattr(outcome, "bbox", None)
    position = getattr(outcome, "position", None)

    out: Dict = {
        "bbox": [int(x) for x in bbox] if bbox is not None else None,
        "center": [int(round(float(position[0]))), int(round(float(position[1])))] if position is not None else None,
        "label": match.label if match is not None else None,
        # inf is not valid JSON
        "distance": _finite_or_none(match.distance) if match is not None else None,
        "confidence": float(match.confidence) if match is not None else None,
        "unknown_id": getattr(outcome, "entry_id", None),
        "is_novel": bool(getattr(outcome, "is_novel", False)),
    }

    if frame_size is not None and out["center"] is not None:
        w, h = float(frame_size[0]), float(frame_size[1])
        if w > 0 and h > 0:
            cx, cy = out["center"]
            out["center_norm"] = [round(cx / w, 4), round(cy / h, 4)]
    return out


def serialize_unknown_entry(entry) -> Dict:
    return {
        "id": str(entry.id),
        "position": [round(float(entry.position[0]), 1), round(float(entry.position[1]), 1)],
        "first_seen": float(entry.first_seen),
        "last_seen": float(entry.last_seen),
        "hits": int(entry.hits),
    }
