"""Live attendance session.

This package provides:
- The per-frame pipeline tying detector, extractor, matcher and unknown tracker together
- The session roster (sticky known labels, live unknown count)
- Export of the final roster to CSV/JSON
"""

from __future__ import annotations
