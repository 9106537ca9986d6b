from __future__ import annotations

import csv
import json

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .pipeline import SessionRoster

REPORT_SCHEMA_VERSION = "v1"

CSV_HEADER = ["name", "first_seen", "best_distance"]


def _fmt_elapsed(seconds: Optional[float]) -> str:
    if seconds is None:
        return ""
    s = max(0.0, float(seconds))
    m, sec = divmod(int(round(s)), 60)
    h, m = divmod(m, 60)
    return f"{h:02d}:{m:02d}:{sec:02d}"


def build_attendance_rows(
    roster: SessionRoster,
    *,
    first_seen: Optional[Mapping[str, float]] = None,
    best_distance: Optional[Mapping[str, float]] = None,
    session_start: Optional[float] = None,
    exported_at: Optional[datetime] = None,
) -> List[List[str]]:
    """Tabular attendance: one row per known person, then summary rows.

    Known people keep first-seen order when `first_seen` is given, else they
    are sorted by name. `first_seen` values are session clock readings;
    with `session_start` they are shown as elapsed time.
    """
    first_seen = dict(first_seen or {})
    best_distance = dict(best_distance or {})
    exported_at = exported_at or datetime.now(timezone.utc)

    ordered = [n for n in first_seen if n in roster.known_labels]
    ordered += sorted(n for n in roster.known_labels if n not in first_seen)

    rows: List[List[str]] = [list(CSV_HEADER)]
    for name in ordered:
        ts = first_seen.get(name)
        if ts is not None and session_start is not None:
            ts = ts - float(session_start)
        dist = best_distance.get(name)
        rows.append([name, _fmt_elapsed(ts), f"{dist:.4f}" if dist is not None else ""])

    rows.append([])
    # Summary rows leave the name cell empty; enrolled labels never are.
    rows.append(["", "Unknown", str(int(roster.unknown_count))])
    rows.append(["", "Total", str(int(roster.total))])
    rows.append(["", "Timestamp", exported_at.isoformat()])
    return rows


def write_csv(rows: List[List[str]], path) -> Path:
    fp = Path(path)
    fp.parent.mkdir(parents=True, exist_ok=True)
    # utf-8-sig so spreadsheet tools pick up accented names
    with open(fp, "w", newline="", encoding="utf-8-sig") as f:
        writer = csv.writer(f)
        writer.writerows(rows)
    return fp


def build_session_report(
    roster: SessionRoster,
    *,
    first_seen: Optional[Mapping[str, float]] = None,
    best_distance: Optional[Mapping[str, float]] = None,
    session_start: Optional[float] = None,
    frames_processed: int = 0,
    status: Optional[str] = None,
    diagnostic: Optional[str] = None,
    config: Optional[Dict] = None,
    unknown_entries: Optional[List[Dict]] = None,
) -> Dict:
    """Build the JSON session report block."""
    first_seen = dict(first_seen or {})
    best_distance = dict(best_distance or {})
    start = float(session_start) if session_start is not None else None

    present = []
    for name in sorted(roster.known_labels, key=lambda n: (first_seen.get(n, float("inf")), n)):
        ts = first_seen.get(name)
        present.append(
            {
                "name": name,
                "first_seen_seconds": (float(ts) - start) if (ts is not None and start is not None) else ts,
                "best_distance": best_distance.get(name),
            }
        )

    return {
        "schema_version": REPORT_SCHEMA_VERSION,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "status": status,
        "diagnostic": diagnostic,
        "frames_processed": int(frames_processed),
        "present": present,
        "known_count": len(roster.known_labels),
        "unknown_count": int(roster.unknown_count),
        "total": int(roster.total),
        "unknown_entries": unknown_entries or [],
        "config": config or {},
    }


def write_json(report: Dict, path) -> Path:
    fp = Path(path)
    fp.parent.mkdir(parents=True, exist_ok=True)
    with open(fp, "w", encoding="utf-8") as f:
        json.dump(report, f, ensure_ascii=False, indent=2)
    return fp
