from __future__ import annotations

import csv
import json
import pickle
import signal
import threading

from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import pytest

import attendance_app
from attendance.face.descriptor import DESCRIPTOR_DIM
from attendance.face.enrollment import PickleEnrollmentStore
from attendance.face.matcher import MatchResult
from attendance.session.pipeline import FaceOutcome, SessionRoster
from attendance.session.report import (
    CSV_HEADER,
    build_attendance_rows,
    build_session_report,
    write_csv,
    write_json,
)
from attendance.utils.serializer import serialize_outcome, serialize_unknown_entry
from attendance.video.tracker import UnknownFaceEntry


EXPORTED = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _roster() -> SessionRoster:
    return SessionRoster(known_labels=frozenset({"Bob", "Élodie"}), unknown_count=2)


def test_rows_list_known_people_then_summary():
    rows = build_attendance_rows(
        _roster(),
        first_seen={"Élodie": 103.0, "Bob": 165.4},
        best_distance={"Élodie": 0.31234, "Bob": 0.4},
        session_start=100.0,
        exported_at=EXPORTED,
    )
    assert rows[0] == CSV_HEADER
    assert rows[1] == ["Élodie", "00:00:03", "0.3123"]
    assert rows[2] == ["Bob", "00:01:05", "0.4000"]
    assert rows[3] == []
    assert rows[4] == ["", "Unknown", "2"]
    assert rows[5] == ["", "Total", "4"]
    assert rows[6] == ["", "Timestamp", EXPORTED.isoformat()]


def test_rows_without_timing_sort_by_name():
    rows = build_attendance_rows(_roster(), exported_at=EXPORTED)
    assert [r[0] for r in rows[1:3]] == ["Bob", "Élodie"]
    assert rows[1][1:] == ["", ""]


def test_empty_roster_still_has_summary():
    rows = build_attendance_rows(SessionRoster(frozenset(), 0), exported_at=EXPORTED)
    assert rows[0] == CSV_HEADER
    assert rows[2] == ["", "Unknown", "0"]
    assert rows[3] == ["", "Total", "0"]


def test_person_named_like_a_summary_row_stays_distinct():
    roster = SessionRoster(known_labels=frozenset({"Total"}), unknown_count=0)
    rows = build_attendance_rows(roster, first_seen={"Total": 5.0}, session_start=0.0, exported_at=EXPORTED)
    people = [r for r in rows[1:] if r and r[0]]
    assert people == [["Total", "00:00:05", ""]]
    assert ["", "Total", "1"] in rows


def test_csv_round_trips_accented_names(tmp_path: Path):
    rows = build_attendance_rows(_roster(), first_seen={"Élodie": 1.0}, session_start=0.0, exported_at=EXPORTED)
    fp = write_csv(rows, tmp_path / "out" / "presence.csv")
    assert fp.read_bytes().startswith(b"\xef\xbb\xbf")
    with open(fp, newline="", encoding="utf-8-sig") as f:
        back = list(csv.reader(f))
    assert back[1][0] == "Élodie"
    assert back[-2] == ["", "Total", "4"]


def test_session_report_json(tmp_path: Path):
    entry = UnknownFaceEntry(id="unknown-1", position=(10.04, 20.0), first_seen=1.0, last_seen=2.5, hits=3)
    report = build_session_report(
        _roster(),
        first_seen={"Bob": 12.0},
        best_distance={"Bob": 0.2},
        session_start=10.0,
        frames_processed=42,
        status="stopped",
        diagnostic="no_enrollments",
        config={"threshold": 0.6},
        unknown_entries=[serialize_unknown_entry(entry)],
    )
    fp = write_json(report, tmp_path / "report.json")
    data = json.loads(fp.read_text(encoding="utf-8"))
    assert data["schema_version"] == "v1"
    assert data["known_count"] == 2
    assert data["unknown_count"] == 2
    assert data["total"] == 4
    assert data["frames_processed"] == 42
    assert data["diagnostic"] == "no_enrollments"
    assert [p["name"] for p in data["present"]] == ["Bob", "Élodie"]
    assert data["present"][0]["first_seen_seconds"] == pytest.approx(2.0)
    assert data["present"][1]["first_seen_seconds"] is None
    assert data["unknown_entries"][0] == {
        "id": "unknown-1",
        "position": [10.0, 20.0],
        "first_seen": 1.0,
        "last_seen": 2.5,
        "hits": 3,
    }


def test_serialize_outcome_is_json_safe():
    unknown = MatchResult("unknown", float("inf"), 0.0)
    outcome = FaceOutcome(
        bbox=(10, 20, 110, 140), position=(60.0, 80.0), match=unknown, entry_id="unknown-3", is_novel=True
    )
    out = serialize_outcome(outcome, frame_size=(640, 480))
    json.dumps(out)
    assert out["distance"] is None
    assert out["center"] == [60, 80]
    assert out["center_norm"] == [round(60 / 640, 4), round(80 / 480, 4)]
    assert out["unknown_id"] == "unknown-3"
    assert out["is_novel"] is True


def _seed_store(path: Path) -> None:
    store = PickleEnrollmentStore(path)
    store.save_enrollment("Alice", [np.zeros(DESCRIPTOR_DIM)])
    store.save_enrollment("Bob", [np.ones(DESCRIPTOR_DIM)])


def test_admin_list_delete_and_export(tmp_path: Path, capsys):
    fp = tmp_path / "enroll.pkl"
    _seed_store(fp)

    assert attendance_app.main(["--store", str(fp), "admin", "list"]) == 0
    listed = capsys.readouterr().out
    assert "Alice\t1 photo(s)" in listed and "Bob" in listed

    assert attendance_app.main(["--store", str(fp), "admin", "delete", "--label", "Alice"]) == 0
    assert [r.label for r in PickleEnrollmentStore(fp).load()] == ["Bob"]

    backup = tmp_path / "backup.json"
    assert attendance_app.main(["--store", str(fp), "admin", "export", "--path", str(backup)]) == 0
    assert json.loads(backup.read_text(encoding="utf-8"))["records"][0]["label"] == "Bob"


def test_admin_purge_needs_confirmation(tmp_path: Path):
    fp = tmp_path / "enroll.pkl"
    _seed_store(fp)
    assert attendance_app.main(["--store", str(fp), "admin", "purge"]) == 1
    assert len(PickleEnrollmentStore(fp).load()) == 2
    assert attendance_app.main(["--store", str(fp), "admin", "purge", "--yes"]) == 0
    assert PickleEnrollmentStore(fp).load() == []


def test_session_with_unreadable_store_exits_with_store_error(tmp_path: Path):
    fp = tmp_path / "enroll.pkl"
    with open(fp, "wb") as f:
        pickle.dump(["not", "a", "collection"], f)
    assert attendance_app.main(["--store", str(fp), "session", "--max-frames", "1"]) == 1


def test_stop_handlers_are_restored():
    before = {sig: signal.getsignal(sig) for sig in attendance_app.STOP_SIGNALS}
    stop = threading.Event()
    previous = attendance_app.install_stop_handlers(stop)
    try:
        assert previous == before
        handler = signal.getsignal(signal.SIGTERM)
        assert handler is not before[signal.SIGTERM]
        handler(signal.SIGTERM, None)
        assert stop.is_set()
    finally:
        attendance_app.restore_handlers(previous)
    assert {sig: signal.getsignal(sig) for sig in attendance_app.STOP_SIGNALS} == before
