from datetime import datetime, timezone

import pytest

from coordinates import DocumentType
from storage import COORDINATES_KEY, JsonStore, autosave_key, build_shared_report


def test_round_trip_and_delete(tmp_path):
    store = JsonStore(tmp_path / "data")
    assert store.read(COORDINATES_KEY) is None

    store.write(COORDINATES_KEY, {"report": {"cargo": {"x": 1, "y": 2, "size": 9}}, "note": "한글"})
    assert store.read(COORDINATES_KEY)["note"] == "한글"
    assert (tmp_path / "data" / "coordinates.json").exists()
    assert not list((tmp_path / "data").glob("*.tmp"))

    assert store.delete(COORDINATES_KEY)
    assert not store.delete(COORDINATES_KEY)
    assert store.read(COORDINATES_KEY) is None


def test_unreadable_document_reads_as_missing(tmp_path):
    (tmp_path / "coordinates.json").write_text("{broken", encoding="utf-8")
    assert JsonStore(tmp_path).read(COORDINATES_KEY) is None


@pytest.mark.parametrize("key", ["../etc", "Upper", "a.b", ""])
def test_rejects_unsafe_keys(tmp_path, key):
    with pytest.raises(ValueError):
        JsonStore(tmp_path).read(key)


def test_autosave_keys():
    assert autosave_key(DocumentType.REPORT) == "autosave_report"
    assert autosave_key(DocumentType.STATEMENT) == "autosave_statement"


def test_build_shared_report_keeps_shared_fields():
    now = datetime(2026, 1, 14, 9, 0, tzinfo=timezone.utc)
    shared = build_shared_report(
        {
            "datetime": "2026-01-13T23:30",
            "plate_number": "12가3456",
            "driver_name": "Hong",
            "axle1_measured": "10.5",
            "cargo": "",
            "location": "",
        },
        now=now,
    )
    assert shared == {
        "datetime": "2026-01-13T23:30",
        "plate_number": "12가3456",
        "axle1_measured": "10.5",
        "_shared_at": "2026-01-14T09:00:00+00:00",
        "_source": "report",
    }
