"""Tests for batch ingestion and CSV import."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from place_tracker.engine import PlaceDetectionEngine
from place_tracker.errors import InvalidSampleError
from place_tracker.ingest import ingest_batch, load_samples_csv, parse_sample
from place_tracker.timeutils import epoch_ms_from_dt

from conftest import BASE, SUBJECT


def _sample(minutes: int, lat: float = 40.0, lon: float = -73.0, **extra) -> dict:
    return {
        "latitude": lat,
        "longitude": lon,
        "timestamp": (BASE + timedelta(minutes=minutes)).isoformat(),
        **extra,
    }


def test_parse_sample_reads_optional_fields() -> None:
    p = parse_sample(
        SUBJECT,
        _sample(0, accuracy=8.0, altitude=-12.5, speed=-1, course=90.0, timezone="America/New_York"),
        {"model": "Pixel 8", "os": "Android 15", "appVersion": "2.3.0"},
    )
    assert p.timestamp == BASE
    assert p.accuracy_m == 8.0
    assert p.altitude_m == -12.5
    assert p.speed_mps is None
    assert p.course_deg == 90.0
    assert p.local_timezone == "America/New_York"
    assert (p.device_model, p.device_os, p.app_version) == ("Pixel 8", "Android 15", "2.3.0")


def test_epoch_millisecond_timestamps() -> None:
    p = parse_sample(SUBJECT, {"latitude": 1.0, "longitude": 2.0, "timestamp": epoch_ms_from_dt(BASE)})
    assert p.timestamp == BASE


@pytest.mark.parametrize(
    "bad",
    [
        {"latitude": 91.0, "longitude": 0.0, "timestamp": "2025-01-15T08:00:00Z"},
        {"latitude": 0.0, "longitude": -180.5, "timestamp": "2025-01-15T08:00:00Z"},
        {"latitude": 0.0, "longitude": 0.0},
        {"longitude": 0.0, "timestamp": "2025-01-15T08:00:00Z"},
        {"latitude": "north", "longitude": 0.0, "timestamp": "2025-01-15T08:00:00Z"},
        {"latitude": 0.0, "longitude": 0.0, "timestamp": "yesterday"},
        {"latitude": 0.0, "longitude": 0.0, "timestamp": "2025-01-15T08:00:00Z", "timezone": "Mars/Olympus"},
    ],
)
def test_one_bad_sample_rejects_whole_batch(store, bad) -> None:
    """Nothing is stored when any sample of the batch is malformed."""
    samples = [_sample(0), _sample(1), bad]
    with pytest.raises(InvalidSampleError) as info:
        ingest_batch(store, SUBJECT, samples)
    assert info.value.index == 2
    assert store.unprocessed_points(SUBJECT) == []


def test_empty_subject_is_rejected(store) -> None:
    with pytest.raises(ValueError):
        ingest_batch(store, "", [_sample(0)])


def test_duplicates_are_counted(store) -> None:
    first = ingest_batch(store, SUBJECT, [_sample(0), _sample(1)])
    again = ingest_batch(store, SUBJECT, [_sample(1), _sample(2)])
    assert (first.received, first.inserted, first.duplicates) == (2, 2, 0)
    assert (again.received, again.inserted, again.duplicates) == (2, 1, 1)
    assert first.future is None and first.processed is None


def test_inline_processing(store) -> None:
    res = ingest_batch(store, SUBJECT, [_sample(m) for m in range(8)], engine=PlaceDetectionEngine(store))
    assert res.processed is not None
    assert res.processed.visits_recorded == 1
    assert store.unprocessed_points(SUBJECT) == []


def test_processing_on_executor(store) -> None:
    """The upload returns a future; processing completes in the background."""
    engine = PlaceDetectionEngine(store)
    with ThreadPoolExecutor(max_workers=2) as pool:
        res = ingest_batch(store, SUBJECT, [_sample(m) for m in range(8)], engine=engine, executor=pool)
        assert res.processed is None
        outcome = res.future.result(timeout=30)
    assert outcome.visits_recorded == 1
    assert store.count_visits(store.list_places(SUBJECT)[0].id) == 1


def test_load_samples_csv(tmp_path, store) -> None:
    path = tmp_path / "Path.csv"
    ms = epoch_ms_from_dt(BASE)
    path.write_text(
        "geoTime,latitude,longitude,altitude,course,horizontalAccuracy,verticalAccuracy,speed\n"
        f"{ms},40.0,-73.0,12.0,-1.0,5.0,3.0,0.0\n"
        f"{ms + 60_000},40.0001,-73.0,12.5,-1.0,8.0,3.0,-1.0\n",
        encoding="utf-8",
    )
    samples = load_samples_csv(path)
    assert samples[0]["timestamp"] == ms
    assert samples[0]["accuracy"] == "5.0"

    res = ingest_batch(store, SUBJECT, samples)
    assert res.inserted == 2
    pts = store.unprocessed_points(SUBJECT)
    assert pts[0].timestamp == BASE
    assert pts[0].course_deg is None
    assert pts[1].speed_mps is None
    assert pts[1].altitude_accuracy_m == 3.0


def test_csv_without_coordinates_is_rejected(tmp_path) -> None:
    path = tmp_path / "bad.csv"
    path.write_text("geoTime,lat,lon\n1,2,3\n", encoding="utf-8")
    with pytest.raises(KeyError):
        load_samples_csv(path)


def test_digit_string_timestamps_are_epoch_milliseconds() -> None:
    """JSON uploads may carry epoch milliseconds as a string."""
    p = parse_sample(SUBJECT, {"latitude": 1.0, "longitude": 2.0, "timestamp": str(epoch_ms_from_dt(BASE))})
    assert p.timestamp == BASE
