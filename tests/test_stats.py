"""Tests for travel statistics."""

from __future__ import annotations

from datetime import timedelta

import pytest

from place_tracker.stats import summarize_track, travel_stats

from conftest import BASE, SUBJECT, north_of


def test_distance_and_speeds(store, point) -> None:
    """1000 m in 500 s with reported speeds 3.0 and 1.0."""
    a = point(40.0, -73.0, 0, speed_mps=3.0)
    b = point(north_of(40.0, 1000.0), -73.0, 500 / 60, speed_mps=1.0)
    store.insert_points([a, b])

    stats = travel_stats(store, SUBJECT, BASE, BASE + timedelta(hours=1))

    assert stats.point_count == 2
    assert stats.total_distance_m == pytest.approx(1000.0, abs=0.01)
    assert stats.implied_speed_mps == pytest.approx(2.0, rel=1e-4)
    assert stats.max_speed_mps == pytest.approx(3.0)
    assert stats.average_moving_speed_mps == pytest.approx(2.0)
    assert stats.total_duration_minutes == pytest.approx(60.0)
    assert stats.moving_time_minutes == pytest.approx(500 / 60)
    assert stats.gaps_skipped == 0


def test_unavailable_and_slow_speeds_are_ignored_for_average(point) -> None:
    """None speeds are skipped and slow samples do not count as moving."""
    pts = [
        point(40.0, -73.0, 0, speed_mps=None),
        point(40.0, -73.0, 1, speed_mps=0.2),
        point(40.0, -73.0, 2, speed_mps=4.0),
    ]
    stats = summarize_track(SUBJECT, pts, BASE, BASE + timedelta(minutes=2))
    assert stats.max_speed_mps == pytest.approx(4.0)
    assert stats.average_moving_speed_mps == pytest.approx(4.0)
    assert stats.moving_time_minutes == pytest.approx(1.0)
    assert stats.stationary_time_minutes == pytest.approx(1.0)


def test_gap_cap_skips_long_pairs(point) -> None:
    """With a cap, a jump across a long silence adds no distance."""
    pts = [
        point(40.0, -73.0, 0),
        point(north_of(40.0, 100.0), -73.0, 1),
        point(north_of(40.0, 5000.0), -73.0, 180),
    ]
    uncapped = summarize_track(SUBJECT, pts, BASE, BASE + timedelta(hours=3))
    capped = summarize_track(SUBJECT, pts, BASE, BASE + timedelta(hours=3), max_gap_seconds=1800)

    assert uncapped.total_distance_m == pytest.approx(5000.0, abs=0.1)
    assert uncapped.gaps_skipped == 0
    assert capped.total_distance_m == pytest.approx(100.0, abs=0.01)
    assert capped.gaps_skipped == 1


def test_window_bounds_are_inclusive(store, point) -> None:
    store.insert_points([point(40.0, -73.0, m) for m in (0, 10, 20)])
    stats = travel_stats(store, SUBJECT, BASE, BASE + timedelta(minutes=10))
    assert stats.point_count == 2


def test_empty_window(store) -> None:
    stats = travel_stats(store, SUBJECT, BASE, BASE + timedelta(days=1))
    assert stats.point_count == 0
    assert stats.total_distance_m == 0.0
    assert stats.max_speed_mps == 0.0
    assert stats.implied_speed_mps == 0.0


def test_end_before_start_is_rejected(store) -> None:
    with pytest.raises(ValueError):
        travel_stats(store, SUBJECT, BASE, BASE - timedelta(seconds=1))
