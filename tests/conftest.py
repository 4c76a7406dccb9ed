"""Shared fixtures: in-memory stores and track builders."""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta
from typing import Callable, Iterator

import pytest

from place_tracker.geo import EARTH_RADIUS_M
from place_tracker.models import LocationPoint
from place_tracker.store import TrackStore

BASE = datetime(2025, 1, 15, 8, 0, tzinfo=UTC)
SUBJECT = "me"


def north_of(lat: float, meters: float) -> float:
    """Latitude exactly ``meters`` north of ``lat`` on the haversine sphere."""
    return lat + math.degrees(meters / EARTH_RADIUS_M)


@pytest.fixture
def store() -> Iterator[TrackStore]:
    """Private in-memory SQLite store."""
    s = TrackStore.in_memory()
    yield s
    s.close()


@pytest.fixture
def point() -> Callable[..., LocationPoint]:
    """Build a LocationPoint at BASE + minutes."""

    def _point(lat: float, lon: float, minutes: float, subject: str = SUBJECT, **extra) -> LocationPoint:
        return LocationPoint(
            subject_id=subject,
            latitude=lat,
            longitude=lon,
            timestamp=BASE + timedelta(minutes=minutes),
            **extra,
        )

    return _point


@pytest.fixture
def two_stays(point) -> list[LocationPoint]:
    """10 min at (40.0, -73.0), then 6 min 2 km north."""
    first = [point(40.0, -73.0, m) for m in range(10)]
    far = north_of(40.0, 2000.0)
    second = [point(far, -73.0, m) for m in range(10, 16)]
    return first + second
