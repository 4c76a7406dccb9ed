"""Data models for location points, places, visits and stay clusters."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Final

from place_tracker.timeutils import to_utc

DEFAULT_RADIUS_M: Final[float] = 50.0
DEFAULT_MIN_STAY_MINUTES: Final[float] = 5.0
DEFAULT_MAX_GAP_MINUTES: Final[float] = 30.0
DEFAULT_BATCH_LIMIT: Final[int] = 1000
MOVING_SPEED_MPS: Final[float] = 0.5


@dataclass(frozen=True, slots=True)
class LocationPoint:
    """A single GPS sample for one subject.

    Attributes:
        subject_id: Tracked subject the sample belongs to.
        latitude: Latitude in decimal degrees (WGS84).
        longitude: Longitude in decimal degrees (WGS84).
        timestamp: Capture instant, timezone-aware UTC.
        accuracy_m: Horizontal accuracy in meters as reported by the device.
        altitude_m: Altitude in meters.
        altitude_accuracy_m: Vertical accuracy in meters.
        speed_mps: Reported speed in meters/second.
        course_deg: Reported course in degrees.
        local_timezone: IANA timezone label of the device at capture time.
        place_id: Place the point was assigned to, None until processed.
        processed_at: When a processing run consumed the point.
        id: Store identity, None for points not yet persisted.
    """

    subject_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    accuracy_m: float | None = None
    altitude_m: float | None = None
    altitude_accuracy_m: float | None = None
    speed_mps: float | None = None
    course_deg: float | None = None
    local_timezone: str | None = None
    device_model: str | None = None
    device_os: str | None = None
    app_version: str | None = None
    place_id: int | None = None
    processed_at: datetime | None = None
    id: int | None = None

    @property
    def identity(self) -> tuple[str, datetime, float, float]:
        """Uniqueness key used to skip duplicate uploads."""

        return (self.subject_id, to_utc(self.timestamp), self.latitude, self.longitude)


@dataclass(frozen=True, slots=True)
class Place:
    """A recognized stay location for one subject."""

    id: int
    subject_id: str
    latitude: float
    longitude: float
    radius_m: float = DEFAULT_RADIUS_M
    label: str | None = None
    category: str | None = None
    address: str | None = None
    provider_place_id: str | None = None
    provider_name: str | None = None
    provider_types: tuple[str, ...] = ()
    visit_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def display_name(self) -> str:
        return self.label or self.provider_name or "(unlabeled)"


@dataclass(frozen=True, slots=True)
class PlaceDetails:
    """Label/category/address suggestions merged into a place.

    Every field is optional; None means "no suggestion".
    """

    label: str | None = None
    category: str | None = None
    address: str | None = None
    provider_place_id: str | None = None
    provider_name: str | None = None
    provider_types: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class Visit:
    """One continuous stay at a place.

    Note:
        The schema allows an open interval (departure None) but processing
        runs only ever write closed intervals.
    """

    id: int
    subject_id: str
    place_id: int
    arrival: datetime
    departure: datetime | None
    duration_minutes: int | None
    created_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.departure is None:
            return 0.0
        return max(0.0, (self.departure - self.arrival).total_seconds())


@dataclass(frozen=True, slots=True)
class StayCluster:
    """A maximal run of consecutive points judged to be one stay."""

    latitude: float
    longitude: float
    points: tuple[LocationPoint, ...]
    start: datetime
    end: datetime
    duration_minutes: int

    def __len__(self) -> int:
        return len(self.points)


@dataclass(frozen=True, slots=True)
class TravelStats:
    """Aggregate travel statistics for a requested time window."""

    subject_id: str
    start: datetime
    end: datetime
    point_count: int
    total_distance_m: float
    average_moving_speed_mps: float
    max_speed_mps: float
    implied_speed_mps: float
    total_duration_minutes: float
    moving_time_minutes: float
    stationary_time_minutes: float
    gaps_skipped: int = 0
