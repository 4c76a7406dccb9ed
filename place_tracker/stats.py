"""Travel statistics over a time window."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from place_tracker.geo import distance_m
from place_tracker.models import MOVING_SPEED_MPS, LocationPoint, TravelStats
from place_tracker.store import TrackStore
from place_tracker.timeutils import minutes_between, to_utc


def summarize_track(
    subject_id: str,
    points: Sequence[LocationPoint],
    start: datetime,
    end: datetime,
    *,
    max_gap_seconds: float | None = None,
    moving_threshold_mps: float = MOVING_SPEED_MPS,
) -> TravelStats:
    """Compute travel statistics for time-ordered points.

    Distance is the sum of haversine distances between consecutive points.
    Speeds come from the device-reported ``speed_mps`` field: the maximum over
    all samples, and the mean over samples above ``moving_threshold_mps`` so
    that stationary jitter does not drag the average down.

    Args:
        subject_id: Subject the points belong to.
        points: Points sorted by time.
        start: Requested window start (reported back as-is).
        end: Requested window end.
        max_gap_seconds: When set, consecutive pairs further apart in time are
            treated as a coverage gap and contribute no distance. None (the
            default) sums every pair, so a phone switched off and back on far
            away counts as continuous travel.
        moving_threshold_mps: Reported speed above which a sample counts as moving.
    """

    start = to_utc(start)
    end = to_utc(end)

    total_m = 0.0
    moving_s = 0.0
    stationary_s = 0.0
    gaps = 0
    for prev, cur in zip(points, points[1:]):
        elapsed_s = (cur.timestamp - prev.timestamp).total_seconds()
        if max_gap_seconds is not None and elapsed_s > max_gap_seconds:
            gaps += 1
            continue
        total_m += distance_m(prev, cur)
        if cur.speed_mps is not None and cur.speed_mps > moving_threshold_mps:
            moving_s += elapsed_s
        else:
            stationary_s += elapsed_s

    speeds = [p.speed_mps for p in points if p.speed_mps is not None and p.speed_mps >= 0]
    moving_speeds = [s for s in speeds if s > moving_threshold_mps]
    max_speed = max(speeds, default=0.0)
    avg_moving = sum(moving_speeds) / len(moving_speeds) if moving_speeds else 0.0

    implied = 0.0
    if len(points) >= 2:
        span_s = (points[-1].timestamp - points[0].timestamp).total_seconds()
        if span_s > 0:
            implied = total_m / span_s

    return TravelStats(
        subject_id=subject_id,
        start=start,
        end=end,
        point_count=len(points),
        total_distance_m=total_m,
        average_moving_speed_mps=avg_moving,
        max_speed_mps=max_speed,
        implied_speed_mps=implied,
        total_duration_minutes=minutes_between(start, end),
        moving_time_minutes=moving_s / 60.0,
        stationary_time_minutes=stationary_s / 60.0,
        gaps_skipped=gaps,
    )


def travel_stats(
    store: TrackStore,
    subject_id: str,
    start: datetime,
    end: datetime,
    *,
    max_gap_seconds: float | None = None,
    moving_threshold_mps: float = MOVING_SPEED_MPS,
) -> TravelStats:
    """Fetch the subject's points in [start, end] and summarize them."""

    if to_utc(end) < to_utc(start):
        raise ValueError("结束时间不能早于开始时间")
    points = store.points_in_window(subject_id, start, end)
    return summarize_track(
        subject_id,
        points,
        start,
        end,
        max_gap_seconds=max_gap_seconds,
        moving_threshold_mps=moving_threshold_mps,
    )
