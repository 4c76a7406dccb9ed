"""Stay clustering: split a time-ordered track into stay clusters."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from place_tracker.geo import distance_m
from place_tracker.models import DEFAULT_MAX_GAP_MINUTES, DEFAULT_RADIUS_M, LocationPoint, StayCluster
from place_tracker.timeutils import minutes_between


@dataclass(frozen=True, slots=True)
class ClusterParams:
    """Parameters controlling stay segmentation."""

    # Consecutive points farther apart than this start a new cluster.
    radius_m: float = DEFAULT_RADIUS_M
    # Consecutive points separated by a longer gap start a new cluster, so the
    # same cafe on two different days never merges into one stay.
    max_gap_minutes: float = DEFAULT_MAX_GAP_MINUTES


def links(prev: LocationPoint, cur: LocationPoint, params: ClusterParams) -> bool:
    """Whether two temporally adjacent points belong to the same stay."""

    if distance_m(prev, cur) > params.radius_m:
        return False
    return minutes_between(prev.timestamp, cur.timestamp) <= params.max_gap_minutes


def cluster_points(points: Sequence[LocationPoint], params: ClusterParams | None = None) -> list[StayCluster]:
    """Partition points into maximal stay clusters.

    A single linear pass over the points sorted by time: each point joins the
    current cluster when it is within ``radius_m`` of the *previous* point and
    no more than ``max_gap_minutes`` after it. Linking to the previous point
    rather than a centroid tolerates slow drift within a stay.

    Note:
        A brief excursion that leaves the radius and comes back splits the stay;
        it is not detected and re-merged.

    Args:
        points: Points of one subject (can be unsorted).
        params: Segmentation parameters.

    Returns:
        Clusters in time order. Every input point is in exactly one cluster.
    """

    if not points:
        return []
    params = params or ClusterParams()

    pts = sorted(points, key=lambda p: p.timestamp)

    clusters: list[StayCluster] = []
    current: list[LocationPoint] = [pts[0]]
    for prev, cur in zip(pts, pts[1:]):
        if links(prev, cur, params):
            current.append(cur)
        else:
            clusters.append(summarize(current))
            current = [cur]
    clusters.append(summarize(current))
    return clusters


def summarize(points: Sequence[LocationPoint]) -> StayCluster:
    """Build a cluster summary: mean centroid, first/last time, rounded minutes."""

    if not points:
        raise ValueError("cannot summarize an empty cluster")

    n = len(points)
    lat = sum(p.latitude for p in points) / n
    lon = sum(p.longitude for p in points) / n
    start = min(p.timestamp for p in points)
    end = max(p.timestamp for p in points)
    return StayCluster(
        latitude=lat,
        longitude=lon,
        points=tuple(points),
        start=start,
        end=end,
        duration_minutes=round(minutes_between(start, end)),
    )
