"""Visit recording, visit queries and reporting."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Sequence

from sqlalchemy.orm import Session

from place_tracker.models import Place, StayCluster, Visit
from place_tracker.places import resolve_place
from place_tracker.store import TrackStore
from place_tracker.timeutils import format_local

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RecordedVisit:
    visit: Visit
    inserted: bool
    points_assigned: int


class VisitRecorder:
    """Persist a confirmed stay cluster as a visit to a matched place.

    All writes go through the caller's session so that the visit upsert, the
    point assignment and the counter increment for one cluster commit together.
    """

    def __init__(self, store: TrackStore) -> None:
        self._store = store

    def record(self, subject_id: str, place: Place, cluster: StayCluster, *, session: Session) -> RecordedVisit:
        """Upsert the visit, assign member points, bump the counter on insert only.

        Re-recording the same stay (same place and arrival) updates departure
        and duration and leaves the visit counter alone.
        """

        visit, inserted = self._store.upsert_visit(
            subject_id,
            place.id,
            arrival=cluster.start,
            departure=cluster.end,
            duration_minutes=cluster.duration_minutes,
            session=session,
        )
        assigned = self._store.assign_points(_point_ids(cluster), place.id, session=session)
        if inserted:
            self._store.increment_visit_count(place.id, session=session)
        else:
            logger.debug("visit #%s 已存在，更新离开时间", visit.id)
        return RecordedVisit(visit=visit, inserted=inserted, points_assigned=assigned)

    def discard(self, cluster: StayCluster, *, session: Session) -> int:
        """Mark the points of a too-short cluster processed without a place."""

        return self._store.mark_processed(_point_ids(cluster), session=session)


def _point_ids(cluster: StayCluster) -> list[int]:
    return [p.id for p in cluster.points if p.id is not None]


def _format_hhmmss(seconds: float) -> str:
    s = int(round(seconds))
    h = s // 3600
    m = (s % 3600) // 60
    sec = s % 60
    return f"{h:02d}:{m:02d}:{sec:02d}"


@dataclass(frozen=True, slots=True)
class VisitsTotal:
    """Total duration summary."""

    visits: int
    total_seconds: float

    @property
    def total_hhmmss(self) -> str:
        return _format_hhmmss(self.total_seconds)


def sum_visits(visits: Iterable[Visit]) -> VisitsTotal:
    """Sum visit durations."""

    total = 0.0
    count = 0
    for v in visits:
        total += v.duration_seconds
        count += 1
    return VisitsTotal(visits=count, total_seconds=total)


@dataclass(frozen=True, slots=True)
class TimeAtPlace:
    place: Place
    start: datetime
    end: datetime
    total_visits: int
    total_minutes: int

    @property
    def total_hours(self) -> float:
        return self.total_minutes / 60.0

    @property
    def average_visit_minutes(self) -> float:
        if self.total_visits == 0:
            return 0.0
        return self.total_minutes / self.total_visits


def time_at_place(
    store: TrackStore,
    subject_id: str,
    start: datetime,
    end: datetime,
    *,
    place_id: int | None = None,
    label: str | None = None,
) -> TimeAtPlace:
    """Total time spent at one place for visits arriving in [start, end].

    Raises:
        PlaceNotFoundError: If the place cannot be resolved.
    """

    place = resolve_place(store, subject_id, place_id=place_id, label=label)
    visits = store.visits(subject_id, start, end, place_id=place.id)
    total = sum(v.duration_minutes or 0 for v in visits)
    return TimeAtPlace(place=place, start=start, end=end, total_visits=len(visits), total_minutes=total)


def write_visits_csv(
    visits: Sequence[Visit],
    out_path: str | Path,
    places: dict[int, Place] | None = None,
    tz_name: str | None = None,
) -> None:
    """Write visits to CSV, one row per visit."""

    places = places or {}
    p = Path(out_path)
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(
            f,
            fieldnames=[
                "visit_id",
                "place_id",
                "place_name",
                "arrival",
                "departure",
                "duration_minutes",
                "duration_hhmmss",
            ],
        )
        w.writeheader()
        for v in visits:
            place = places.get(v.place_id)
            w.writerow(
                {
                    "visit_id": v.id,
                    "place_id": v.place_id,
                    "place_name": place.display_name if place is not None else "",
                    "arrival": format_local(v.arrival, tz_name),
                    "departure": format_local(v.departure, tz_name) if v.departure is not None else "",
                    "duration_minutes": v.duration_minutes if v.duration_minutes is not None else "",
                    "duration_hhmmss": _format_hhmmss(v.duration_seconds),
                }
            )
