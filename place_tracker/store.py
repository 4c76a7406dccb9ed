"""Relational storage for points, places and visits (SQLAlchemy).

The store is the access contract the processing engine needs:

    - unprocessed point selection and "mark processed" mutation
    - nearest-place lookup within a radius
    - place creation, labeling and enrichment merge
    - visit upsert keyed by (subject, place, arrival) and counter increment

Every method accepts an optional ``session``. Pass the session yielded by
:meth:`TrackStore.transaction` to make several calls commit (or roll back)
together; without one, each call runs in its own short transaction.
Persistence errors are SQLAlchemy exceptions and are not caught here.

Note:
    There is no spatial index. Radius queries prefilter on a lat/lon bounding
    box (indexed columns) and then check the exact haversine distance.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Final, Iterable, Iterator, Sequence

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from place_tracker.geo import bounding_box, haversine_m
from place_tracker.models import (
    DEFAULT_BATCH_LIMIT,
    DEFAULT_RADIUS_M,
    LocationPoint,
    Place,
    PlaceDetails,
    Visit,
)
from place_tracker.timeutils import to_utc

logger = logging.getLogger(__name__)

DEFAULT_DB_URL: Final[str] = "sqlite:///place_tracker.db"
_IN_CHUNK: Final[int] = 500


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Store instants as naive UTC, return them timezone-aware."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return to_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return to_utc(value)


class Base(DeclarativeBase):
    pass


class PointRow(Base):
    __tablename__ = "location_points"
    __table_args__ = (
        UniqueConstraint("subject_id", "timestamp", "latitude", "longitude", name="uq_point_identity"),
        Index("ix_points_subject_time", "subject_id", "timestamp"),
        Index("ix_points_subject_place", "subject_id", "place_id"),
        Index("ix_points_subject_coords", "subject_id", "latitude", "longitude"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy_m: Mapped[float | None] = mapped_column(Float, default=None)
    altitude_m: Mapped[float | None] = mapped_column(Float, default=None)
    altitude_accuracy_m: Mapped[float | None] = mapped_column(Float, default=None)
    speed_mps: Mapped[float | None] = mapped_column(Float, default=None)
    course_deg: Mapped[float | None] = mapped_column(Float, default=None)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    local_timezone: Mapped[str | None] = mapped_column(String(64), default=None)
    device_model: Mapped[str | None] = mapped_column(String(255), default=None)
    device_os: Mapped[str | None] = mapped_column(String(255), default=None)
    app_version: Mapped[str | None] = mapped_column(String(64), default=None)
    place_id: Mapped[int | None] = mapped_column(ForeignKey("places.id"), default=None)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class PlaceRow(Base):
    __tablename__ = "places"
    __table_args__ = (
        Index("ix_places_subject_coords", "subject_id", "latitude", "longitude"),
        Index("ix_places_subject_label", "subject_id", "label"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    label: Mapped[str | None] = mapped_column(String(255), default=None)
    category: Mapped[str | None] = mapped_column(String(100), default=None)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    radius_m: Mapped[float] = mapped_column(Float, nullable=False, default=DEFAULT_RADIUS_M)
    address: Mapped[str | None] = mapped_column(Text, default=None)
    provider_place_id: Mapped[str | None] = mapped_column(String(255), default=None)
    provider_name: Mapped[str | None] = mapped_column(Text, default=None)
    provider_types: Mapped[list[str] | None] = mapped_column(JSON, default=None)
    visit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)


class VisitRow(Base):
    __tablename__ = "place_visits"
    __table_args__ = (
        UniqueConstraint("subject_id", "place_id", "arrival", name="uq_visit_identity"),
        Index("ix_visits_subject_arrival", "subject_id", "arrival"),
        Index("ix_visits_place", "place_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    place_id: Mapped[int] = mapped_column(ForeignKey("places.id", ondelete="CASCADE"), nullable=False)
    arrival: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    departure: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, default=None)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


def _point_from_row(row: PointRow) -> LocationPoint:
    return LocationPoint(
        id=row.id,
        subject_id=row.subject_id,
        latitude=row.latitude,
        longitude=row.longitude,
        timestamp=row.timestamp,
        accuracy_m=row.accuracy_m,
        altitude_m=row.altitude_m,
        altitude_accuracy_m=row.altitude_accuracy_m,
        speed_mps=row.speed_mps,
        course_deg=row.course_deg,
        local_timezone=row.local_timezone,
        device_model=row.device_model,
        device_os=row.device_os,
        app_version=row.app_version,
        place_id=row.place_id,
        processed_at=row.processed_at,
    )


def _place_from_row(row: PlaceRow) -> Place:
    return Place(
        id=row.id,
        subject_id=row.subject_id,
        latitude=row.latitude,
        longitude=row.longitude,
        radius_m=row.radius_m,
        label=row.label,
        category=row.category,
        address=row.address,
        provider_place_id=row.provider_place_id,
        provider_name=row.provider_name,
        provider_types=tuple(row.provider_types or ()),
        visit_count=row.visit_count,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _visit_from_row(row: VisitRow) -> Visit:
    return Visit(
        id=row.id,
        subject_id=row.subject_id,
        place_id=row.place_id,
        arrival=row.arrival,
        departure=row.departure,
        duration_minutes=row.duration_minutes,
        created_at=row.created_at,
    )


def _chunks(items: Sequence, size: int) -> Iterator[Sequence]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class TrackStore:
    """Access layer over the points/places/visits tables."""

    def __init__(self, url: str = DEFAULT_DB_URL, *, engine: Engine | None = None, echo: bool = False) -> None:
        self._engine = engine if engine is not None else create_engine(url, echo=echo)
        Base.metadata.create_all(self._engine)
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)

    @classmethod
    def in_memory(cls) -> TrackStore:
        """A private SQLite database living as long as the store."""

        engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        return cls(engine=engine)

    def close(self) -> None:
        self._engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session committed on success and rolled back on error."""

        with self._sessions.begin() as session:
            yield session

    @contextmanager
    def _scope(self, session: Session | None) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        with self.transaction() as own:
            yield own

    # ------------------------------------------------------------------ points

    def insert_points(self, points: Iterable[LocationPoint], *, session: Session | None = None) -> int:
        """Insert points, skipping duplicates of (subject, timestamp, lat, lon).

        Returns:
            Number of rows actually inserted.
        """

        fresh: dict[tuple[str, datetime, float, float], LocationPoint] = {}
        for p in points:
            fresh.setdefault(p.identity, p)
        if not fresh:
            return 0

        with self._scope(session) as s:
            by_subject: dict[str, list[datetime]] = {}
            for subject_id, ts, _, _ in fresh:
                by_subject.setdefault(subject_id, []).append(ts)

            existing: set[tuple[str, datetime, float, float]] = set()
            for subject_id, stamps in by_subject.items():
                for chunk in _chunks(sorted(set(stamps)), _IN_CHUNK):
                    rows = s.execute(
                        select(PointRow.timestamp, PointRow.latitude, PointRow.longitude).where(
                            PointRow.subject_id == subject_id,
                            PointRow.timestamp.in_(chunk),
                        )
                    )
                    existing.update((subject_id, ts, lat, lon) for ts, lat, lon in rows)

            inserted = 0
            for key, p in fresh.items():
                if key in existing:
                    continue
                s.add(
                    PointRow(
                        subject_id=p.subject_id,
                        latitude=p.latitude,
                        longitude=p.longitude,
                        timestamp=key[1],
                        accuracy_m=p.accuracy_m,
                        altitude_m=p.altitude_m,
                        altitude_accuracy_m=p.altitude_accuracy_m,
                        speed_mps=p.speed_mps,
                        course_deg=p.course_deg,
                        local_timezone=p.local_timezone,
                        device_model=p.device_model,
                        device_os=p.device_os,
                        app_version=p.app_version,
                    )
                )
                inserted += 1
            s.flush()

        skipped = len(fresh) - inserted
        if skipped:
            logger.debug("跳过 %s 个重复点", skipped)
        return inserted

    def unprocessed_points(
        self,
        subject_id: str,
        limit: int = DEFAULT_BATCH_LIMIT,
        *,
        session: Session | None = None,
    ) -> list[LocationPoint]:
        """Points not yet consumed by a processing run, oldest first."""

        with self._scope(session) as s:
            rows = s.scalars(
                select(PointRow)
                .where(
                    PointRow.subject_id == subject_id,
                    PointRow.place_id.is_(None),
                    PointRow.processed_at.is_(None),
                )
                .order_by(PointRow.timestamp, PointRow.id)
                .limit(limit)
            )
            return [_point_from_row(r) for r in rows]

    def assign_place(self, point_id: int, place_id: int, *, session: Session | None = None) -> None:
        """Set a point's place reference. Re-assigning the same place is a no-op."""

        self.assign_points([point_id], place_id, session=session)

    def assign_points(self, point_ids: Iterable[int], place_id: int, *, session: Session | None = None) -> int:
        """Assign many points to one place; returns how many rows changed."""

        ids = sorted(set(point_ids))
        if not ids:
            return 0
        now = _utcnow()
        changed = 0
        with self._scope(session) as s:
            for chunk in _chunks(ids, _IN_CHUNK):
                res = s.execute(
                    update(PointRow)
                    .where(
                        PointRow.id.in_(chunk),
                        (PointRow.place_id.is_(None)) | (PointRow.place_id != place_id),
                    )
                    .values(place_id=place_id)
                )
                changed += res.rowcount or 0
                s.execute(
                    update(PointRow)
                    .where(PointRow.id.in_(chunk), PointRow.processed_at.is_(None))
                    .values(processed_at=now)
                )
        return changed

    def mark_processed(self, point_ids: Iterable[int], *, session: Session | None = None) -> int:
        """Mark points consumed without assigning a place ("processed, not a place")."""

        ids = sorted(set(point_ids))
        if not ids:
            return 0
        now = _utcnow()
        changed = 0
        with self._scope(session) as s:
            for chunk in _chunks(ids, _IN_CHUNK):
                res = s.execute(
                    update(PointRow)
                    .where(PointRow.id.in_(chunk), PointRow.processed_at.is_(None))
                    .values(processed_at=now)
                )
                changed += res.rowcount or 0
        return changed

    def reset_processing(
        self,
        subject_id: str,
        *,
        drop_visits: bool = False,
        session: Session | None = None,
    ) -> int:
        """Clear place references so the next run reprocesses every point.

        Places and labels are kept. With ``drop_visits`` the subject's visits
        are deleted in the same transaction and visit counters recomputed, so
        a run with different parameters rebuilds visits from scratch instead
        of leaving old intervals beside new ones. Without it, visits stay and
        a rerun with the same parameters updates them in place.
        """

        with self._scope(session) as s:
            res = s.execute(
                update(PointRow)
                .where(
                    PointRow.subject_id == subject_id,
                    (PointRow.place_id.is_not(None)) | (PointRow.processed_at.is_not(None)),
                )
                .values(place_id=None, processed_at=None)
            )
            if drop_visits:
                dropped = s.execute(delete(VisitRow).where(VisitRow.subject_id == subject_id))
                s.execute(
                    update(PlaceRow)
                    .where(PlaceRow.subject_id == subject_id)
                    .values(
                        visit_count=select(func.count(VisitRow.id))
                        .where(VisitRow.place_id == PlaceRow.id)
                        .scalar_subquery()
                    )
                    .execution_options(synchronize_session=False)
                )
                logger.info("%s: 已删除 %s 个 visit，等待重建", subject_id, dropped.rowcount or 0)
            return res.rowcount or 0

    def points_in_window(
        self,
        subject_id: str,
        start: datetime,
        end: datetime,
        limit: int | None = None,
        *,
        session: Session | None = None,
    ) -> list[LocationPoint]:
        """Points captured in [start, end], oldest first."""

        stmt = (
            select(PointRow)
            .where(
                PointRow.subject_id == subject_id,
                PointRow.timestamp >= to_utc(start),
                PointRow.timestamp <= to_utc(end),
            )
            .order_by(PointRow.timestamp, PointRow.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._scope(session) as s:
            return [_point_from_row(r) for r in s.scalars(stmt)]

    def latest_point(self, subject_id: str, *, session: Session | None = None) -> LocationPoint | None:
        with self._scope(session) as s:
            row = s.scalars(
                select(PointRow)
                .where(PointRow.subject_id == subject_id)
                .order_by(PointRow.timestamp.desc(), PointRow.id.desc())
                .limit(1)
            ).first()
            return _point_from_row(row) if row is not None else None

    def point_at_time(
        self,
        subject_id: str,
        when: datetime,
        tolerance: timedelta = timedelta(minutes=10),
        *,
        session: Session | None = None,
    ) -> LocationPoint | None:
        """The sample closest to ``when`` within ``tolerance``, if any."""

        when = to_utc(when)
        candidates = self.points_in_window(subject_id, when - tolerance, when + tolerance, session=session)
        if not candidates:
            return None
        return min(candidates, key=lambda p: abs((p.timestamp - when).total_seconds()))

    def points_near(
        self,
        subject_id: str,
        latitude: float,
        longitude: float,
        radius_m: float,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        *,
        session: Session | None = None,
    ) -> list[tuple[LocationPoint, float]]:
        """Points within radius_m of a coordinate, nearest first, with distances."""

        stmt = select(PointRow).where(PointRow.subject_id == subject_id)
        stmt = stmt.where(*_bbox_clauses(PointRow, latitude, longitude, radius_m))
        if start is not None:
            stmt = stmt.where(PointRow.timestamp >= to_utc(start))
        if end is not None:
            stmt = stmt.where(PointRow.timestamp <= to_utc(end))

        with self._scope(session) as s:
            hits: list[tuple[LocationPoint, float]] = []
            for row in s.scalars(stmt):
                d = haversine_m(latitude, longitude, row.latitude, row.longitude)
                if d <= radius_m:
                    hits.append((_point_from_row(row), d))
        hits.sort(key=lambda h: (h[1], h[0].timestamp))
        return hits[:limit]

    # ------------------------------------------------------------------ places

    def find_place_near(
        self,
        subject_id: str,
        latitude: float,
        longitude: float,
        radius_m: float,
        *,
        session: Session | None = None,
    ) -> Place | None:
        """Nearest place whose centroid lies within radius_m, or None."""

        stmt = select(PlaceRow).where(
            PlaceRow.subject_id == subject_id,
            *_bbox_clauses(PlaceRow, latitude, longitude, radius_m),
        )
        best: tuple[float, int, PlaceRow] | None = None
        with self._scope(session) as s:
            for row in s.scalars(stmt):
                d = haversine_m(latitude, longitude, row.latitude, row.longitude)
                if d > radius_m:
                    continue
                if best is None or (d, row.id) < best[:2]:
                    best = (d, row.id, row)
            return _place_from_row(best[2]) if best is not None else None

    def create_place(
        self,
        subject_id: str,
        latitude: float,
        longitude: float,
        radius_m: float = DEFAULT_RADIUS_M,
        *,
        label: str | None = None,
        category: str | None = None,
        session: Session | None = None,
    ) -> Place:
        with self._scope(session) as s:
            row = PlaceRow(
                subject_id=subject_id,
                latitude=latitude,
                longitude=longitude,
                radius_m=radius_m,
                label=label,
                category=category,
                visit_count=0,
            )
            s.add(row)
            s.flush()
            return _place_from_row(row)

    def get_place(self, subject_id: str, place_id: int, *, session: Session | None = None) -> Place | None:
        with self._scope(session) as s:
            row = s.get(PlaceRow, place_id)
            if row is None or row.subject_id != subject_id:
                return None
            return _place_from_row(row)

    def list_places(self, subject_id: str, *, session: Session | None = None) -> list[Place]:
        """All places of a subject, most visited first, then by label."""

        with self._scope(session) as s:
            places = [_place_from_row(r) for r in s.scalars(select(PlaceRow).where(PlaceRow.subject_id == subject_id))]
        places.sort(key=lambda p: (-p.visit_count, p.label is None, p.label or "", p.id))
        return places

    def find_place_by_label(self, subject_id: str, label: str, *, session: Session | None = None) -> Place | None:
        with self._scope(session) as s:
            row = s.scalars(
                select(PlaceRow)
                .where(PlaceRow.subject_id == subject_id, PlaceRow.label == label)
                .order_by(PlaceRow.visit_count.desc(), PlaceRow.id)
                .limit(1)
            ).first()
            return _place_from_row(row) if row is not None else None

    def label_place(
        self,
        subject_id: str,
        place_id: int,
        label: str,
        category: str | None = None,
        *,
        session: Session | None = None,
    ) -> Place | None:
        """Set a human label (and optionally category). None if no such place."""

        with self._scope(session) as s:
            row = s.get(PlaceRow, place_id)
            if row is None or row.subject_id != subject_id:
                return None
            row.label = label
            if category is not None:
                row.category = category
            row.updated_at = _utcnow()
            s.flush()
            return _place_from_row(row)

    def merge_place_details(
        self,
        subject_id: str,
        place_id: int,
        details: PlaceDetails,
        *,
        session: Session | None = None,
    ) -> Place | None:
        """Merge enrichment suggestions into a place.

        Label and category only fill empty fields; an existing (human) value
        always wins. Address and provider fields are replaced whenever the
        suggestion carries a value.
        """

        with self._scope(session) as s:
            row = s.get(PlaceRow, place_id)
            if row is None or row.subject_id != subject_id:
                return None
            if details.label and not row.label:
                row.label = details.label
            if details.category and not row.category:
                row.category = details.category
            if details.address:
                row.address = details.address
            if details.provider_place_id:
                row.provider_place_id = details.provider_place_id
            if details.provider_name:
                row.provider_name = details.provider_name
            if details.provider_types is not None:
                row.provider_types = list(details.provider_types)
            row.updated_at = _utcnow()
            s.flush()
            return _place_from_row(row)

    # ------------------------------------------------------------------ visits

    def upsert_visit(
        self,
        subject_id: str,
        place_id: int,
        arrival: datetime,
        departure: datetime | None,
        duration_minutes: int | None,
        *,
        session: Session | None = None,
    ) -> tuple[Visit, bool]:
        """Insert a visit, or update departure/duration of the same (subject, place, arrival).

        Returns:
            (visit, inserted) where inserted is False on the conflict-update path.
        """

        arrival = to_utc(arrival)
        departure = to_utc(departure) if departure is not None else None
        if departure is not None and departure < arrival:
            raise ValueError(f"departure {departure.isoformat()} 早于 arrival {arrival.isoformat()}")

        with self._scope(session) as s:
            row = s.scalars(
                select(VisitRow).where(
                    VisitRow.subject_id == subject_id,
                    VisitRow.place_id == place_id,
                    VisitRow.arrival == arrival,
                )
            ).first()
            inserted = row is None
            if row is None:
                row = VisitRow(
                    subject_id=subject_id,
                    place_id=place_id,
                    arrival=arrival,
                    departure=departure,
                    duration_minutes=duration_minutes,
                )
                s.add(row)
            else:
                row.departure = departure
                row.duration_minutes = duration_minutes
            s.flush()
            return _visit_from_row(row), inserted

    def increment_visit_count(self, place_id: int, *, session: Session | None = None) -> None:
        with self._scope(session) as s:
            s.execute(
                update(PlaceRow)
                .where(PlaceRow.id == place_id)
                .values(visit_count=PlaceRow.visit_count + 1, updated_at=_utcnow())
            )

    def visits(
        self,
        subject_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        place_id: int | None = None,
        *,
        session: Session | None = None,
    ) -> list[Visit]:
        """Visits of a subject filtered on arrival time, newest first."""

        stmt = select(VisitRow).where(VisitRow.subject_id == subject_id)
        if start is not None:
            stmt = stmt.where(VisitRow.arrival >= to_utc(start))
        if end is not None:
            stmt = stmt.where(VisitRow.arrival <= to_utc(end))
        if place_id is not None:
            stmt = stmt.where(VisitRow.place_id == place_id)
        stmt = stmt.order_by(VisitRow.arrival.desc(), VisitRow.id.desc())
        with self._scope(session) as s:
            return [_visit_from_row(r) for r in s.scalars(stmt)]

    def count_visits(self, place_id: int, *, session: Session | None = None) -> int:
        with self._scope(session) as s:
            return int(s.scalar(select(func.count(VisitRow.id)).where(VisitRow.place_id == place_id)) or 0)


def _bbox_clauses(row_cls, latitude: float, longitude: float, radius_m: float) -> list:
    min_lat, max_lat, min_lon, max_lon = bounding_box(latitude, longitude, radius_m)
    clauses = [row_cls.latitude >= min_lat, row_cls.latitude <= max_lat]
    # a box crossing the antimeridian cannot be expressed as one BETWEEN
    if min_lon >= -180.0 and max_lon <= 180.0:
        clauses += [row_cls.longitude >= min_lon, row_cls.longitude <= max_lon]
    return clauses
