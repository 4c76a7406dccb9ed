"""Place matching and place registry queries."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from place_tracker.errors import PlaceNotFoundError
from place_tracker.models import DEFAULT_RADIUS_M, Place, StayCluster
from place_tracker.store import TrackStore

logger = logging.getLogger(__name__)


class PlaceMatcher:
    """Match a stay cluster to an existing place, or register a new one.

    A matched place keeps its centroid and radius: a stable identity is
    preferred over following the drift of new clusters.
    """

    def __init__(
        self,
        store: TrackStore,
        match_radius_m: float = DEFAULT_RADIUS_M,
        default_radius_m: float = DEFAULT_RADIUS_M,
    ) -> None:
        self._store = store
        self._match_radius_m = match_radius_m
        self._default_radius_m = default_radius_m

    def match(self, subject_id: str, cluster: StayCluster, *, session: Session | None = None) -> tuple[Place, bool]:
        """Return (place, created)."""

        place = self._store.find_place_near(
            subject_id,
            cluster.latitude,
            cluster.longitude,
            self._match_radius_m,
            session=session,
        )
        if place is not None:
            return place, False

        place = self._store.create_place(
            subject_id,
            cluster.latitude,
            cluster.longitude,
            self._default_radius_m,
            session=session,
        )
        logger.info("新地点 #%s (%.5f, %.5f)", place.id, place.latitude, place.longitude)
        return place, True


def frequent_places(store: TrackStore, subject_id: str, limit: int | None = None) -> list[Place]:
    """Places ordered by visit count, most visited first."""

    places = store.list_places(subject_id)
    return places if limit is None else places[:limit]


def unlabeled_frequent_places(store: TrackStore, subject_id: str, min_visits: int = 3) -> list[Place]:
    """Places without a human label visited at least min_visits times."""

    return [p for p in store.list_places(subject_id) if not p.label and p.visit_count >= min_visits]


def resolve_place(
    store: TrackStore,
    subject_id: str,
    place_id: int | None = None,
    label: str | None = None,
) -> Place:
    """Look a place up by id, or by label when no id is given.

    Raises:
        PlaceNotFoundError: If nothing matches.
        ValueError: If neither id nor label is given.
    """

    if place_id is not None:
        place = store.get_place(subject_id, place_id)
        if place is None:
            raise PlaceNotFoundError(f"地点不存在：id={place_id}")
        return place
    if label:
        place = store.find_place_by_label(subject_id, label)
        if place is None:
            raise PlaceNotFoundError(f"地点不存在：label={label!r}")
        return place
    raise ValueError("需要 place_id 或 label")


def label_place(
    store: TrackStore,
    subject_id: str,
    place_id: int,
    label: str,
    category: str | None = None,
) -> Place:
    """Set a human label on a place. Does not touch clustering state."""

    label = label.strip()
    if not label:
        raise ValueError("label 不能为空")
    place = store.label_place(subject_id, place_id, label, category)
    if place is None:
        raise PlaceNotFoundError(f"地点不存在：id={place_id}")
    logger.info("地点 #%s 标注为 %r", place_id, label)
    return place
