"""Tests for the storage access contract."""

from __future__ import annotations

from datetime import UTC, timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from place_tracker.models import LocationPoint, PlaceDetails

from conftest import BASE, SUBJECT, north_of


def test_insert_skips_duplicates(store, point) -> None:
    """Same (subject, timestamp, lat, lon) is stored once."""
    pts = [point(40.0, -73.0, 0), point(40.0, -73.0, 1)]
    assert store.insert_points(pts) == 2
    assert store.insert_points(pts + [point(40.0, -73.0, 2)]) == 1
    assert store.insert_points([point(40.0, -73.0, 3)] * 2) == 1
    assert len(store.points_in_window(SUBJECT, BASE, BASE + timedelta(hours=1))) == 4


def test_same_sample_for_other_subject_is_not_duplicate(store, point) -> None:
    """Uniqueness is scoped by subject."""
    assert store.insert_points([point(40.0, -73.0, 0)]) == 1
    assert store.insert_points([point(40.0, -73.0, 0, subject="other")]) == 1


def test_naive_and_aware_copies_share_identity(store, point) -> None:
    """Naive timestamps are UTC, so both copies are one sample."""
    aware = point(40.0, -73.0, 0)
    naive = LocationPoint(SUBJECT, 40.0, -73.0, BASE.replace(tzinfo=None))
    assert aware.identity == naive.identity
    assert store.insert_points([aware, naive]) == 1
    assert store.insert_points([naive]) == 0


def test_timestamps_come_back_aware_utc(store, point) -> None:
    """Stored instants round-trip as timezone-aware UTC."""
    store.insert_points([point(40.0, -73.0, 0.5)])
    (p,) = store.unprocessed_points(SUBJECT)
    assert p.timestamp == BASE + timedelta(seconds=30)
    assert p.timestamp.tzinfo is not None
    assert p.timestamp.utcoffset() == timedelta(0)
    assert p.id is not None


def test_unprocessed_points_oldest_first_and_limited(store, point) -> None:
    """Batch is ordered by time and capped."""
    store.insert_points([point(40.0, -73.0, m) for m in (5, 1, 3, 2, 4)])
    batch = store.unprocessed_points(SUBJECT, limit=3)
    assert [p.timestamp for p in batch] == [BASE + timedelta(minutes=m) for m in (1, 2, 3)]


def test_assign_and_mark_remove_points_from_backlog(store, point) -> None:
    """Assigned and marked points are no longer unprocessed."""
    store.insert_points([point(40.0, -73.0, m) for m in range(4)])
    a, b, c, d = store.unprocessed_points(SUBJECT)
    place = store.create_place(SUBJECT, 40.0, -73.0)

    store.assign_place(a.id, place.id)
    assert store.assign_points([a.id, b.id], place.id) == 1
    assert store.mark_processed([c.id]) == 1
    assert [p.id for p in store.unprocessed_points(SUBJECT)] == [d.id]

    assigned = {p.id: p for p in store.points_in_window(SUBJECT, BASE, BASE + timedelta(hours=1))}
    assert assigned[a.id].place_id == place.id
    assert assigned[a.id].processed_at is not None
    assert assigned[c.id].place_id is None
    assert assigned[c.id].processed_at is not None


def test_assign_place_is_idempotent(store, point) -> None:
    """Re-assigning the same place changes nothing."""
    store.insert_points([point(40.0, -73.0, 0)])
    (p,) = store.unprocessed_points(SUBJECT)
    place = store.create_place(SUBJECT, 40.0, -73.0)
    assert store.assign_points([p.id], place.id) == 1
    assert store.assign_points([p.id], place.id) == 0


def test_reset_processing_restores_backlog(store, point) -> None:
    """Reset clears place references for the subject only."""
    store.insert_points([point(40.0, -73.0, 0), point(40.0, -73.0, 0, subject="other")])
    mine = store.unprocessed_points(SUBJECT)
    theirs = store.unprocessed_points("other")
    store.mark_processed([mine[0].id, theirs[0].id])

    assert store.reset_processing(SUBJECT) == 1
    assert len(store.unprocessed_points(SUBJECT)) == 1
    assert store.unprocessed_points("other") == []


def test_reset_can_drop_visits_and_recount(store) -> None:
    """drop_visits removes the subject's visits and zeroes its counters only."""
    mine = store.create_place(SUBJECT, 40.0, -73.0, label="Home")
    theirs = store.create_place("other", 40.0, -73.0)
    for place in (mine, theirs):
        store.upsert_visit(place.subject_id, place.id, BASE, BASE + timedelta(minutes=9), 9)
        store.increment_visit_count(place.id)

    store.reset_processing(SUBJECT, drop_visits=True)

    assert store.visits(SUBJECT) == []
    kept = store.get_place(SUBJECT, mine.id)
    assert kept.visit_count == 0
    assert kept.label == "Home"
    assert store.get_place("other", theirs.id).visit_count == 1
    assert len(store.visits("other")) == 1


def test_find_place_near_returns_nearest_within_radius(store) -> None:
    """Nearest place within the radius wins; others are ignored."""
    far = store.create_place(SUBJECT, north_of(40.0, 45.0), -73.0)
    near = store.create_place(SUBJECT, north_of(40.0, 10.0), -73.0)
    store.create_place("other", 40.0, -73.0)

    assert store.find_place_near(SUBJECT, 40.0, -73.0, 50.0).id == near.id
    assert store.find_place_near(SUBJECT, north_of(40.0, 90.0), -73.0, 50.0).id == far.id
    assert store.find_place_near(SUBJECT, north_of(40.0, 200.0), -73.0, 50.0) is None


def test_points_near_sorted_by_distance(store, point) -> None:
    """Radius search returns distances, nearest first."""
    store.insert_points(
        [
            point(north_of(40.0, 80.0), -73.0, 0),
            point(north_of(40.0, 20.0), -73.0, 1),
            point(north_of(40.0, 500.0), -73.0, 2),
        ]
    )
    hits = store.points_near(SUBJECT, 40.0, -73.0, 100.0)
    assert [round(d) for _, d in hits] == [20, 80]
    assert store.points_near(SUBJECT, 40.0, -73.0, 100.0, start=BASE + timedelta(minutes=1), end=BASE + timedelta(minutes=1))[0][1] == pytest.approx(20.0)


def test_point_at_time_and_latest(store, point) -> None:
    """Closest sample within tolerance; latest by timestamp."""
    store.insert_points([point(40.0, -73.0, 0), point(41.0, -73.0, 30)])
    assert store.point_at_time(SUBJECT, BASE + timedelta(minutes=4)).latitude == 40.0
    assert store.point_at_time(SUBJECT, BASE + timedelta(minutes=15)) is None
    assert store.latest_point(SUBJECT).latitude == 41.0
    assert store.latest_point("nobody") is None


def test_upsert_visit_updates_on_conflict(store) -> None:
    """Second upsert with the same arrival updates instead of inserting."""
    place = store.create_place(SUBJECT, 40.0, -73.0)
    v1, inserted1 = store.upsert_visit(SUBJECT, place.id, BASE, BASE + timedelta(minutes=9), 9)
    v2, inserted2 = store.upsert_visit(SUBJECT, place.id, BASE, BASE + timedelta(minutes=12), 12)
    assert (inserted1, inserted2) == (True, False)
    assert v1.id == v2.id
    assert v2.duration_minutes == 12
    assert store.count_visits(place.id) == 1


def test_upsert_visit_rejects_departure_before_arrival(store) -> None:
    """arrival <= departure."""
    place = store.create_place(SUBJECT, 40.0, -73.0)
    with pytest.raises(ValueError):
        store.upsert_visit(SUBJECT, place.id, BASE, BASE - timedelta(minutes=1), 0)


def test_transaction_rolls_back_together(store) -> None:
    """A failure inside one transaction discards all of its writes."""
    with pytest.raises(RuntimeError):
        with store.transaction() as session:
            place = store.create_place(SUBJECT, 40.0, -73.0, session=session)
            store.upsert_visit(SUBJECT, place.id, BASE, BASE, 0, session=session)
            raise RuntimeError("boom")
    assert store.list_places(SUBJECT) == []
    assert store.visits(SUBJECT) == []


def test_unique_visit_constraint_enforced(store) -> None:
    """The database itself refuses a duplicate visit key."""
    from place_tracker.store import VisitRow

    place = store.create_place(SUBJECT, 40.0, -73.0)
    store.upsert_visit(SUBJECT, place.id, BASE, BASE, 0)
    with pytest.raises(SQLAlchemyError):
        with store.transaction() as session:
            session.add(VisitRow(subject_id=SUBJECT, place_id=place.id, arrival=BASE.astimezone(UTC)))


def test_visits_filters_and_order(store) -> None:
    """Newest first, filtered on arrival and place."""
    a = store.create_place(SUBJECT, 40.0, -73.0)
    b = store.create_place(SUBJECT, 41.0, -73.0)
    for day, place in enumerate([a, b, a]):
        arrival = BASE + timedelta(days=day)
        store.upsert_visit(SUBJECT, place.id, arrival, arrival + timedelta(minutes=10), 10)

    assert [v.arrival for v in store.visits(SUBJECT)] == [BASE + timedelta(days=d) for d in (2, 1, 0)]
    assert len(store.visits(SUBJECT, place_id=a.id)) == 2
    assert len(store.visits(SUBJECT, start=BASE + timedelta(hours=1))) == 2
    assert len(store.visits(SUBJECT, end=BASE)) == 1


def test_increment_and_list_places_order(store) -> None:
    """Most visited first, then label."""
    a = store.create_place(SUBJECT, 40.0, -73.0)
    b = store.create_place(SUBJECT, 41.0, -73.0)
    store.increment_visit_count(b.id)
    store.label_place(SUBJECT, a.id, "Home")
    assert [p.id for p in store.list_places(SUBJECT)] == [b.id, a.id]
    assert store.get_place(SUBJECT, b.id).visit_count == 1
    assert store.get_place("other", b.id) is None


def test_label_keeps_category_unless_given(store) -> None:
    """Relabeling without a category leaves it alone."""
    place = store.create_place(SUBJECT, 40.0, -73.0, category="work")
    assert store.label_place(SUBJECT, place.id, "Office").category == "work"
    assert store.label_place(SUBJECT, place.id, "Gym", "gym").category == "gym"
    assert store.find_place_by_label(SUBJECT, "Gym").id == place.id
    assert store.label_place(SUBJECT, 999, "x") is None


def test_merge_place_details_never_overwrites_label(store) -> None:
    """Suggestions fill gaps; provider fields refresh."""
    place = store.create_place(SUBJECT, 40.0, -73.0)
    store.label_place(SUBJECT, place.id, "Home")
    merged = store.merge_place_details(
        SUBJECT,
        place.id,
        PlaceDetails(
            label="Some Building",
            category="home",
            address="1 Main St",
            provider_place_id="way/1",
            provider_name="Some Building",
            provider_types=("building", "residential"),
        ),
    )
    assert merged.label == "Home"
    assert merged.category == "home"
    assert merged.address == "1 Main St"
    assert merged.provider_types == ("building", "residential")

    merged = store.merge_place_details(SUBJECT, place.id, PlaceDetails(category="other", address="2 Main St"))
    assert merged.category == "home"
    assert merged.address == "2 Main St"
    assert merged.provider_place_id == "way/1"
