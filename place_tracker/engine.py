"""Processing runs: unprocessed points -> stay clusters -> places and visits."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from place_tracker.clustering import ClusterParams, cluster_points
from place_tracker.models import (
    DEFAULT_BATCH_LIMIT,
    DEFAULT_MAX_GAP_MINUTES,
    DEFAULT_MIN_STAY_MINUTES,
    DEFAULT_RADIUS_M,
    StayCluster,
)
from place_tracker.places import PlaceMatcher
from place_tracker.store import TrackStore
from place_tracker.visits import VisitRecorder

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EngineParams:
    """Parameters of a processing run."""

    min_stay_minutes: float = DEFAULT_MIN_STAY_MINUTES
    cluster_radius_m: float = DEFAULT_RADIUS_M
    max_gap_minutes: float = DEFAULT_MAX_GAP_MINUTES
    # Independent from the clustering radius.
    match_radius_m: float = DEFAULT_RADIUS_M
    batch_limit: int = DEFAULT_BATCH_LIMIT

    @property
    def cluster_params(self) -> ClusterParams:
        return ClusterParams(radius_m=self.cluster_radius_m, max_gap_minutes=self.max_gap_minutes)


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Counters of one processing run."""

    subject_id: str
    points_seen: int = 0
    clusters: int = 0
    visits_recorded: int = 0
    visits_updated: int = 0
    places_created: int = 0
    points_assigned: int = 0
    points_discarded: int = 0
    # Points of a trailing cluster left for the next batch.
    points_deferred: int = 0

    def __add__(self, other: ProcessResult) -> ProcessResult:
        return ProcessResult(
            subject_id=self.subject_id,
            points_seen=self.points_seen + other.points_seen,
            clusters=self.clusters + other.clusters,
            visits_recorded=self.visits_recorded + other.visits_recorded,
            visits_updated=self.visits_updated + other.visits_updated,
            places_created=self.places_created + other.places_created,
            points_assigned=self.points_assigned + other.points_assigned,
            points_discarded=self.points_discarded + other.points_discarded,
            points_deferred=other.points_deferred,
        )


class SubjectLocks:
    """One mutex per subject id; different subjects never block each other."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, subject_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(subject_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[subject_id] = lock
            return lock

    @contextmanager
    def hold(self, subject_id: str) -> Iterator[None]:
        lock = self.get(subject_id)
        with lock:
            yield


# Shared by every engine in the process unless a caller passes its own.
_DEFAULT_LOCKS = SubjectLocks()


class PlaceDetectionEngine:
    """Turn a subject's unprocessed backlog into places and visits.

    Runs are synchronous. Runs for the same subject are serialized through
    :class:`SubjectLocks` (process-wide by default, so separate engine
    instances still exclude each other); runs for different subjects proceed
    in parallel. Each cluster commits in its own transaction (place, visit,
    point assignment and counter together). A persistence error aborts the
    run and leaves the failing cluster's points unprocessed for the next
    trigger.

    When a batch comes back full, its last cluster may continue past the
    batch. That cluster is left unprocessed so the next batch starts with it,
    and a stay is never cut at a batch boundary.
    """

    def __init__(
        self,
        store: TrackStore,
        params: EngineParams | None = None,
        locks: SubjectLocks | None = None,
    ) -> None:
        self._store = store
        self._params = params or EngineParams()
        self._locks = locks if locks is not None else _DEFAULT_LOCKS
        self._matcher = PlaceMatcher(store, match_radius_m=self._params.match_radius_m)
        self._recorder = VisitRecorder(store)

    @property
    def params(self) -> EngineParams:
        return self._params

    def process_unprocessed(self, subject_id: str) -> ProcessResult:
        """Process one batch of unprocessed points."""

        with self._locks.hold(subject_id):
            return self._run_batch(subject_id)

    def process_all(self, subject_id: str) -> ProcessResult:
        """Repeat batches until no unprocessed points remain."""

        total = ProcessResult(subject_id=subject_id)
        with self._locks.hold(subject_id):
            while True:
                res = self._run_batch(subject_id)
                total = total + res
                if not res.points_deferred:
                    return total

    def _fetch_clusters(self, subject_id: str) -> tuple[int, list[StayCluster], bool]:
        """Return (points fetched, clusters, batch was full).

        A full batch holding a single cluster is widened until the cluster
        closes or the backlog runs out, so every full batch has at least one
        closed cluster to commit.
        """

        params = self._params
        limit = params.batch_limit
        while True:
            points = self._store.unprocessed_points(subject_id, limit)
            clusters = cluster_points(points, params.cluster_params)
            full = len(points) >= limit
            if not full or len(clusters) > 1:
                return len(points), clusters, full
            logger.debug("%s: 批次内只有一个未结束的停留，扩大到 %s 个点", subject_id, limit * 2)
            limit *= 2

    def _run_batch(self, subject_id: str) -> ProcessResult:
        params = self._params
        fetched, clusters, full = self._fetch_clusters(subject_id)
        if not fetched:
            return ProcessResult(subject_id=subject_id)

        deferred = 0
        if full:
            deferred = len(clusters[-1])
            clusters = clusters[:-1]
        logger.info("处理 %s 的 %s 个未处理点", subject_id, fetched - deferred)
        logger.debug("找到 %s 个候选停留，%s 个点留到下一批", len(clusters), deferred)

        recorded = updated = created = assigned = discarded = 0
        for cluster in clusters:
            with self._store.transaction() as session:
                if cluster.duration_minutes >= params.min_stay_minutes:
                    place, is_new = self._matcher.match(subject_id, cluster, session=session)
                    res = self._recorder.record(subject_id, place, cluster, session=session)
                    created += int(is_new)
                    recorded += int(res.inserted)
                    updated += int(not res.inserted)
                    assigned += res.points_assigned
                else:
                    discarded += self._recorder.discard(cluster, session=session)

        result = ProcessResult(
            subject_id=subject_id,
            points_seen=fetched - deferred,
            clusters=len(clusters),
            visits_recorded=recorded,
            visits_updated=updated,
            places_created=created,
            points_assigned=assigned,
            points_discarded=discarded,
            points_deferred=deferred,
        )
        logger.info(
            "%s: %s 个点 -> %s 个停留，新 visit=%s，更新 visit=%s，新地点=%s",
            subject_id,
            result.points_seen,
            result.clusters,
            result.visits_recorded,
            result.visits_updated,
            result.places_created,
        )
        return result
