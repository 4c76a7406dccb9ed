"""Point ingestion: batch validation, storage and CSV import."""

from __future__ import annotations

import csv
import logging
import math
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence

from place_tracker.engine import PlaceDetectionEngine, ProcessResult
from place_tracker.errors import InvalidSampleError
from place_tracker.models import LocationPoint
from place_tracker.store import TrackStore
from place_tracker.timeutils import dt_from_epoch_ms, parse_dt, to_utc, tzinfo_from_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IngestResult:
    """Outcome of storing one upload batch."""

    received: int
    inserted: int
    # Set when processing was handed to an executor.
    future: Future[ProcessResult] | None = None
    # Set when processing ran inline.
    processed: ProcessResult | None = None

    @property
    def duplicates(self) -> int:
        return self.received - self.inserted


def _optional_float(sample: Mapping[str, Any], *names: str, signed: bool = False) -> float | None:
    for name in names:
        value = sample.get(name)
        if value is None or value == "":
            continue
        f = float(value)
        if not math.isfinite(f):
            raise ValueError(f"{name} 不是有限数值")
        # Devices report -1 for "not available".
        return f if signed or f >= 0 else None
    return None


def _required_coord(sample: Mapping[str, Any], name: str, bound: float) -> float:
    value = sample.get(name)
    if value is None or value == "":
        raise ValueError(f"缺少 {name}")
    if isinstance(value, bool):
        raise ValueError(f"{name} 类型无效")
    f = float(value)
    if not math.isfinite(f) or not -bound <= f <= bound:
        raise ValueError(f"{name} 超出范围：{value!r}")
    return f


def _timestamp(sample: Mapping[str, Any]) -> datetime:
    value = sample.get("timestamp")
    if value is None or value == "":
        raise ValueError("缺少 timestamp")
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # epoch milliseconds, as in track exports
        return dt_from_epoch_ms(value)
    text = str(value).strip()
    if text.isdigit():
        return dt_from_epoch_ms(int(text))
    return parse_dt(text)


def parse_sample(
    subject_id: str,
    sample: Mapping[str, Any],
    device: Mapping[str, Any] | None = None,
) -> LocationPoint:
    """Convert one raw upload sample to a LocationPoint.

    Raises:
        ValueError: If a required field is missing or malformed.
    """

    tz_label = sample.get("timezone") or sample.get("local_timezone") or None
    if tz_label is not None:
        tzinfo_from_name(str(tz_label))
    device = device or {}
    return LocationPoint(
        subject_id=subject_id,
        latitude=_required_coord(sample, "latitude", 90.0),
        longitude=_required_coord(sample, "longitude", 180.0),
        timestamp=_timestamp(sample),
        accuracy_m=_optional_float(sample, "accuracy", "horizontalAccuracy"),
        altitude_m=_optional_float(sample, "altitude", signed=True),
        altitude_accuracy_m=_optional_float(sample, "altitudeAccuracy", "verticalAccuracy"),
        speed_mps=_optional_float(sample, "speed"),
        course_deg=_optional_float(sample, "course"),
        local_timezone=str(tz_label) if tz_label is not None else None,
        device_model=device.get("model"),
        device_os=device.get("os"),
        app_version=device.get("appVersion") or device.get("app_version"),
    )


def parse_samples(
    subject_id: str,
    samples: Sequence[Mapping[str, Any]],
    device: Mapping[str, Any] | None = None,
) -> list[LocationPoint]:
    """Validate a whole batch. One bad sample rejects the batch.

    Raises:
        InvalidSampleError: Naming the first malformed sample.
    """

    if not subject_id:
        raise ValueError("subject_id 不能为空")
    points: list[LocationPoint] = []
    for i, sample in enumerate(samples):
        try:
            points.append(parse_sample(subject_id, sample, device))
        except (ValueError, TypeError) as exc:
            raise InvalidSampleError(i, str(exc)) from exc
    return points


def ingest_batch(
    store: TrackStore,
    subject_id: str,
    samples: Sequence[Mapping[str, Any]],
    device: Mapping[str, Any] | None = None,
    *,
    engine: PlaceDetectionEngine | None = None,
    executor: Executor | None = None,
) -> IngestResult:
    """Validate and store one upload batch, then trigger processing.

    With an ``engine`` and an ``executor`` processing is submitted to the
    executor and the returned future is in the result; with only an engine it
    runs inline. Without an engine nothing is processed.
    """

    points = parse_samples(subject_id, samples, device)
    inserted = store.insert_points(points)
    logger.info("%s: 收到 %s 个点，新写入 %s 个", subject_id, len(points), inserted)

    if engine is None:
        return IngestResult(received=len(points), inserted=inserted)
    if executor is not None:
        fut = executor.submit(engine.process_unprocessed, subject_id)
        return IngestResult(received=len(points), inserted=inserted, future=fut)
    return IngestResult(received=len(points), inserted=inserted, processed=engine.process_unprocessed(subject_id))


_CSV_COLUMNS = {
    "geoTime": "timestamp",
    "timestamp": "timestamp",
    "latitude": "latitude",
    "longitude": "longitude",
    "altitude": "altitude",
    "speed": "speed",
    "course": "course",
    "horizontalAccuracy": "accuracy",
    "accuracy": "accuracy",
    "verticalAccuracy": "altitudeAccuracy",
    "timezone": "timezone",
}


def iter_samples_csv(csv_path: str | Path) -> Iterator[dict[str, Any]]:
    """Yield raw sample dicts from a track export CSV.

    Notes:
        Recognised columns (others are ignored):
          - geoTime: epoch milliseconds, or timestamp: ISO 8601
          - latitude/longitude: decimal degrees
          - altitude/speed/course/horizontalAccuracy/verticalAccuracy/timezone
    """

    p = Path(csv_path)
    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            return
        if "latitude" not in reader.fieldnames or "longitude" not in reader.fieldnames:
            raise KeyError(f"CSV缺少必要字段：latitude/longitude. 实际字段：{reader.fieldnames}")

        for row in reader:
            sample: dict[str, Any] = {}
            for column, key in _CSV_COLUMNS.items():
                value = (row.get(column) or "").strip()
                if value:
                    sample.setdefault(key, value)
            ts = sample.get("timestamp")
            if isinstance(ts, str) and ts.isdigit():
                sample["timestamp"] = int(ts)
            yield sample


def load_samples_csv(csv_path: str | Path) -> list[dict[str, Any]]:
    """Load every sample row of a CSV into memory."""

    return list(iter_samples_csv(csv_path))
