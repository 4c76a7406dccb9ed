from __future__ import annotations

import argparse
import csv
import random
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path


@dataclass(frozen=True, slots=True)
class Spot:
    name: str
    lat: float
    lon: float


def _epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _row(rng: random.Random, when: datetime, lat: float, lon: float, speed: float) -> dict[str, str]:
    return {
        "geoTime": str(_epoch_ms(when)),
        "latitude": f"{lat:.7f}",
        "longitude": f"{lon:.7f}",
        "altitude": f"{rng.uniform(0, 60):.1f}",
        "course": f"{rng.uniform(0, 360):.1f}" if speed > 0 else "-1.0",
        "horizontalAccuracy": f"{rng.choice([5.0, 8.0, 12.0, 20.0]):.1f}",
        "verticalAccuracy": f"{rng.choice([3.0, 5.0, 8.0]):.1f}",
        "speed": f"{speed:.1f}",
    }


def generate_points(
    *,
    stays: int,
    seed: int,
    start: datetime,
    spots: list[Spot],
) -> list[dict[str, str]]:
    """Generate fake track rows: stays at a few spots joined by travel legs."""

    rng = random.Random(seed)
    cur = start
    out: list[dict[str, str]] = []
    spot = rng.choice(spots)

    for _ in range(stays):
        # Stay: jitter within ~10 m, one sample every 1-3 minutes
        for _ in range(rng.randint(3, 40)):
            lat = spot.lat + rng.uniform(-0.00008, 0.00008)
            lon = spot.lon + rng.uniform(-0.00008, 0.00008)
            out.append(_row(rng, cur, lat, lon, rng.choice([0.0, 0.0, 0.2, -1.0])))
            cur = cur + timedelta(seconds=rng.uniform(60, 180))

        # Occasionally the phone is off for a while
        if rng.random() < 0.1:
            cur = cur + timedelta(hours=rng.uniform(1, 8))

        # Travel leg to the next spot, sampled every 30 s
        nxt = rng.choice([s for s in spots if s != spot])
        legs = rng.randint(5, 20)
        for i in range(1, legs):
            f = i / legs
            lat = spot.lat + (nxt.lat - spot.lat) * f
            lon = spot.lon + (nxt.lon - spot.lon) * f
            cur = cur + timedelta(seconds=30)
            out.append(_row(rng, cur, lat, lon, rng.uniform(1.0, 15.0)))
        spot = nxt

    # Ensure stable order by time
    out.sort(key=lambda r: int(r["geoTime"]))
    return out


def main() -> int:
    p = argparse.ArgumentParser(description="Generate a fake track CSV for demo/testing (privacy-safe).")
    p.add_argument("--out", type=str, default="sample_data/Path.csv", help="Output CSV path")
    p.add_argument("--stays", type=int, default=30, help="Number of stays")
    p.add_argument("--seed", type=int, default=42, help="Random seed (reproducible)")
    p.add_argument("--start", type=str, default="2025-01-01 08:00:00", help="Start time in UTC")
    args = p.parse_args()

    start = datetime.fromisoformat(args.start).replace(tzinfo=UTC)
    spots = [
        Spot("home", 40.7410000, -73.9897000),
        Spot("office", 40.7527000, -73.9772000),
        Spot("cafe", 40.7359000, -73.9911000),
        Spot("gym", 40.7282000, -73.9942000),
    ]

    rows = generate_points(stays=args.stays, seed=args.seed, start=start, spots=spots)
    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    fieldnames = [
        "geoTime",
        "latitude",
        "longitude",
        "altitude",
        "course",
        "horizontalAccuracy",
        "verticalAccuracy",
        "speed",
    ]
    with out_path.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=fieldnames)
        w.writeheader()
        w.writerows(rows)

    print(f"Generated: {out_path} (rows={len(rows)}, seed={args.seed})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
