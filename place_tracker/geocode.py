"""Place enrichment via reverse geocoding (lat/lon -> name, address, category).

This module intentionally uses only Python standard library to keep the project lightweight.

Important:
    - Enrichment is best-effort. A failed lookup is logged and the place stays
      unenriched; it never blocks clustering or visit recording.
    - Run it outside any processing transaction: it performs network calls.
    - For Nominatim (OpenStreetMap), please respect their usage policy and set a
      reasonable request interval and a descriptive User-Agent.
"""

from __future__ import annotations

import json
import logging
import time
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from place_tracker.models import Place, PlaceDetails
from place_tracker.places import resolve_place
from place_tracker.store import TrackStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GeocodeResult:
    """A minimal reverse geocoding result."""

    place_name: str
    raw: dict[str, Any]


class ReverseGeocoder(Protocol):
    def reverse(self, *, lat: float, lon: float) -> GeocodeResult | None: ...


def coord_key(lat: float, lon: float, precision: int) -> str:
    """Build a stable cache key by rounding coordinates.

    Notes:
        Precision=4 is often a good default (lat ~ 11m resolution).
    """

    return f"{round(lat, precision):.{precision}f},{round(lon, precision):.{precision}f}"


class JsonDiskCache:
    """A tiny JSON cache persisted on disk (key -> result dict)."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._data: dict[str, dict[str, Any]] = {}
        self._loaded = False

    def load(self) -> None:
        """Load cache from disk (no-op if file not exists)."""

        if self._loaded:
            return
        self._loaded = True
        if not self._path.exists():
            return
        text = self._path.read_text(encoding="utf-8").strip()
        if not text:
            return
        try:
            self._data = json.loads(text)
        except json.JSONDecodeError:
            # keep a backup of the corrupted file and start fresh
            backup = self._path.with_suffix(self._path.suffix + ".broken")
            backup.write_text(text, encoding="utf-8")
            logger.warning("缓存文件损坏，已备份到 %s", backup)
            self._data = {}

    def get(self, key: str) -> dict[str, Any] | None:
        self.load()
        return self._data.get(key)

    def set(self, key: str, value: dict[str, Any]) -> None:
        self.load()
        self._data[key] = value

    def flush(self) -> None:
        """Persist cache to disk (atomic-ish)."""

        self.load()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self._path)


@dataclass(frozen=True, slots=True)
class NominatimConfig:
    """Configuration for Nominatim reverse API."""

    base_url: str = "https://nominatim.openstreetmap.org/reverse"
    accept_language: str = "en"
    zoom: int = 18
    addressdetails: int = 1
    timeout_seconds: float = 20.0
    min_interval_seconds: float = 1.0
    precision: int = 4
    user_agent: str = "place-tracker/0.1.0 (reverse-geocode; please set your own UA)"


def nominatim_reverse_raw(lat: float, lon: float, cfg: NominatimConfig) -> dict[str, Any] | None:
    """Call Nominatim reverse API and return raw JSON dict.

    Returns:
        Parsed JSON dict on success, None when the service has no result.

    Raises:
        OSError, ValueError: On network or decoding failures.
    """

    params = {
        "format": "jsonv2",
        "lat": f"{lat:.8f}",
        "lon": f"{lon:.8f}",
        "zoom": str(cfg.zoom),
        "addressdetails": str(cfg.addressdetails),
        "accept-language": cfg.accept_language,
    }
    url = f"{cfg.base_url}?{urllib.parse.urlencode(params)}"
    req = urllib.request.Request(
        url,
        headers={
            "User-Agent": cfg.user_agent,
            "Accept": "application/json",
        },
        method="GET",
    )
    with urllib.request.urlopen(req, timeout=cfg.timeout_seconds) as resp:  # noqa: S310
        body = resp.read().decode("utf-8", errors="replace")
    raw = json.loads(body)
    if not isinstance(raw, dict) or "error" in raw:
        return None
    return raw


class NominatimReverseGeocoder:
    """Reverse geocoder using OpenStreetMap Nominatim."""

    def __init__(self, config: NominatimConfig | None = None, cache: JsonDiskCache | None = None) -> None:
        self._cfg = config or NominatimConfig()
        self._cache = cache
        self._last_request_at = 0.0

    def reverse(self, *, lat: float, lon: float) -> GeocodeResult | None:
        """Reverse geocode one coordinate (cached by rounded coordinates)."""

        key = coord_key(lat, lon, self._cfg.precision)
        if self._cache is not None:
            cached = self._cache.get(key)
            if cached is not None:
                return GeocodeResult(place_name=str(cached.get("place_name", "")), raw=cached)

        self._sleep_if_needed()
        raw = nominatim_reverse_raw(lat, lon, self._cfg)
        if raw is None:
            return None

        place = str(raw.get("display_name", "") or "")
        if self._cache is not None:
            self._cache.set(key, {"place_name": place, **raw})
            self._cache.flush()
        return GeocodeResult(place_name=place, raw=raw)

    def _sleep_if_needed(self) -> None:
        now = time.time()
        wait = self._cfg.min_interval_seconds - (now - self._last_request_at)
        if wait > 0:
            time.sleep(wait)
        self._last_request_at = time.time()


_CATEGORY_TYPES: dict[str, tuple[str, ...]] = {
    "home": ("house", "residential", "apartments", "detached", "home"),
    "work": ("office", "commercial", "industrial", "company", "coworking_space"),
    "restaurant": ("restaurant", "food_court", "cafe", "bar", "pub", "bakery", "fast_food", "ice_cream"),
    "gym": ("fitness_centre", "sports_centre", "gym"),
    "store": ("shop", "supermarket", "mall", "convenience", "department_store", "marketplace"),
    "transit": ("station", "bus_station", "bus_stop", "aerodrome", "subway_entrance", "railway", "ferry_terminal"),
    "entertainment": ("cinema", "theatre", "museum", "theme_park", "aquarium", "gallery", "nightclub", "casino"),
    "education": ("school", "university", "college", "library", "kindergarten"),
    "healthcare": ("hospital", "clinic", "doctors", "dentist", "pharmacy"),
    "recreation": ("park", "playground", "stadium", "camp_site", "garden", "beach"),
    "lodging": ("hotel", "motel", "hostel", "guest_house"),
}


def infer_category(types: tuple[str, ...] | list[str]) -> str:
    """Map provider place types (OSM category/type tags) to a coarse category."""

    for category, keywords in _CATEGORY_TYPES.items():
        if any(t in keywords for t in types):
            return category
    return "other"


def suggest_details(result: GeocodeResult) -> PlaceDetails:
    """Turn a reverse geocoding result into merge suggestions for a place."""

    raw = result.raw
    types = tuple(str(t) for t in (raw.get("category"), raw.get("type")) if t)
    osm_type = raw.get("osm_type")
    osm_id = raw.get("osm_id")
    provider_id = f"{osm_type}/{osm_id}" if osm_type and osm_id else (str(raw["place_id"]) if raw.get("place_id") else None)
    name = str(raw.get("name") or "") or None
    # The provider name stays out of `label`, which holds human names only.
    return PlaceDetails(
        category=infer_category(types) if types else None,
        address=result.place_name or None,
        provider_place_id=provider_id,
        provider_name=name or result.place_name or None,
        provider_types=types or None,
    )


def enrich_place(store: TrackStore, subject_id: str, place_id: int, geocoder: ReverseGeocoder) -> Place | None:
    """Best-effort enrichment of one place.

    Returns:
        The merged place, or None when the lookup failed or found nothing.

    Raises:
        PlaceNotFoundError: If the place does not exist.
    """

    place = resolve_place(store, subject_id, place_id=place_id)
    try:
        result = geocoder.reverse(lat=place.latitude, lon=place.longitude)
    except Exception as exc:  # network, HTTP and decoding errors alike
        logger.warning("地点 #%s 逆地理编码失败，已忽略：%s", place_id, exc)
        return None
    if result is None:
        logger.info("地点 #%s 没有逆地理编码结果", place_id)
        return None
    return store.merge_place_details(subject_id, place_id, suggest_details(result))
