# Bus data acquisition and query service for the SPPO GPS feed.

from dataclasses import dataclass, field
import datetime
import logging
import math
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from sppo_cache import GENERAL, LINE, POSITION, CacheStore
from sppo_errors import UpstreamError, ValidationError
from sppo_geo import bounded_distance_km

log = logging.getLogger("sppo_service")

Hook = Callable[[str, Dict[str, Any]], None]

# Upstream keys consumed by normalisation; everything else passes through.
_CONSUMED_KEYS = frozenset({"ordem", "linha", "latitude", "longitude", "velocidade", "datahora"})

UNKNOWN_LINE = "unknown"


def to_iso(value: datetime.datetime) -> str:
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class VehicleReport:
    vehicle_id: str
    line: str
    latitude: float
    longitude: float
    speed_kmh: float
    observed_at: Optional[datetime.datetime]
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def line_key(self) -> str:
        return normalize_line(self.line) or UNKNOWN_LINE

    @property
    def has_position(self) -> bool:
        return bool(self.latitude) and bool(self.longitude)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "ordem": self.vehicle_id,
                "linha": self.line,
                "latitude": self.latitude,
                "longitude": self.longitude,
                "velocidade": self.speed_kmh,
                "dataHora": to_iso(self.observed_at) if self.observed_at else None,
            }
        )
        return payload


@dataclass
class FleetStats:
    total: int = 0
    count_by_line: Dict[str, int] = field(default_factory=dict)
    avg_speed_kmh: float = 0.0
    last_update: Optional[datetime.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "byLine": dict(self.count_by_line),
            "avgSpeed": self.avg_speed_kmh,
            "lastUpdate": to_iso(self.last_update) if self.last_update else None,
        }


@dataclass
class ServiceConfig:
    cache_key: str = "sppo_all_buses"
    general_ttl_sec: float = 300
    stale_ttl_sec: float = 1800
    query_ttl_sec: float = 120
    fetch_interval_sec: float = 300
    active_window_min: float = 5

    @property
    def stale_key(self) -> str:
        return f"{self.cache_key}_stale"


class RecordSource(Protocol):
    def fetch_records(self) -> List[Dict[str, Any]]:
        ...


def normalize_line(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def _parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip().replace(",", "."))
        except (TypeError, ValueError):
            return None
    if not math.isfinite(number):
        return None
    return number


def parse_coordinate(value: Any, limit: float) -> float:
    """Parse a comma- or dot-decimal coordinate, returning 0 when malformed or out of range."""
    number = _parse_number(value)
    if number is None or abs(number) > limit:
        return 0.0
    return number


def parse_speed(value: Any) -> float:
    number = _parse_number(value)
    if number is None or number < 0:
        return 0.0
    return number


def parse_timestamp_ms(value: Any) -> Optional[datetime.datetime]:
    number = _parse_number(value)
    if number is None:
        return None
    try:
        return datetime.datetime.fromtimestamp(number / 1000.0, tz=datetime.timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def normalize_record(raw: Any) -> VehicleReport:
    """Build a VehicleReport from one upstream record.

    Field parsing never raises: unparseable coordinates and speed become 0 and
    an unparseable ``datahora`` leaves ``observed_at`` empty.
    """
    if not isinstance(raw, Mapping):
        raw = {}
    ordem = raw.get("ordem")
    linha = raw.get("linha")
    return VehicleReport(
        vehicle_id="" if ordem is None else str(ordem),
        line="" if linha is None else str(linha),
        latitude=parse_coordinate(raw.get("latitude"), 90.0),
        longitude=parse_coordinate(raw.get("longitude"), 180.0),
        speed_kmh=parse_speed(raw.get("velocidade")),
        observed_at=parse_timestamp_ms(raw.get("datahora")),
        extra={k: v for k, v in raw.items() if k not in _CONSUMED_KEYS},
    )


def is_active(report: VehicleReport, now: datetime.datetime, window_min: float = 5) -> bool:
    """A vehicle is en route when moving or heard from within the window."""
    if report.speed_kmh > 0:
        return True
    if report.observed_at is None:
        return False
    minutes = (now - report.observed_at).total_seconds() / 60.0
    return minutes <= window_min


def compute_stats(vehicles: Sequence[VehicleReport]) -> FleetStats:
    stats = FleetStats(total=len(vehicles))
    if not vehicles:
        return stats
    for v in vehicles:
        line = v.line or UNKNOWN_LINE
        stats.count_by_line[line] = stats.count_by_line.get(line, 0) + 1
    stats.avg_speed_kmh = round(sum(v.speed_kmh for v in vehicles) / len(vehicles), 2)
    timestamps = [v.observed_at for v in vehicles if v.observed_at is not None]
    stats.last_update = max(timestamps) if timestamps else None
    return stats


class BusDataService:
    """Fetches, filters and indexes the SPPO feed, and answers queries over it.

    One instance owns the cache store and the line index for the process. The
    line index is replaced wholesale on every successful fetch; readers take a
    reference to the current dict and never see a partially built one.
    """

    def __init__(
        self,
        upstream: RecordSource,
        cache: CacheStore,
        config: Optional[ServiceConfig] = None,
        hook: Optional[Hook] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.upstream = upstream
        self.cache = cache
        self.config = config or ServiceConfig()
        self._hook = hook
        self._clock = clock
        self._line_index: Dict[str, Tuple[VehicleReport, ...]] = {}
        self._index_updated_at: Optional[float] = None
        self._last_fetch_at: Optional[float] = None

    def _emit(self, event: str, **fields: Any) -> None:
        if self._hook is not None:
            self._hook(event, fields)

    def _now(self) -> datetime.datetime:
        return datetime.datetime.fromtimestamp(self._clock(), tz=datetime.timezone.utc)

    @property
    def line_index(self) -> Mapping[str, Tuple[VehicleReport, ...]]:
        return self._line_index

    def fetch_active_vehicles(self) -> List[VehicleReport]:
        cfg = self.config
        cached = self.cache.get(GENERAL, cfg.cache_key)
        if cached is not None:
            self._emit("cache_hit", namespace=GENERAL, key=cfg.cache_key)
            return list(cached)
        self._emit("cache_miss", namespace=GENERAL, key=cfg.cache_key)

        now = self._clock()
        if self._last_fetch_at is not None and now - self._last_fetch_at < cfg.fetch_interval_sec:
            stale = self.cache.get(GENERAL, cfg.stale_key)
            if stale is not None:
                log.info("Within fetch interval, serving stale snapshot")
                self._emit("stale_served", reason="throttled", total=len(stale))
                return list(stale)

        self._emit("fetch_start")
        started = time.monotonic()
        try:
            records = self.upstream.fetch_records()
        except UpstreamError as exc:
            log.error("SPPO fetch failed: %s", exc)
            self._emit("fetch_failed", status=exc.status, error=str(exc))
            stale = self.cache.get(GENERAL, cfg.stale_key)
            if stale is not None:
                log.info("Serving stale snapshot after fetch failure")
                self._emit("stale_served", reason="error", total=len(stale))
                return list(stale)
            raise

        now_dt = datetime.datetime.fromtimestamp(now, tz=datetime.timezone.utc)
        active: List[VehicleReport] = []
        for raw in records:
            report = normalize_record(raw)
            if is_active(report, now_dt, cfg.active_window_min):
                active.append(report)

        snapshot = tuple(active)
        self.cache.set(GENERAL, cfg.cache_key, snapshot, cfg.general_ttl_sec)
        self.cache.set(GENERAL, cfg.stale_key, snapshot, cfg.stale_ttl_sec)
        self._last_fetch_at = now
        self.update_line_index(snapshot)

        log.info("Stored %d active vehicles (of %d records)", len(snapshot), len(records))
        self._emit(
            "fetch_end",
            total=len(records),
            active=len(snapshot),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return list(snapshot)

    get_all_bus_data = fetch_active_vehicles

    def update_line_index(self, vehicles: Iterable[VehicleReport]) -> None:
        grouped: Dict[str, List[VehicleReport]] = {}
        for v in vehicles:
            grouped.setdefault(v.line_key, []).append(v)
        self._line_index = {key: tuple(items) for key, items in grouped.items()}
        self._index_updated_at = self._clock()
        log.info("Line index rebuilt: %d lines", len(self._line_index))
        self._emit("index_rebuilt", lines=len(self._line_index))

    def _lookup_line(self, key: str) -> List[VehicleReport]:
        index = self._line_index
        exact = index.get(key)
        if exact is not None:
            return list(exact)
        # Loose two-way containment: short codes like "1" match many lines.
        matches: List[VehicleReport] = []
        for line_key, vehicles in index.items():
            if key in line_key or line_key in key:
                matches.extend(vehicles)
        return matches

    def get_by_line(self, line: str) -> List[VehicleReport]:
        key = normalize_line(line)
        if not key:
            raise ValidationError("Invalid line parameter", "line must not be empty")
        cache_key = f"line:{key}"
        cached = self.cache.get(LINE, cache_key)
        if cached is not None:
            self._emit("cache_hit", namespace=LINE, key=cache_key)
            return list(cached)
        self._emit("cache_miss", namespace=LINE, key=cache_key)

        matches = self._lookup_line(key)
        if not matches:
            vehicles = self.fetch_active_vehicles()
            if vehicles and not self._line_index:
                self.update_line_index(vehicles)
            matches = self._lookup_line(key)

        result = tuple(matches)
        self.cache.set(LINE, cache_key, result, self.config.query_ttl_sec)
        log.info("Line %s: %d active vehicles", key, len(result))
        return list(result)

    def get_by_position(self, lat: float, lon: float, radius_km: float = 1.0) -> List[VehicleReport]:
        cache_key = f"position:{lat:.4f}:{lon:.4f}:{float(radius_km)!r}"
        cached = self.cache.get(POSITION, cache_key)
        if cached is not None:
            self._emit("cache_hit", namespace=POSITION, key=cache_key)
            return list(cached)
        self._emit("cache_miss", namespace=POSITION, key=cache_key)

        vehicles = self.fetch_active_vehicles()
        now = self._now()
        window = self.config.active_window_min
        result = tuple(
            v
            for v in vehicles
            if v.has_position
            and bounded_distance_km(lat, lon, v.latitude, v.longitude) <= radius_km
            and is_active(v, now, window)
        )
        self.cache.set(POSITION, cache_key, result, self.config.query_ttl_sec)
        log.info("%d active vehicles within %skm of (%s, %s)", len(result), radius_km, lat, lon)
        return list(result)

    def get_stats(self) -> FleetStats:
        return compute_stats(self.fetch_active_vehicles())

    def clear_caches(self) -> None:
        self.cache.clear()
        self._line_index = {}
        self._index_updated_at = None
        self._last_fetch_at = None
        log.info("SPPO caches cleared")
        self._emit("caches_cleared")

    def cache_stats(self) -> Dict[str, Any]:
        updated = self._index_updated_at
        return {
            "caches": self.cache.stats(),
            "lineIndex": {
                "lines": len(self._line_index),
                "updatedAt": to_iso(
                    datetime.datetime.fromtimestamp(updated, tz=datetime.timezone.utc)
                )
                if updated is not None
                else None,
            },
        }
