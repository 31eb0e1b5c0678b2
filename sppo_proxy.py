#!/usr/bin/env python3
# SPPO GPS proxy: caches the Rio bus feed and serves it over a small REST API.

from collections import deque
import datetime
import logging
import os
import threading
import time
from typing import Any, Deque, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response
from werkzeug.exceptions import HTTPException

from sppo_cache import GENERAL, LINE, POSITION, CacheStore
from sppo_errors import NotFoundError, UpstreamError, ValidationError
from sppo_schemas import parse_line, parse_position
from sppo_service import BusDataService, ServiceConfig, VehicleReport
from sppo_upstream import DEFAULT_API_URL, UpstreamClient, UpstreamConfig

load_dotenv()

log = logging.getLogger("sppo_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

VERSION = "2.0.0"


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_csv(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def utc_now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


SPPO_API_URL = os.getenv("SPPO_API_URL", DEFAULT_API_URL)
SPPO_TIMEOUT_MS = env_int("SPPO_TIMEOUT", 30000)
SPPO_RETRY_ATTEMPTS = env_int("SPPO_RETRY_ATTEMPTS", 3)
SPPO_VERIFY_TLS = env_bool("SPPO_VERIFY_TLS", False)
SPPO_FETCH_INTERVAL_SEC = env_float("SPPO_FETCH_INTERVAL_SEC", 300)
SPPO_STALE_TTL_SEC = env_float("SPPO_STALE_TTL_SEC", 1800)
SPPO_ACTIVE_WINDOW_MIN = env_float("SPPO_ACTIVE_WINDOW_MIN", 5)

CACHE_TTL_SEC = env_int("CACHE_TTL", 300)
CACHE_LINE_TTL_SEC = env_int("CACHE_LINE_TTL", 180)
CACHE_POSITION_TTL_SEC = env_int("CACHE_POSITION_TTL", 120)
CACHE_QUERY_TTL_SEC = env_int("CACHE_QUERY_TTL", 120)
CACHE_MAX_KEYS = env_int("CACHE_MAX_KEYS", 1000)

RATE_LIMIT_WINDOW_SEC = max(1, env_int("RATE_LIMIT_WINDOW_MS", 900000) // 1000)
RATE_LIMIT_MAX_REQUESTS = env_int("RATE_LIMIT_MAX_REQUESTS", 1000)

CORS_ALLOWED_ORIGINS = set(env_csv("CORS_ALLOWED_ORIGINS", "*"))
TRUST_PROXY_HEADERS = env_bool("TRUST_PROXY_HEADERS", False)

APP_ENV = os.getenv("APP_ENV", "development").strip().lower()
APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_int("PORT", 3000)

JsonDict = Dict[str, Any]


class PerKeyLimiter:
    def __init__(self, limit: int, window_sec: int) -> None:
        self.limit = max(1, limit)
        self.window_sec = max(1, window_sec)
        self._events: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = time.monotonic()

    def _sweep(self, now: float) -> None:
        # Drop clients with no events left in the window.
        cutoff = now - self.window_sec
        for key in list(self._events):
            events = self._events[key]
            while events and events[0] <= cutoff:
                events.popleft()
            if not events:
                del self._events[key]
        self._last_sweep = now

    def allow(self, key: str) -> Tuple[bool, int]:
        now = time.monotonic()
        with self._lock:
            if now - self._last_sweep >= self.window_sec:
                self._sweep(now)
            events = self._events.get(key)
            if events is None:
                events = deque()
                self._events[key] = events
            while events and events[0] <= now - self.window_sec:
                events.popleft()
            if len(events) >= self.limit:
                retry_after = int(self.window_sec - (now - events[0]))
                return False, max(1, retry_after)
            events.append(now)
            return True, 0


def log_service_event(event: str, fields: Dict[str, Any]) -> None:
    level = logging.WARNING if event in ("fetch_failed", "stale_served") else logging.DEBUG
    log.log(level, "sppo %s %s", event, fields)


def build_service() -> BusDataService:
    upstream = UpstreamClient(
        UpstreamConfig(
            url=SPPO_API_URL,
            timeout_sec=SPPO_TIMEOUT_MS / 1000.0,
            max_retries=SPPO_RETRY_ATTEMPTS,
            verify_tls=SPPO_VERIFY_TLS,
        )
    )
    cache = CacheStore(
        ttls={GENERAL: CACHE_TTL_SEC, LINE: CACHE_LINE_TTL_SEC, POSITION: CACHE_POSITION_TTL_SEC},
        max_keys=CACHE_MAX_KEYS,
    )
    config = ServiceConfig(
        general_ttl_sec=CACHE_TTL_SEC,
        stale_ttl_sec=SPPO_STALE_TTL_SEC,
        query_ttl_sec=CACHE_QUERY_TTL_SEC,
        fetch_interval_sec=SPPO_FETCH_INTERVAL_SEC,
        active_window_min=SPPO_ACTIVE_WINDOW_MIN,
    )
    return BusDataService(upstream, cache, config, hook=log_service_event)


api_limiter = PerKeyLimiter(RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SEC)
service = build_service()
started_at = time.monotonic()

app = Flask(__name__)


def get_client_ip() -> str:
    if TRUST_PROXY_HEADERS:
        forwarded_for = request.headers.get("X-Forwarded-For", "")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    return request.remote_addr or "unknown"


def elapsed_ms(start: float) -> str:
    return f"{int((time.monotonic() - start) * 1000)}ms"


def serialize(vehicles: List[VehicleReport]) -> List[JsonDict]:
    return [v.to_dict() for v in vehicles]


def error_response(
    status: int,
    code: str,
    message: str,
    *,
    details: Optional[str] = None,
    retry_after: Optional[int] = None,
) -> Response:
    error: Dict[str, Any] = {
        "code": code,
        "message": message,
        "status": status,
        "timestamp": utc_now_iso(),
        "path": request.path,
        "method": request.method,
    }
    if details:
        error["details"] = details
    resp = jsonify({"error": error})
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    if retry_after is not None:
        resp.headers["Retry-After"] = str(retry_after)
    return resp


def vehicles_response(vehicles: List[VehicleReport], start: float, **meta: Any) -> Response:
    payload = {
        "data": serialize(vehicles),
        "meta": {
            **meta,
            "total": len(vehicles),
            "timestamp": utc_now_iso(),
            "duration": elapsed_ms(start),
        },
    }
    resp = jsonify(payload)
    resp.headers["Cache-Control"] = f"max-age={CACHE_QUERY_TTL_SEC}"
    return resp


@app.before_request
def apply_rate_limit() -> Optional[Response]:
    log.debug("%s %s from %s", request.method, request.path, get_client_ip())
    if not request.path.startswith("/api/"):
        return None
    if request.method == "OPTIONS":
        return make_response("", 204)
    allowed, retry_after = api_limiter.allow(get_client_ip())
    if not allowed:
        return error_response(
            429,
            "rate_limited",
            "Too many requests from this IP, try again later",
            retry_after=retry_after,
        )
    return None


@app.after_request
def add_common_headers(resp: Response) -> Response:
    origin = request.headers.get("Origin")
    if origin and ("*" in CORS_ALLOWED_ORIGINS or origin in CORS_ALLOWED_ORIGINS):
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
        resp.headers["Access-Control-Expose-Headers"] = "Cache-Control, Retry-After"
        resp.headers["Access-Control-Max-Age"] = "600"

    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    return resp


@app.errorhandler(ValidationError)
def handle_validation_error(exc: ValidationError) -> Response:
    return error_response(400, "invalid_parameter", str(exc), details=exc.details)


@app.errorhandler(NotFoundError)
def handle_not_found(exc: NotFoundError) -> Response:
    return error_response(404, "not_found", str(exc))


@app.errorhandler(UpstreamError)
def handle_upstream_error(exc: UpstreamError) -> Response:
    log.error("Upstream failure on %s: %s (status %s)", request.path, exc, exc.status)
    return error_response(500, "upstream_error", "Failed to fetch bus GPS data")


@app.errorhandler(HTTPException)
def handle_http_exception(exc: HTTPException) -> Response:
    if exc.code == 404:
        log.warning("Route not found: %s %s", request.method, request.path)
        return error_response(
            404, "route_not_found", f"Route not found: {request.method} {request.path}"
        )
    return error_response(exc.code or 500, "http_error", exc.description or exc.name)


@app.errorhandler(Exception)
def handle_unexpected(exc: Exception) -> Response:
    log.exception("Unhandled error on %s %s", request.method, request.path)
    details = repr(exc) if APP_ENV == "development" else None
    return error_response(500, "internal_error", "Unexpected error", details=details)


@app.route("/api/sppo", methods=["GET"])
def all_buses() -> Response:
    start = time.monotonic()
    vehicles = service.get_all_bus_data()
    log.info("GET /api/sppo - %d buses in %s", len(vehicles), elapsed_ms(start))
    return vehicles_response(vehicles, start)


@app.route("/api/sppo/linha/<linha>", methods=["GET"])
def buses_by_line(linha: str) -> Response:
    start = time.monotonic()
    params = parse_line(linha)
    vehicles = service.get_by_line(params.linha)
    log.info("GET /api/sppo/linha/%s - %d buses in %s", params.linha, len(vehicles), elapsed_ms(start))
    if not vehicles:
        raise NotFoundError(f"No buses found for line {params.linha}")
    return vehicles_response(vehicles, start, linha=params.linha)


@app.route("/api/sppo/posicao", methods=["GET"])
def buses_by_position() -> Response:
    start = time.monotonic()
    query = parse_position(request.args)
    vehicles = service.get_by_position(query.lat, query.lon, query.raio)
    log.info("GET /api/sppo/posicao - %d buses in %s", len(vehicles), elapsed_ms(start))
    if not vehicles:
        raise NotFoundError(
            f"No buses found within {query.raio:g}km of ({query.lat}, {query.lon})"
        )
    return vehicles_response(vehicles, start, lat=query.lat, lon=query.lon, raio=query.raio)


@app.route("/api/sppo/stats", methods=["GET"])
def fleet_stats() -> Response:
    start = time.monotonic()
    stats = service.get_stats()
    return jsonify(
        {
            "data": stats.to_dict(),
            "meta": {"timestamp": utc_now_iso(), "duration": elapsed_ms(start)},
        }
    )


@app.route("/api/sppo/cache/stats", methods=["GET"])
def cache_stats() -> Response:
    resp = jsonify({"data": service.cache_stats(), "meta": {"timestamp": utc_now_iso()}})
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.route("/api/sppo/cache/clear", methods=["POST"])
def clear_cache() -> Response:
    service.clear_caches()
    log.info("SPPO caches cleared via API")
    return jsonify({"message": "Caches cleared", "timestamp": utc_now_iso()})


@app.route("/api", methods=["GET"])
def api_index() -> Response:
    return jsonify(
        {
            "message": "Rio de Janeiro SPPO bus GPS API",
            "version": VERSION,
            "endpoints": {
                "all": "/api/sppo",
                "byLine": "/api/sppo/linha/:linha",
                "byPosition": "/api/sppo/posicao?lat=XX.XXXXX&lon=XX.XXXXX&raio=X",
                "stats": "/api/sppo/stats",
                "cacheStats": "/api/sppo/cache/stats",
                "clearCache": "POST /api/sppo/cache/clear",
                "health": "/health",
            },
        }
    )


@app.route("/health", methods=["GET"])
def health() -> Response:
    return jsonify(
        {
            "status": "OK",
            "timestamp": utc_now_iso(),
            "uptime": round(time.monotonic() - started_at, 3),
            "version": VERSION,
        }
    )


if __name__ == "__main__":
    log.info("SPPO proxy listening on %s:%d", APP_HOST, APP_PORT)
    app.run(host=APP_HOST, port=APP_PORT)
