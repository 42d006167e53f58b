#!/usr/bin/env python3
# TfL next-bus proxy for a single stop.

from dataclasses import dataclass
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, TypeAdapter, ValidationError
import requests
from werkzeug.exceptions import HTTPException

log = logging.getLogger("tfl_next_bus")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

TFL_DEFAULT_BASE = "https://api.tfl.gov.uk"
USER_AGENT = "tfl-next-bus/0.1"

CACHE_TTL_SEC = 10.0
UPSTREAM_TIMEOUT_SEC = 5.0
CACHE_LOCK_TIMEOUT_SEC = 1.0
DEFAULT_SUMMARY_LIMIT = 100

JsonDict = Dict[str, Any]


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_csv(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


class MissingConfig(Exception):
    def __init__(self, message: str):
        super().__init__(message)


@dataclass(frozen=True)
class Config:
    stop_id: str
    app_id: Optional[str] = None
    app_key: Optional[str] = None
    cache_ttl: float = CACHE_TTL_SEC
    base_url: str = TFL_DEFAULT_BASE
    cors_allowed_origins: Tuple[str, ...] = ()
    host: str = "127.0.0.1"
    port: int = 8000


def load_config() -> Config:
    load_dotenv()

    stop_id = env_optional("TFL_STOP_ID")
    if stop_id is None:
        raise MissingConfig("TFL_STOP_ID must be set (TfL StopPoint id)")

    return Config(
        stop_id=stop_id,
        app_id=env_optional("TFL_APP_ID"),
        app_key=env_optional("TFL_APP_KEY"),
        base_url=os.getenv("TFL_BASE_URL", TFL_DEFAULT_BASE).rstrip("/"),
        cors_allowed_origins=tuple(
            env_csv("CORS_ALLOWED_ORIGINS", "http://127.0.0.1,http://localhost")
        ),
        host=os.getenv("APP_HOST", "127.0.0.1"),
        port=env_int("APP_PORT", 8000),
    )


# Errors surfaced to clients. Each carries the HTTP status and the stable
# kind string written into the error envelope.


class ProxyError(Exception):
    status = 500
    kind = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class CacheLockError(ProxyError):
    status = 500
    kind = "CACHE_LOCK_ERROR"

    def __init__(self) -> None:
        super().__init__("Failed to acquire cache lock")


class UpstreamUnreachable(ProxyError):
    status = 502
    kind = "TFL_UPSTREAM_ERROR"

    def __init__(self, cause: Exception, details: Optional[str] = None):
        if details is None:
            details = str(cause)
        super().__init__("TfL API request failed", details=details)
        self.cause = cause


class UpstreamStatusError(ProxyError):
    status = 502
    kind = "TFL_UPSTREAM_ERROR"

    def __init__(self, upstream_status: int, body: str):
        super().__init__(f"TfL returned HTTP {upstream_status}", details=body)
        self.upstream_status = upstream_status
        self.body = body


class UpstreamParseError(ProxyError):
    status = 502
    kind = "TFL_PARSE_ERROR"

    def __init__(self, cause: Exception):
        super().__init__("Failed to parse TfL response JSON", details=str(cause))
        self.cause = cause


class NoArrivals(ProxyError):
    status = 503
    kind = "NO_ARRIVALS"

    def __init__(self, stop_id: str, route_filter: Optional[str] = None):
        message = f"No upcoming buses found for stop {stop_id}"
        if route_filter:
            message += f" on route {route_filter}"
        super().__init__(message)
        self.stop_id = stop_id
        self.route_filter = route_filter


class InvalidParameter(ProxyError):
    status = 400
    kind = "INVALID_PARAMETER"


class Timing(BaseModel):
    """Server-side countdown bookkeeping; passed through untouched."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    countdown_server_adjustment: StrictStr = Field(alias="countdownServerAdjustment")
    source: StrictStr
    insert: StrictStr
    read: StrictStr
    sent: StrictStr
    received: StrictStr


class Arrival(BaseModel):
    """One predicted vehicle arrival at the stop, as reported by TfL."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: StrictStr
    operation_type: StrictInt = Field(alias="operationType")
    vehicle_id: StrictStr = Field(alias="vehicleId")
    naptan_id: StrictStr = Field(alias="naptanId")
    station_name: StrictStr = Field(alias="stationName")
    line_id: StrictStr = Field(alias="lineId")
    line_name: StrictStr = Field(alias="lineName")
    platform_name: StrictStr = Field(alias="platformName")
    direction: StrictStr
    bearing: StrictStr
    trip_id: StrictStr = Field(alias="tripId")
    base_version: StrictStr = Field(alias="baseVersion")
    destination_naptan_id: StrictStr = Field(alias="destinationNaptanId")
    destination_name: StrictStr = Field(alias="destinationName")
    timestamp: StrictStr
    time_to_station: StrictInt = Field(alias="timeToStation")
    current_location: StrictStr = Field(alias="currentLocation")
    towards: StrictStr
    expected_arrival: StrictStr = Field(alias="expectedArrival")
    time_to_live: StrictStr = Field(alias="timeToLive")
    mode_name: StrictStr = Field(alias="modeName")
    timing: Timing


ArrivalList = TypeAdapter(List[Arrival])


def decode_arrivals(data: Any) -> List[Arrival]:
    return ArrivalList.validate_python(data)


class TflClient:
    def __init__(self, config: Config, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session if session is not None else requests.Session()

    def build_url(self) -> str:
        url = f"{self.config.base_url}/StopPoint/{quote(self.config.stop_id, safe='')}/Arrivals"
        params: List[str] = []
        if self.config.app_id:
            params.append(f"app_id={quote(self.config.app_id, safe='')}")
        if self.config.app_key:
            params.append(f"app_key={quote(self.config.app_key, safe='')}")
        if params:
            url += "?" + "&".join(params)
        return url

    def redact(self, text: str) -> str:
        # requests puts the full URL, credentials included, into its messages.
        for secret in (self.config.app_id, self.config.app_key):
            if secret:
                text = text.replace(quote(secret, safe=""), "***").replace(secret, "***")
        return text

    def fetch_arrivals(self) -> List[Arrival]:
        url = self.build_url()
        try:
            resp = self.session.get(
                url,
                timeout=UPSTREAM_TIMEOUT_SEC,
                headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            )
        except requests.RequestException as exc:
            raise UpstreamUnreachable(exc, details=self.redact(str(exc))) from exc

        if not 200 <= resp.status_code < 300:
            try:
                body = resp.text or ""
            except (requests.RequestException, UnicodeDecodeError):
                body = ""
            raise UpstreamStatusError(resp.status_code, body)

        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamParseError(exc) from exc
        try:
            return decode_arrivals(data)
        except ValidationError as exc:
            raise UpstreamParseError(exc) from exc


@dataclass(frozen=True)
class CacheEntry:
    captured_at: float
    arrivals: Tuple[Arrival, ...]


class ArrivalCache:
    """Single-slot cache holding the most recent successful fetch.

    The slot is only ever read or swapped for a new entry, always under
    ``_lock``. The lock is never held while talking to TfL.
    """

    def __init__(
        self,
        ttl_sec: float,
        clock: Callable[[], float] = time.monotonic,
        lock_timeout: float = CACHE_LOCK_TIMEOUT_SEC,
    ) -> None:
        self.ttl_sec = ttl_sec
        self.clock = clock
        self.lock_timeout = lock_timeout
        self._entry: Optional[CacheEntry] = None
        self._lock = threading.Lock()

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise CacheLockError()

    def read_if_fresh(self) -> Optional[List[Arrival]]:
        self._acquire()
        try:
            entry = self._entry
        finally:
            self._lock.release()
        if entry is None or self.clock() - entry.captured_at >= self.ttl_sec:
            return None
        return list(entry.arrivals)

    def replace(self, arrivals: Sequence[Arrival]) -> CacheEntry:
        snapshot = tuple(arrivals)
        self._acquire()
        try:
            # Stamped under the lock so capture order matches write order.
            entry = CacheEntry(captured_at=self.clock(), arrivals=snapshot)
            self._entry = entry
        finally:
            self._lock.release()
        return entry


class ArrivalService:
    def __init__(self, client: TflClient, cache: ArrivalCache) -> None:
        self.client = client
        self.cache = cache

    def get_arrivals(self) -> List[Arrival]:
        cached = self.cache.read_if_fresh()
        if cached is not None:
            log.debug("Arrival cache hit (%d arrivals)", len(cached))
            return cached

        log.debug("Arrival cache miss, fetching from TfL")
        try:
            arrivals = self.client.fetch_arrivals()
        except (UpstreamUnreachable, UpstreamStatusError, UpstreamParseError) as exc:
            log.warning("TfL fetch failed: %s (%s)", exc.message, exc.details)
            raise
        self.cache.replace(arrivals)
        return arrivals


def parse_route_filter(raw: Optional[str]) -> Optional[Tuple[str, ...]]:
    if raw is None:
        return None
    routes = tuple(part.strip().lower() for part in raw.split(",") if part.strip())
    return routes or None


def filter_arrivals(
    arrivals: Sequence[Arrival], routes: Optional[Sequence[str]]
) -> List[Arrival]:
    if routes is None:
        return list(arrivals)
    wanted = set(routes)
    return [a for a in arrivals if a.line_name.strip().lower() in wanted]


def sort_arrivals(arrivals: Sequence[Arrival]) -> List[Arrival]:
    # sorted() is stable, so equal timeToStation keeps upstream order.
    return sorted(arrivals, key=lambda a: a.time_to_station)


def minutes_until(time_to_station: int) -> int:
    return max(time_to_station // 60, 0)


def build_summary(
    arrivals: Sequence[Arrival], stop_id: str, limit: int = DEFAULT_SUMMARY_LIMIT
) -> JsonDict:
    """Compact view of the soonest arrivals.

    ``arrivals`` must already be filtered and sorted. The header echoes the
    soonest arrival's own stop fields; with nothing to show it falls back to
    the configured ``stop_id``.
    """
    if not arrivals:
        return {"stop_id": stop_id, "stop_name": None, "last_updated": None, "services": []}

    first = arrivals[0]
    return {
        "stop_id": first.naptan_id,
        "stop_name": first.station_name,
        "last_updated": first.timestamp,
        "services": [
            {
                "route": a.line_name,
                "destination": a.destination_name,
                "minutes": minutes_until(a.time_to_station),
            }
            for a in arrivals[:limit]
        ],
    }


def error_response(exc: ProxyError) -> Response:
    payload: JsonDict = {"error": exc.kind, "message": exc.message, "details": exc.details}
    resp = jsonify(payload)
    resp.status_code = exc.status
    resp.headers["Cache-Control"] = "no-store"
    return resp


def add_cache_headers(resp: Response, ttl_sec: float) -> Response:
    resp.headers["Cache-Control"] = f"max-age={int(ttl_sec)}"
    return resp


def parse_limit(raw: Optional[str]) -> int:
    if raw is None or raw == "":
        return DEFAULT_SUMMARY_LIMIT
    try:
        limit = int(raw)
    except ValueError:
        raise InvalidParameter("limit must be a non-negative integer", details=raw) from None
    if limit < 0:
        raise InvalidParameter("limit must be a non-negative integer", details=raw)
    return limit


def route_param() -> Optional[str]:
    raw = request.args.get("routes")
    if raw is None:
        raw = request.args.get("route")
    return raw


def create_app(
    config: Config,
    service: Optional[ArrivalService] = None,
    session: Optional[requests.Session] = None,
) -> Flask:
    if service is None:
        service = ArrivalService(
            TflClient(config, session=session), ArrivalCache(config.cache_ttl)
        )

    app = Flask(__name__)
    app.config["TFL_CONFIG"] = config
    app.extensions["arrival_service"] = service
    allowed_origins = set(config.cors_allowed_origins)

    @app.errorhandler(ProxyError)
    def handle_proxy_error(exc: ProxyError) -> Response:
        return error_response(exc)

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception) -> Any:
        if isinstance(exc, HTTPException):
            return exc
        log.exception("Unhandled error serving %s", request.path)
        return error_response(ProxyError("Unexpected error"))

    @app.after_request
    def add_common_headers(resp: Response) -> Response:
        origin = request.headers.get("Origin")
        if origin and origin in allowed_origins:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Vary"] = "Origin"
            resp.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
            resp.headers["Access-Control-Expose-Headers"] = "Cache-Control"
            resp.headers["Access-Control-Max-Age"] = "600"

        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        return resp

    @app.route("/health", methods=["GET"])
    def health() -> Response:
        return jsonify({"status": "ok"})

    @app.route("/next-bus", methods=["GET", "OPTIONS"])
    def next_bus() -> Response:
        if request.method == "OPTIONS":
            return make_response("", 204)

        route_filter = route_param()
        arrivals = service.get_arrivals()
        filtered = filter_arrivals(arrivals, parse_route_filter(route_filter))
        if not filtered:
            raise NoArrivals(config.stop_id, route_filter)

        resp = jsonify([a.model_dump(by_alias=True) for a in sort_arrivals(filtered)])
        return add_cache_headers(resp, config.cache_ttl)

    @app.route("/next-bus/summary", methods=["GET", "OPTIONS"])
    def next_bus_summary() -> Response:
        if request.method == "OPTIONS":
            return make_response("", 204)

        limit = parse_limit(request.args.get("limit"))
        arrivals = service.get_arrivals()
        filtered = filter_arrivals(arrivals, parse_route_filter(route_param()))
        resp = jsonify(build_summary(sort_arrivals(filtered), config.stop_id, limit))
        return add_cache_headers(resp, config.cache_ttl)

    return app


def main() -> None:
    config = load_config()
    log.info("Serving arrivals for stop %s", config.stop_id)
    app = create_app(config)
    app.run(host=config.host, port=config.port, threaded=True)


if __name__ == "__main__":
    main()
