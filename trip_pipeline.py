#!/usr/bin/env python3
"""
Trip Route & Coverage Pipeline
Ordered waypoints → driving legs → distance/duration labels → regions visited
"""

import os
import sys
import math
import time
import asyncio
import logging
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

warnings.filterwarnings('ignore', category=FutureWarning)

import pandas as pd
import numpy as np
import requests
import polyline
import flexpolyline
import shapely.geometry as geom
import geopandas as gpd
import toml
import aiohttp
from shapely.errors import GEOSException
from shapely.validation import explain_validity
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

# ──────────────────────────────────────────────────────────────────────────────
# Configuration & Constants
# ──────────────────────────────────────────────────────────────────────────────

BASE_DIR = Path(__file__).parent
WAYPOINTS_FILE = BASE_DIR / "waypoints.csv"
REGION_SHP = BASE_DIR / "cb_2024_us_state_500k.shp"
REGION_ZIP = BASE_DIR / "cb_2024_us_state_500k.zip"
REGION_CATALOG_URL = "https://www2.census.gov/geo/tiger/GENZ2024/shp/cb_2024_us_state_500k.zip"
REGION_ID_FIELD = "STUSPS"
REGION_NAME_FIELD = "NAME"
OUTPUT_DIR = BASE_DIR / "output"
SECRETS_FILE = BASE_DIR / "secrets.toml"

HERE_ROUTER_URL = "https://router.hereapi.com/v8/routes"
OSRM_DEFAULT_URL = "https://router.project-osrm.org"

METERS_PER_MILE = 1609.344
SECONDS_PER_DAY = 86400

ROUTE_CRS = "EPSG:4326"     # WGS84, what every routing provider returns
COVERAGE_CRS = "EPSG:5070"  # NAD83/USA Contiguous Albers

# Setup logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TripSettings:
    """Run configuration. Rounding granularities are presentation choices, kept here."""
    provider: str = "here"
    here_api_key: Optional[str] = None
    osrm_url: str = OSRM_DEFAULT_URL
    transport_mode: str = "car"
    max_concurrent: int = 5
    request_timeout: float = 15.0
    max_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    distance_accuracy: int = 10
    duration_increment_minutes: int = 15
    region_path: Path = REGION_SHP
    coverage_crs: str = COVERAGE_CRS

    def __post_init__(self):
        if self.provider not in ("here", "osrm"):
            raise ValueError(f"Unknown routing provider: {self.provider!r}")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.distance_accuracy <= 0 or self.duration_increment_minutes <= 0:
            raise ValueError("rounding granularity must be positive")


def load_settings(secrets_file: Path = SECRETS_FILE) -> TripSettings:
    """
    Build TripSettings from environment variables, then secrets.toml, then defaults
    """
    cfg = {}
    secrets_file = Path(secrets_file)
    if secrets_file.exists():
        try:
            cfg = toml.load(secrets_file)
        except toml.TomlDecodeError as e:
            logger.error(f"Error loading {secrets_file.name}: {e}")

    def pick(env_name: str, key: str, default):
        value = os.environ.get(env_name)
        if value:
            return value
        return cfg.get(key, default)

    defaults = TripSettings()
    return TripSettings(
        provider=str(pick("TRIP_ROUTING_PROVIDER", "routing_provider", defaults.provider)).lower(),
        here_api_key=pick("HERE_API_KEY", "HERE_API_KEY", None) or cfg.get("HERE_KEY"),
        osrm_url=str(pick("OSRM_URL", "osrm_url", defaults.osrm_url)).rstrip("/"),
        transport_mode=str(pick("TRIP_TRANSPORT_MODE", "transport_mode", defaults.transport_mode)),
        max_concurrent=int(pick("TRIP_MAX_CONCURRENT", "max_concurrent", defaults.max_concurrent)),
        request_timeout=float(pick("TRIP_REQUEST_TIMEOUT", "request_timeout", defaults.request_timeout)),
        max_attempts=int(pick("TRIP_MAX_ATTEMPTS", "max_attempts", defaults.max_attempts)),
        retry_backoff_seconds=float(pick("TRIP_RETRY_BACKOFF", "retry_backoff_seconds", defaults.retry_backoff_seconds)),
        distance_accuracy=int(pick("TRIP_DISTANCE_ACCURACY", "distance_accuracy", defaults.distance_accuracy)),
        duration_increment_minutes=int(pick("TRIP_DURATION_INCREMENT", "duration_increment_minutes",
                                            defaults.duration_increment_minutes)),
        region_path=Path(pick("TRIP_REGION_PATH", "region_path", defaults.region_path)),
        coverage_crs=str(pick("TRIP_COVERAGE_CRS", "coverage_crs", defaults.coverage_crs)),
    )


def load_api_key(secrets_file: Path = SECRETS_FILE) -> str:
    """Load HERE API key from environment or secrets.toml"""
    key = os.environ.get("HERE_API_KEY")
    if key:
        return key

    try:
        cfg = toml.load(secrets_file)
        key = cfg.get("HERE_API_KEY") or cfg.get("HERE_KEY")
        if key:
            return key
    except (OSError, toml.TomlDecodeError) as e:
        logger.error(f"Error loading secrets.toml: {e}")

    raise RuntimeError("HERE_API_KEY not found in environment or secrets.toml")

# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────

class TripPipelineError(Exception):
    pass


class InputError(TripPipelineError):
    """Too few waypoints or a malformed coordinate."""


class RoutingUnavailable(TripPipelineError):
    """
    Provider failure: network, timeout, bad HTTP status or malformed payload.
    Only retryable failures (network, timeout, 5xx, 429, malformed) are retried;
    a rejected request (other 4xx) fails the segment on the first attempt.
    """

    def __init__(self, message: str = "", retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class NoRouteFound(TripPipelineError):
    """Provider answered but has no drivable path between the two points."""


class GeometryError(TripPipelineError):
    """A region boundary could not be tested against the route geometries."""

# ──────────────────────────────────────────────────────────────────────────────
# Phase 1: Waypoints and Segments
# ──────────────────────────────────────────────────────────────────────────────

WAYPOINT_COLUMN_ALIASES = {
    "name": ("location name", "location", "name", "stop"),
    "lon": ("longitude", "lon", "lng", "long"),
    "lat": ("latitude", "lat"),
}


@dataclass(frozen=True)
class Waypoint:
    name: str
    lon: float
    lat: float

    @property
    def coordinate(self) -> Tuple[float, float]:
        return (self.lon, self.lat)


@dataclass(frozen=True)
class Segment:
    index: int
    origin: Waypoint
    destination: Waypoint

    @property
    def label(self) -> str:
        return f"{self.origin.name} → {self.destination.name}"


def validate_coordinate(lon, lat, name: str = "") -> Tuple[float, float]:
    """Coerce to floats and check WGS84 ranges; raises InputError."""
    try:
        lon, lat = float(lon), float(lat)
    except (TypeError, ValueError) as e:
        raise InputError(f"Non-numeric coordinate for {name!r}: ({lon}, {lat})") from e

    if not np.isfinite([lon, lat]).all():
        raise InputError(f"Non-finite coordinate for {name!r}: ({lon}, {lat})")
    if not (-180 <= lon <= 180 and -90 <= lat <= 90):
        raise InputError(f"Coordinate out of range for {name!r}: ({lon}, {lat})")
    return lon, lat


def _find_column(df: pd.DataFrame, role: str) -> str:
    lookup = {str(col).strip().lower(): col for col in df.columns}
    for alias in WAYPOINT_COLUMN_ALIASES[role]:
        if alias in lookup:
            return lookup[alias]
    raise InputError(f"Waypoint data has no {role} column (expected one of {WAYPOINT_COLUMN_ALIASES[role]})")


def waypoints_from_frame(df: pd.DataFrame) -> List[Waypoint]:
    """
    Build the ordered itinerary from a DataFrame with location name, longitude and
    latitude columns. Row order is visit order; repeated names or places are kept.
    """
    name_col = _find_column(df, "name")
    lon_col = _find_column(df, "lon")
    lat_col = _find_column(df, "lat")

    waypoints = []
    for _, row in df.iterrows():
        name = str(row[name_col]).strip()
        lon, lat = validate_coordinate(row[lon_col], row[lat_col], name)
        waypoints.append(Waypoint(name=name, lon=lon, lat=lat))
    return waypoints


def load_waypoints(path: Path = WAYPOINTS_FILE) -> List[Waypoint]:
    """Read waypoints from a .csv or .xlsx file"""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Waypoint file not found: {path}")

    if path.suffix.lower() in (".xlsx", ".xls"):
        df = pd.read_excel(path)
    else:
        df = pd.read_csv(path)

    waypoints = waypoints_from_frame(df)
    logger.info(f"Read {len(waypoints)} waypoints from {path.name}")
    return waypoints


def derive_segments(waypoints: Sequence[Waypoint]) -> List[Segment]:
    """Adjacent origin→destination pairs in visit order; empty for fewer than two waypoints."""
    return [
        Segment(index=i, origin=waypoints[i], destination=waypoints[i + 1])
        for i in range(len(waypoints) - 1)
    ]


def require_trip(waypoints: Sequence[Waypoint]) -> None:
    if len(waypoints) < 2:
        raise InputError(f"A trip needs at least 2 waypoints, got {len(waypoints)}")

# ──────────────────────────────────────────────────────────────────────────────
# Phase 2: Route Acquisition
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Route:
    segment: Segment
    path: Tuple[Tuple[float, float], ...]  # (lon, lat) in ROUTE_CRS
    distance_meters: float
    duration_seconds: float

    @property
    def geometry(self) -> Union[geom.LineString, geom.Point]:
        # origin == destination collapses to a point
        if len(set(self.path)) == 1:
            return geom.Point(self.path[0])
        return geom.LineString(self.path)


@dataclass(frozen=True)
class SegmentFailure:
    segment: Segment
    error: str
    reason: str

    @classmethod
    def from_error(cls, segment: Segment, exc: TripPipelineError) -> "SegmentFailure":
        return cls(segment=segment, error=type(exc).__name__, reason=str(exc))


@dataclass
class RoutingOutcome:
    routes: List[Route] = field(default_factory=list)
    failures: List[SegmentFailure] = field(default_factory=list)


OSRM_NO_ROUTE_CODES = ("NoRoute", "NoSegment")


def _http_error(provider: str, status: int, text: str) -> RoutingUnavailable:
    """5xx and 429 are worth another attempt; other statuses mean the request itself was refused"""
    retryable = status >= 500 or status == 429
    return RoutingUnavailable(f"{provider} HTTP {status}: {text[:200]}", retryable=retryable)


def parse_here_response(data: dict) -> dict:
    """
    Extract geometry, distance and duration from a HERE v8 routes response.
    Sections are concatenated; shared junction points are dropped.
    """
    if not isinstance(data, dict):
        raise RoutingUnavailable(f"Malformed HERE API response: expected an object, got {type(data).__name__}")

    routes = data.get("routes") or []
    if not routes:
        notices = data.get("notices") or []
        detail = "; ".join(str(n.get("title", n)) if isinstance(n, dict) else str(n)
                           for n in notices) or "empty route list"
        raise NoRouteFound(f"HERE API returned no route ({detail})")

    try:
        sections = routes[0]["sections"]
        if not sections:
            raise RoutingUnavailable("HERE API route has no sections")

        coords: List[Tuple[float, float]] = []
        distance = duration = 0.0
        for section in sections:
            summary = section["summary"]
            distance += float(summary["length"])
            duration += float(summary["duration"])

            # HERE uses flexible polyline encoding: (lat, lng[, elevation]) tuples
            decoded = flexpolyline.decode(section["polyline"])
            section_coords = [(point[1], point[0]) for point in decoded]
            if coords and section_coords and coords[-1] == section_coords[0]:
                section_coords = section_coords[1:]
            coords.extend(section_coords)
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise RoutingUnavailable(f"Malformed HERE API response: {type(e).__name__}: {e}") from e

    return {"geometry": coords, "distance_meters": distance, "duration_seconds": duration}


def parse_osrm_response(data: dict) -> dict:
    """Extract geometry, distance and duration from an OSRM route response (polyline6)."""
    if not isinstance(data, dict):
        raise RoutingUnavailable(f"Malformed OSRM response: expected an object, got {type(data).__name__}")

    code = data.get("code")
    if code in OSRM_NO_ROUTE_CODES:
        raise NoRouteFound(f"OSRM returned {code}: {data.get('message', '')}".rstrip(": "))
    if code != "Ok":
        raise RoutingUnavailable(f"OSRM returned code {code!r}: {data.get('message', '')}")

    routes = data.get("routes") or []
    if not routes:
        raise NoRouteFound("OSRM returned an empty route list")

    try:
        route = routes[0]
        decoded = polyline.decode(route["geometry"], 6)
        coords = [(lon, lat) for lat, lon in decoded]
        return {
            "geometry": coords,
            "distance_meters": float(route["distance"]),
            "duration_seconds": float(route["duration"]),
        }
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise RoutingUnavailable(f"Malformed OSRM response: {type(e).__name__}: {e}") from e


class HereRouteProvider:
    """HERE Routing API v8"""

    name = "here"

    def __init__(self, api_key: str, transport_mode: str = "car", timeout: float = 15.0):
        self.api_key = api_key
        self.transport_mode = transport_mode
        self.timeout = timeout

    async def route(self, session: aiohttp.ClientSession, origin: Waypoint, destination: Waypoint) -> dict:
        params = {
            "transportMode": self.transport_mode,
            "routingMode": "fast",
            "origin": f"{origin.lat},{origin.lon}",
            "destination": f"{destination.lat},{destination.lon}",
            "return": "summary,polyline",
            "apiKey": self.api_key,
        }
        try:
            async with session.get(HERE_ROUTER_URL, params=params,
                                   timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                if resp.status != 200:
                    raise _http_error("HERE API", resp.status, await resp.text())
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise RoutingUnavailable(f"HERE API timeout after {self.timeout:g}s") from e
        except aiohttp.ClientError as e:
            raise RoutingUnavailable(f"HERE API connection error: {e}") from e
        except ValueError as e:
            raise RoutingUnavailable(f"HERE API returned a non-JSON body: {e}") from e

        return parse_here_response(data)


class OsrmRouteProvider:
    """OSRM /route/v1 service, public demo server or self-hosted"""

    name = "osrm"

    def __init__(self, base_url: str = OSRM_DEFAULT_URL, profile: str = "driving", timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self.timeout = timeout

    async def route(self, session: aiohttp.ClientSession, origin: Waypoint, destination: Waypoint) -> dict:
        coords = f"{origin.lon},{origin.lat};{destination.lon},{destination.lat}"
        url = f"{self.base_url}/route/v1/{self.profile}/{coords}"
        params = {"overview": "full", "geometries": "polyline6", "steps": "false"}
        try:
            async with session.get(url, params=params,
                                   timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                # OSRM reports NoRoute with a 400 and a JSON body
                if resp.status not in (200, 400):
                    raise _http_error("OSRM", resp.status, await resp.text())
                status = resp.status
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise RoutingUnavailable(f"OSRM timeout after {self.timeout:g}s") from e
        except aiohttp.ClientError as e:
            raise RoutingUnavailable(f"OSRM connection error: {e}") from e
        except ValueError as e:
            raise RoutingUnavailable(f"OSRM returned a non-JSON body: {e}") from e

        if status == 400 and not (isinstance(data, dict) and data.get("code") in OSRM_NO_ROUTE_CODES):
            raise _http_error("OSRM", status, str(data))
        return parse_osrm_response(data)


def build_provider(settings: TripSettings):
    if settings.provider == "osrm":
        return OsrmRouteProvider(settings.osrm_url, timeout=settings.request_timeout)
    api_key = settings.here_api_key or load_api_key()
    return HereRouteProvider(api_key, transport_mode=settings.transport_mode, timeout=settings.request_timeout)


def _build_route(segment: Segment, raw: dict) -> Route:
    """Validate a provider payload and freeze it into a Route"""
    try:
        distance = float(raw["distance_meters"])
        duration = float(raw["duration_seconds"])
        path = tuple((float(lon), float(lat)) for lon, lat in raw["geometry"])
    except (KeyError, TypeError, ValueError) as e:
        raise RoutingUnavailable(f"Malformed route payload: {type(e).__name__}: {e}") from e

    if not (math.isfinite(distance) and distance >= 0):
        raise RoutingUnavailable(f"Invalid route distance: {distance}")
    if not (math.isfinite(duration) and duration >= 0):
        raise RoutingUnavailable(f"Invalid route duration: {duration}")
    if not path:
        raise RoutingUnavailable("Route geometry is empty")

    invalid_coords = [(lon, lat) for lon, lat in path
                      if not (-180 <= lon <= 180 and -90 <= lat <= 90)]
    if invalid_coords:
        raise RoutingUnavailable(f"Route geometry has invalid coordinates: {invalid_coords[:5]}")

    return Route(segment=segment, path=path, distance_meters=distance, duration_seconds=duration)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, RoutingUnavailable) and exc.retryable


async def fetch_route(session: aiohttp.ClientSession, provider, segment: Segment,
                      settings: TripSettings) -> Route:
    """
    Route a single segment. Retryable RoutingUnavailable failures are retried with
    exponential backoff up to settings.max_attempts; NoRouteFound and refused
    requests are raised straight away.
    """
    backoff = settings.retry_backoff_seconds
    async for attempt in AsyncRetrying(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(settings.max_attempts),
        wait=wait_exponential(multiplier=backoff, max=backoff * 8),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    ):
        with attempt:
            raw = await provider.route(session, segment.origin, segment.destination)
            route = _build_route(segment, raw)
    return route


async def fetch_routes_concurrent(segments: Sequence[Segment], provider, settings: TripSettings,
                                  session: Optional[aiohttp.ClientSession] = None) -> RoutingOutcome:
    """
    Route every segment with at most settings.max_concurrent requests in flight.
    Each slot is tagged route-or-failure by segment position, so the outcome is in
    trip order no matter which response arrives first.
    """
    logger.info(f"Phase 2: Routing {len(segments)} legs (concurrent with max {settings.max_concurrent} requests)...")

    start_time = time.time()
    slots: List[Union[Route, SegmentFailure, None]] = [None] * len(segments)
    semaphore = asyncio.Semaphore(settings.max_concurrent)

    async def process_single_segment(client: aiohttp.ClientSession, position: int, segment: Segment):
        async with semaphore:
            try:
                slots[position] = await fetch_route(client, provider, segment, settings)
                logger.debug(f"Routed leg {segment.index + 1}: {segment.label}")
            except (RoutingUnavailable, NoRouteFound) as e:
                logger.warning(f"{type(e).__name__}: leg {segment.index + 1} ({segment.label}): {e}")
                slots[position] = SegmentFailure.from_error(segment, e)

    async def run_all(client: aiohttp.ClientSession):
        await asyncio.gather(*(process_single_segment(client, i, s) for i, s in enumerate(segments)))

    if session is None:
        connector = aiohttp.TCPConnector(limit=settings.max_concurrent * 2, limit_per_host=settings.max_concurrent)
        async with aiohttp.ClientSession(connector=connector) as own_session:
            await run_all(own_session)
    else:
        await run_all(session)

    outcome = RoutingOutcome()
    for slot in slots:
        if isinstance(slot, Route):
            outcome.routes.append(slot)
        else:
            outcome.failures.append(slot)

    logger.info(f"Phase 2 completed in {time.time() - start_time:.1f}s:")
    logger.info(f"  • Legs routed: {len(outcome.routes)}")
    logger.info(f"  • Legs failed: {len(outcome.failures)}")
    return outcome

# ──────────────────────────────────────────────────────────────────────────────
# Phase 3: Measurement Formatting
# ──────────────────────────────────────────────────────────────────────────────

def _check_measurement(value, what: str) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise InputError(f"{what} must be a number, got {value!r}") from e
    if not math.isfinite(value) or value < 0:
        raise InputError(f"{what} must be finite and non-negative, got {value}")
    return value


def round_to_accuracy(value: float, accuracy: float) -> float:
    """Round to the nearest multiple of accuracy (ties go to the even multiple)."""
    return round(float(value) / accuracy) * accuracy


def fmt_distance(distance_meters: float, accuracy: int = 10) -> str:
    """
    Meters → miles, rounded to the nearest `accuracy` miles:
    fmt_distance(1995572.6) == "1,240 miles"
    """
    meters = _check_measurement(distance_meters, "distance")
    miles = round_to_accuracy(meters / METERS_PER_MILE, accuracy)
    return f"{int(miles):,} miles"


def fmt_duration(duration_seconds: float, increment_minutes: int = 15) -> str:
    """
    Round to the nearest increment and render as hours and minutes.

    Whole days are folded back into the hour count, so 1500 minutes is
    "25 hours 0 minutes". Under an hour only the minute clause is shown.
    """
    seconds = _check_measurement(duration_seconds, "duration")
    rounded = int(round_to_accuracy(seconds, increment_minutes * 60))

    days, remainder = divmod(rounded, SECONDS_PER_DAY)
    hours, remainder = divmod(remainder, 3600)
    hours += days * 24
    minutes = remainder // 60

    if hours == 0:
        return f"{minutes} minutes"
    hour_label = "hour" if hours == 1 else "hours"
    return f"{hours:,} {hour_label} {minutes} minutes"


LEG_COLUMNS = [
    "Leg", "Origin", "Destination", "Distance (m)", "Duration (s)",
    "Miles", "Distance", "Duration",
]


def leg_table(routes: Sequence[Route], settings: TripSettings = TripSettings()) -> pd.DataFrame:
    """One row per routed leg with raw values and display labels"""
    rows = []
    for route in routes:
        rows.append({
            "Leg": route.segment.index + 1,
            "Origin": route.segment.origin.name,
            "Destination": route.segment.destination.name,
            "Distance (m)": route.distance_meters,
            "Duration (s)": route.duration_seconds,
            "Miles": round(route.distance_meters / METERS_PER_MILE, 1),
            "Distance": fmt_distance(route.distance_meters, settings.distance_accuracy),
            "Duration": fmt_duration(route.duration_seconds, settings.duration_increment_minutes),
        })
    return pd.DataFrame(rows, columns=LEG_COLUMNS)


def trip_totals(routes: Sequence[Route], settings: TripSettings = TripSettings()) -> Dict[str, object]:
    total_meters = sum(route.distance_meters for route in routes)
    total_seconds = sum(route.duration_seconds for route in routes)
    return {
        "legs": len(routes),
        "distance_meters": total_meters,
        "duration_seconds": total_seconds,
        "distance": fmt_distance(total_meters, settings.distance_accuracy),
        "duration": fmt_duration(total_seconds, settings.duration_increment_minutes),
    }

# ──────────────────────────────────────────────────────────────────────────────
# Phase 4: Region Coverage
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Region:
    id: str
    name: str
    boundary: geom.base.BaseGeometry


@dataclass(frozen=True)
class RegionFailure:
    region_id: str
    name: str
    reason: str


@dataclass
class CoverageResult:
    visited: Set[str]
    region_ids: List[str]
    hits: pd.DataFrame
    failures: List[RegionFailure] = field(default_factory=list)

    @property
    def flags(self) -> Dict[str, bool]:
        """Visited flag for every region in catalog order"""
        return {region_id: region_id in self.visited for region_id in self.region_ids}

    def flag_regions(self, regions: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        flagged = regions.copy()
        flagged["visited"] = flagged["region_id"].astype(str).isin(self.visited)
        return flagged


HIT_COLUMNS = ["region_id", "name", "Leg", "Origin", "Destination"]


def region_catalog_frame(regions: Sequence[Region], crs: Optional[str] = ROUTE_CRS) -> gpd.GeoDataFrame:
    """In-memory catalog in the same shape load_region_catalog produces"""
    return gpd.GeoDataFrame(
        {"region_id": [r.id for r in regions], "name": [r.name for r in regions]},
        geometry=[r.boundary for r in regions],
        crs=crs,
    )


def download_region_catalog(url: str = REGION_CATALOG_URL, dest: Path = REGION_ZIP) -> Path:
    """Fetch the Census cartographic boundary zip (read directly by geopandas)"""
    dest = Path(dest)
    logger.info(f"Downloading region boundaries from {url}...")
    with requests.get(url, stream=True, timeout=60) as resp:
        resp.raise_for_status()
        with open(dest, "wb") as f:
            for chunk in resp.iter_content(chunk_size=1 << 16):
                f.write(chunk)
    logger.info(f"Region boundaries saved: {dest}")
    return dest


def ensure_region_catalog(settings: TripSettings) -> Path:
    if settings.region_path.exists():
        return settings.region_path
    if REGION_ZIP.exists():
        return REGION_ZIP
    return download_region_catalog(REGION_CATALOG_URL, REGION_ZIP)


def load_region_catalog(path: Path = REGION_SHP, id_field: str = REGION_ID_FIELD,
                        name_field: str = REGION_NAME_FIELD, crs: Optional[str] = COVERAGE_CRS) -> gpd.GeoDataFrame:
    """Load and prepare region boundary data"""
    logger.info("Loading region boundary data...")

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Region boundary file not found: {path}")

    regions = gpd.read_file(path)[[id_field, name_field, "geometry"]]
    regions = regions.rename(columns={id_field: "region_id", name_field: "name"})
    regions["region_id"] = regions["region_id"].astype(str)

    if regions.crs is None:
        logger.warning(f"{path.name} carries no CRS; coverage tests will fail for every region")
    elif crs is not None:
        regions = regions.to_crs(crs)

    logger.info(f"Loaded {len(regions)} region boundaries (CRS: {regions.crs})")
    return regions


def routes_to_frame(routes: Sequence[Route]) -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {
            "Leg": [r.segment.index + 1 for r in routes],
            "Origin": [r.segment.origin.name for r in routes],
            "Destination": [r.segment.destination.name for r in routes],
        },
        geometry=[r.geometry for r in routes],
        crs=ROUTE_CRS,
    )


def _intersecting_legs(boundary, route_frame: gpd.GeoDataFrame) -> List[int]:
    """Positions in route_frame whose geometry touches the boundary; raises GeometryError"""
    if boundary is None or boundary.is_empty:
        raise GeometryError("empty boundary geometry")
    if not boundary.is_valid:
        raise GeometryError(f"invalid boundary: {explain_validity(boundary)}")
    try:
        return [i for i, line in enumerate(route_frame.geometry) if line.intersects(boundary)]
    except GEOSException as e:
        raise GeometryError(f"intersection failed: {e}") from e


def resolve_coverage(regions: gpd.GeoDataFrame, routes: Sequence[Route]) -> CoverageResult:
    """
    Determine which regions the trip passes through.

    Route geometries are reprojected into the catalog's CRS, then every region is
    tested against every route. A region hit several times (re-entered, or shared
    by consecutive legs) is one member of the visited set; every individual hit is
    kept in the `hits` table for auditing. Regions that cannot be tested are
    reported in `failures` and the rest are still evaluated.
    """
    logger.info(f"Phase 4: Resolving coverage of {len(routes)} routes over {len(regions)} regions...")

    region_ids = [str(rid) for rid in regions["region_id"]]
    visited: Set[str] = set()
    hit_rows = []
    failures: List[RegionFailure] = []

    if regions.crs is None:
        failures = [RegionFailure(str(row["region_id"]), str(row["name"]),
                                  "region catalog has no coordinate reference system")
                    for _, row in regions.iterrows()]
        logger.warning(f"Coverage skipped: region catalog has no CRS ({len(failures)} regions unevaluated)")
        return CoverageResult(visited, region_ids, pd.DataFrame(columns=HIT_COLUMNS), failures)

    if not routes:
        return CoverageResult(visited, region_ids, pd.DataFrame(columns=HIT_COLUMNS), failures)

    route_frame = routes_to_frame(routes)
    if route_frame.crs != regions.crs:
        route_frame = route_frame.to_crs(regions.crs)

    for _, region in regions.iterrows():
        region_id = str(region["region_id"])
        try:
            positions = _intersecting_legs(region["geometry"], route_frame)
        except GeometryError as e:
            logger.warning(f"Error processing region {region_id}: {e}")
            failures.append(RegionFailure(region_id, str(region["name"]), str(e)))
            continue

        if positions:
            visited.add(region_id)
        for i in positions:
            leg = route_frame.iloc[i]
            hit_rows.append({
                "region_id": region_id,
                "name": region["name"],
                "Leg": leg["Leg"],
                "Origin": leg["Origin"],
                "Destination": leg["Destination"],
            })

    logger.info(f"Phase 4 completed:")
    logger.info(f"  • Regions visited: {len(visited)} ({', '.join(sorted(visited))})")
    logger.info(f"  • Route/region intersections: {len(hit_rows)}")
    logger.info(f"  • Regions not evaluated: {len(failures)}")
    return CoverageResult(visited, region_ids, pd.DataFrame(hit_rows, columns=HIT_COLUMNS), failures)

# ──────────────────────────────────────────────────────────────────────────────
# Phase 5: Trip Run and Reporting
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class TripResult:
    waypoints: List[Waypoint]
    segments: List[Segment]
    routes: List[Route]
    routing_failures: List[SegmentFailure]
    legs: pd.DataFrame
    totals: Dict[str, object]
    coverage: CoverageResult
    regions: gpd.GeoDataFrame

    @property
    def visited_regions(self) -> gpd.GeoDataFrame:
        return self.coverage.flag_regions(self.regions)


async def run_trip_async(waypoints: Sequence[Waypoint], regions: gpd.GeoDataFrame, provider,
                         settings: TripSettings = TripSettings(),
                         session: Optional[aiohttp.ClientSession] = None) -> TripResult:
    """
    Full run: segments → routes → labels → coverage.
    Per-leg and per-region failures are collected, not raised.
    """
    waypoints = list(waypoints)
    require_trip(waypoints)

    segments = derive_segments(waypoints)
    logger.info(f"Phase 1: {len(waypoints)} waypoints → {len(segments)} legs")

    outcome = await fetch_routes_concurrent(segments, provider, settings, session=session)

    logger.info("Phase 3: Formatting distances and durations...")
    legs = leg_table(outcome.routes, settings)
    totals = trip_totals(outcome.routes, settings)

    coverage = resolve_coverage(regions, outcome.routes)

    return TripResult(
        waypoints=waypoints,
        segments=segments,
        routes=outcome.routes,
        routing_failures=outcome.failures,
        legs=legs,
        totals=totals,
        coverage=coverage,
        regions=regions,
    )


def run_trip(waypoints: Sequence[Waypoint], regions: gpd.GeoDataFrame, provider,
             settings: TripSettings = TripSettings()) -> TripResult:
    return asyncio.run(run_trip_async(waypoints, regions, provider, settings))


FAILURE_COLUMNS = ["Kind", "Item", "Error", "Reason"]


def failure_table(result: TripResult) -> pd.DataFrame:
    rows = [
        {
            "Kind": "leg",
            "Item": f"Leg {f.segment.index + 1}: {f.segment.label}",
            "Error": f.error,
            "Reason": f.reason,
        }
        for f in result.routing_failures
    ]
    rows += [
        {
            "Kind": "region",
            "Item": f"{f.region_id} ({f.name})",
            "Error": GeometryError.__name__,
            "Reason": f.reason,
        }
        for f in result.coverage.failures
    ]
    return pd.DataFrame(rows, columns=FAILURE_COLUMNS)


def region_table(result: TripResult) -> pd.DataFrame:
    flagged = result.visited_regions
    return pd.DataFrame(flagged[["region_id", "name", "visited"]])


def log_trip_summary(result: TripResult) -> None:
    logger.info("=" * 60)
    logger.info("TRIP SUMMARY")
    logger.info(f"  • Waypoints: {len(result.waypoints)}")
    logger.info(f"  • Legs routed: {len(result.routes)}/{len(result.segments)}")
    for _, leg in result.legs.iterrows():
        logger.info(f"    - Leg {leg['Leg']}: {leg['Origin']} → {leg['Destination']}: "
                    f"{leg['Distance']}, {leg['Duration']}")
    logger.info(f"  • Total: {result.totals['distance']}, {result.totals['duration']}")
    logger.info(f"  • Regions visited: {len(result.coverage.visited)}: "
                f"{', '.join(sorted(result.coverage.visited)) or 'none'}")

    failures = failure_table(result)
    if len(failures) > 0:
        logger.info(f"  • Failures: {len(failures)}")
        for _, row in failures.iterrows():
            logger.info(f"    - [{row['Kind']}] {row['Item']}: {row['Error']}: {row['Reason']}")
    logger.info("=" * 60)


def write_outputs(result: TripResult, output_dir: Path = OUTPUT_DIR) -> Dict[str, Path]:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    files = {
        "legs": output_dir / "trip_legs.csv",
        "failures": output_dir / "trip_failures.csv",
        "regions": output_dir / "trip_regions.csv",
        "hits": output_dir / "trip_region_hits.csv",
    }
    result.legs.to_csv(files["legs"], index=False)
    failure_table(result).to_csv(files["failures"], index=False)
    region_table(result).to_csv(files["regions"], index=False)
    result.coverage.hits.to_csv(files["hits"], index=False)

    logger.info(f"Output files saved to {output_dir}:")
    for path in files.values():
        logger.info(f"  • {path.name}")
    return files

# ──────────────────────────────────────────────────────────────────────────────
# Main Processing Function
# ──────────────────────────────────────────────────────────────────────────────

def main(argv: Optional[Sequence[str]] = None) -> None:
    """
    Route the trip in the given waypoint file (default waypoints.csv) and write
    leg, failure and region tables to output/
    """
    argv = sys.argv[1:] if argv is None else list(argv)
    waypoints_file = Path(argv[0]) if argv else WAYPOINTS_FILE

    logger.info("Starting Trip Route & Coverage Pipeline...")

    try:
        settings = load_settings()
        provider = build_provider(settings)
        logger.info(f"Routing provider: {provider.name}")

        waypoints = load_waypoints(waypoints_file)
        regions = load_region_catalog(ensure_region_catalog(settings), crs=settings.coverage_crs)

        result = run_trip(waypoints, regions, provider, settings)
        log_trip_summary(result)
        write_outputs(result)

    except Exception as e:
        logger.error(f"Processing failed: {e}")
        raise


if __name__ == "__main__":
    main()
