"""
GPS service for interaction tracking.
Wraps the platform location capability: permissions, single-shot and
continuous acquisition, a short-lived fix cache, and distance/accuracy helpers.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Hashable, Optional, Protocol

from .local_storage import GPS_CACHE_KEY, KeyValueStore, load_json, save_json
from .telemetry import PerformanceTelemetryCollector
from ..models.base import generate_uuid

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371e3
CACHE_FRESHNESS_SECONDS = 5 * 60


class LocationPermission(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    PROMPT = "prompt"


class LocationErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


ERROR_MESSAGES = {
    LocationErrorKind.PERMISSION_DENIED: (
        "Location access denied. Please enable location services in your device settings."
    ),
    LocationErrorKind.POSITION_UNAVAILABLE: (
        "Location information is unavailable. Please check your connection and try again."
    ),
    LocationErrorKind.TIMEOUT: "Location request timed out. Please try again.",
    LocationErrorKind.UNKNOWN: "An unknown error occurred while retrieving location.",
}


@dataclass
class Coordinates:
    latitude: float
    longitude: float
    accuracy: Optional[float] = None  # metres
    captured_at: Optional[datetime] = None

    def __post_init__(self):
        if not -90 <= self.latitude <= 90:
            raise ValueError(f"Latitude must be between -90 and 90, got {self.latitude}")
        if not -180 <= self.longitude <= 180:
            raise ValueError(f"Longitude must be between -180 and 180, got {self.longitude}")

    def to_dict(self) -> Dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Coordinates":
        captured_at = data.get("captured_at")
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            accuracy=float(data["accuracy"]) if data.get("accuracy") is not None else None,
            captured_at=datetime.fromisoformat(captured_at) if captured_at else None,
        )


@dataclass
class LocationOptions:
    high_accuracy: bool = True
    timeout_ms: int = 10000
    max_cache_age_ms: int = 60000


@dataclass
class LocationResult:
    permission: LocationPermission
    coordinates: Optional[Coordinates] = None
    error: Optional[str] = None
    error_kind: Optional[LocationErrorKind] = None


class PositionError(Exception):
    """Raised by a LocationSource when the platform cannot produce a fix."""

    def __init__(self, kind: LocationErrorKind, message: str = ""):
        super().__init__(message or ERROR_MESSAGES[kind])
        self.kind = kind


class LocationUnavailableError(RuntimeError):
    """The host has no location capability at all."""


class LocationSource(Protocol):
    async def get_position(self, high_accuracy: bool) -> Coordinates: ...

    def watch_position(
        self,
        on_position: Callable[[Coordinates], None],
        on_error: Callable[[PositionError], None],
        high_accuracy: bool,
    ) -> Hashable: ...

    def clear_watch(self, handle: Hashable) -> None: ...

    async def query_permission(self) -> Optional[LocationPermission]: ...


class StaticLocationSource:
    """Fixed-position source for desktop hosts without GPS hardware."""

    def __init__(self, latitude: float, longitude: float, accuracy: float = 1000.0):
        self.latitude = latitude
        self.longitude = longitude
        self.accuracy = accuracy
        self._watches: Dict[str, Callable] = {}

    def _fix(self) -> Coordinates:
        return Coordinates(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy=self.accuracy,
            captured_at=datetime.now(timezone.utc),
        )

    async def get_position(self, high_accuracy: bool) -> Coordinates:
        return self._fix()

    def watch_position(self, on_position, on_error, high_accuracy: bool) -> Hashable:
        handle = generate_uuid()
        self._watches[handle] = on_position
        on_position(self._fix())
        return handle

    def clear_watch(self, handle: Hashable) -> None:
        self._watches.pop(handle, None)

    async def query_permission(self) -> Optional[LocationPermission]:
        return LocationPermission.GRANTED


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def calculate_distance(a: Coordinates, b: Coordinates) -> float:
    """Great-circle (haversine) distance in metres."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)

    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


class GeoLocationProvider:
    """
    Mobile-optimised GPS access.

    Expected platform failures (denied permission, no fix, timeout) never raise:
    they come back as a ``LocationResult`` carrying ``error``. Only a host with
    no location source at all raises ``LocationUnavailableError``.
    """

    def __init__(
        self,
        source: Optional[LocationSource] = None,
        store: Optional[KeyValueStore] = None,
        telemetry: Optional[PerformanceTelemetryCollector] = None,
        default_options: Optional[LocationOptions] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.store = store
        self.telemetry = telemetry
        self.default_options = default_options or LocationOptions()
        self.clock = clock
        self.permission_status = LocationPermission.PROMPT
        self._current: Optional[Coordinates] = None
        self._watchers: Dict[str, Hashable] = {}

    def is_available(self) -> bool:
        return self.source is not None

    def _require_source(self) -> LocationSource:
        if self.source is None:
            raise LocationUnavailableError("Geolocation is not supported on this device")
        return self.source

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    async def get_current_location(self, options: Optional[LocationOptions] = None) -> LocationResult:
        source = self._require_source()
        opts = options or self.default_options

        cached = self._load_cache()
        if cached is not None and cached.captured_at is not None and opts.max_cache_age_ms > 0:
            age_ms = (self._now() - _as_utc(cached.captured_at)).total_seconds() * 1000
            if 0 <= age_ms <= opts.max_cache_age_ms:
                return LocationResult(permission=self.permission_status, coordinates=cached)

        start = self.clock()
        try:
            coords = await asyncio.wait_for(
                source.get_position(opts.high_accuracy),
                timeout=opts.timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            return self._failure(PositionError(LocationErrorKind.TIMEOUT), start)
        except PositionError as exc:
            return self._failure(exc, start)
        except Exception as exc:
            logger.warning("Location source failed: %s", exc)
            return self._failure(PositionError(LocationErrorKind.UNKNOWN, str(exc)), start)

        if coords.captured_at is None:
            coords.captured_at = self._now()
        self._remember(coords)
        if self.telemetry:
            self.telemetry.track_gps_acquisition(start, coords.accuracy or 0.0, True)
        return LocationResult(permission=LocationPermission.GRANTED, coordinates=coords)

    def _failure(self, error: PositionError, start: float) -> LocationResult:
        permission = self._handle_error(error)
        if self.telemetry:
            self.telemetry.track_gps_acquisition(start, 0.0, False, error.kind.value)
        message = str(error) if error.kind == LocationErrorKind.UNKNOWN else ERROR_MESSAGES[error.kind]
        return LocationResult(permission=permission, error=message, error_kind=error.kind)

    def _handle_error(self, error: PositionError) -> LocationPermission:
        if error.kind == LocationErrorKind.PERMISSION_DENIED:
            self.permission_status = LocationPermission.DENIED
        logger.info("Location acquisition failed: %s", error.kind.value)
        return self.permission_status

    def _remember(self, coords: Coordinates) -> None:
        self._current = coords
        self.permission_status = LocationPermission.GRANTED
        save_json(self.store, GPS_CACHE_KEY, coords.to_dict())

    def _load_cache(self) -> Optional[Coordinates]:
        if self._current is not None:
            return self._current
        data = load_json(self.store, GPS_CACHE_KEY)
        if data is None:
            return None
        try:
            self._current = Coordinates.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Ignoring malformed cached location: %s", exc)
            return None
        return self._current

    def get_cached_location(self) -> Optional[Coordinates]:
        """Last fix if it was captured within the past five minutes."""
        cached = self._load_cache()
        if cached is None or cached.captured_at is None:
            return None
        if (self._now() - _as_utc(cached.captured_at)).total_seconds() > CACHE_FRESHNESS_SECONDS:
            return None
        return cached

    def watch_position(
        self,
        callback: Callable[[LocationResult], None],
        options: Optional[LocationOptions] = None,
        watch_id: Optional[str] = None,
    ) -> str:
        source = self._require_source()
        opts = options or self.default_options
        wid = watch_id or f"watch_{generate_uuid()}"

        def on_position(coords: Coordinates) -> None:
            if coords.captured_at is None:
                coords.captured_at = self._now()
            self._remember(coords)
            callback(LocationResult(permission=LocationPermission.GRANTED, coordinates=coords))

        def on_error(error: PositionError) -> None:
            permission = self._handle_error(error)
            callback(LocationResult(permission=permission, error=str(error), error_kind=error.kind))

        self._watchers[wid] = source.watch_position(on_position, on_error, opts.high_accuracy)
        return wid

    def clear_watch(self, watch_id: str) -> None:
        handle = self._watchers.pop(watch_id, None)
        if handle is not None and self.source is not None:
            self.source.clear_watch(handle)

    def clear_all_watches(self) -> None:
        for watch_id in list(self._watchers):
            self.clear_watch(watch_id)

    def active_watches(self):
        return list(self._watchers)

    async def check_permission(self) -> LocationPermission:
        if self.source is None:
            return LocationPermission.DENIED
        try:
            state = await self.source.query_permission()
        except Exception as exc:
            logger.debug("Permission query unsupported: %s", exc)
            return self.permission_status
        if state is not None:
            self.permission_status = LocationPermission(state)
        return self.permission_status

    async def request_permission(self) -> LocationPermission:
        """Trigger the platform prompt by attempting a short acquisition."""
        if self.source is None:
            return LocationPermission.DENIED
        result = await self.get_current_location(
            LocationOptions(high_accuracy=self.default_options.high_accuracy, timeout_ms=5000, max_cache_age_ms=0)
        )
        return LocationPermission.GRANTED if result.coordinates else result.permission

    def calculate_distance(self, a: Coordinates, b: Coordinates) -> float:
        return calculate_distance(a, b)

    def is_location_accurate(self, coords: Coordinates, max_accuracy: float = 50) -> bool:
        return coords.accuracy is not None and coords.accuracy <= max_accuracy

    def format_coordinates(self, coords: Coordinates, precision: int = 6) -> str:
        return f"{coords.latitude:.{precision}f}, {coords.longitude:.{precision}f}"
