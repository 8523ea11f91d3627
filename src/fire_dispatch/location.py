"""
Display strings for stored incident locations.

Chain, each step cheaper and less informative than the one before:
    1. Text that is not a "lat,lng" pair is already an address -> as-is
    2. Remote geocoder (Google geocode JSON shape), short timeout
    3. Device-local reverse geocode, own time budget
    4. The pair rounded to 4 decimal places

Out-of-range pairs are returned unmodified without any lookup.
resolve() never raises.
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

import httpx

from fire_dispatch import config
from fire_dispatch.geo import haversine_km
from fire_dispatch.models import Coordinates

logger = logging.getLogger(__name__)

COORDINATE_PATTERN = re.compile(r"^\s*(-?\d+(?:\.\d*)?)\s*,\s*(-?\d+(?:\.\d*)?)\s*$")

LocalGeocoder = Callable[[Coordinates], Optional[str]]


def parse_coordinates(raw: str) -> Optional[Coordinates]:
    """Parse "lat,lng"; None when the text is not a pair at all."""
    match = COORDINATE_PATTERN.match(raw or "")
    if not match:
        return None
    return Coordinates(float(match.group(1)), float(match.group(2)))


def in_range(point: Coordinates) -> bool:
    return -90 <= point.latitude <= 90 and -180 <= point.longitude <= 180


def format_coordinates(point: Coordinates) -> str:
    return f"{point.latitude:.4f}, {point.longitude:.4f}"


class RemoteGeocoder:
    def __init__(
        self,
        api_key: str = config.GOOGLE_MAPS_API_KEY,
        url: str = config.GEOCODE_URL,
        timeout: float = config.GEOCODE_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.url = url
        self.timeout = timeout
        self.client = client

    def reverse(self, point: Coordinates) -> Optional[str]:
        params = {"latlng": f"{point.latitude},{point.longitude}", "key": self.api_key}
        try:
            if self.client is not None:
                response = self.client.get(self.url, params=params, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.get(self.url, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            logger.warning("Geocoder timeout for %s", format_coordinates(point))
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Geocoder error for %s: %s", format_coordinates(point), exc)
            return None

        status = data.get("status", "")
        results = data.get("results") or []
        if status != "OK" or not results:
            logger.info("Geocoder: status %r for %s", status, format_coordinates(point))
            return None
        return results[0].get("formatted_address") or None


@dataclass(frozen=True)
class Landmark:
    name: str
    location: Coordinates


class LandmarkGeocoder:
    """Offline reverse geocode: the nearest known landmark within a radius."""

    def __init__(self, landmarks: Iterable[Landmark] = (), radius_km: float = config.LANDMARK_RADIUS_KM) -> None:
        self.landmarks: List[Landmark] = list(landmarks)
        self.radius_km = radius_km

    def __call__(self, point: Coordinates) -> Optional[str]:
        best = None
        best_distance = self.radius_km
        for landmark in self.landmarks:
            distance = haversine_km(point, landmark.location)
            if distance <= best_distance:
                best, best_distance = landmark, distance
        if best is None:
            return None
        if best_distance < 0.1:
            return best.name
        return f"{best_distance:.1f} km from {best.name}"


class LocationResolver:
    _executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="local-geocode")

    def __init__(
        self,
        remote: Optional[RemoteGeocoder] = None,
        local: Optional[LocalGeocoder] = None,
        local_timeout: float = config.DEVICE_GEOCODE_TIMEOUT,
        cache_size: int = config.GEOCODE_CACHE_SIZE,
    ) -> None:
        self.remote = remote
        self.local = local
        self.local_timeout = local_timeout
        self.cache_size = cache_size
        self._cache: "OrderedDict[str, str]" = OrderedDict()

    def resolve(self, raw: Optional[str]) -> str:
        if not raw or not raw.strip():
            return "Location not available"

        point = parse_coordinates(raw)
        if point is None or not in_range(point):
            return raw

        cached = self._cache.get(raw)
        if cached is not None:
            self._cache.move_to_end(raw)
            return cached

        address = self._remote(point) or self._local(point)
        if address is None:
            return format_coordinates(point)
        self._cache[raw] = address
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return address

    def _remote(self, point: Coordinates) -> Optional[str]:
        if self.remote is None:
            return None
        try:
            return self.remote.reverse(point)
        except Exception:
            logger.exception("Remote geocoder crashed for %s", format_coordinates(point))
            return None

    def _local(self, point: Coordinates) -> Optional[str]:
        if self.local is None:
            return None
        future = self._executor.submit(self.local, point)
        try:
            return future.result(timeout=self.local_timeout)
        except FutureTimeout:
            logger.warning("Local geocoder exceeded %.1fs for %s", self.local_timeout, format_coordinates(point))
            return None
        except Exception as exc:
            logger.warning("Local geocoder failed for %s: %s", format_coordinates(point), exc)
            return None


def build_resolver(landmarks: Iterable[Landmark] = ()) -> LocationResolver:
    remote = RemoteGeocoder() if config.GOOGLE_MAPS_API_KEY else None
    return LocationResolver(remote=remote, local=LandmarkGeocoder(landmarks))
