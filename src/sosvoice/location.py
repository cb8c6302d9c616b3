"""Device position and geocoding."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, Tuple

import httpx

from .api_client import error_text, read_json
from .config import LocationConfig
from .errors import GeocodingFailure, LocationUnavailable, PermissionDenied
from .models import Location, format_coordinates

logger = logging.getLogger("sosvoice.location")


class PositionProvider(Protocol):
    async def current_position(self, high_accuracy: bool = True) -> Tuple[float, float]:
        ...


class FixedPositionProvider:
    def __init__(self, lat: float, lng: float) -> None:
        self._position = (float(lat), float(lng))

    async def current_position(self, high_accuracy: bool = True) -> Tuple[float, float]:
        return self._position


class IpPositionProvider:
    """Approximate position from an IP geolocation service."""

    def __init__(self, http: httpx.AsyncClient, url: str) -> None:
        self._http = http
        self._url = url

    async def current_position(self, high_accuracy: bool = True) -> Tuple[float, float]:
        if high_accuracy:
            logger.debug("IP lookup cannot honour high accuracy; using coarse position")
        try:
            response = await self._http.get(self._url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise LocationUnavailable(f"IP lookup failed: {exc}") from exc
        if response.status_code in (401, 403):
            raise PermissionDenied(
                f"IP lookup refused ({response.status_code})",
                user_message="Location access was denied.",
            )
        data = read_json(response)
        if not response.is_success or not isinstance(data, dict):
            raise LocationUnavailable(error_text(data, f"IP lookup HTTP {response.status_code}"))
        lat = data.get("latitude", data.get("lat"))
        lng = data.get("longitude", data.get("lng", data.get("lon")))
        try:
            return float(lat), float(lng)
        except (TypeError, ValueError) as exc:
            raise LocationUnavailable("IP lookup returned no coordinates") from exc


class GeocodingClient:
    def __init__(self, http: httpx.AsyncClient, path: str = "/api/geo") -> None:
        self._http = http
        self._path = path

    async def _post(self, payload: dict) -> dict:
        try:
            response = await self._http.post(self._path, json=payload)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise GeocodingFailure(f"Geocoding request failed: {exc}") from exc
        data = read_json(response)
        if not response.is_success or not isinstance(data, dict) or data.get("error"):
            raise GeocodingFailure(error_text(data, f"Geocoding HTTP {response.status_code}"))
        return data

    async def reverse(self, lat: float, lng: float) -> str:
        data = await self._post({"lat": lat, "lng": lng})
        address = (data.get("address") or "").strip()
        if not address:
            raise GeocodingFailure("Geocoding returned no address")
        return address

    async def forward(self, address: str) -> Location:
        data = await self._post({"address": address})
        try:
            lat = float(data["lat"])
            lng = float(data["lng"])
        except (KeyError, TypeError, ValueError) as exc:
            raise GeocodingFailure("Geocoding returned no coordinates") from exc
        return Location(lat=lat, lng=lng, address=(data.get("address") or address).strip())


class LocationResolver:
    def __init__(
        self,
        provider: Optional[PositionProvider],
        geocoder: Optional[GeocodingClient] = None,
        timeout_s: float = 10.0,
        max_attempts: int = 2,
        high_accuracy: bool = True,
    ) -> None:
        self._provider = provider
        self._geocoder = geocoder
        self._timeout_s = timeout_s
        self._max_attempts = max(1, max_attempts)
        self._high_accuracy = high_accuracy
        self.location: Optional[Location] = None
        self.address_text = ""
        self.is_locating = False

    @classmethod
    def from_config(
        cls,
        config: LocationConfig,
        provider: Optional[PositionProvider],
        geocoder: Optional[GeocodingClient],
    ) -> "LocationResolver":
        return cls(
            provider,
            geocoder,
            timeout_s=config.timeout_s,
            max_attempts=config.max_attempts,
            high_accuracy=config.high_accuracy,
        )

    def best_address(self) -> str:
        text = self.address_text.strip()
        if text:
            return text
        if self.location is not None:
            return self.location.display_text()
        return ""

    async def locate_device(self) -> Location:
        if self._provider is None:
            raise LocationUnavailable("No position provider configured.")
        self.is_locating = True
        try:
            lat, lng = await self._acquire()
            self.location = Location(lat=lat, lng=lng)
            address = ""
            if self._geocoder is not None:
                try:
                    address = await self._geocoder.reverse(lat, lng)
                except GeocodingFailure as exc:
                    logger.warning("Reverse geocoding failed: %s", exc)
            if not address:
                address = format_coordinates(lat, lng)
            self.location = Location(lat=lat, lng=lng, address=address)
            self.address_text = address
        finally:
            self.is_locating = False
        logger.info("Located device at %s", self.location.coordinates_text())
        return self.location

    async def _acquire(self) -> Tuple[float, float]:
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await asyncio.wait_for(
                    self._provider.current_position(self._high_accuracy),
                    self._timeout_s,
                )
            except PermissionDenied:
                raise
            except asyncio.TimeoutError as exc:
                logger.warning("Position attempt %d timed out", attempt)
                last_exc = exc
            except LocationUnavailable as exc:
                logger.warning("Position attempt %d failed: %s", attempt, exc)
                last_exc = exc
        raise LocationUnavailable(
            f"Position unavailable after {self._max_attempts} attempts"
        ) from last_exc

    async def resolve_typed_address(self, text: Optional[str] = None) -> Optional[Location]:
        if text is not None:
            self.address_text = text
        text = self.address_text.strip()
        if not text or "," in text or self._geocoder is None:
            return self.location
        try:
            resolved = await self._geocoder.forward(text)
        except GeocodingFailure as exc:
            logger.warning("Forward geocoding failed for typed address: %s", exc)
            return self.location
        self.location = resolved
        self.address_text = resolved.address or text
        return self.location
