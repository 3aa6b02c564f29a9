"""
Address Resolution

Enriches newly created stores with coordinates. Resolution is best effort:
every failure is logged and reported as "no result".
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx
import structlog

from pricefeed.config.settings import GeocodingSettings

logger = structlog.get_logger(__name__)

_GEOCODE_PATH = "/maps/api/geocode/json"


@dataclass(frozen=True)
class ResolvedAddress:
    latitude: float
    longitude: float
    city: Optional[str] = None
    postal_code: Optional[str] = None
    formatted_address: Optional[str] = None


class AddressResolver(Protocol):
    async def resolve(self, address: str) -> Optional[ResolvedAddress]:
        ...


class NullAddressResolver:
    """Resolver used when no geocoding backend is configured"""

    async def resolve(self, address: str) -> Optional[ResolvedAddress]:
        return None


class GoogleGeocoder:
    """Google Geocoding API client"""

    def __init__(self, settings: GeocodingSettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        if settings.api_key is None:
            raise ValueError("Google geocoding requires GEOCODING_API_KEY")
        self._api_key = settings.api_key.get_secret_value()
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=httpx.Timeout(settings.timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def resolve(self, address: str) -> Optional[ResolvedAddress]:
        if not address.strip():
            return None

        try:
            response = await self._client.get(_GEOCODE_PATH, params={"address": address, "key": self._api_key})
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Geocoding request failed", address=address, error=str(e))
            return None

        status = payload.get("status")
        results = payload.get("results") or []
        if status != "OK" or not results:
            logger.warning("Geocoding returned no result", address=address, status=status)
            return None

        return self._to_resolved(results[0])

    @staticmethod
    def _to_resolved(result: Dict[str, Any]) -> Optional[ResolvedAddress]:
        location = result.get("geometry", {}).get("location", {})
        if "lat" not in location or "lng" not in location:
            return None

        components = {}
        for component in result.get("address_components", []):
            for kind in component.get("types", []):
                components.setdefault(kind, component.get("long_name"))

        return ResolvedAddress(
            latitude=float(location["lat"]),
            longitude=float(location["lng"]),
            city=components.get("locality") or components.get("postal_town"),
            postal_code=components.get("postal_code"),
            formatted_address=result.get("formatted_address"),
        )


def create_address_resolver(settings: GeocodingSettings) -> AddressResolver:
    if settings.api_key is None:
        logger.info("Geocoding disabled, no API key configured")
        return NullAddressResolver()
    return GoogleGeocoder(settings)
