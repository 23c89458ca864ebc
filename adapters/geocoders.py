"""
Geocoding providers.

Nominatim for address-level lookups, postcodes.io for postcode centroids.
Both share the JsonClient rate limiting; Nominatim's usage policy allows
at most one request per second.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from adapters.http import JsonClient
from core.errors import MalformedUpstreamData
from core.models import normalise_postcode_key


_UNIT_PREFIX_RE = re.compile(r"\b(?:flat|apartment|unit)\s*\d+[a-z]?\s*,?\s*", re.IGNORECASE)


def clean_address_query(query: str) -> str:
    """Drop flat/unit prefixes, which Nominatim cannot resolve."""
    return " ".join(_UNIT_PREFIX_RE.sub("", query).split()).strip(" ,")


def _coordinates(lat: Any, lng: Any) -> Optional[tuple[float, float]]:
    try:
        lat_f, lng_f = float(lat), float(lng)
    except (TypeError, ValueError):
        return None
    if not (-90 <= lat_f <= 90) or not (-180 <= lng_f <= 180):
        return None
    return lat_f, lng_f


class NominatimProvider:
    name = "nominatim"

    def __init__(self, client: JsonClient):
        self._client = client

    def lookup(self, query: str) -> Optional[tuple[float, float]]:
        params = {
            "q": f"{clean_address_query(query)}, United Kingdom",
            "format": "json",
            "limit": 1,
            "countrycodes": "gb",
        }
        results = self._client.get_json("", params)
        if not results:
            return None
        if not isinstance(results, list) or not isinstance(results[0], dict):
            raise MalformedUpstreamData("Nominatim response is not a result list")
        return _coordinates(results[0].get("lat"), results[0].get("lon"))


class PostcodesIoProvider:
    name = "postcodes_io"

    def __init__(self, client: JsonClient):
        self._client = client

    def lookup(self, query: str) -> Optional[tuple[float, float]]:
        data = self._client.get_json(f"postcodes/{normalise_postcode_key(query)}")
        if not data:
            return None
        if not isinstance(data, dict):
            raise MalformedUpstreamData("postcodes.io response is not an object")
        result = data.get("result")
        if not isinstance(result, dict):
            return None
        return _coordinates(result.get("latitude"), result.get("longitude"))
