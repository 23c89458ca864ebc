"""
Planning data sources.

Article 4 direction polygons come from a GeoJSON FeatureCollection, read
from a local file or a URL once per run. Auxiliary constraints (conservation
areas, listed buildings, other designations) come from the Searchland
planning API.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from adapters.http import JsonClient
from core.errors import MalformedUpstreamData
from core.planning import features_of


logger = logging.getLogger(__name__)


PLANNING_PATH = "planning"


def load_polygons(location: str, client: Optional[JsonClient] = None) -> list[dict]:
    """
    Load restricted-area features from a file path or an http(s) URL.

    Raises:
        MalformedUpstreamData: If the document is not a FeatureCollection.
        TransientNetworkError: If a URL cannot be fetched.
    """
    if location.startswith("http://") or location.startswith("https://"):
        if client is None:
            raise ValueError("a JsonClient is required to load polygons from a URL")
        document = client.get_json(location)
    else:
        try:
            document = json.loads(Path(location).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise MalformedUpstreamData(f"Could not read planning polygons {location}: {e}") from e

    if not isinstance(document, (dict, list)):
        raise MalformedUpstreamData("planning polygons are not a FeatureCollection")
    features = features_of(document)
    logger.info("Loaded %d planning feature(s) from %s", len(features), location)
    return features


class PlanningConstraintsClient:
    """Searchland planning lookups for one property at a time."""

    def __init__(self, client: JsonClient):
        self._client = client

    def lookup(
        self,
        address: Optional[str],
        postcode: Optional[str],
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        uprn: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        """
        Raw planning payload for a property, or None when the provider has none.
        """
        data = self._client.post_json(
            PLANNING_PATH,
            {
                "address": address,
                "postcode": postcode,
                "latitude": latitude,
                "longitude": longitude,
                "uprn": uprn,
            },
        )
        if data is None:
            return None
        if not isinstance(data, dict):
            raise MalformedUpstreamData("planning response is not an object")
        planning = data.get("planning")
        if planning is None:
            return None
        if not isinstance(planning, dict):
            raise MalformedUpstreamData("planning payload is not an object")
        return planning
