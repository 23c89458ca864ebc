"""
Geocoding Service.

Address-level lookup first, postcode centroid second. Postcode-level
results get a small positional offset seeded from a hash of the input so
that properties sharing a postcode do not stack on one point, and re-runs
produce identical coordinates.
"""

from __future__ import annotations

import hashlib
import logging
import math
import threading
from dataclasses import dataclass
from typing import Final, Optional, Protocol

from core.errors import MalformedUpstreamData, RateLimited, TransientNetworkError
from core.models import normalise_address_key, normalise_postcode_key


logger = logging.getLogger(__name__)


PRECISION_ADDRESS: Final = "address"
PRECISION_POSTCODE: Final = "postcode"

JITTER_MIN_METRES: Final[float] = 50.0
JITTER_MAX_METRES: Final[float] = 100.0
METRES_PER_DEGREE_LAT: Final[float] = 111_320.0


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float
    precision: str = PRECISION_ADDRESS


@dataclass(frozen=True)
class GeocodeResult:
    coordinates: Optional[Coordinates]
    definitive: bool


class GeocodeProvider(Protocol):
    """A single upstream geocoder. Returns (lat, lng) or None when not found."""

    name: str

    def lookup(self, query: str) -> Optional[tuple[float, float]]:
        ...


# =============================================================================
# Cache
# =============================================================================


_MISSING = object()


class GeocodeCache:
    """
    Thread-safe cache of geocode results.

    Keys are 'pc:<POSTCODE>' and 'addr:<address>|<POSTCODE>'. A stored None
    is a confirmed not-found. Concurrent writes for one key are equivalent,
    so last write wins.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, Optional[tuple[float, float]]] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def postcode_key(postcode: str) -> str:
        return f"pc:{normalise_postcode_key(postcode)}"

    @staticmethod
    def address_key(address: str, postcode: str) -> str:
        return f"addr:{normalise_address_key(address)}|{normalise_postcode_key(postcode)}"

    def get(self, key: str):
        """Cached value, or the module's _MISSING sentinel."""
        with self._lock:
            value = self._entries.get(key, _MISSING)
            if value is _MISSING:
                self.misses += 1
            else:
                self.hits += 1
            return value

    def put(self, key: str, value: Optional[tuple[float, float]]) -> None:
        with self._lock:
            self._entries[key] = value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries


# =============================================================================
# Jitter
# =============================================================================


def jitter_offset(seed: str, latitude: float) -> tuple[float, float]:
    """
    Deterministic (dlat, dlng) offset of 50-100 metres.

    Radius and bearing both come from sha256(seed).
    """
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    radius_fraction = int(digest[0:8], 16) / 0xFFFFFFFF
    angle_fraction = int(digest[8:16], 16) / 0xFFFFFFFF

    radius = JITTER_MIN_METRES + radius_fraction * (JITTER_MAX_METRES - JITTER_MIN_METRES)
    angle = angle_fraction * 2 * math.pi

    dlat = radius * math.cos(angle) / METRES_PER_DEGREE_LAT
    lng_scale = METRES_PER_DEGREE_LAT * max(math.cos(math.radians(latitude)), 1e-6)
    dlng = radius * math.sin(angle) / lng_scale
    return dlat, dlng


# =============================================================================
# Service
# =============================================================================


class GeocodingService:
    """
    Two-tier geocoder with a shared cache.

    geocode() never raises: any provider failure yields None and the caller
    skips coordinate enrichment for that record.
    """

    def __init__(
        self,
        address_provider: Optional[GeocodeProvider],
        postcode_provider: Optional[GeocodeProvider],
        cache: Optional[GeocodeCache] = None,
    ):
        self.address_provider = address_provider
        self.postcode_provider = postcode_provider
        self.cache = cache if cache is not None else GeocodeCache()

    def geocode(self, address: Optional[str], postcode: str) -> Optional[Coordinates]:
        """
        Resolve an address and/or postcode to coordinates.

        Args:
            address: Full street address, if known.
            postcode: UK postcode.

        Returns:
            Coordinates, or None when neither tier produced a result.
        """
        return self.resolve(address, postcode).coordinates

    def resolve(self, address: Optional[str], postcode: str) -> GeocodeResult:
        """
        Like geocode(), but also says whether a None is a confirmed not-found.

        A result is not definitive when a provider was rate limited or failed,
        in which case the caller should try again on a later run.
        """
        definitive = True
        if address and postcode and self.address_provider is not None:
            found, settled = self._lookup(
                self.address_provider,
                self.cache.address_key(address, postcode),
                f"{address}, {postcode}",
            )
            if found is not None:
                return GeocodeResult(
                    Coordinates(lat=found[0], lng=found[1], precision=PRECISION_ADDRESS), True
                )
            definitive = settled

        if not postcode or self.postcode_provider is None:
            return GeocodeResult(None, definitive)

        centroid, settled = self._lookup(
            self.postcode_provider,
            self.cache.postcode_key(postcode),
            normalise_postcode_key(postcode),
        )
        if centroid is None:
            return GeocodeResult(None, definitive and settled)

        seed = normalise_address_key(address) if address else normalise_postcode_key(postcode)
        dlat, dlng = jitter_offset(seed, centroid[0])
        coordinates = Coordinates(
            lat=centroid[0] + dlat,
            lng=centroid[1] + dlng,
            precision=PRECISION_POSTCODE,
        )
        return GeocodeResult(coordinates, True)

    def _lookup(
        self,
        provider: GeocodeProvider,
        key: str,
        query: str,
    ) -> tuple[Optional[tuple[float, float]], bool]:
        """(result, definitive) for one provider, going through the cache."""
        cached = self.cache.get(key)
        if cached is not _MISSING:
            logger.debug("Geocode cache hit for %s", key)
            return cached, True

        try:
            result = provider.lookup(query)
        except RateLimited:
            # Not cached: the answer is unknown, not "not found"
            logger.warning("%s rate limited; skipping %s", provider.name, key)
            return None, False
        except (TransientNetworkError, MalformedUpstreamData) as e:
            logger.warning("%s lookup failed for %s: %s", provider.name, key, e)
            return None, False

        self.cache.put(key, result)
        return result, True

