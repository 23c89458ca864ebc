"""
Tests for the Geocoding Service.

Tests covering:
1. Address tier first, postcode centroid fallback
2. Deterministic jitter of 50-100 metres
3. Cache hits bypass the network; not-found results are cached
4. Provider failures return None and are not cached
"""

import math
import pytest
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import RateLimited, TransientNetworkError
from core.geocoding import (
    PRECISION_ADDRESS,
    PRECISION_POSTCODE,
    GeocodeCache,
    GeocodingService,
    jitter_offset,
)


class FakeProvider:
    """Records every query; answers from a dict or raises a configured error."""

    def __init__(self, name, answers=None, error=None):
        self.name = name
        self.answers = answers or {}
        self.error = error
        self.calls = []

    def lookup(self, query):
        self.calls.append(query)
        if self.error is not None:
            raise self.error
        return self.answers.get(query)


def _distance_metres(lat1, lng1, lat2, lng2):
    dlat = (lat2 - lat1) * 111_320
    dlng = (lng2 - lng1) * 111_320 * math.cos(math.radians(lat1))
    return math.hypot(dlat, dlng)


@pytest.fixture
def address_provider():
    return FakeProvider("nominatim", {"10 High Street, LS1 1AA": (53.7997, -1.5492)})


@pytest.fixture
def postcode_provider():
    return FakeProvider("postcodes_io", {"LS11AA": (53.8000, -1.5500), "M145RR": (53.4450, -2.2190)})


@pytest.fixture
def service(address_provider, postcode_provider):
    return GeocodingService(address_provider, postcode_provider, GeocodeCache())


# =============================================================================
# Tiers
# =============================================================================


class TestTiers:
    def test_address_tier_used_first(self, service, postcode_provider):
        coords = service.geocode("10 High Street", "LS1 1AA")
        assert coords.lat == 53.7997
        assert coords.lng == -1.5492
        assert coords.precision == PRECISION_ADDRESS
        assert postcode_provider.calls == []

    def test_postcode_fallback_is_jittered(self, service):
        coords = service.geocode("99 Unknown Road", "M14 5RR")
        assert coords.precision == PRECISION_POSTCODE
        distance = _distance_metres(53.4450, -2.2190, coords.lat, coords.lng)
        assert 49.0 <= distance <= 101.0

    def test_postcode_only(self, service, address_provider):
        coords = service.geocode(None, "M14 5RR")
        assert coords.precision == PRECISION_POSTCODE
        assert address_provider.calls == []

    def test_nothing_found_returns_none(self, service):
        assert service.geocode("1 Nowhere", "ZZ9 9ZZ") is None
        assert service.resolve("1 Nowhere", "ZZ9 9ZZ").definitive is True


# =============================================================================
# Jitter
# =============================================================================


class TestJitter:
    def test_same_input_same_coordinates(self, address_provider, postcode_provider):
        first = GeocodingService(address_provider, postcode_provider).geocode("5 Mill Lane", "M14 5RR")
        second = GeocodingService(address_provider, postcode_provider).geocode("5 Mill Lane", "M14 5RR")
        assert first == second

    def test_different_addresses_do_not_stack(self, service):
        a = service.geocode("5 Mill Lane", "M14 5RR")
        b = service.geocode("7 Mill Lane", "M14 5RR")
        assert (a.lat, a.lng) != (b.lat, b.lng)

    @pytest.mark.parametrize("seed", ["a", "5 mill lane", "flat 2 10 high street", "M145RR"])
    def test_offset_within_range(self, seed):
        dlat, dlng = jitter_offset(seed, 53.0)
        metres = math.hypot(dlat * 111_320, dlng * 111_320 * math.cos(math.radians(53.0)))
        assert 49.9 <= metres <= 100.1


# =============================================================================
# Cache
# =============================================================================


class TestCache:
    def test_second_postcode_lookup_is_cached(self, service, postcode_provider):
        first = service.geocode(None, "M14 5RR")
        second = service.geocode(None, "m14 5rr")
        assert first == second
        assert postcode_provider.calls == ["M145RR"]
        assert service.cache.hits == 1

    def test_address_not_found_is_cached(self, service, address_provider):
        service.geocode("1 Nowhere", "M14 5RR")
        service.geocode("1 NOWHERE", "M14 5RR")
        assert address_provider.calls == ["1 Nowhere, M14 5RR"]

    def test_rate_limited_not_cached(self, postcode_provider):
        limited = FakeProvider("nominatim", error=RateLimited("slow down"))
        service = GeocodingService(limited, postcode_provider)

        result = service.resolve("10 High Street", "LS1 1AA")

        # Falls back to the postcode tier, which succeeds
        assert result.coordinates.precision == PRECISION_POSTCODE
        assert GeocodeCache.address_key("10 High Street", "LS1 1AA") not in service.cache

    def test_all_providers_failing_is_not_definitive(self):
        failing = FakeProvider("postcodes_io", error=TransientNetworkError("down"))
        service = GeocodingService(None, failing)

        result = service.resolve(None, "M14 5RR")

        assert result.coordinates is None
        assert result.definitive is False
        assert service.geocode(None, "M14 5RR") is None
        assert len(failing.calls) == 2

    def test_cache_keys_normalised(self):
        assert GeocodeCache.postcode_key("m14 5rr") == "pc:M145RR"
        assert GeocodeCache.address_key("10, High St.", "m14 5rr") == "addr:10 high st|M145RR"
