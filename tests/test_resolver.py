"""
Tests for the Canonical Resolver.

Tests covering:
1. Resolution order (UPRN, address + postcode, new)
2. Field-wise merge with provenance and confidence tiers
3. Last-seen / stale handling on every observation
4. Rescoring whenever a scoring input changes
5. Uniqueness under concurrent observation
"""

import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import PersistenceError
from core.models import (
    Classification,
    ConfidenceTier,
    FieldSource,
    ListingType,
    NormalizedListing,
    SourceType,
)
from core.persistence import InMemoryPropertyRepository, PropertyFilter
from core.resolver import CanonicalResolver, merge_fields, property_id_for


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

FEED = FieldSource("listing_feed", SourceType.COMMERCIAL, ConfidenceTier.MEDIUM)
REGISTER = FieldSource("epc_register", SourceType.OFFICIAL, ConfidenceTier.HIGH)
GUESS = FieldSource("licensed_hmo_match", SourceType.ENRICHED, ConfidenceTier.LOW)


def _listing(**overrides):
    data = dict(
        source_name="listing_feed",
        external_id="Z-1",
        address="10 Wilmslow Road",
        postcode="M14 5RR",
        city="Manchester",
        listing_type=ListingType.PURCHASE,
        price=300_000,
        bedrooms=5,
    )
    data.update(overrides)
    return NormalizedListing(**data)


@pytest.fixture
def repository():
    return InMemoryPropertyRepository()


@pytest.fixture
def resolver(repository):
    return CanonicalResolver(repository)


# =============================================================================
# Resolution
# =============================================================================


class TestResolve:
    def test_new_listing_creates_record(self, resolver, repository):
        observation = resolver.observe(_listing(), FEED, NOW)

        assert observation.is_new is True
        assert repository.count() == 1
        assert observation.record.property_id == property_id_for(_listing().natural_key)
        assert observation.record.first_seen_at == NOW

    def test_same_address_resolves_to_same_record(self, resolver, repository):
        first = resolver.observe(_listing(), FEED, NOW)
        second = resolver.observe(
            _listing(external_id="Z-2", address="10, Wilmslow Road.", postcode="m14 5rr"), FEED, NOW
        )

        assert second.is_new is False
        assert second.record.property_id == first.record.property_id
        assert repository.count() == 1

    def test_uprn_takes_precedence(self, resolver, repository):
        first = resolver.observe(_listing(uprn="100012345"), FEED, NOW)
        moved = resolver.observe(
            _listing(uprn="100012345", address="Ten Wilmslow Rd", external_id="Z-9"), FEED, NOW
        )

        assert moved.record.property_id == first.record.property_id
        assert repository.count() == 1

    def test_different_uprns_same_address_stay_separate(self, resolver, repository):
        resolver.observe(_listing(uprn="1"), FEED, NOW)
        resolver.observe(_listing(uprn="2", external_id="Z-2"), FEED, NOW)
        assert repository.count() == 2

    def test_resolve_without_writing(self, resolver, repository):
        property_id, is_new = resolver.resolve(_listing())
        assert is_new is True
        assert repository.count() == 0

    def test_concurrent_observations_one_record_per_uprn(self, resolver, repository):
        listings = [_listing(uprn="555", external_id=f"Z-{i}", price=300_000 + i) for i in range(40)]

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(lambda l: resolver.observe(l, FEED, NOW), listings))

        assert repository.count() == 1
        assert repository.find_by_uprn("555") is not None


# =============================================================================
# Merge policy
# =============================================================================


class TestMerge:
    def test_null_never_overwrites(self, resolver, repository):
        first = resolver.observe(_listing(), FEED, NOW)
        resolver.observe(_listing(bedrooms=None, price=None), FEED, NOW + timedelta(hours=1))

        record = repository.get(first.record.property_id)
        assert record.bedrooms == 5
        assert record.price == 300_000

    def test_lower_confidence_does_not_downgrade(self, resolver, repository):
        pid = resolver.observe(_listing(), FEED, NOW).record.property_id
        resolver.apply(pid, {"epc_rating": "B"}, REGISTER, NOW)

        observation = resolver.apply(pid, {"epc_rating": "F"}, GUESS, NOW + timedelta(days=1))

        assert observation.changed_fields == []
        assert repository.get(pid).epc_rating == "B"
        assert repository.get(pid).provenance["epc_rating"].source_name == "epc_register"

    def test_equal_confidence_takes_most_recent(self, resolver, repository):
        pid = resolver.observe(_listing(), FEED, NOW).record.property_id
        resolver.observe(_listing(price=280_000), FEED, NOW + timedelta(days=1))
        assert repository.get(pid).price == 280_000

    def test_higher_confidence_overwrites(self, resolver, repository):
        pid = resolver.observe(_listing(), FEED, NOW).record.property_id
        resolver.apply(pid, {"bedrooms": 6}, REGISTER, NOW)
        record = repository.get(pid)
        assert record.bedrooms == 6
        assert record.provenance["bedrooms"].confidence == ConfidenceTier.HIGH

    def test_unmergeable_field_rejected(self, resolver, repository):
        record = resolver.observe(_listing(), FEED, NOW).record
        with pytest.raises(ValueError):
            merge_fields(record, {"deal_score": 99}, FEED, NOW)

    def test_reset_is_the_only_way_to_clear(self, resolver, repository):
        pid = resolver.observe(_listing(), FEED, NOW).record.property_id
        resolver.apply(pid, {"epc_rating": "C"}, REGISTER, NOW)

        record = resolver.reset_field(pid, "epc_rating")

        assert record.epc_rating is None
        assert "epc_rating" not in record.provenance
        # A lower tier can now fill the gap
        resolver.apply(pid, {"epc_rating": "D"}, GUESS, NOW)
        assert repository.get(pid).epc_rating == "D"

    def test_apply_unknown_record(self, resolver):
        with pytest.raises(PersistenceError):
            resolver.apply("pr-missing", {"epc_rating": "C"}, REGISTER, NOW)


# =============================================================================
# Freshness and scoring side effects
# =============================================================================


class TestSideEffects:
    def test_last_seen_updated_without_changes(self, resolver, repository):
        pid = resolver.observe(_listing(), FEED, NOW).record.property_id
        later = NOW + timedelta(days=3)

        observation = resolver.observe(_listing(), FEED, later)

        assert observation.changed_fields == []
        assert repository.get(pid).last_seen_at == later

    def test_observation_clears_stale(self, resolver, repository):
        pid = resolver.observe(_listing(), FEED, NOW).record.property_id
        record = repository.get(pid)
        record.is_stale = True
        record.stale_marked_at = NOW
        repository.upsert_by_natural_key(record)

        resolver.observe(_listing(), FEED, NOW + timedelta(days=10))

        assert repository.get(pid).is_stale is False
        assert repository.query(PropertyFilter(is_stale=True)) == []

    def test_new_record_is_scored(self, resolver):
        record = resolver.observe(_listing(), FEED, NOW).record
        assert record.deal_score is not None
        assert record.classification == Classification.VALUE_ADD

    def test_epc_merge_rescores(self, resolver, repository):
        pid = resolver.observe(_listing(), FEED, NOW).record.property_id

        observation = resolver.apply(pid, {"epc_rating": "C"}, REGISTER, NOW)

        assert observation.record.classification == Classification.READY_TO_GO
        assert observation.became_ready_to_go is True
        assert repository.get(pid).deal_score == 82

    def test_non_scoring_field_keeps_score(self, resolver, repository):
        pid = resolver.observe(_listing(), FEED, NOW).record.property_id
        before = repository.get(pid).deal_score
        resolver.apply(pid, {"has_fiber": True}, REGISTER, NOW)
        assert repository.get(pid).deal_score == before
