"""
Tests for the Pipeline Orchestrator.

Tests covering:
1. Configuration check before any work
2. Ingestion, licence recording and notifications
3. Enrichment stages, markers and per-run caching
4. Failure isolation, error capping and run budgets
"""

import pytest
from datetime import date, datetime, timezone
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from adapters.broadband import BroadbandCoverage, select_premises
from adapters.epc_register import EpcCertificate
from adapters.planning_data import load_polygons
from core.errors import ConfigurationError, RateLimited, TransientNetworkError
from core.geocoding import GeocodingService
from core.ingestion import get_source
from core.models import (
    Classification,
    ConstraintCategory,
    LicenceFacts,
    LicenceStatus,
    ListingType,
    NormalizedListing,
    RunScope,
)
from core.persistence import InMemoryNotificationSink, InMemoryPropertyRepository, PropertyFilter
from core.pipeline import (
    EVENT_PROPERTY_CREATED,
    EVENT_READY_TO_GO,
    EVENT_RUN_COMPLETED,
    PipelineContext,
    RunBudget,
    run_enrichment_pass,
)
from core.resolver import CanonicalResolver
from utils.config import Config


FIXTURES_DIR = Path(__file__).parent / "fixtures"
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# Fakes
# =============================================================================


class FakeAdapter:
    """Serves canned listings per postcode (or city) and records each fetch."""

    def __init__(self, source_id, listings=None, error=None):
        self.registration = get_source(source_id)
        self.listings = listings or {}
        self.error = error
        self.calls = []

    def fetch(self, criteria):
        self.calls.append(criteria)
        if self.error is not None:
            raise self.error
        return list(self.listings.get(criteria.label, []))


class FakeEpc:
    def __init__(self, certificates=None, error=None):
        self.certificates = certificates or []
        self.error = error
        self.calls = []

    def search(self, postcode):
        self.calls.append(postcode)
        if self.error is not None:
            raise self.error
        return list(self.certificates)


class FakeBroadband:
    def __init__(self, rows):
        self.rows = rows

    def coverage(self, postcode):
        return list(self.rows)


class FakePlanning:
    def __init__(self, payload):
        self.payload = payload

    def lookup(self, address, postcode, latitude=None, longitude=None, uprn=None):
        return self.payload


class FakeGeocodeProvider:
    name = "fake"

    def __init__(self, answer=None, error=None):
        self.answer = answer
        self.error = error

    def lookup(self, query):
        if self.error is not None:
            raise self.error
        return self.answer


class ExplodingSink:
    def publish(self, event, payload):
        raise RuntimeError("sink offline")


def _listing(external_id="Z-1", address="10 Wilmslow Road", postcode="M14 5RR", **overrides):
    data = dict(
        source_name="listing_feed",
        external_id=external_id,
        address=address,
        postcode=postcode,
        city="Manchester",
        listing_type=ListingType.PURCHASE,
        price=300_000,
        bedrooms=5,
    )
    data.update(overrides)
    return NormalizedListing(**data)


def _certificate(address="10 Wilmslow Road", rating="C", lmk_key="LMK-1", floor_area=None):
    return EpcCertificate(
        lmk_key=lmk_key,
        address=address,
        postcode="M14 5RR",
        rating=rating,
        floor_area_sqm=floor_area,
        lodgement_date=date(2021, 9, 14),
    )


@pytest.fixture
def repository():
    return InMemoryPropertyRepository()


@pytest.fixture
def sink():
    return InMemoryNotificationSink()


@pytest.fixture
def make_context(repository, sink):
    def factory(**kwargs):
        kwargs.setdefault("max_workers", 1)
        return PipelineContext(
            gateway=repository,
            resolver=CanonicalResolver(repository),
            sink=sink,
            clock=lambda: NOW,
            **kwargs,
        )

    return factory


# =============================================================================
# Configuration
# =============================================================================


class TestConfiguration:
    def test_missing_credentials_abort_before_work(self, make_context, sink):
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        context = make_context(
            adapters=[adapter],
            config=Config(listing_feed_api_key=None),
            credential_needs=["listing_feed"],
        )

        with pytest.raises(ConfigurationError) as exc:
            run_enrichment_pass(RunScope(postcodes=["M14 5RR"]), context)

        assert exc.value.missing == ["LISTING_FEED_API_KEY"]
        assert adapter.calls == []
        assert sink.events == []

    def test_present_credentials_pass(self, make_context):
        context = make_context(
            config=Config(listing_feed_api_key="key"),
            credential_needs=["listing_feed"],
        )
        result = run_enrichment_pass(RunScope(), context)
        assert result.processed == 0

    def test_scope_validation(self):
        with pytest.raises(ValueError):
            RunScope(limit=-1)
        with pytest.raises(ValueError):
            RunScope(time_budget_seconds=0)


# =============================================================================
# Ingestion
# =============================================================================


class TestIngestion:
    def test_ingest_creates_and_notifies(self, make_context, repository, sink):
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        context = make_context(adapters=[adapter])

        result = run_enrichment_pass(RunScope(postcodes=["M14 5RR"], enrich=False), context)

        assert result.processed == 1
        assert result.created == 1
        assert result.updated == 0
        assert repository.count() == 1
        assert result.samples[0]["action"] == "ingested"
        created = sink.of_type(EVENT_PROPERTY_CREATED)
        assert created[0]["postcode"] == "M14 5RR"
        assert created[0]["classification"] == "value_add"
        assert sink.of_type(EVENT_RUN_COMPLETED)[0]["created"] == 1

    def test_reingest_counts_update_not_create(self, make_context):
        first = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        run_enrichment_pass(RunScope(postcodes=["M14 5RR"], enrich=False), make_context(adapters=[first]))

        second = FakeAdapter("listing_feed", {"M14 5RR": [_listing(price=290_000)]})
        result = run_enrichment_pass(
            RunScope(postcodes=["M14 5RR"], enrich=False), make_context(adapters=[second])
        )

        assert result.created == 0
        assert result.updated == 1

    def test_city_scope_used_without_postcodes(self, make_context):
        adapter = FakeAdapter("listing_feed", {"Leeds": [_listing(postcode="LS6 1AA", city="Leeds")]})
        result = run_enrichment_pass(
            RunScope(city="Leeds", enrich=False), make_context(adapters=[adapter])
        )
        assert adapter.calls[0].city == "Leeds"
        assert result.created == 1

    def test_source_name_selects_adapter(self, make_context):
        feed = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        register = FakeAdapter("hmo_register")
        run_enrichment_pass(
            RunScope(source_name="listing_feed", postcodes=["M14 5RR"], enrich=False),
            make_context(adapters=[feed, register]),
        )
        assert len(feed.calls) == 1
        assert register.calls == []

    def test_register_listing_writes_licence(self, make_context, repository):
        licence = LicenceFacts(
            licence_type_code="mandatory_hmo",
            licence_number="HMO/0117",
            start_date=date(2024, 2, 1),
            end_date=date(2029, 1, 31),
            max_occupants=6,
        )
        listing = _listing(
            source_name="hmo_register",
            external_id="HMO/0117",
            address="22 Mauldeth Road",
            postcode="M14 6AB",
            listing_type=ListingType.RENT,
            price=None,
            property_type="HMO",
            licence=licence,
        )
        adapter = FakeAdapter("hmo_register", {"M14 6AB": [listing]})

        run_enrichment_pass(RunScope(postcodes=["M14 6AB"], enrich=False), make_context(adapters=[adapter]))

        record = repository.query(PropertyFilter(postcodes=["M14 6AB"]))[0]
        assert record.licensed_hmo is True
        assert record.licence_id == "HMO/0117"
        stored = repository.licences_for(record.property_id)
        assert len(stored) == 1
        assert stored[0].status == LicenceStatus.ACTIVE
        assert stored[0].status_computed_at == NOW

    def test_expired_licence_does_not_flag(self, make_context, repository):
        licence = LicenceFacts(
            licence_type_code="mandatory_hmo",
            licence_number="HMO/0001",
            start_date=date(2018, 1, 1),
            end_date=date(2023, 1, 1),
        )
        listing = _listing(
            source_name="hmo_register",
            external_id="HMO/0001",
            listing_type=ListingType.RENT,
            licence=licence,
        )
        adapter = FakeAdapter("hmo_register", {"M14 5RR": [listing]})

        run_enrichment_pass(RunScope(postcodes=["M14 5RR"], enrich=False), make_context(adapters=[adapter]))

        record = repository.bulk_read()[0]
        assert record.licensed_hmo is None
        assert repository.licences_for(record.property_id)[0].status == LicenceStatus.EXPIRED


# =============================================================================
# Enrichment
# =============================================================================


class TestEnrichment:
    def test_epc_enrichment_makes_ready_to_go(self, make_context, repository, sink):
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        context = make_context(adapters=[adapter], epc=FakeEpc([_certificate()]))

        result = run_enrichment_pass(RunScope(postcodes=["M14 5RR"]), context)

        record = repository.bulk_read()[0]
        assert record.epc_rating == "C"
        assert record.epc_certificate_ref == "LMK-1"
        assert record.epc_expiry_date == date(2031, 9, 14)
        assert record.epc_checked_at == NOW
        assert record.deal_score == 82
        assert record.classification == Classification.READY_TO_GO
        # Ingested once and enriched once
        assert result.processed == 2
        assert result.created == 1
        assert result.updated == 0
        assert sink.of_type(EVENT_READY_TO_GO)[0]["property_id"] == record.property_id

    def test_unmatched_epc_marks_checked_and_is_skipped_next_run(self, make_context, repository):
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        epc = FakeEpc([_certificate(address="99 Unrelated Avenue")])

        run_enrichment_pass(RunScope(postcodes=["M14 5RR"]), make_context(adapters=[adapter], epc=epc))
        record = repository.bulk_read()[0]
        assert record.epc_rating is None
        assert record.epc_checked_at == NOW

        result = run_enrichment_pass(
            RunScope(postcodes=["M14 5RR"], ingest=False), make_context(epc=epc)
        )
        assert result.skipped == 1
        assert len(epc.calls) == 1

        run_enrichment_pass(
            RunScope(postcodes=["M14 5RR"], ingest=False, force=True), make_context(epc=epc)
        )
        assert len(epc.calls) == 2

    def test_epc_lookup_cached_per_postcode(self, make_context):
        adapter = FakeAdapter(
            "listing_feed",
            {"M14 5RR": [_listing("Z-1", "10 Wilmslow Road"), _listing("Z-2", "12 Wilmslow Road")]},
        )
        epc = FakeEpc([_certificate()])
        run_enrichment_pass(RunScope(postcodes=["M14 5RR"]), make_context(adapters=[adapter], epc=epc))
        assert epc.calls == ["M14 5RR"]

    def test_stage_failure_recorded_and_run_continues(self, make_context, repository):
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        epc = FakeEpc(error=TransientNetworkError("EPC register down"))

        result = run_enrichment_pass(
            RunScope(postcodes=["M14 5RR"]), make_context(adapters=[adapter], epc=epc)
        )

        pid = repository.bulk_read()[0].property_id
        assert result.errors == [f"{pid}:epc: EPC register down"]
        assert result.errors_total == 1
        assert repository.get(pid).epc_checked_at is None

    def test_geocode_then_article_4_in_one_pass(self, make_context, repository):
        adapter = FakeAdapter("listing_feed", {"M14 6AB": [_listing(postcode="M14 6AB")]})
        geocoder = GeocodingService(None, FakeGeocodeProvider((53.44, -2.22)))
        features = load_polygons(str(FIXTURES_DIR / "article4_sample.geojson"))
        context = make_context(adapters=[adapter], geocoder=geocoder, planning_features=features)

        run_enrichment_pass(RunScope(postcodes=["M14 6AB"]), context)

        record = repository.bulk_read()[0]
        assert record.has_coordinates
        assert record.geocode_checked_at == NOW
        assert record.article_4_area is True
        assert record.article_4_area_name == "Fallowfield HMO Article 4"
        assert record.article4_checked_at == NOW
        assert [c.category for c in record.planning_constraints] == [ConstraintCategory.ARTICLE_4]

    def test_outside_article_4_marks_checked(self, make_context, repository):
        listing = _listing(latitude=53.80, longitude=-1.55)
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [listing]})
        features = load_polygons(str(FIXTURES_DIR / "article4_sample.geojson"))

        run_enrichment_pass(
            RunScope(postcodes=["M14 5RR"]),
            make_context(adapters=[adapter], planning_features=features),
        )

        record = repository.bulk_read()[0]
        assert record.article_4_area is False
        assert record.article4_checked_at == NOW
        assert record.planning_checked_at is None

    def test_article_4_checked_once_coordinates_arrive(self, make_context, repository):
        features = load_polygons(str(FIXTURES_DIR / "article4_sample.geojson"))
        planning = FakePlanning({"conservation_area": True, "conservation_area_name": "Victoria Park"})
        first = FakeAdapter("listing_feed", {"M14 6AB": [_listing(postcode="M14 6AB")]})

        run_enrichment_pass(
            RunScope(postcodes=["M14 6AB"]),
            make_context(
                adapters=[first], planning_features=features, planning_constraints=planning
            ),
        )
        record = repository.bulk_read()[0]
        assert record.planning_checked_at == NOW
        assert record.article4_checked_at is None
        assert record.article_4_area is None

        located = _listing(postcode="M14 6AB", latitude=53.44, longitude=-2.22)
        second = FakeAdapter("listing_feed", {"M14 6AB": [located]})
        run_enrichment_pass(
            RunScope(postcodes=["M14 6AB"]),
            make_context(
                adapters=[second], planning_features=features, planning_constraints=planning
            ),
        )

        record = repository.bulk_read()[0]
        assert record.has_coordinates
        assert record.article_4_area is True
        assert record.article4_checked_at == NOW
        assert record.conservation_area is True

    def test_confirmed_geocode_miss_marks_checked(self, make_context, repository):
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        geocoder = GeocodingService(None, FakeGeocodeProvider(None))

        run_enrichment_pass(RunScope(postcodes=["M14 5RR"]), make_context(adapters=[adapter], geocoder=geocoder))

        record = repository.bulk_read()[0]
        assert record.latitude is None
        assert record.geocode_checked_at == NOW

    def test_rate_limited_geocode_not_marked(self, make_context, repository):
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        geocoder = GeocodingService(None, FakeGeocodeProvider(error=RateLimited("slow down")))

        result = run_enrichment_pass(
            RunScope(postcodes=["M14 5RR"]), make_context(adapters=[adapter], geocoder=geocoder)
        )

        assert repository.bulk_read()[0].geocode_checked_at is None
        assert result.errors == []

    def test_planning_constraints_payload(self, make_context, repository):
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        planning = FakePlanning({"conservation_area": True, "conservation_area_name": "Victoria Park"})

        run_enrichment_pass(
            RunScope(postcodes=["M14 5RR"]),
            make_context(adapters=[adapter], planning_constraints=planning),
        )

        record = repository.bulk_read()[0]
        assert record.conservation_area is True
        assert record.planning_checked_at == NOW

    def test_broadband_selects_premises(self, make_context, repository):
        listing = _listing(uprn="200")
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [listing]})
        rows = [
            BroadbandCoverage("100", "8 Wilmslow Road", 12, 80, None, 80, 20),
            BroadbandCoverage("200", "10 Wilmslow Road", 12, 80, 1000, 1000, 220),
        ]
        context = make_context(
            adapters=[adapter], broadband=FakeBroadband(rows), select_premises=select_premises
        )

        run_enrichment_pass(RunScope(postcodes=["M14 5RR"]), context)

        record = repository.bulk_read()[0]
        assert record.has_fiber is True
        assert record.broadband_max_down == 1000
        assert record.broadband_checked_at == NOW

    def test_purchase_matched_to_licensed_hmo(self, make_context, repository):
        licence = LicenceFacts(
            licence_type_code="mandatory_hmo",
            licence_number="HMO/0117",
            start_date=date(2024, 2, 1),
            end_date=date(2029, 1, 31),
        )
        register = FakeAdapter(
            "hmo_register",
            {
                "M14 6AB": [
                    _listing(
                        source_name="hmo_register",
                        external_id="HMO/0117",
                        address="22 Mauldeth Road",
                        postcode="M14 6AB",
                        listing_type=ListingType.RENT,
                        price=None,
                        licence=licence,
                    )
                ]
            },
        )
        feed = FakeAdapter(
            "listing_feed", {"M14 6AD": [_listing(address="22 Mauldeth Road", postcode="M14 6AD")]}
        )

        run_enrichment_pass(
            RunScope(postcodes=["M14 6AB", "M14 6AD"]),
            make_context(adapters=[register, feed]),
        )

        purchase = repository.query(PropertyFilter(postcodes=["M14 6AD"]))[0]
        assert purchase.licensed_hmo is True
        assert purchase.licence_id == "HMO/0117"
        assert purchase.provenance["licensed_hmo"].source_name == "licensed_hmo_match"

    def test_unknown_record_id(self, make_context):
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        result = run_enrichment_pass(
            RunScope(record_id="pr-missing", postcodes=["M14 5RR"]),
            make_context(adapters=[adapter]),
        )
        assert adapter.calls == []
        assert result.errors == ["pr-missing: record not found"]

    def test_stale_records_not_enriched(self, make_context, repository):
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        run_enrichment_pass(RunScope(postcodes=["M14 5RR"], enrich=False), make_context(adapters=[adapter]))
        record = repository.bulk_read()[0]
        record.is_stale = True
        repository.upsert_by_natural_key(record)

        epc = FakeEpc([_certificate()])
        result = run_enrichment_pass(RunScope(ingest=False), make_context(epc=epc))

        assert epc.calls == []
        assert result.processed == 0


# =============================================================================
# Failure isolation / budgets
# =============================================================================


class TestRunBounds:
    def test_adapter_failure_isolated(self, make_context):
        failing = FakeAdapter("hmo_register", error=TransientNetworkError("HTTP 503"))
        working = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})

        result = run_enrichment_pass(
            RunScope(postcodes=["M14 5RR"], enrich=False),
            make_context(adapters=[failing, working]),
        )

        assert result.created == 1
        assert result.errors == ["hmo_register:M14 5RR: HTTP 503"]

    def test_unexpected_adapter_error_recorded(self, make_context):
        crashing = FakeAdapter(
            "hmo_register", error=AttributeError("'int' object has no attribute 'strip'")
        )
        working = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})

        result = run_enrichment_pass(
            RunScope(postcodes=["M14 5RR"], enrich=False),
            make_context(adapters=[crashing, working], max_workers=2),
        )

        assert result.created == 1
        assert result.errors == ["hmo_register:M14 5RR: 'int' object has no attribute 'strip'"]

    def test_unexpected_stage_error_recorded(self, make_context, repository):
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        epc = FakeEpc(error=TypeError("bad row"))
        planning = FakePlanning({"conservation_area": True})

        result = run_enrichment_pass(
            RunScope(postcodes=["M14 5RR"]),
            make_context(adapters=[adapter], epc=epc, planning_constraints=planning),
        )

        record = repository.bulk_read()[0]
        assert result.errors == [f"{record.property_id}:epc: bad row"]
        assert record.epc_checked_at is None
        assert record.conservation_area is True

    def test_repository_saved_once_at_end_of_run(self, tmp_path):
        path = tmp_path / "properties.json"
        repository = InMemoryPropertyRepository(persist_path=str(path), autosave=False)
        listings = [_listing(f"Z-{i}", f"{i} Wilmslow Road") for i in range(1, 4)]
        context = PipelineContext(
            gateway=repository,
            resolver=CanonicalResolver(repository),
            adapters=[FakeAdapter("listing_feed", {"M14 5RR": listings})],
            sink=InMemoryNotificationSink(),
            max_workers=1,
        )

        run_enrichment_pass(RunScope(postcodes=["M14 5RR"], enrich=False), context)

        assert len(InMemoryPropertyRepository(persist_path=str(path)).bulk_read()) == 3

    def test_errors_capped(self, make_context):
        failing = FakeAdapter("listing_feed", error=TransientNetworkError("down"))
        context = make_context(adapters=[failing], max_errors=2)

        result = run_enrichment_pass(
            RunScope(postcodes=["M14 5RR", "M14 6AB", "LS6 1AA"], enrich=False), context
        )

        assert len(result.errors) == 2
        assert result.errors_total == 3

    def test_limit_bounds_ingestion(self, make_context, repository):
        listings = [_listing(f"Z-{i}", f"{i} Wilmslow Road") for i in range(1, 4)]
        adapter = FakeAdapter("listing_feed", {"M14 5RR": listings})

        result = run_enrichment_pass(
            RunScope(postcodes=["M14 5RR"], limit=2, enrich=False), make_context(adapters=[adapter])
        )

        assert result.processed == 2
        assert result.skipped == 1
        assert repository.count() == 2

    def test_sink_failure_does_not_fail_run(self, repository):
        adapter = FakeAdapter("listing_feed", {"M14 5RR": [_listing()]})
        context = PipelineContext(
            gateway=repository,
            resolver=CanonicalResolver(repository),
            adapters=[adapter],
            sink=ExplodingSink(),
            max_workers=1,
        )
        result = run_enrichment_pass(RunScope(postcodes=["M14 5RR"], enrich=False), context)
        assert result.created == 1

    def test_concurrent_units_share_one_record(self, make_context, repository):
        postcodes = ["M14 5RR", "M14 6AB", "M14 6AD", "LS6 1AA"]
        adapters = [
            FakeAdapter("listing_feed", {pc: [_listing(uprn="555", postcode=pc)] for pc in postcodes})
        ]
        result = run_enrichment_pass(
            RunScope(postcodes=postcodes, enrich=False),
            make_context(adapters=adapters, max_workers=4),
        )
        assert repository.count() == 1
        assert result.created == 1
        assert result.processed == 4


class TestRunBudget:
    def test_item_limit(self):
        budget = RunBudget(limit=1)
        assert budget.take() is True
        assert budget.take() is False
        assert budget.exhausted

    def test_deadline_shared_by_restarted_budget(self):
        now = [0.0]
        budget = RunBudget(limit=5, time_budget_seconds=10, monotonic=lambda: now[0])
        budget.take()
        second = budget.restarted()

        assert second.taken == 0
        assert second.take() is True
        now[0] = 10.0
        assert budget.exhausted
        assert second.take() is False
