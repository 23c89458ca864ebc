"""
Tests for the in-memory persistence gateway and notification sinks.
"""

import json
import pytest
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import PersistenceError
from core.models import (
    Classification,
    ConfidenceTier,
    ConstraintCategory,
    FieldProvenance,
    LicenceRecord,
    LicenceStatus,
    ListingType,
    PlanningConstraint,
    PropertyRecord,
    SourceType,
)
from core.persistence import (
    InMemoryNotificationSink,
    InMemoryPropertyRepository,
    PropertyFilter,
)


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _record(property_id="pr-1", **overrides):
    data = dict(
        property_id=property_id,
        natural_key=f"addr:{property_id}",
        address=f"{property_id} Oxford Road",
        postcode="M14 5RR",
        city="Manchester",
        listing_type=ListingType.PURCHASE,
    )
    data.update(overrides)
    return PropertyRecord(**data)


class TestUpsert:
    def test_copies_on_the_way_in_and_out(self):
        repository = InMemoryPropertyRepository()
        record = _record()
        repository.upsert_by_natural_key(record)

        record.bedrooms = 9
        fetched = repository.get("pr-1")
        fetched.bedrooms = 7

        assert repository.get("pr-1").bedrooms is None

    def test_natural_key_conflict_rejected(self):
        repository = InMemoryPropertyRepository()
        repository.upsert_by_natural_key(_record("pr-1", natural_key="uprn:9"))
        with pytest.raises(PersistenceError):
            repository.upsert_by_natural_key(_record("pr-2", natural_key="uprn:9"))

    def test_uprn_conflict_rejected(self):
        repository = InMemoryPropertyRepository()
        repository.upsert_by_natural_key(_record("pr-1", uprn="9"))
        with pytest.raises(PersistenceError):
            repository.upsert_by_natural_key(_record("pr-2", uprn="9"))

    def test_address_index_follows_changes(self):
        repository = InMemoryPropertyRepository()
        repository.upsert_by_natural_key(_record())
        old_key = repository.get("pr-1").address_key

        repository.upsert_by_natural_key(_record(address="12 New Street"))

        assert repository.find_by_address_key(old_key) is None
        assert repository.find_by_address_key("12 new street|M145RR").property_id == "pr-1"


class TestQuery:
    @pytest.fixture
    def repository(self):
        repo = InMemoryPropertyRepository()
        repo.upsert_by_natural_key(_record("pr-1"))
        repo.upsert_by_natural_key(_record("pr-2", city="Leeds", postcode="LS6 1AA"))
        repo.upsert_by_natural_key(_record("pr-3", licensed_hmo=True, postcode="M14 6AB"))
        repo.upsert_by_natural_key(_record("pr-4", listing_type=ListingType.RENT, is_stale=True))
        return repo

    def test_city_case_insensitive(self, repository):
        ids = {r.property_id for r in repository.query(PropertyFilter(city="manchester"))}
        assert ids == {"pr-1", "pr-3", "pr-4"}

    def test_outcode_and_licensed(self, repository):
        results = repository.query(PropertyFilter(outcode="M14", licensed_hmo=True))
        assert [r.property_id for r in results] == ["pr-3"]

    def test_postcodes_normalised(self, repository):
        results = repository.query(PropertyFilter(postcodes=["ls61aa"]))
        assert [r.property_id for r in results] == ["pr-2"]

    def test_stale_and_listing_type(self, repository):
        results = repository.query(PropertyFilter(listing_type=ListingType.RENT, is_stale=True))
        assert [r.property_id for r in results] == ["pr-4"]

    def test_limit(self, repository):
        assert len(repository.bulk_read(PropertyFilter(limit=2))) == 2
        assert len(repository.bulk_read()) == 4


class TestFilePersistence:
    def test_round_trip_through_file(self, tmp_path):
        path = tmp_path / "properties.json"
        repository = InMemoryPropertyRepository(persist_path=str(path))
        record = _record(
            classification=Classification.VALUE_ADD,
            planning_constraints=[PlanningConstraint(ConstraintCategory.ARTICLE_4, "Area", "A4/1")],
            epc_expiry_date=date(2031, 5, 1),
            last_seen_at=NOW,
        )
        record.provenance["city"] = FieldProvenance(
            "listing_feed", SourceType.COMMERCIAL, ConfidenceTier.MEDIUM, NOW
        )
        repository.upsert_by_natural_key(record)
        repository.upsert_licence(
            LicenceRecord("pr-1", "mandatory_hmo", "L1", status=LicenceStatus.ACTIVE)
        )

        reloaded = InMemoryPropertyRepository(persist_path=str(path))

        assert reloaded.get("pr-1") == repository.get("pr-1")
        assert reloaded.licences_for("pr-1")[0].status == LicenceStatus.ACTIVE
        assert reloaded.find_by_address_key(record.address_key) is not None

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "properties.json"
        path.write_text("{not json")
        assert InMemoryPropertyRepository(persist_path=str(path)).count() == 0

    def test_saved_document_shape(self, tmp_path):
        path = tmp_path / "data" / "properties.json"
        InMemoryPropertyRepository(persist_path=str(path)).upsert_by_natural_key(_record())
        data = json.loads(path.read_text())
        assert set(data) == {"properties", "licences", "saved_at"}
        assert data["properties"]["pr-1"]["listing_type"] == "purchase"

    def test_batched_saves_wait_for_flush(self, tmp_path):
        path = tmp_path / "properties.json"
        repository = InMemoryPropertyRepository(persist_path=str(path), autosave=False)
        repository.upsert_by_natural_key(_record("pr-1"))
        repository.upsert_by_natural_key(_record("pr-2"))

        assert not path.exists()

        repository.flush()

        assert set(json.loads(path.read_text())["properties"]) == {"pr-1", "pr-2"}

    def test_flush_without_changes_leaves_file_alone(self, tmp_path):
        path = tmp_path / "properties.json"
        repository = InMemoryPropertyRepository(persist_path=str(path), autosave=False)
        repository.flush()
        assert not path.exists()


class TestMarkStale:
    def test_marks_record_unseen_past_window(self):
        repository = InMemoryPropertyRepository()
        repository.upsert_by_natural_key(_record(last_seen_at=NOW - timedelta(days=8)))

        assert repository.mark_stale_if_due("pr-1", NOW, timedelta(days=7)) is True

        record = repository.get("pr-1")
        assert record.is_stale is True
        assert record.stale_marked_at == NOW

    def test_recently_seen_or_unknown_left_alone(self):
        repository = InMemoryPropertyRepository()
        repository.upsert_by_natural_key(_record(last_seen_at=NOW - timedelta(days=1)))

        assert repository.mark_stale_if_due("pr-1", NOW, timedelta(days=7)) is False
        assert repository.mark_stale_if_due("pr-missing", NOW, timedelta(days=7)) is False
        assert repository.get("pr-1").is_stale is False


class TestLicences:
    def test_licence_requires_property(self):
        repository = InMemoryPropertyRepository()
        with pytest.raises(PersistenceError):
            repository.upsert_licence(LicenceRecord("pr-x", "mandatory_hmo", "L1"))

    def test_get_by_key(self):
        repository = InMemoryPropertyRepository()
        repository.upsert_by_natural_key(_record())
        repository.upsert_licence(LicenceRecord("pr-1", "mandatory_hmo", None))
        assert repository.get_licence(("pr-1", "mandatory_hmo", "")) is not None
        assert len(repository.all_licences()) == 1


class TestNotificationSink:
    def test_in_memory_sink_records_events(self):
        sink = InMemoryNotificationSink()
        sink.publish("property.created", {"property_id": "pr-1"})
        sink.publish("run.completed", {"processed": 1})
        assert sink.of_type("property.created") == [{"property_id": "pr-1"}]
        assert len(sink.events) == 2
