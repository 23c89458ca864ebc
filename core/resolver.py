"""
Canonical Resolver / Deduplicator.

Maps incoming listings to a canonical property identity and applies
field-wise merges. Every write that touches a scoring input re-runs the
scorer, so deal score and classification always reflect current fields.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from core.errors import PersistenceError
from core.freshness import mark_seen
from core.models import (
    MERGEABLE_FIELDS,
    SCORING_INPUT_FIELDS,
    Classification,
    FieldProvenance,
    FieldSource,
    NormalizedListing,
    PropertyRecord,
    address_natural_key,
)
from core.persistence import PersistenceGateway
from core.scoring import InvestmentScorer


logger = logging.getLogger(__name__)


def property_id_for(natural_key: str) -> str:
    """Deterministic property id: pr-{first 12 hex of sha256(natural key)}."""
    return "pr-" + hashlib.sha256(natural_key.encode("utf-8")).hexdigest()[:12]


def merge_fields(
    record: PropertyRecord,
    fields: dict[str, Any],
    source: FieldSource,
    observed_at: datetime,
) -> list[str]:
    """
    Field-wise merge into a record.

    An incoming value wins only if it is non-null and either the existing
    value is null or the incoming confidence is at least the existing one.
    Equal confidence takes the incoming (most recent) value. Nulls never clear.

    Returns:
        Names of fields whose value changed.

    Raises:
        ValueError: If a field is not mergeable.
    """
    changed = []
    for name, value in fields.items():
        if name not in MERGEABLE_FIELDS:
            raise ValueError(f"Field {name!r} cannot be merged")
        if value is None:
            continue
        existing = getattr(record, name)
        provenance = record.provenance.get(name)
        if existing is not None and provenance is not None:
            if source.confidence < provenance.confidence:
                continue
        if existing != value:
            setattr(record, name, value)
            changed.append(name)
        record.provenance[name] = FieldProvenance.from_source(source, observed_at)
    return changed


@dataclass
class Observation:
    """Result of a resolver write."""

    record: PropertyRecord
    is_new: bool
    changed_fields: list[str] = field(default_factory=list)
    previous_classification: Optional[Classification] = None

    @property
    def became_ready_to_go(self) -> bool:
        return (
            self.record.classification == Classification.READY_TO_GO
            and self.previous_classification != Classification.READY_TO_GO
        )


class CanonicalResolver:
    """
    Identity resolution and merge, written through the persistence gateway.

    Resolution order: UPRN, then normalised address + postcode, then a new
    record. Resolve-merge-write runs under one lock so concurrent units
    cannot create two records for the same natural key.
    """

    def __init__(self, gateway: PersistenceGateway, scorer: Optional[InvestmentScorer] = None):
        self.gateway = gateway
        self.scorer = scorer or InvestmentScorer()
        self._lock = threading.RLock()

    # =========================================================================
    # Identity
    # =========================================================================

    def resolve(self, listing: NormalizedListing) -> tuple[str, bool]:
        """
        Map a listing to a canonical property id.

        Returns:
            (property_id, is_new)
        """
        with self._lock:
            existing = self._find_existing(listing)
            if existing is not None:
                return existing.property_id, False
            return property_id_for(listing.natural_key), True

    def _find_existing(self, listing: NormalizedListing) -> Optional[PropertyRecord]:
        if listing.uprn:
            record = self.gateway.find_by_uprn(listing.uprn)
            if record is not None:
                return record

        record = self.gateway.find_by_address_key(
            address_natural_key(listing.address, listing.postcode)
        )
        if record is None:
            return None
        # Same address text but two different UPRNs: separate properties
        if listing.uprn and record.uprn and record.uprn != listing.uprn:
            return None
        return record

    # =========================================================================
    # Writes
    # =========================================================================

    def observe(
        self,
        listing: NormalizedListing,
        source: FieldSource,
        now: datetime,
    ) -> Observation:
        """
        Resolve, merge and persist one listing observation.

        Updates last-seen and clears the stale flag whether or not any
        field changed.

        Raises:
            PersistenceError: If the gateway rejects the write.
        """
        with self._lock:
            property_id, _ = self.resolve(listing)
            record = self.gateway.get(property_id)
            is_new = record is None
            if record is None:
                record = PropertyRecord(
                    property_id=property_id,
                    natural_key=listing.natural_key,
                    first_seen_at=now,
                )

            previous = record.classification
            changed = merge_fields(record, listing.to_fields(), source, now)
            mark_seen(record, now)
            self._rescore_if_needed(record, changed, is_new)
            self.gateway.upsert_by_natural_key(record)

        if is_new:
            logger.info("Created %s from %s:%s", property_id, source.name, listing.external_id)
        return Observation(record, is_new, changed, previous)

    def apply(
        self,
        property_id: str,
        fields: dict[str, Any],
        source: FieldSource,
        now: datetime,
    ) -> Observation:
        """
        Apply one enrichment stage's result as a single merge.

        Raises:
            PersistenceError: If the record does not exist or the write fails.
        """
        with self._lock:
            record = self.gateway.get(property_id)
            if record is None:
                raise PersistenceError(f"Unknown property {property_id}")
            previous = record.classification
            changed = merge_fields(record, fields, source, now)
            self._rescore_if_needed(record, changed, False)
            if changed or fields:
                self.gateway.upsert_by_natural_key(record)
        return Observation(record, False, changed, previous)

    def reset_field(self, property_id: str, field_name: str) -> PropertyRecord:
        """
        Explicitly clear a field and its provenance.

        This is the only way a merged value is ever removed.
        """
        if field_name not in MERGEABLE_FIELDS:
            raise ValueError(f"Field {field_name!r} cannot be reset")
        with self._lock:
            record = self.gateway.get(property_id)
            if record is None:
                raise PersistenceError(f"Unknown property {property_id}")
            setattr(record, field_name, None)
            record.provenance.pop(field_name, None)
            self._rescore_if_needed(record, [field_name], False)
            self.gateway.upsert_by_natural_key(record)
            return record

    def rescore(self, property_id: str) -> PropertyRecord:
        """Recompute derived scoring fields for a stored record."""
        with self._lock:
            record = self.gateway.get(property_id)
            if record is None:
                raise PersistenceError(f"Unknown property {property_id}")
            self.scorer.apply(record)
            self.gateway.upsert_by_natural_key(record)
            return record

    def _rescore_if_needed(self, record: PropertyRecord, changed: list[str], force: bool) -> None:
        if force or record.deal_score is None or SCORING_INPUT_FIELDS.intersection(changed):
            self.scorer.apply(record)
