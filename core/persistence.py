"""
Persistence Gateway - Storage for Canonical Property Records

Defines the gateway and notification sink interfaces the pipeline writes
through, plus an in-memory implementation with optional JSON file
persistence for development and tests. Production should put a database
behind the same interface.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from core.errors import PersistenceError
from core.freshness import is_due_stale
from core.models import (
    LicenceRecord,
    ListingType,
    PropertyRecord,
    normalise_postcode_key,
    postcode_outcode,
)


logger = logging.getLogger(__name__)


# =============================================================================
# Interfaces
# =============================================================================


@dataclass
class PropertyFilter:
    """Read filter. Unset fields do not constrain the result."""

    property_ids: list[str] = field(default_factory=list)
    city: Optional[str] = None
    postcodes: list[str] = field(default_factory=list)
    outcode: Optional[str] = None
    listing_type: Optional[ListingType] = None
    licensed_hmo: Optional[bool] = None
    is_stale: Optional[bool] = None
    source_name: Optional[str] = None
    limit: Optional[int] = None

    def matches(self, record: PropertyRecord) -> bool:
        if self.property_ids and record.property_id not in self.property_ids:
            return False
        if self.city and (record.city or "").strip().lower() != self.city.strip().lower():
            return False
        if self.postcodes:
            wanted = {normalise_postcode_key(p) for p in self.postcodes}
            if normalise_postcode_key(record.postcode or "") not in wanted:
                return False
        if self.outcode and record.outcode != postcode_outcode(self.outcode):
            return False
        if self.listing_type is not None and record.listing_type != self.listing_type:
            return False
        if self.licensed_hmo is not None and bool(record.licensed_hmo) != self.licensed_hmo:
            return False
        if self.is_stale is not None and record.is_stale != self.is_stale:
            return False
        if self.source_name and not any(
            p.source_name == self.source_name for p in record.provenance.values()
        ):
            return False
        return True


class PersistenceGateway(Protocol):
    """Upserts keyed by natural identifiers plus filtered reads."""

    def upsert_by_natural_key(self, record: PropertyRecord) -> str: ...

    def get(self, property_id: str) -> Optional[PropertyRecord]: ...

    def find_by_uprn(self, uprn: str) -> Optional[PropertyRecord]: ...

    def find_by_address_key(self, address_key: str) -> Optional[PropertyRecord]: ...

    def query(self, filter: PropertyFilter) -> list[PropertyRecord]: ...

    def bulk_read(self, filter: Optional[PropertyFilter] = None) -> list[PropertyRecord]: ...

    def upsert_licence(self, licence: LicenceRecord) -> None: ...

    def get_licence(self, key: tuple[str, str, str]) -> Optional[LicenceRecord]: ...

    def licences_for(self, property_id: str) -> list[LicenceRecord]: ...

    def all_licences(self) -> list[LicenceRecord]: ...

    def mark_stale_if_due(self, property_id: str, now: datetime, window: timedelta) -> bool: ...

    def flush(self) -> None: ...


class NotificationSink(Protocol):
    """Accepts structured events."""

    def publish(self, event: str, payload: dict[str, Any]) -> None: ...


# =============================================================================
# Notification sinks
# =============================================================================


class LoggingNotificationSink:
    """Writes events to the log. Used when no external sink is configured."""

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("event %s %s", event, json.dumps(payload, default=str, sort_keys=True))


class InMemoryNotificationSink:
    """Collects events in a list."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.events.append((event, dict(payload)))

    def of_type(self, event: str) -> list[dict[str, Any]]:
        with self._lock:
            return [payload for name, payload in self.events if name == event]


# =============================================================================
# Repository
# =============================================================================


class InMemoryPropertyRepository:
    """
    Repository for canonical property and licence records.

    Records are copied on the way in and out so callers never share
    mutable state with the store. Uses in-memory storage with optional
    file persistence.
    """

    def __init__(self, persist_path: Optional[str] = None, autosave: bool = True):
        """
        Initialise repository.

        Args:
            persist_path: Optional path to persist data to JSON file
            autosave: Rewrite the file after every write. When False,
                changes reach the file only on flush().
        """
        self._autosave = autosave
        self._dirty = False
        self._lock = threading.RLock()
        self._records: dict[str, PropertyRecord] = {}
        self._by_natural_key: dict[str, str] = {}
        self._by_uprn: dict[str, str] = {}
        self._by_address_key: dict[str, str] = {}
        self._licences: dict[tuple[str, str, str], LicenceRecord] = {}
        self._persist_path = Path(persist_path) if persist_path else None

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    def _save_to_file(self) -> None:
        """Persist data to file."""
        if not self._persist_path:
            return

        data = {
            "properties": {pid: r.to_dict() for pid, r in self._records.items()},
            "licences": [lic.to_dict() for lic in self._licences.values()],
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }

        try:
            self._persist_path.parent.mkdir(parents=True, exist_ok=True)
            self._persist_path.write_text(json.dumps(data, indent=2))
        except OSError as e:
            raise PersistenceError(f"Could not write {self._persist_path}: {e}") from e

    def _changed(self) -> None:
        self._dirty = True
        if self._autosave:
            self.flush()

    def flush(self) -> None:
        """Write pending changes to the file. No-op when nothing changed."""
        with self._lock:
            if not self._dirty:
                return
            self._save_to_file()
            self._dirty = False

    def _load_from_file(self) -> None:
        """Load data from file."""
        try:
            data = json.loads(self._persist_path.read_text())
            for record_data in data.get("properties", {}).values():
                self._index(PropertyRecord.from_dict(record_data))
            for licence_data in data.get("licences", []):
                licence = LicenceRecord.from_dict(licence_data)
                self._licences[licence.key] = licence
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            # Start fresh rather than refuse to run
            logger.warning("Could not load repository data from %s: %s", self._persist_path, e)

    def _index(self, record: PropertyRecord) -> None:
        self._records[record.property_id] = record
        self._by_natural_key[record.natural_key] = record.property_id
        if record.uprn:
            self._by_uprn[record.uprn] = record.property_id
        if record.address_key:
            self._by_address_key[record.address_key] = record.property_id

    def _check_unique(self, index: dict[str, str], key: Optional[str], record: PropertyRecord, label: str):
        if not key:
            return
        owner = index.get(key)
        if owner is not None and owner != record.property_id:
            raise PersistenceError(f"{label} {key!r} already belongs to {owner}")

    # =========================================================================
    # Property records
    # =========================================================================

    def upsert_by_natural_key(self, record: PropertyRecord) -> str:
        """
        Insert or replace a record.

        Raises:
            PersistenceError: If the record's natural key or UPRN belongs to
                a different property id.
        """
        with self._lock:
            self._check_unique(self._by_natural_key, record.natural_key, record, "natural key")
            self._check_unique(self._by_uprn, record.uprn, record, "UPRN")

            previous = self._records.get(record.property_id)
            if previous is not None and previous.address_key != record.address_key:
                self._by_address_key.pop(previous.address_key or "", None)

            self._index(copy.deepcopy(record))
            self._changed()
            return record.property_id

    def mark_stale_if_due(self, property_id: str, now: datetime, window: timedelta) -> bool:
        """
        Flag a record stale if it is still unseen for longer than window.

        The check runs against the stored record under the repository lock,
        so an observation written after the caller's read wins.
        """
        with self._lock:
            record = self._records.get(property_id)
            if record is None or not is_due_stale(record, now, window):
                return False
            record.is_stale = True
            record.stale_marked_at = now
            self._changed()
            return True

    def get(self, property_id: str) -> Optional[PropertyRecord]:
        with self._lock:
            record = self._records.get(property_id)
            return copy.deepcopy(record) if record else None

    def find_by_uprn(self, uprn: str) -> Optional[PropertyRecord]:
        with self._lock:
            property_id = self._by_uprn.get(uprn)
            return self.get(property_id) if property_id else None

    def find_by_address_key(self, address_key: str) -> Optional[PropertyRecord]:
        with self._lock:
            property_id = self._by_address_key.get(address_key)
            return self.get(property_id) if property_id else None

    def query(self, filter: PropertyFilter) -> list[PropertyRecord]:
        with self._lock:
            results = []
            for record in self._records.values():
                if filter.matches(record):
                    results.append(copy.deepcopy(record))
                    if filter.limit is not None and len(results) >= filter.limit:
                        break
            return results

    def bulk_read(self, filter: Optional[PropertyFilter] = None) -> list[PropertyRecord]:
        return self.query(filter or PropertyFilter())

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    # =========================================================================
    # Licence records
    # =========================================================================

    def upsert_licence(self, licence: LicenceRecord) -> None:
        with self._lock:
            if licence.property_id not in self._records:
                raise PersistenceError(f"Unknown property {licence.property_id}")
            self._licences[licence.key] = copy.deepcopy(licence)
            self._changed()

    def get_licence(self, key: tuple[str, str, str]) -> Optional[LicenceRecord]:
        with self._lock:
            licence = self._licences.get(key)
            return copy.deepcopy(licence) if licence else None

    def licences_for(self, property_id: str) -> list[LicenceRecord]:
        with self._lock:
            return [
                copy.deepcopy(lic) for lic in self._licences.values() if lic.property_id == property_id
            ]

    def all_licences(self) -> list[LicenceRecord]:
        with self._lock:
            return [copy.deepcopy(lic) for lic in self._licences.values()]
