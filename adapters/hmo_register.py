"""
National HMO register adapter.

Looks up licensed HMOs per postcode through the PropertyData
`national-hmo-register` endpoint. Each row becomes a listing that carries
its licence facts, so the orchestrator can write a licence record next to
the canonical property.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

from adapters.http import JsonClient
from core.errors import MalformedUpstreamData
from core.ingestion import FetchCriteria, ListingNormaliser, SourceRegistration
from core.licences import LICENCE_TYPES
from core.models import LICENSED_HMO_STATUS, LicenceFacts, ListingType, NormalizedListing


logger = logging.getLogger(__name__)


REGISTER_PATH = "national-hmo-register"
DEFAULT_LICENCE_TYPE = "mandatory_hmo"

# Response bodies seen from the register, most specific first
_RECORD_LIST_KEYS = ("data", "hmo_licences", "results")


def parse_register_date(value: Any) -> Optional[date]:
    """ISO date (or datetime) string to date; raises ValueError if unparseable."""
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def licence_type_code(raw: Any) -> str:
    """Register licence type text to a LICENCE_TYPES code."""
    if not raw:
        return DEFAULT_LICENCE_TYPE
    code = str(raw).strip().lower().replace(" ", "_").replace("-", "_")
    if code in LICENCE_TYPES:
        return code
    if "additional" in code:
        return "additional_hmo"
    if "selective" in code:
        return "selective_licence"
    return DEFAULT_LICENCE_TYPE


def extract_records(data: Any) -> list:
    """Pull the row list out of the register's varying response shapes."""
    if not isinstance(data, dict):
        raise MalformedUpstreamData("HMO register response is not an object")
    if data.get("status") == "error":
        raise MalformedUpstreamData(f"HMO register error: {data.get('message')}")

    inner = data.get("data")
    if isinstance(inner, dict):
        for key in ("hmo_licences", "results"):
            if isinstance(inner.get(key), list):
                return inner[key]
        return [inner]
    for key in _RECORD_LIST_KEYS:
        if isinstance(data.get(key), list):
            return data[key]
    if isinstance(data.get("result"), dict):
        return [data["result"]]
    return []


class HmoRegisterAdapter:
    """Licensed HMO rows for one postcode per fetch."""

    def __init__(self, registration: SourceRegistration, client: JsonClient, api_key: str):
        self.registration = registration
        self._client = client
        self._api_key = api_key
        self.normaliser = ListingNormaliser(registration)

    def fetch(self, criteria: FetchCriteria) -> list[NormalizedListing]:
        if not criteria.postcode:
            raise ValueError("HMO register lookups need a full postcode")

        data = self._client.get_json(
            REGISTER_PATH, {"key": self._api_key, "postcode": criteria.postcode}
        )
        if data is None:
            return []

        results = []
        for row in extract_records(data):
            try:
                listing = self._normalise_row(row, criteria.postcode)
            except (AttributeError, TypeError, ValueError) as e:
                logger.debug("Unreadable register row: %s", e)
                self.normaliser.reject("unknown", "MALFORMED_ITEM", row)
                listing = None
            if listing is not None:
                results.append(listing)
            if criteria.max_items is not None and len(results) >= criteria.max_items:
                break

        logger.info(
            "%s: %d licensed HMO(s) for %s",
            self.registration.source_id,
            len(results),
            criteria.label,
        )
        return results

    def _normalise_row(self, row: Any, postcode: str) -> Optional[NormalizedListing]:
        if not isinstance(row, dict):
            return self.normaliser.normalise(row, "unknown")

        licence_number = row.get("licence_number") or row.get("licence_reference")
        if not licence_number:
            self.normaliser.reject("unknown", "MISSING_LICENCE_NUMBER", row)
            return None
        licence_number = str(licence_number)

        try:
            start = parse_register_date(row.get("licence_start") or row.get("licence_issue_date"))
            end = parse_register_date(
                row.get("licence_expiry") or row.get("licence_end") or row.get("licence_expiry_date")
            )
        except ValueError:
            self.normaliser.reject(licence_number, "INVALID_DATE", row)
            return None

        max_occupants = row.get("max_occupants") or row.get("maximum_occupancy")
        try:
            max_occupants = int(max_occupants) if max_occupants not in (None, "") else None
        except (TypeError, ValueError):
            max_occupants = None

        conditions = row.get("conditions") or ()
        if isinstance(conditions, str):
            conditions = (conditions,)

        facts = LicenceFacts(
            licence_type_code=licence_type_code(row.get("licence_type")),
            licence_number=licence_number,
            start_date=start,
            end_date=end,
            max_occupants=max_occupants,
            conditions=tuple(str(c) for c in conditions),
            declared_status=row.get("status") or row.get("licence_status"),
        )

        address = row.get("address") or row.get("property_address")
        canonical = {
            "address": address,
            "postcode": row.get("postcode") or postcode,
            "city": row.get("local_authority"),
            "uprn": row.get("uprn"),
            "latitude": row.get("latitude"),
            "longitude": row.get("longitude"),
            "listing_type": ListingType.RENT,
            "bedrooms": row.get("bedrooms") or row.get("number_of_bedrooms"),
            "property_type": "hmo",
            "title": f"{LICENSED_HMO_STATUS} - {address}" if address else None,
        }
        return self.normaliser.normalise(canonical, licence_number, licence=facts)
