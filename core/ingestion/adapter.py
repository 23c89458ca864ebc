"""
Source Adapter Protocol - Uniform Interface for External Feeds

Every external feed exposes `fetch(criteria) -> list[NormalizedListing]`
and owns its own pagination. Adapters do not inherit from a base class;
they compose a ListingNormaliser that turns raw provider dicts into
NormalizedListing records and keeps a rejection trail for anything that
cannot be normalised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Final, Optional, Protocol, runtime_checkable

from core.ingestion.registry import SourceRegistration
from core.ingestion.schema import (
    RejectionRecord,
    normalise_uk_postcode,
    validate_uk_postcode,
)
from core.models import LicenceFacts, ListingType, NormalizedListing


logger = logging.getLogger(__name__)


# =============================================================================
# Property / Listing Type Mapping
# =============================================================================

# Canonical property types understood by the scoring engine
PROPERTY_TYPE_HOUSE: Final = "House"
PROPERTY_TYPE_FLAT: Final = "Flat"
PROPERTY_TYPE_STUDIO: Final = "Studio"
PROPERTY_TYPE_HMO: Final = "HMO"
PROPERTY_TYPE_OTHER: Final = "Other"

STANDARD_PROPERTY_TYPE_MAP: Final[dict[str, str]] = {
    # Flat variants
    "flat": PROPERTY_TYPE_FLAT,
    "apartment": PROPERTY_TYPE_FLAT,
    "maisonette": PROPERTY_TYPE_FLAT,
    "penthouse": PROPERTY_TYPE_FLAT,
    "ground floor flat": PROPERTY_TYPE_FLAT,
    "upper floor flat": PROPERTY_TYPE_FLAT,
    # Studio
    "studio": PROPERTY_TYPE_STUDIO,
    "studio flat": PROPERTY_TYPE_STUDIO,
    "bedsit": PROPERTY_TYPE_STUDIO,
    # House variants
    "house": PROPERTY_TYPE_HOUSE,
    "terraced": PROPERTY_TYPE_HOUSE,
    "terraced house": PROPERTY_TYPE_HOUSE,
    "end terrace": PROPERTY_TYPE_HOUSE,
    "end of terrace": PROPERTY_TYPE_HOUSE,
    "mid terrace": PROPERTY_TYPE_HOUSE,
    "town house": PROPERTY_TYPE_HOUSE,
    "townhouse": PROPERTY_TYPE_HOUSE,
    "semi-detached": PROPERTY_TYPE_HOUSE,
    "semi detached": PROPERTY_TYPE_HOUSE,
    "semi-detached house": PROPERTY_TYPE_HOUSE,
    "detached": PROPERTY_TYPE_HOUSE,
    "detached house": PROPERTY_TYPE_HOUSE,
    "bungalow": PROPERTY_TYPE_HOUSE,
    "cottage": PROPERTY_TYPE_HOUSE,
    # Shared housing
    "hmo": PROPERTY_TYPE_HMO,
    "house share": PROPERTY_TYPE_HMO,
    "house of multiple occupation": PROPERTY_TYPE_HMO,
    "shared house": PROPERTY_TYPE_HMO,
}

STANDARD_LISTING_TYPE_MAP: Final[dict[str, ListingType]] = {
    "rent": ListingType.RENT,
    "rental": ListingType.RENT,
    "to_rent": ListingType.RENT,
    "to rent": ListingType.RENT,
    "let": ListingType.RENT,
    "lettings": ListingType.RENT,
    "sale": ListingType.PURCHASE,
    "for_sale": ListingType.PURCHASE,
    "for sale": ListingType.PURCHASE,
    "buy": ListingType.PURCHASE,
    "purchase": ListingType.PURCHASE,
}


def normalise_property_type(raw_type: Optional[str]) -> Optional[str]:
    """Map a provider property type onto a canonical one; unknown types become 'Other'."""
    if not raw_type:
        return None
    return STANDARD_PROPERTY_TYPE_MAP.get(str(raw_type).lower().strip(), PROPERTY_TYPE_OTHER)


def normalise_listing_type(raw_type: Any) -> Optional[ListingType]:
    if isinstance(raw_type, ListingType):
        return raw_type
    if not raw_type:
        return None
    return STANDARD_LISTING_TYPE_MAP.get(str(raw_type).lower().strip())


def coerce_int(value: Any) -> Optional[int]:
    """
    Coerce a provider number to int.

    Accepts ints, floats and strings such as '£300,000'. Returns None for
    missing values and raises ValueError for anything unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    cleaned = str(value).replace("£", "").replace(",", "").strip()
    if not cleaned:
        return None
    return int(float(cleaned))


# =============================================================================
# Fetch Criteria / Adapter Protocol
# =============================================================================


@dataclass(frozen=True)
class FetchCriteria:
    """One unit of adapter work, typically a single postcode."""

    postcode: Optional[str] = None
    city: Optional[str] = None
    listing_type: Optional[ListingType] = None
    max_items: Optional[int] = None

    @property
    def label(self) -> str:
        return self.postcode or self.city or "all"


@runtime_checkable
class SourceAdapter(Protocol):
    """Interface every feed adapter conforms to."""

    registration: SourceRegistration

    def fetch(self, criteria: FetchCriteria) -> list[NormalizedListing]:
        """
        Fetch and normalise all listings for one unit of work.

        Malformed upstream items are skipped. Transport failures raise
        TransientNetworkError / RateLimited for the orchestrator to record.
        """
        ...


# =============================================================================
# Listing Normaliser
# =============================================================================


class ListingNormaliser:
    """
    Turns canonical-keyed raw dicts into NormalizedListing records.

    Adapters map their provider's field names onto the keys read here
    (address, postcode, city, uprn, latitude, longitude, listing_type,
    price, bedrooms, bathrooms, property_type, title, url) and let the
    normaliser validate them.
    """

    def __init__(self, registration: SourceRegistration) -> None:
        self.registration = registration
        self._rejections: list[RejectionRecord] = []
        self._normalised = 0

    # =========================================================================
    # Rejection Handling
    # =========================================================================

    @property
    def rejections(self) -> list[RejectionRecord]:
        """Get all rejection records from this adapter session."""
        return self._rejections.copy()

    def clear_rejections(self) -> None:
        self._rejections.clear()

    def reject(
        self,
        source_listing_id: str,
        rejection_code: str,
        raw_data: Optional[object] = None,
    ) -> None:
        """Record a rejection and log it."""
        record = RejectionRecord.create(
            source_id=self.registration.source_id,
            source_listing_id=source_listing_id,
            rejection_code=rejection_code,
            raw_data=raw_data,
        )
        self._rejections.append(record)
        logger.warning(
            "Rejected item %s from %s: %s",
            source_listing_id,
            self.registration.source_id,
            rejection_code,
        )

    # =========================================================================
    # Normalisation
    # =========================================================================

    def normalise(
        self,
        raw_data: Any,
        source_listing_id: str,
        licence: Optional[LicenceFacts] = None,
    ) -> Optional[NormalizedListing]:
        """
        Validate raw data and create a NormalizedListing if valid.

        Returns:
            NormalizedListing if valid, None if rejected (rejection recorded)
        """
        if not isinstance(raw_data, dict):
            self.reject(source_listing_id or "unknown", "NOT_A_MAPPING", raw_data)
            return None

        if not source_listing_id:
            self.reject("unknown", "MISSING_ID", raw_data)
            return None

        address = str(raw_data.get("address") or "").strip()
        if not address:
            self.reject(source_listing_id, "MISSING_ADDRESS", raw_data)
            return None

        postcode = str(raw_data.get("postcode") or "").strip()
        if not postcode:
            self.reject(source_listing_id, "MISSING_POSTCODE", raw_data)
            return None
        if not validate_uk_postcode(postcode):
            self.reject(source_listing_id, "INVALID_POSTCODE", raw_data)
            return None
        postcode = normalise_uk_postcode(postcode)

        try:
            price = coerce_int(raw_data.get("price"))
        except (TypeError, ValueError, OverflowError):
            self.reject(source_listing_id, "INVALID_PRICE", raw_data)
            return None
        if price is not None and price < 0:
            self.reject(source_listing_id, "INVALID_PRICE", raw_data)
            return None

        bedrooms = self._optional_count(raw_data.get("bedrooms"))
        bathrooms = self._optional_count(raw_data.get("bathrooms"))
        latitude, longitude = self._optional_coordinates(
            raw_data.get("latitude"), raw_data.get("longitude")
        )

        uprn = raw_data.get("uprn")
        uprn = str(uprn).strip() if uprn not in (None, "") else None

        city = str(raw_data.get("city") or "").strip() or None

        self._normalised += 1
        return NormalizedListing(
            source_name=self.registration.source_id,
            external_id=str(source_listing_id),
            address=address,
            postcode=postcode,
            city=city,
            uprn=uprn or None,
            latitude=latitude,
            longitude=longitude,
            listing_type=normalise_listing_type(raw_data.get("listing_type")),
            price=price,
            bedrooms=bedrooms,
            bathrooms=bathrooms,
            property_type=normalise_property_type(raw_data.get("property_type")),
            title=(str(raw_data["title"]).strip() or None) if raw_data.get("title") else None,
            source_url=str(raw_data["url"]) if raw_data.get("url") else None,
            licence=licence,
        )

    @staticmethod
    def _optional_count(value: Any) -> Optional[int]:
        try:
            count = coerce_int(value)
        except (TypeError, ValueError, OverflowError):
            return None
        if count is None or count < 0:
            return None
        return count

    @staticmethod
    def _optional_coordinates(latitude: Any, longitude: Any) -> tuple[Optional[float], Optional[float]]:
        if latitude in (None, "") or longitude in (None, ""):
            return None, None
        try:
            lat = float(latitude)
            lng = float(longitude)
        except (TypeError, ValueError):
            return None, None
        if not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
            return None, None
        return lat, lng

    # =========================================================================
    # Quality Metrics
    # =========================================================================

    def get_quality_metrics(self) -> dict[str, Any]:
        """Normalised/rejected counts and rejection breakdown for this session."""
        rejections_by_code: dict[str, int] = {}
        for r in self._rejections:
            rejections_by_code[r.rejection_code] = rejections_by_code.get(r.rejection_code, 0) + 1

        total = self._normalised + len(self._rejections)
        return {
            "source_id": self.registration.source_id,
            "total_processed": total,
            "total_normalised": self._normalised,
            "total_rejected": len(self._rejections),
            "normalisation_rate": round(self._normalised / total, 3) if total else None,
            "rejections_by_code": rejections_by_code,
        }
