"""
Ingestion Schema - Postcode Rules and Rejection Records

Every raw item a source adapter receives is either normalised into a
NormalizedListing (core.models) or turned into a RejectionRecord here.
Rejections are kept for data quality monitoring and never raise out of
an adapter's fetch.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Final, Optional


class SourceRole(Enum):
    """What a registered source is used for in the pipeline."""

    LISTING_FEED = "listing_feed"
    LICENCE_REGISTER = "licence_register"
    ENRICHMENT = "enrichment"


# UK postcode validation regex
# Matches formats: AA9A 9AA, A9A 9AA, A9 9AA, A99 9AA, AA9 9AA, AA99 9AA
UK_POSTCODE_REGEX: Final = re.compile(
    r"^([A-Z]{1,2}[0-9][A-Z0-9]?\s?[0-9][A-Z]{2})$", re.IGNORECASE
)


def validate_uk_postcode(postcode: str) -> bool:
    """Validate UK postcode format."""
    if not postcode:
        return False
    normalised = " ".join(postcode.upper().split())
    return bool(UK_POSTCODE_REGEX.match(normalised))


def normalise_uk_postcode(postcode: str) -> str:
    """
    Normalise UK postcode to standard format.

    Ensures single space between outward and inward codes.
    """
    if not postcode:
        return ""
    clean = "".join(postcode.upper().split())
    # Inward code is always the last 3 characters
    if len(clean) >= 4:
        return f"{clean[:-3]} {clean[-3:]}"
    return clean


# =============================================================================
# Rejection Handling
# =============================================================================


REJECTION_CODES: Final[dict[str, str]] = {
    "NOT_A_MAPPING": "Upstream item is not a JSON object",
    "MISSING_ID": "Item has no usable identifier",
    "MISSING_ADDRESS": "Required field 'address' not provided",
    "MISSING_POSTCODE": "Required field 'postcode' not provided",
    "INVALID_POSTCODE": "Postcode format validation failed",
    "INVALID_PRICE": "Price is not a non-negative integer",
    "INVALID_DATE": "Date field could not be parsed",
    "MISSING_LICENCE_NUMBER": "Licence register row has no licence number",
    "MALFORMED_ITEM": "Item fields have unexpected types",
}


@dataclass(frozen=True)
class RejectionRecord:
    """
    Record of an upstream item that failed normalisation.

    Used for audit trail and data quality monitoring.
    """

    source_id: str
    source_listing_id: str
    rejection_code: str
    rejection_reason: str
    raw_data_hash: str
    rejected_at: datetime

    @classmethod
    def create(
        cls,
        source_id: str,
        source_listing_id: str,
        rejection_code: str,
        raw_data: Optional[object] = None,
    ) -> "RejectionRecord":
        """Create a rejection record with automatic hash and timestamp."""
        reason = REJECTION_CODES.get(rejection_code, f"Unknown code: {rejection_code}")

        # Hash raw data for debugging without storing PII
        if isinstance(raw_data, dict) and raw_data:
            data_str = str(sorted(raw_data.items(), key=lambda kv: str(kv[0])))
            raw_hash = hashlib.sha256(data_str.encode()).hexdigest()[:16]
        elif raw_data:
            raw_hash = hashlib.sha256(repr(raw_data).encode()).hexdigest()[:16]
        else:
            raw_hash = "no_data"

        return cls(
            source_id=source_id,
            source_listing_id=source_listing_id,
            rejection_code=rejection_code,
            rejection_reason=reason,
            raw_data_hash=raw_hash,
            rejected_at=datetime.now(timezone.utc),
        )
