"""
Ingestion Layer

Source registration, the adapter protocol and listing normalisation.
Every record entering the resolver arrives as a NormalizedListing produced
through this package.
"""

from core.ingestion.schema import (
    REJECTION_CODES,
    RejectionRecord,
    SourceRole,
    normalise_uk_postcode,
    validate_uk_postcode,
)
from core.ingestion.registry import (
    SOURCE_REGISTRY,
    SourceRegistration,
    get_active_sources,
    get_source,
    get_sources_by_role,
    register_source,
    require_source,
)
from core.ingestion.adapter import FetchCriteria, ListingNormaliser, SourceAdapter

__all__ = [
    # Schema
    "SourceRole",
    "validate_uk_postcode",
    "normalise_uk_postcode",
    # Rejection handling
    "RejectionRecord",
    "REJECTION_CODES",
    # Source registration
    "SourceRegistration",
    "SOURCE_REGISTRY",
    "get_source",
    "require_source",
    "get_active_sources",
    "get_sources_by_role",
    "register_source",
    # Adapter interface
    "FetchCriteria",
    "SourceAdapter",
    "ListingNormaliser",
]
