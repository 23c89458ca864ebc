"""
Source Registry - Data Source Registration and Management

All data sources must be registered before the pipeline reads from them.
The registration carries the provenance (source type, confidence tier)
that the resolver stamps onto every field the source supplies.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Final, Optional

from core.ingestion.schema import SourceRole
from core.models import ConfidenceTier, FieldSource, SourceType


@dataclass(frozen=True)
class SourceRegistration:
    """
    Immutable source registration record.

    Defines the source's identity, provenance class and operational limits.
    """

    # === Identity ===
    source_id: str
    source_name: str
    role: SourceRole

    # === Provenance ===
    source_type: SourceType
    confidence: ConfidenceTier

    # === Operational ===
    rate_limit_seconds: float
    requires_authentication: bool
    credential_keys: tuple[str, ...]
    active: bool

    # === Audit ===
    registered_date: date

    def __post_init__(self) -> None:
        """Validate registration constraints."""
        if not self.source_id:
            raise ValueError("source_id is required")
        if not self.source_name:
            raise ValueError("source_name is required")

        if not re.match(r"^[a-z0-9_]+$", self.source_id):
            raise ValueError(
                f"source_id must be lowercase alphanumeric with underscores: {self.source_id}"
            )

        if self.rate_limit_seconds < 0:
            raise ValueError("rate_limit_seconds cannot be negative")

        if self.requires_authentication and not self.credential_keys:
            raise ValueError("authenticated sources must name their credential keys")

    @property
    def field_source(self) -> FieldSource:
        """Provenance stamp for values this source supplies."""
        return FieldSource(
            name=self.source_id,
            source_type=self.source_type,
            confidence=self.confidence,
        )


# =============================================================================
# Source Registry
# =============================================================================

# Global registry of all registered sources
_SOURCE_REGISTRY: dict[str, SourceRegistration] = {}


def register_source(registration: SourceRegistration) -> None:
    """
    Register a new data source.

    Raises:
        ValueError: If source_id is already registered
    """
    if registration.source_id in _SOURCE_REGISTRY:
        raise ValueError(f"Source already registered: {registration.source_id}")
    _SOURCE_REGISTRY[registration.source_id] = registration


def get_source(source_id: str) -> Optional[SourceRegistration]:
    """Get a registered source by ID, or None."""
    return _SOURCE_REGISTRY.get(source_id)


def require_source(source_id: str) -> SourceRegistration:
    """Get a registered source by ID, raising KeyError if unknown."""
    registration = _SOURCE_REGISTRY.get(source_id)
    if registration is None:
        raise KeyError(f"Unknown source: {source_id}")
    return registration


def get_active_sources() -> list[SourceRegistration]:
    """Get all active registered sources."""
    return [s for s in _SOURCE_REGISTRY.values() if s.active]


def get_sources_by_role(role: SourceRole) -> list[SourceRegistration]:
    """Get all active registered sources with a given role."""
    return [s for s in get_active_sources() if s.role == role]


# Expose registry for inspection (read-only view)
SOURCE_REGISTRY: Final = _SOURCE_REGISTRY


# =============================================================================
# Default Registrations
# =============================================================================

register_source(
    SourceRegistration(
        source_id="listing_feed",
        source_name="Property Listings Feed",
        role=SourceRole.LISTING_FEED,
        source_type=SourceType.COMMERCIAL,
        confidence=ConfidenceTier.MEDIUM,
        rate_limit_seconds=0.5,
        requires_authentication=True,
        credential_keys=("listing_feed_api_key",),
        active=True,
        registered_date=date(2026, 1, 17),
    )
)

register_source(
    SourceRegistration(
        source_id="hmo_register",
        source_name="National HMO Register",
        role=SourceRole.LICENCE_REGISTER,
        source_type=SourceType.OFFICIAL,
        confidence=ConfidenceTier.HIGH,
        rate_limit_seconds=0.5,
        requires_authentication=True,
        credential_keys=("propertydata_api_key",),
        active=True,
        registered_date=date(2026, 1, 17),
    )
)

register_source(
    SourceRegistration(
        source_id="epc_register",
        source_name="EPC Open Data Register",
        role=SourceRole.ENRICHMENT,
        source_type=SourceType.OFFICIAL,
        confidence=ConfidenceTier.HIGH,
        rate_limit_seconds=0.2,
        requires_authentication=True,
        credential_keys=("epc_api_email", "epc_api_key"),
        active=True,
        registered_date=date(2026, 1, 17),
    )
)

register_source(
    SourceRegistration(
        source_id="geocoder",
        source_name="Nominatim / postcodes.io",
        role=SourceRole.ENRICHMENT,
        source_type=SourceType.ENRICHED,
        confidence=ConfidenceTier.MEDIUM,
        rate_limit_seconds=1.1,
        requires_authentication=False,
        credential_keys=(),
        active=True,
        registered_date=date(2026, 1, 17),
    )
)

register_source(
    SourceRegistration(
        source_id="planning_polygons",
        source_name="Article 4 Direction Areas",
        role=SourceRole.ENRICHMENT,
        source_type=SourceType.OFFICIAL,
        confidence=ConfidenceTier.HIGH,
        rate_limit_seconds=0,
        requires_authentication=False,
        credential_keys=(),
        active=True,
        registered_date=date(2026, 1, 17),
    )
)

register_source(
    SourceRegistration(
        source_id="planning_constraints",
        source_name="Searchland Planning Constraints",
        role=SourceRole.ENRICHMENT,
        source_type=SourceType.COMMERCIAL,
        confidence=ConfidenceTier.HIGH,
        rate_limit_seconds=0.5,
        requires_authentication=True,
        credential_keys=("searchland_api_key",),
        active=True,
        registered_date=date(2026, 1, 17),
    )
)

register_source(
    SourceRegistration(
        source_id="broadband",
        source_name="Ofcom Connected Nations",
        role=SourceRole.ENRICHMENT,
        source_type=SourceType.OFFICIAL,
        confidence=ConfidenceTier.HIGH,
        rate_limit_seconds=0.5,
        requires_authentication=True,
        credential_keys=("ofcom_api_key",),
        active=True,
        registered_date=date(2026, 1, 17),
    )
)

register_source(
    SourceRegistration(
        source_id="licensed_hmo_match",
        source_name="Licensed HMO Cross-Match",
        role=SourceRole.ENRICHMENT,
        source_type=SourceType.ENRICHED,
        confidence=ConfidenceTier.MEDIUM,
        rate_limit_seconds=0,
        requires_authentication=False,
        credential_keys=(),
        active=True,
        registered_date=date(2026, 1, 17),
    )
)
