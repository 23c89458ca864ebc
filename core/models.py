"""
Data models for the enrichment pipeline.

The canonical PropertyRecord is the single merged representation of a
property across every observed source. NormalizedListing is what source
adapters hand to the resolver; LicenceRecord tracks HMO licences per property.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum, IntEnum
from typing import Any, Optional


# =============================================================================
# Enums
# =============================================================================


class ListingType(Enum):
    """Whether a listing is offered for rent or for purchase."""

    RENT = "rent"
    PURCHASE = "purchase"


class SourceType(Enum):
    """Provenance class of a data source."""

    OFFICIAL = "official"
    COMMERCIAL = "commercial"
    ENRICHED = "enriched"


class ConfidenceTier(IntEnum):
    """
    Confidence of a source's values.

    Ordered: a merge only lets equal-or-higher tiers overwrite a value.
    """

    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @classmethod
    def from_string(cls, value: str) -> "ConfidenceTier":
        return cls[value.strip().upper()]


class Classification(Enum):
    """Investment suitability outcome."""

    READY_TO_GO = "ready_to_go"
    VALUE_ADD = "value_add"
    NOT_SUITABLE = "not_suitable"


class ConstraintCategory(Enum):
    """Typed planning constraint categories."""

    ARTICLE_4 = "Article 4"
    CONSERVATION_AREA = "Conservation Area"
    LISTED_BUILDING = "Listed Building"
    OTHER = "Other"


class LicenceStatus(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    PENDING = "pending"
    UNKNOWN = "unknown"


LICENSED_HMO_STATUS = "Licensed HMO"
UNLICENSED_HMO_STATUS = "Unlicensed HMO"


# =============================================================================
# Address helpers
# =============================================================================


def normalise_address_key(address: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    # Apostrophes join ("john's" -> "johns"); commas and full stops separate
    cleaned = re.sub(r"[,.]", " ", (address or "").lower().replace("'", ""))
    return " ".join(cleaned.split())


def normalise_postcode_key(postcode: str) -> str:
    """Uppercase postcode with all whitespace removed."""
    return "".join((postcode or "").upper().split())


def address_natural_key(address: str, postcode: str) -> str:
    """Natural key used when no UPRN is known."""
    return f"{normalise_address_key(address)}|{normalise_postcode_key(postcode)}"


def postcode_outcode(postcode: str) -> str:
    """Outward code ('SW9' from 'SW9 8LE')."""
    compact = normalise_postcode_key(postcode)
    if len(compact) <= 3:
        return compact
    return compact[:-3]


# =============================================================================
# Value objects
# =============================================================================


@dataclass(frozen=True)
class PlanningConstraint:
    """A single typed planning constraint on a property."""

    category: ConstraintCategory
    description: str
    reference: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "description": self.description,
            "reference": self.reference,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PlanningConstraint":
        return cls(
            category=ConstraintCategory(data["category"]),
            description=data.get("description", ""),
            reference=data.get("reference"),
        )


@dataclass(frozen=True)
class FieldSource:
    """Who supplied a value, and how far it can be trusted."""

    name: str
    source_type: SourceType
    confidence: ConfidenceTier


@dataclass(frozen=True)
class FieldProvenance:
    """Provenance of one field on a canonical record."""

    source_name: str
    source_type: SourceType
    confidence: ConfidenceTier
    updated_at: datetime

    @classmethod
    def from_source(cls, source: FieldSource, observed_at: datetime) -> "FieldProvenance":
        return cls(
            source_name=source.name,
            source_type=source.source_type,
            confidence=source.confidence,
            updated_at=observed_at,
        )

    def to_dict(self) -> dict:
        return {
            "source_name": self.source_name,
            "source_type": self.source_type.value,
            "confidence": self.confidence.name.lower(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FieldProvenance":
        return cls(
            source_name=data["source_name"],
            source_type=SourceType(data["source_type"]),
            confidence=ConfidenceTier.from_string(data["confidence"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-factor sub-scores, each 0-100."""

    size_score: int
    location_score: int
    price_score: int
    yield_score: int
    epc_score: int

    def to_dict(self) -> dict:
        return {
            "size_score": self.size_score,
            "location_score": self.location_score,
            "price_score": self.price_score,
            "yield_score": self.yield_score,
            "epc_score": self.epc_score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScoreBreakdown":
        return cls(**{k: int(data[k]) for k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class LicenceFacts:
    """Licence details carried on a listing from a licence register."""

    licence_type_code: str
    licence_number: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    max_occupants: Optional[int] = None
    conditions: tuple[str, ...] = ()
    declared_status: Optional[str] = None


# =============================================================================
# Normalized listing (adapter output)
# =============================================================================


@dataclass
class NormalizedListing:
    """
    Canonical listing shape produced by every source adapter.

    Only address and postcode are guaranteed; everything else is optional
    and a None never overwrites existing data during a merge.
    """

    source_name: str
    external_id: str
    address: str
    postcode: str
    city: Optional[str] = None
    uprn: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    listing_type: Optional[ListingType] = None
    price: Optional[int] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    property_type: Optional[str] = None
    title: Optional[str] = None
    source_url: Optional[str] = None
    licence: Optional[LicenceFacts] = None

    @property
    def natural_key(self) -> str:
        if self.uprn:
            return f"uprn:{self.uprn}"
        return f"addr:{address_natural_key(self.address, self.postcode)}"

    def to_fields(self) -> dict[str, Any]:
        """Mergeable field values supplied by this listing (None included)."""
        return {
            "uprn": self.uprn,
            "address": self.address,
            "postcode": self.postcode,
            "city": self.city,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "listing_type": self.listing_type,
            "price": self.price,
            "bedrooms": self.bedrooms,
            "bathrooms": self.bathrooms,
            "property_type": self.property_type,
            "title": self.title,
            "source_url": self.source_url,
        }


# =============================================================================
# Canonical property record
# =============================================================================


# Data fields a merge may set. Identity, scoring and freshness fields are
# maintained by the resolver and scorer, never merged from a source.
MERGEABLE_FIELDS: tuple[str, ...] = (
    # identity / location
    "uprn",
    "address",
    "postcode",
    "city",
    "latitude",
    "longitude",
    # listing facts
    "listing_type",
    "price",
    "bedrooms",
    "bathrooms",
    "property_type",
    "title",
    "source_url",
    # energy certificate
    "epc_rating",
    "epc_rating_numeric",
    "epc_certificate_ref",
    "epc_expiry_date",
    "floor_area_sqm",
    "floor_area_band",
    # planning
    "article_4_area",
    "article_4_area_name",
    "conservation_area",
    "listed_building_grade",
    "planning_constraints",
    # broadband
    "broadband_basic_down",
    "broadband_superfast_down",
    "broadband_ultrafast_down",
    "broadband_max_down",
    "broadband_max_up",
    "has_fiber",
    "has_superfast",
    # licensing
    "licensed_hmo",
    "hmo_status",
    "licence_id",
    # "checked, no data" markers
    "geocode_checked_at",
    "epc_checked_at",
    "planning_checked_at",
    "article4_checked_at",
    "broadband_checked_at",
)

# Changing any of these requires the deal score to be recomputed.
SCORING_INPUT_FIELDS: frozenset[str] = frozenset(
    {
        "city",
        "listing_type",
        "price",
        "bedrooms",
        "property_type",
        "epc_rating",
        "floor_area_sqm",
        "article_4_area",
        "hmo_status",
        "licensed_hmo",
    }
)

_DATETIME_FIELDS = frozenset(
    {
        "geocode_checked_at",
        "epc_checked_at",
        "planning_checked_at",
        "article4_checked_at",
        "broadband_checked_at",
        "first_seen_at",
        "last_seen_at",
        "stale_marked_at",
    }
)
_DATE_FIELDS = frozenset({"epc_expiry_date"})


@dataclass
class PropertyRecord:
    """Single deduplicated, merged representation of a property."""

    property_id: str
    natural_key: str

    # Identity / location
    uprn: Optional[str] = None
    address: Optional[str] = None
    postcode: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    # Listing facts
    listing_type: Optional[ListingType] = None
    price: Optional[int] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    property_type: Optional[str] = None
    title: Optional[str] = None
    source_url: Optional[str] = None

    # Energy certificate
    epc_rating: Optional[str] = None
    epc_rating_numeric: Optional[int] = None
    epc_certificate_ref: Optional[str] = None
    epc_expiry_date: Optional[date] = None
    floor_area_sqm: Optional[float] = None
    floor_area_band: Optional[str] = None

    # Planning
    article_4_area: Optional[bool] = None
    article_4_area_name: Optional[str] = None
    conservation_area: Optional[bool] = None
    listed_building_grade: Optional[str] = None
    planning_constraints: Optional[list[PlanningConstraint]] = None

    # Broadband (Mbps)
    broadband_basic_down: Optional[int] = None
    broadband_superfast_down: Optional[int] = None
    broadband_ultrafast_down: Optional[int] = None
    broadband_max_down: Optional[int] = None
    broadband_max_up: Optional[int] = None
    has_fiber: Optional[bool] = None
    has_superfast: Optional[bool] = None

    # Licensing
    licensed_hmo: Optional[bool] = None
    hmo_status: Optional[str] = None
    licence_id: Optional[str] = None

    # Scoring (derived, recomputed on every scoring-input change)
    deal_score: Optional[int] = None
    classification: Optional[Classification] = None
    score_breakdown: Optional[ScoreBreakdown] = None
    is_potential_hmo: Optional[bool] = None
    potential_occupants: Optional[int] = None
    estimated_monthly_rent: Optional[int] = None
    estimated_yield_pct: Optional[float] = None
    yield_band: Optional[str] = None

    # Enrichment bookkeeping
    geocode_checked_at: Optional[datetime] = None
    epc_checked_at: Optional[datetime] = None
    planning_checked_at: Optional[datetime] = None
    article4_checked_at: Optional[datetime] = None
    broadband_checked_at: Optional[datetime] = None

    # Provenance, per field
    provenance: dict[str, FieldProvenance] = field(default_factory=dict)

    # Freshness
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    is_stale: bool = False
    stale_marked_at: Optional[datetime] = None

    @property
    def address_key(self) -> Optional[str]:
        if not self.address or not self.postcode:
            return None
        return address_natural_key(self.address, self.postcode)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def outcode(self) -> str:
        return postcode_outcode(self.postcode or "")

    def scoring_inputs(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in sorted(SCORING_INPUT_FIELDS)}

    # =========================================================================
    # Serialisation
    # =========================================================================

    def to_dict(self) -> dict:
        data: dict[str, Any] = {}
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if name == "provenance":
                value = {k: v.to_dict() for k, v in value.items()}
            elif name == "planning_constraints" and value is not None:
                value = [c.to_dict() for c in value]
            elif name == "score_breakdown" and value is not None:
                value = value.to_dict()
            elif isinstance(value, Enum):
                value = value.value
            elif isinstance(value, (datetime, date)):
                value = value.isoformat()
            data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PropertyRecord":
        kwargs: dict[str, Any] = {}
        for name in cls.__dataclass_fields__:
            if name not in data:
                continue
            value = data[name]
            if value is None:
                kwargs[name] = None
                continue
            if name == "provenance":
                value = {k: FieldProvenance.from_dict(v) for k, v in value.items()}
            elif name == "planning_constraints":
                value = [PlanningConstraint.from_dict(c) for c in value]
            elif name == "score_breakdown":
                value = ScoreBreakdown.from_dict(value)
            elif name == "listing_type":
                value = ListingType(value)
            elif name == "classification":
                value = Classification(value)
            elif name in _DATETIME_FIELDS:
                value = datetime.fromisoformat(value)
            elif name in _DATE_FIELDS:
                value = date.fromisoformat(value)
            kwargs[name] = value
        return cls(**kwargs)


# =============================================================================
# Licence record
# =============================================================================


@dataclass
class LicenceRecord:
    """
    An HMO (or selective) licence attached to a property.

    Identity is (property_id, licence_type_code, licence_number).
    Status is derived from the dates at write time; see core.licences.
    """

    property_id: str
    licence_type_code: str
    licence_number: Optional[str]
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: LicenceStatus = LicenceStatus.UNKNOWN
    status_computed_at: Optional[datetime] = None
    max_occupants: Optional[int] = None
    conditions: list[str] = field(default_factory=list)
    source_name: Optional[str] = None
    source_type: Optional[SourceType] = None
    confidence: Optional[ConfidenceTier] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.property_id, self.licence_type_code, self.licence_number or "")

    def to_dict(self) -> dict:
        return {
            "property_id": self.property_id,
            "licence_type_code": self.licence_type_code,
            "licence_number": self.licence_number,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "status": self.status.value,
            "status_computed_at": (
                self.status_computed_at.isoformat() if self.status_computed_at else None
            ),
            "max_occupants": self.max_occupants,
            "conditions": list(self.conditions),
            "source_name": self.source_name,
            "source_type": self.source_type.value if self.source_type else None,
            "confidence": self.confidence.name.lower() if self.confidence else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LicenceRecord":
        def _date(value):
            return date.fromisoformat(value) if value else None

        def _dt(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            property_id=data["property_id"],
            licence_type_code=data["licence_type_code"],
            licence_number=data.get("licence_number"),
            start_date=_date(data.get("start_date")),
            end_date=_date(data.get("end_date")),
            status=LicenceStatus(data.get("status", "unknown")),
            status_computed_at=_dt(data.get("status_computed_at")),
            max_occupants=data.get("max_occupants"),
            conditions=list(data.get("conditions") or []),
            source_name=data.get("source_name"),
            source_type=SourceType(data["source_type"]) if data.get("source_type") else None,
            confidence=(
                ConfidenceTier.from_string(data["confidence"]) if data.get("confidence") else None
            ),
            updated_at=_dt(data.get("updated_at")),
        )


# =============================================================================
# Run scope and result
# =============================================================================


@dataclass
class RunScope:
    """Bounds of a single enrichment pass."""

    source_name: Optional[str] = None
    limit: Optional[int] = None
    record_id: Optional[str] = None
    city: Optional[str] = None
    postcodes: list[str] = field(default_factory=list)
    listing_type: Optional[ListingType] = None
    time_budget_seconds: Optional[float] = None
    force: bool = False
    ingest: bool = True
    enrich: bool = True

    def __post_init__(self):
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must be non-negative")
        if self.time_budget_seconds is not None and self.time_budget_seconds <= 0:
            raise ValueError("time_budget_seconds must be positive")


@dataclass
class RunResult:
    """Outcome of run_enrichment_pass."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    samples: list[dict] = field(default_factory=list)
    errors_total: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "errors_total": self.errors_total,
            "samples": list(self.samples),
            "duration_ms": self.duration_ms,
        }
