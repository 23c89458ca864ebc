"""
HMO Enrichment Pipeline - Core Logic

This package provides the enrichment and scoring pipeline:
1. Ingestion (source adapters -> NormalizedListing)
2. Canonical resolution and field-wise merge (provenance-aware)
3. Enrichment (geocoding, register matching, planning constraints)
4. Investment scoring (deterministic deal score + classification)
5. Freshness and licence status sweeps
"""

from .models import (
    Classification,
    ConfidenceTier,
    ConstraintCategory,
    LicenceRecord,
    LicenceStatus,
    ListingType,
    NormalizedListing,
    PlanningConstraint,
    PropertyRecord,
    RunResult,
    RunScope,
    SourceType,
)
from .errors import (
    ConfigurationError,
    MalformedUpstreamData,
    PersistenceError,
    PipelineError,
    RateLimited,
    StageOutcome,
    StageStatus,
    TransientNetworkError,
)
from .scoring import InvestmentScorer, ScoreResult
from .matching import GENERAL_POLICY, STRICT_POLICY, MatchPolicy, best_match, score_addresses
from .planning import Point, RestrictionResult, is_restricted, merge_constraint_payload
from .geocoding import Coordinates, GeocodeCache, GeocodingService
from .persistence import (
    InMemoryNotificationSink,
    InMemoryPropertyRepository,
    LoggingNotificationSink,
    PropertyFilter,
)
from .resolver import CanonicalResolver
from .freshness import FreshnessTracker
from .licences import compute_status, sweep_licences
from .pipeline import PipelineContext, run_enrichment_pass

__all__ = [
    # Data model
    "Classification",
    "ConfidenceTier",
    "ConstraintCategory",
    "LicenceRecord",
    "LicenceStatus",
    "ListingType",
    "NormalizedListing",
    "PlanningConstraint",
    "PropertyRecord",
    "RunResult",
    "RunScope",
    "SourceType",
    # Errors
    "PipelineError",
    "TransientNetworkError",
    "RateLimited",
    "MalformedUpstreamData",
    "PersistenceError",
    "ConfigurationError",
    "StageOutcome",
    "StageStatus",
    # Engines
    "InvestmentScorer",
    "ScoreResult",
    "MatchPolicy",
    "GENERAL_POLICY",
    "STRICT_POLICY",
    "best_match",
    "score_addresses",
    "Point",
    "RestrictionResult",
    "is_restricted",
    "merge_constraint_payload",
    "Coordinates",
    "GeocodeCache",
    "GeocodingService",
    # Persistence
    "PropertyFilter",
    "InMemoryPropertyRepository",
    "InMemoryNotificationSink",
    "LoggingNotificationSink",
    # Orchestration
    "CanonicalResolver",
    "FreshnessTracker",
    "compute_status",
    "sweep_licences",
    "PipelineContext",
    "run_enrichment_pass",
]
