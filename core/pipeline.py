"""
Pipeline Orchestrator.

run_enrichment_pass(scope, context) drives one batch run:

1. Configuration check (missing credentials abort before any work)
2. Ingestion: every adapter x scope unit, resolved and merged via the resolver
3. Enrichment: geocode -> EPC -> licensed HMO cross-match -> planning -> broadband
4. Notifications and a bounded RunResult

Every unit of work is isolated: a failure is recorded in the result and the
run moves on. Only ConfigurationError escapes.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from core.errors import (
    DEFAULT_MAX_ERRORS,
    ConfigurationError,
    ErrorLog,
    PersistenceError,
    PipelineError,
    StageOutcome,
    StageStatus,
)
from core.geocoding import GeocodingService
from core.ingestion import FetchCriteria, SourceAdapter, require_source
from core.licences import (
    build_licence_record,
    compute_status,
    is_active_hmo_licence,
    merge_licence_record,
)
from core.matching import GENERAL_POLICY, STRICT_POLICY, best_match
from core.models import (
    LICENSED_HMO_STATUS,
    ConstraintCategory,
    ListingType,
    NormalizedListing,
    PlanningConstraint,
    PropertyRecord,
    RunResult,
    RunScope,
)
from core.persistence import (
    LoggingNotificationSink,
    NotificationSink,
    PersistenceGateway,
    PropertyFilter,
)
from core.planning import ConstraintMerger, Point, is_restricted, merge_constraint_payload
from core.resolver import CanonicalResolver, Observation
from core.scoring import floor_area_band


logger = logging.getLogger(__name__)


MAX_SAMPLES = 10

EVENT_PROPERTY_CREATED = "property.created"
EVENT_READY_TO_GO = "property.ready_to_go"
EVENT_RUN_COMPLETED = "run.completed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enrichment provider interfaces
# =============================================================================


class EpcLookup(Protocol):
    def search(self, postcode: str) -> list: ...


class BroadbandLookup(Protocol):
    def coverage(self, postcode: str) -> list: ...


class PlanningLookup(Protocol):
    def lookup(self, address, postcode, latitude=None, longitude=None, uprn=None) -> Optional[dict]: ...


PremisesSelector = Callable[[list, Optional[str], Optional[str]], Any]


# =============================================================================
# Run context / budget
# =============================================================================


class PostcodeCache:
    """Per-run, thread-safe memo of postcode-keyed register lookups."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, list] = {}

    def get_or_fetch(self, postcode: str, fetch: Callable[[str], list]) -> list:
        key = "".join(postcode.upper().split())
        with self._lock:
            if key in self._entries:
                return self._entries[key]
        rows = fetch(postcode)
        with self._lock:
            self._entries[key] = rows
        return rows


@dataclass
class PipelineContext:
    """
    Everything a run needs, injected.

    Optional providers switch their stage off when None.
    """

    gateway: PersistenceGateway
    resolver: CanonicalResolver
    adapters: list[SourceAdapter] = field(default_factory=list)
    geocoder: Optional[GeocodingService] = None
    epc: Optional[EpcLookup] = None
    broadband: Optional[BroadbandLookup] = None
    select_premises: Optional[PremisesSelector] = None
    planning_features: Optional[list[dict]] = None
    planning_constraints: Optional[PlanningLookup] = None
    sink: NotificationSink = field(default_factory=LoggingNotificationSink)
    config: Any = None
    credential_needs: list[str] = field(default_factory=list)
    max_workers: int = 4
    max_errors: int = DEFAULT_MAX_ERRORS
    clock: Callable[[], datetime] = utc_now
    monotonic: Callable[[], float] = time.monotonic

    def check_configuration(self) -> None:
        """Raise ConfigurationError if an enabled component lacks credentials."""
        if self.config is None or not self.credential_needs:
            return
        missing = self.config.missing_credentials(self.credential_needs)
        if missing:
            raise ConfigurationError(missing)


class RunBudget:
    """
    Item count and wall-clock limits shared by all workers of one phase.

    The deadline is absolute, so phases started with restarted() share it.
    """

    def __init__(
        self,
        limit: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self._monotonic = monotonic
        self._deadline = monotonic() + time_budget_seconds if time_budget_seconds else None
        self._lock = threading.Lock()
        self.taken = 0

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self._exhausted_locked()

    def _exhausted_locked(self) -> bool:
        if self.limit is not None and self.taken >= self.limit:
            return True
        return self._deadline is not None and self._monotonic() >= self._deadline

    def take(self) -> bool:
        """Claim one item. False once the budget is spent."""
        with self._lock:
            if self._exhausted_locked():
                return False
            self.taken += 1
            return True

    def restarted(self) -> "RunBudget":
        """Fresh item count, same deadline."""
        budget = RunBudget(self.limit, None, self._monotonic)
        budget._deadline = self._deadline
        return budget


@dataclass
class UnitReport:
    """What one unit of work did. Merged into the RunResult on the main thread."""

    unit: str
    processed: int = 0
    skipped: int = 0
    created: set[str] = field(default_factory=set)
    updated: set[str] = field(default_factory=set)
    errors: list[tuple[str, Any]] = field(default_factory=list)
    samples: list[dict] = field(default_factory=list)
    events: list[tuple[str, dict]] = field(default_factory=list)


# =============================================================================
# Entry point
# =============================================================================


def run_enrichment_pass(scope: RunScope, context: PipelineContext) -> RunResult:
    """
    Run one enrichment pass over the given scope.

    Raises:
        ConfigurationError: Before any work, if required credentials are missing.
    """
    context.check_configuration()

    started = context.monotonic()
    ingest_budget = RunBudget(scope.limit, scope.time_budget_seconds, context.monotonic)
    enrich_budget = ingest_budget.restarted()
    errors = ErrorLog(context.max_errors)
    result = RunResult()
    created: set[str] = set()
    updated: set[str] = set()

    logger.info(
        "Run started: source=%s city=%s postcodes=%d record=%s limit=%s",
        scope.source_name,
        scope.city,
        len(scope.postcodes),
        scope.record_id,
        scope.limit,
    )

    reports: list[UnitReport] = []
    if scope.ingest and not scope.record_id:
        reports.extend(_run_units(_ingestion_units(scope, context, ingest_budget), context))
    if scope.enrich:
        reports.extend(_run_units(_enrichment_units(scope, context, enrich_budget, errors), context))

    for report in reports:
        result.processed += report.processed
        result.skipped += report.skipped
        created |= report.created
        updated |= report.updated
        for unit, error in report.errors:
            errors.add(unit, error)
        for sample in report.samples:
            if len(result.samples) < MAX_SAMPLES:
                result.samples.append(sample)
        for event, payload in report.events:
            _publish(context, event, payload)

    try:
        context.gateway.flush()
    except PersistenceError as e:
        logger.error("Could not save repository: %s", e)
        errors.add("persistence", e)

    result.created = len(created)
    result.updated = len(updated - created)
    result.errors = errors.messages
    result.errors_total = errors.total
    result.duration_ms = int((context.monotonic() - started) * 1000)

    logger.info(
        "Run completed: processed=%d created=%d updated=%d skipped=%d errors=%d",
        result.processed,
        result.created,
        result.updated,
        result.skipped,
        result.errors_total,
    )
    _publish(context, EVENT_RUN_COMPLETED, result.to_dict())
    return result


def _publish(context: PipelineContext, event: str, payload: dict) -> None:
    try:
        context.sink.publish(event, payload)
    except Exception:
        # Sink failures are logged, never raised
        logger.exception("Notification sink failed for %s", event)


def _run_units(units: list[Callable[[], UnitReport]], context: PipelineContext) -> list[UnitReport]:
    """Run units on a thread pool; results come back in submission order."""
    if not units:
        return []
    if context.max_workers <= 1 or len(units) == 1:
        return [unit() for unit in units]
    with ThreadPoolExecutor(max_workers=context.max_workers) as executor:
        futures = [executor.submit(unit) for unit in units]
        return [future.result() for future in futures]


# =============================================================================
# Ingestion
# =============================================================================


def _selected_adapters(scope: RunScope, context: PipelineContext) -> list[SourceAdapter]:
    if not scope.source_name:
        return list(context.adapters)
    return [a for a in context.adapters if a.registration.source_id == scope.source_name]


def _ingestion_units(
    scope: RunScope,
    context: PipelineContext,
    budget: RunBudget,
) -> list[Callable[[], UnitReport]]:
    criteria_list = [
        FetchCriteria(postcode=pc, listing_type=scope.listing_type) for pc in scope.postcodes
    ]
    if not criteria_list and scope.city:
        criteria_list = [FetchCriteria(city=scope.city, listing_type=scope.listing_type)]
    if not criteria_list:
        logger.info("No postcodes or city in scope; skipping ingestion")
        return []

    units = []
    for adapter in _selected_adapters(scope, context):
        for criteria in criteria_list:
            units.append(
                lambda a=adapter, c=criteria: _ingest_unit(a, c, context, budget, scope.force)
            )
    return units


def _ingest_unit(
    adapter: SourceAdapter,
    criteria: FetchCriteria,
    context: PipelineContext,
    budget: RunBudget,
    force: bool,
) -> UnitReport:
    source_id = adapter.registration.source_id
    report = UnitReport(unit=f"{source_id}:{criteria.label}")
    if budget.exhausted:
        report.skipped += 1
        return report

    try:
        listings = adapter.fetch(criteria)
    except (PipelineError, ValueError) as e:
        logger.error("%s failed: %s", report.unit, e)
        report.errors.append((report.unit, e))
        return report
    except Exception as e:
        logger.exception("%s failed unexpectedly", report.unit)
        report.errors.append((report.unit, e))
        return report

    source = adapter.registration.field_source
    for listing in listings:
        if not budget.take():
            report.skipped += 1
            continue
        now = context.clock()
        try:
            observation = context.resolver.observe(listing, source, now)
            if listing.licence is not None:
                observation = _record_licence(observation, listing, context, now) or observation
        except PersistenceError as e:
            logger.error("Could not persist %s from %s: %s", listing.external_id, source_id, e)
            report.errors.append((f"{source_id}:{listing.external_id}", e))
            report.skipped += 1
            continue
        except Exception as e:
            logger.exception("Could not merge %s from %s", listing.external_id, source_id)
            report.errors.append((f"{source_id}:{listing.external_id}", e))
            report.skipped += 1
            continue

        report.processed += 1
        _note_observation(report, observation, "ingested")
    return report


def _record_licence(
    observation: Observation,
    listing: NormalizedListing,
    context: PipelineContext,
    now: datetime,
) -> Optional[Observation]:
    """Write the licence carried by a register listing; flag the property if active."""
    source = require_source(listing.source_name).field_source
    incoming = build_licence_record(observation.record.property_id, listing.licence, source, now)
    licence = merge_licence_record(context.gateway.get_licence(incoming.key), incoming)
    licence.status = compute_status(
        licence.start_date, licence.end_date, now.date(), listing.licence.declared_status
    )
    licence.status_computed_at = now
    context.gateway.upsert_licence(licence)

    if not is_active_hmo_licence(licence):
        return None
    flagged = context.resolver.apply(
        observation.record.property_id,
        {
            "licensed_hmo": True,
            "hmo_status": LICENSED_HMO_STATUS,
            "licence_id": licence.licence_number,
        },
        source,
        now,
    )
    flagged.is_new = observation.is_new
    flagged.previous_classification = observation.previous_classification
    flagged.changed_fields = observation.changed_fields + flagged.changed_fields
    return flagged


def _note_observation(report: UnitReport, observation: Observation, action: str) -> None:
    record = observation.record
    if observation.is_new:
        report.created.add(record.property_id)
        report.events.append((EVENT_PROPERTY_CREATED, _summary(record)))
    elif observation.changed_fields:
        report.updated.add(record.property_id)
    if observation.became_ready_to_go:
        report.events.append((EVENT_READY_TO_GO, _summary(record)))
    if len(report.samples) < MAX_SAMPLES:
        report.samples.append({**_summary(record), "action": action})


def _summary(record: PropertyRecord) -> dict:
    return {
        "property_id": record.property_id,
        "address": record.address,
        "postcode": record.postcode,
        "deal_score": record.deal_score,
        "classification": record.classification.value if record.classification else None,
    }


# =============================================================================
# Enrichment
# =============================================================================


def _enrichment_targets(
    scope: RunScope,
    context: PipelineContext,
    errors: ErrorLog,
) -> list[PropertyRecord]:
    if scope.record_id:
        record = context.gateway.get(scope.record_id)
        if record is None:
            errors.add(scope.record_id, "record not found")
            return []
        return [record]

    records = context.gateway.query(
        PropertyFilter(
            city=scope.city,
            postcodes=list(scope.postcodes),
            listing_type=scope.listing_type,
            source_name=scope.source_name,
            is_stale=False,
        )
    )
    return sorted(records, key=lambda r: r.property_id)


def _enrichment_units(
    scope: RunScope,
    context: PipelineContext,
    budget: RunBudget,
    errors: ErrorLog,
) -> list[Callable[[], UnitReport]]:
    stages = _enabled_stages(context)
    if not stages:
        logger.info("No enrichment stages configured")
        return []
    postcode_caches = {"epc": PostcodeCache(), "broadband": PostcodeCache()}
    return [
        lambda r=record: _enrich_unit(r, stages, context, budget, scope.force, postcode_caches)
        for record in _enrichment_targets(scope, context, errors)
    ]


def _enabled_stages(context: PipelineContext) -> list[Callable]:
    stages: list[Callable] = []
    if context.geocoder is not None:
        stages.append(_geocode_stage)
    if context.epc is not None:
        stages.append(_epc_stage)
    stages.append(_licensed_hmo_stage)
    if context.planning_features is not None:
        stages.append(_planning_polygons_stage)
    if context.planning_constraints is not None:
        stages.append(_planning_constraints_stage)
    if context.broadband is not None:
        stages.append(_broadband_stage)
    return stages


CHECKED_MARKERS = (
    "geocode_checked_at",
    "epc_checked_at",
    "planning_checked_at",
    "article4_checked_at",
    "broadband_checked_at",
)


@dataclass
class StageRun:
    """Per-record state handed to every stage."""

    context: PipelineContext
    force: bool
    caches: dict[str, PostcodeCache]
    checked: frozenset[str]
    now: datetime

    def already_checked(self, marker: str) -> bool:
        # Markers stamped earlier in this same pass do not count
        return not self.force and marker in self.checked


def _enrich_unit(
    record: PropertyRecord,
    stages: list[Callable],
    context: PipelineContext,
    budget: RunBudget,
    force: bool,
    caches: dict[str, PostcodeCache],
) -> UnitReport:
    report = UnitReport(unit=record.property_id)
    if not budget.take():
        report.skipped += 1
        return report

    run = StageRun(
        context=context,
        force=force,
        caches=caches,
        checked=frozenset(m for m in CHECKED_MARKERS if getattr(record, m) is not None),
        now=context.clock(),
    )
    previous = record.classification
    changed: list[str] = []
    ran_any = False
    for stage in stages:
        run.now = context.clock()
        stage_name = stage.__name__.strip("_").replace("_stage", "")
        try:
            outcome = stage(record, run)
        except PipelineError as e:
            outcome = StageOutcome.failed(stage_name, e)
        except Exception as e:
            logger.exception("%s %s raised unexpectedly", record.property_id, stage_name)
            outcome = StageOutcome.failed(stage_name, e)

        if outcome.status == StageStatus.SKIPPED:
            continue
        ran_any = True
        if outcome.status == StageStatus.FAILED:
            logger.warning("%s %s failed: %s", record.property_id, outcome.stage, outcome.error)
            report.errors.append((f"{record.property_id}:{outcome.stage}", outcome.error))
            continue
        if not outcome.has_fields:
            continue
        try:
            observation = context.resolver.apply(
                record.property_id, outcome.fields, outcome.source, run.now
            )
        except PersistenceError as e:
            report.errors.append((f"{record.property_id}:{outcome.stage}", e))
            continue
        except Exception as e:
            logger.exception("%s %s could not be merged", record.property_id, outcome.stage)
            report.errors.append((f"{record.property_id}:{outcome.stage}", e))
            continue
        record = observation.record
        changed.extend(observation.changed_fields)

    if not ran_any:
        report.skipped += 1
        return report

    report.processed += 1
    _note_observation(report, Observation(record, False, changed, previous), "enriched")
    return report


def _geocode_stage(record: PropertyRecord, run: StageRun) -> StageOutcome:
    if not record.postcode or (not run.force and record.has_coordinates):
        return StageOutcome.skipped("geocode")
    if run.already_checked("geocode_checked_at"):
        return StageOutcome.skipped("geocode")

    source = require_source("geocoder").field_source
    result = run.context.geocoder.resolve(record.address, record.postcode)
    if result.coordinates is None:
        if not result.definitive:
            # Rate limited or provider down: try again next run
            return StageOutcome.skipped("geocode")
        return StageOutcome.no_match("geocode", {"geocode_checked_at": run.now}, source)
    return StageOutcome.enriched(
        "geocode",
        {
            "latitude": result.coordinates.lat,
            "longitude": result.coordinates.lng,
            "geocode_checked_at": run.now,
        },
        source,
    )


def _epc_stage(record: PropertyRecord, run: StageRun) -> StageOutcome:
    if not record.postcode or not record.address:
        return StageOutcome.skipped("epc")
    if run.already_checked("epc_checked_at"):
        return StageOutcome.skipped("epc")

    source = require_source("epc_register").field_source
    certificates = run.caches["epc"].get_or_fetch(record.postcode, run.context.epc.search)
    match = best_match(record.address, certificates, lambda c: c.address, STRICT_POLICY)
    if match is None:
        return StageOutcome.no_match("epc", {"epc_checked_at": run.now}, source)

    cert = match.candidate
    return StageOutcome.enriched(
        "epc",
        {
            "epc_rating": cert.rating,
            "epc_rating_numeric": cert.rating_numeric,
            "epc_certificate_ref": cert.lmk_key,
            "epc_expiry_date": cert.expiry_date,
            "floor_area_sqm": cert.floor_area_sqm,
            "floor_area_band": floor_area_band(cert.floor_area_sqm),
            "epc_checked_at": run.now,
        },
        source,
    )


def _licensed_hmo_stage(record: PropertyRecord, run: StageRun) -> StageOutcome:
    """Flag a purchase listing whose address matches a licensed HMO nearby."""
    if record.listing_type != ListingType.PURCHASE or record.licensed_hmo:
        return StageOutcome.skipped("licensed_hmo")
    if not record.address or not record.outcode:
        return StageOutcome.skipped("licensed_hmo")

    source = require_source("licensed_hmo_match").field_source
    candidates = [
        c
        for c in run.context.gateway.query(PropertyFilter(outcode=record.outcode, licensed_hmo=True))
        if c.property_id != record.property_id and c.address
    ]
    if not candidates:
        return StageOutcome.skipped("licensed_hmo")
    match = best_match(record.address, candidates, lambda c: c.address, GENERAL_POLICY)
    if match is None:
        return StageOutcome.no_match("licensed_hmo", {}, source)
    logger.info(
        "%s matches licensed HMO %s (score %d)",
        record.property_id,
        match.candidate.property_id,
        match.score,
    )
    return StageOutcome.enriched(
        "licensed_hmo",
        {
            "licensed_hmo": True,
            "hmo_status": LICENSED_HMO_STATUS,
            "licence_id": match.candidate.licence_id,
        },
        source,
    )


def _planning_polygons_stage(record: PropertyRecord, run: StageRun) -> StageOutcome:
    if not record.has_coordinates:
        return StageOutcome.skipped("planning_polygons")
    if run.already_checked("article4_checked_at"):
        return StageOutcome.skipped("planning_polygons")

    source = require_source("planning_polygons").field_source
    restriction = is_restricted(
        Point(lon=record.longitude, lat=record.latitude), run.context.planning_features
    )
    if not restriction.in_area:
        return StageOutcome.no_match(
            "planning_polygons",
            {"article_4_area": False, "article4_checked_at": run.now},
            source,
        )

    merger = ConstraintMerger(record.planning_constraints)
    merger.add(
        PlanningConstraint(ConstraintCategory.ARTICLE_4, restriction.area_name or "Article 4 Direction")
    )
    return StageOutcome.enriched(
        "planning_polygons",
        {
            "article_4_area": True,
            "article_4_area_name": restriction.area_name,
            "planning_constraints": merger.constraints,
            "article4_checked_at": run.now,
        },
        source,
    )


def _planning_constraints_stage(record: PropertyRecord, run: StageRun) -> StageOutcome:
    if not record.postcode:
        return StageOutcome.skipped("planning_constraints")
    if run.already_checked("planning_checked_at"):
        return StageOutcome.skipped("planning_constraints")

    source = require_source("planning_constraints").field_source
    payload = run.context.planning_constraints.lookup(
        record.address, record.postcode, record.latitude, record.longitude, record.uprn
    )
    if not payload:
        return StageOutcome.no_match(
            "planning_constraints", {"planning_checked_at": run.now}, source
        )

    fields = merge_constraint_payload(payload, record.planning_constraints)
    fields["planning_checked_at"] = run.now
    return StageOutcome.enriched("planning_constraints", fields, source)


def _broadband_stage(record: PropertyRecord, run: StageRun) -> StageOutcome:
    if not record.postcode:
        return StageOutcome.skipped("broadband")
    if run.already_checked("broadband_checked_at"):
        return StageOutcome.skipped("broadband")

    source = require_source("broadband").field_source
    rows = run.caches["broadband"].get_or_fetch(record.postcode, run.context.broadband.coverage)
    select = run.context.select_premises or (lambda rows, uprn, address: rows[0])
    premises = select(rows, record.uprn, record.address) if rows else None
    if premises is None:
        return StageOutcome.no_match("broadband", {"broadband_checked_at": run.now}, source)

    fields = premises.as_fields()
    fields["broadband_checked_at"] = run.now
    return StageOutcome.enriched("broadband", fields, source)
