"""
Licence status derivation.

Status is computed from the licence dates when a licence is written, and
by refresh_licence_statuses() as a scheduled sweep. Reads never recompute
it; status_computed_at says how current a stored status is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Final, Iterable, Optional

from core.models import FieldSource, LicenceFacts, LicenceRecord, LicenceStatus

if TYPE_CHECKING:
    from core.persistence import PersistenceGateway


logger = logging.getLogger(__name__)


LICENCE_TYPES: Final[dict[str, str]] = {
    "mandatory_hmo": "Mandatory HMO Licence",
    "additional_hmo": "Additional HMO Licence",
    "selective_licence": "Selective Licence",
    "article_4": "Article 4 Direction",
    "scottish_hmo": "Scottish HMO Licence",
    "ni_hmo": "Northern Ireland HMO Licence",
}

HMO_LICENCE_TYPES: Final = frozenset(
    {"mandatory_hmo", "additional_hmo", "scottish_hmo", "ni_hmo"}
)

EXPIRING_SOON_DAYS: Final[int] = 90

_DECLARED_STATUS_MAP: Final[dict[str, LicenceStatus]] = {
    "active": LicenceStatus.ACTIVE,
    "granted": LicenceStatus.ACTIVE,
    "licensed": LicenceStatus.ACTIVE,
    "expired": LicenceStatus.EXPIRED,
    "pending": LicenceStatus.PENDING,
    "applied": LicenceStatus.PENDING,
    "under consideration": LicenceStatus.PENDING,
}


def compute_status(
    start_date: Optional[date],
    end_date: Optional[date],
    today: date,
    declared: Optional[str] = None,
) -> LicenceStatus:
    """
    Derive a licence status from its dates.

    Dates win over any status the register declared; the declared status
    is only used when the licence has no dates at all.
    """
    if start_date is None and end_date is None:
        if declared:
            return _DECLARED_STATUS_MAP.get(declared.strip().lower(), LicenceStatus.UNKNOWN)
        return LicenceStatus.UNKNOWN
    if start_date is not None and start_date > today:
        return LicenceStatus.PENDING
    if end_date is not None and end_date < today:
        return LicenceStatus.EXPIRED
    return LicenceStatus.ACTIVE


@dataclass(frozen=True)
class ExpiryWarning:
    level: str  # expired | expiring_soon | valid
    days_until_expiry: int


def expiry_warning(end_date: Optional[date], today: date) -> Optional[ExpiryWarning]:
    if end_date is None:
        return None
    days = (end_date - today).days
    if days < 0:
        return ExpiryWarning("expired", days)
    if days <= EXPIRING_SOON_DAYS:
        return ExpiryWarning("expiring_soon", days)
    return ExpiryWarning("valid", days)


def build_licence_record(
    property_id: str,
    facts: LicenceFacts,
    source: FieldSource,
    now: datetime,
) -> LicenceRecord:
    """Create a licence record with its status computed at write time."""
    return LicenceRecord(
        property_id=property_id,
        licence_type_code=facts.licence_type_code,
        licence_number=facts.licence_number,
        start_date=facts.start_date,
        end_date=facts.end_date,
        status=compute_status(facts.start_date, facts.end_date, now.date(), facts.declared_status),
        status_computed_at=now,
        max_occupants=facts.max_occupants,
        conditions=list(facts.conditions),
        source_name=source.name,
        source_type=source.source_type,
        confidence=source.confidence,
        updated_at=now,
    )


def merge_licence_record(
    existing: Optional[LicenceRecord],
    incoming: LicenceRecord,
) -> LicenceRecord:
    """
    Field-wise merge of two records with the same identity.

    Follows the property merge rule: non-null incoming values of equal or
    higher confidence win, nulls never clear. Status is recomputed by the
    caller from the merged dates.
    """
    if existing is None:
        return incoming
    if incoming.key != existing.key:
        raise ValueError("cannot merge licences with different identities")

    existing_rank = existing.confidence or 0
    incoming_rank = incoming.confidence or 0
    if incoming_rank < existing_rank:
        return existing

    for name in ("start_date", "end_date", "max_occupants"):
        value = getattr(incoming, name)
        if value is not None:
            setattr(existing, name, value)
    if incoming.conditions:
        existing.conditions = list(incoming.conditions)
    existing.source_name = incoming.source_name
    existing.source_type = incoming.source_type
    existing.confidence = incoming.confidence
    existing.updated_at = incoming.updated_at
    return existing


def is_active_hmo_licence(record: LicenceRecord) -> bool:
    return record.licence_type_code in HMO_LICENCE_TYPES and record.status == LicenceStatus.ACTIVE


def refresh_licence_statuses(
    licences: Iterable[LicenceRecord],
    now: datetime,
) -> list[LicenceRecord]:
    """
    Recompute status from dates for every licence.

    Returns:
        The licences whose status changed.
    """
    changed = []
    today = now.date()
    for licence in licences:
        status = compute_status(licence.start_date, licence.end_date, today)
        if licence.start_date is None and licence.end_date is None:
            # Nothing to derive from; keep whatever was stored
            continue
        if status != licence.status:
            logger.info(
                "Licence %s for %s: %s -> %s",
                licence.licence_number,
                licence.property_id,
                licence.status.value,
                status.value,
            )
            licence.status = status
            licence.status_computed_at = now
            changed.append(licence)
    return changed


def sweep_licences(gateway: "PersistenceGateway", now: datetime) -> int:
    """Refresh stored licence statuses through the gateway. Returns count changed."""
    changed = refresh_licence_statuses(gateway.all_licences(), now)
    for licence in changed:
        gateway.upsert_licence(licence)
    return len(changed)
