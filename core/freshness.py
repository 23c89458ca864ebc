"""
Freshness Tracker.

Marks canonical records stale when no source has seen them within the
staleness window. Re-observation through the resolver clears the flag.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Final, Optional

from core.models import PropertyRecord

if TYPE_CHECKING:
    from core.persistence import PersistenceGateway


logger = logging.getLogger(__name__)


DEFAULT_STALE_AFTER: Final = timedelta(days=7)
FRESH_WITHIN: Final = timedelta(days=1)


def mark_seen(record: PropertyRecord, now: datetime) -> None:
    """Record an observation: bump last-seen and clear any stale flag."""
    record.last_seen_at = now
    record.is_stale = False
    record.stale_marked_at = None


def is_due_stale(record: PropertyRecord, now: datetime, window: timedelta) -> bool:
    if record.is_stale or record.last_seen_at is None:
        return False
    return record.last_seen_at < now - window


@dataclass(frozen=True)
class FreshnessReport:
    last_seen_at: Optional[datetime]
    days_since_last_seen: Optional[int]
    is_fresh: bool
    is_stale: bool


def freshness_report(record: PropertyRecord, now: datetime) -> FreshnessReport:
    """How recently a record was observed."""
    if record.last_seen_at is None:
        return FreshnessReport(None, None, False, record.is_stale)
    age = now - record.last_seen_at
    return FreshnessReport(
        last_seen_at=record.last_seen_at,
        days_since_last_seen=age.days,
        is_fresh=age <= FRESH_WITHIN,
        is_stale=record.is_stale,
    )


class FreshnessTracker:
    """Batch stale-marking sweep over the persistence gateway."""

    def __init__(self, gateway: "PersistenceGateway", window: timedelta = DEFAULT_STALE_AFTER):
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        self.gateway = gateway
        self.window = window

    def sweep(self, now: datetime, window: Optional[timedelta] = None) -> int:
        """
        Mark stale every record unseen for longer than the window.

        Idempotent: records already stale are left alone. Each candidate
        is re-checked by the gateway at write time, so a record observed
        after the read is not marked.

        Returns:
            Number of records newly marked stale.
        """
        window = window or self.window
        marked = 0
        for record in self.gateway.bulk_read():
            if not is_due_stale(record, now, window):
                continue
            if self.gateway.mark_stale_if_due(record.property_id, now, window):
                marked += 1
        logger.info("Freshness sweep marked %d record(s) stale (window %s)", marked, window)
        return marked
