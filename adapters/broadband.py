"""
Ofcom broadband coverage client.

Per-postcode predicted speeds. A speed of -1 means the tier is not
available at that premises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from adapters.http import JsonClient
from core.errors import MalformedUpstreamData
from core.matching import normalise_address
from core.models import normalise_postcode_key


logger = logging.getLogger(__name__)


def parse_speed(value: Any) -> Optional[int]:
    """Mbps as int; None for the -1 sentinel or anything unreadable."""
    if value is None or value == -1:
        return None
    try:
        speed = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return speed if speed >= 0 else None


@dataclass(frozen=True)
class BroadbandCoverage:
    """Predicted speeds for one premises."""

    uprn: Optional[str]
    address: str
    basic_down: Optional[int]
    superfast_down: Optional[int]
    ultrafast_down: Optional[int]
    max_down: Optional[int]
    max_up: Optional[int]

    @property
    def has_fiber(self) -> bool:
        return (self.ultrafast_down or 0) > 0

    @property
    def has_superfast(self) -> bool:
        return (self.superfast_down or 0) > 0

    @property
    def tier(self) -> str:
        if self.has_fiber:
            return "ultrafast"
        if self.has_superfast:
            return "superfast"
        if (self.basic_down or 0) > 0:
            return "basic"
        if self.max_down is None and self.basic_down is None:
            return "unknown"
        return "none"

    def as_fields(self) -> dict[str, Any]:
        return {
            "broadband_basic_down": self.basic_down,
            "broadband_superfast_down": self.superfast_down,
            "broadband_ultrafast_down": self.ultrafast_down,
            "broadband_max_down": self.max_down,
            "broadband_max_up": self.max_up,
            "has_fiber": self.has_fiber,
            "has_superfast": self.has_superfast,
        }

    @classmethod
    def from_row(cls, row: dict) -> "BroadbandCoverage":
        uprn = row.get("UPRN")
        return cls(
            uprn=str(uprn) if uprn not in (None, "") else None,
            address=str(row.get("AddressShortDescription") or ""),
            basic_down=parse_speed(row.get("MaxBbPredictedDown")),
            superfast_down=parse_speed(row.get("MaxSfbbPredictedDown")),
            ultrafast_down=parse_speed(row.get("MaxUfbbPredictedDown")),
            max_down=parse_speed(row.get("MaxPredictedDown")),
            max_up=parse_speed(row.get("MaxPredictedUp")),
        )


def select_premises(
    rows: list[BroadbandCoverage],
    uprn: Optional[str],
    address: Optional[str],
) -> Optional[BroadbandCoverage]:
    """UPRN match first, then address containment, then the first row."""
    if not rows:
        return None
    if uprn:
        for row in rows:
            if row.uprn == str(uprn):
                return row
    if address:
        wanted = normalise_address(address)
        first_part = normalise_address(address.split(",")[0])
        for row in rows:
            described = normalise_address(row.address)
            if described and (described in wanted or (first_part and first_part in described)):
                return row
    return rows[0]


class BroadbandClient:
    """Coverage lookups keyed by postcode."""

    def __init__(self, client: JsonClient):
        self._client = client

    def coverage(self, postcode: str) -> list[BroadbandCoverage]:
        data = self._client.get_json(normalise_postcode_key(postcode))
        if data is None:
            return []
        if not isinstance(data, dict):
            raise MalformedUpstreamData("broadband response is not an object")
        rows = data.get("Availability") or []
        if not isinstance(rows, list):
            raise MalformedUpstreamData("broadband Availability is not a list")
        return [BroadbandCoverage.from_row(r) for r in rows if isinstance(r, dict)]
