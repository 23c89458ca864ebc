"""
Energy Performance Certificate register client.

Searches the EPC open data register by postcode (HTTP basic auth,
email:key) and returns the certificates as typed rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Final, Optional

from adapters.http import JsonClient
from core.errors import MalformedUpstreamData
from core.models import normalise_postcode_key


logger = logging.getLogger(__name__)


SEARCH_PATH = "domestic/search"
SEARCH_PAGE_SIZE = 100
CERTIFICATE_VALID_YEARS = 10

EPC_RATING_NUMERIC: Final[dict[str, int]] = {
    "A": 92,
    "B": 81,
    "C": 69,
    "D": 55,
    "E": 39,
    "F": 21,
    "G": 1,
}


def certificate_expiry(lodgement: date) -> date:
    """Lodgement date plus ten years (29 Feb rolls back to 28 Feb)."""
    try:
        return lodgement.replace(year=lodgement.year + CERTIFICATE_VALID_YEARS)
    except ValueError:
        return lodgement.replace(year=lodgement.year + CERTIFICATE_VALID_YEARS, day=28)


@dataclass(frozen=True)
class EpcCertificate:
    """One register row."""

    lmk_key: str
    address: str
    postcode: str
    rating: Optional[str]
    floor_area_sqm: Optional[float]
    lodgement_date: Optional[date]
    uprn: Optional[str] = None
    building_reference: Optional[str] = None

    @property
    def rating_numeric(self) -> Optional[int]:
        return EPC_RATING_NUMERIC.get(self.rating or "")

    @property
    def expiry_date(self) -> Optional[date]:
        return certificate_expiry(self.lodgement_date) if self.lodgement_date else None

    @classmethod
    def from_row(cls, row: dict) -> "EpcCertificate":
        """
        Build from a register row.

        Raises:
            MalformedUpstreamData: If the row has no certificate key or address.
        """
        lmk_key = row.get("lmk-key")
        address = " ".join(
            str(row[k]).strip() for k in ("address1", "address2", "address3") if row.get(k)
        )
        if not lmk_key or not address:
            raise MalformedUpstreamData("EPC row without lmk-key or address")

        rating = str(row.get("current-energy-rating") or "").strip().upper() or None
        if rating not in EPC_RATING_NUMERIC:
            rating = None

        floor_area = row.get("total-floor-area")
        try:
            floor_area = float(floor_area) if floor_area not in (None, "") else None
        except (TypeError, ValueError):
            floor_area = None

        lodged = row.get("lodgement-date")
        try:
            lodged = date.fromisoformat(str(lodged)[:10]) if lodged else None
        except ValueError:
            lodged = None

        return cls(
            lmk_key=str(lmk_key),
            address=address,
            postcode=str(row.get("postcode") or ""),
            rating=rating,
            floor_area_sqm=floor_area if floor_area and floor_area > 0 else None,
            lodgement_date=lodged,
            uprn=str(row["uprn"]) if row.get("uprn") else None,
            building_reference=(
                str(row["building-reference-number"]) if row.get("building-reference-number") else None
            ),
        )


class EpcRegisterClient:
    """Postcode search against the EPC register."""

    def __init__(self, client: JsonClient):
        self._client = client

    def search(self, postcode: str) -> list[EpcCertificate]:
        """
        Certificates lodged at a postcode, newest first.

        Rows that cannot be read are skipped.
        """
        data = self._client.get_json(
            SEARCH_PATH,
            {"postcode": normalise_postcode_key(postcode), "size": SEARCH_PAGE_SIZE},
        )
        if data is None:
            return []
        if not isinstance(data, dict) or not isinstance(data.get("rows", []), list):
            raise MalformedUpstreamData("EPC search response has no rows list")

        certificates = []
        for row in data.get("rows", []):
            if not isinstance(row, dict):
                continue
            try:
                certificates.append(EpcCertificate.from_row(row))
            except (MalformedUpstreamData, AttributeError, TypeError, ValueError) as e:
                logger.warning("Skipping EPC row for %s: %s", postcode, e)
        certificates.sort(key=lambda c: c.lodgement_date or date.min, reverse=True)
        return certificates
