"""
Investment scoring logic.

Pure function of a record's current field values: no I/O, no hidden state.
Calling score() twice on an unchanged record gives identical results.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .models import (
    LICENSED_HMO_STATUS,
    Classification,
    ListingType,
    PropertyRecord,
    ScoreBreakdown,
)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def floor_area_band(area_sqm: Optional[float]) -> Optional[str]:
    """Banded floor area category."""
    if area_sqm is None:
        return None
    if area_sqm < 90:
        return "under_90"
    if area_sqm < 120:
        return "90_120"
    return "120_plus"


def yield_band(yield_pct: Optional[float]) -> Optional[str]:
    if yield_pct is None:
        return None
    if yield_pct >= 8:
        return "high"
    if yield_pct >= 5:
        return "medium"
    return "low"


@dataclass(frozen=True)
class ScoreResult:
    """Everything the scorer derives from a record."""

    deal_score: int
    breakdown: ScoreBreakdown
    classification: Optional[Classification]
    is_potential_hmo: bool
    potential_occupants: Optional[int]
    estimated_monthly_rent: Optional[int]
    estimated_yield_pct: Optional[float]
    yield_band: Optional[str]
    floor_area_band: Optional[str]

    def as_fields(self) -> dict:
        """Derived fields, keyed by PropertyRecord attribute name."""
        return {
            "deal_score": self.deal_score,
            "score_breakdown": self.breakdown,
            "classification": self.classification,
            "is_potential_hmo": self.is_potential_hmo,
            "potential_occupants": self.potential_occupants,
            "estimated_monthly_rent": self.estimated_monthly_rent,
            "estimated_yield_pct": self.estimated_yield_pct,
            "yield_band": self.yield_band,
        }


class InvestmentScorer:
    """
    Calculates the HMO deal score and classification for a property.

    Scoring methodology:
    - Size Score (20%): floor area, actual or estimated from bedrooms
    - Location Score (25%): city demand tier, minus an Article 4 penalty
    - Price Score (20%): asking price against the city average
    - Yield Score (25%): estimated gross yield from per-room rents
    - EPC Score (10%): energy rating
    """

    # Scoring weights
    WEIGHT_SIZE = 0.20
    WEIGHT_LOCATION = 0.25
    WEIGHT_PRICE = 0.20
    WEIGHT_YIELD = 0.25
    WEIGHT_EPC = 0.10

    # Classification gates
    MIN_BEDROOMS = 3
    MIN_DEAL_SCORE = 30
    VALUE_ADD_SCORE = 40
    READY_TO_GO_SCORE = 60
    READY_TO_GO_MIN_BEDROOMS = 4
    READY_TO_GO_EPC = frozenset({"A", "B", "C"})

    # Occupancy
    MAX_OCCUPANTS = 6
    ARTICLE_4_PENALTY = 30
    NEUTRAL_SCORE = 50

    # Floor area estimation (sqm)
    BASE_AREA_BY_TYPE = {"House": 70, "Flat": 50, "HMO": 100, "Studio": 30}
    DEFAULT_BASE_AREA = 60
    AREA_PER_BEDROOM = 15

    HIGH_DEMAND_CITIES = frozenset(
        {"london", "manchester", "birmingham", "bristol", "leeds", "brighton"}
    )
    MEDIUM_DEMAND_CITIES = frozenset(
        {"liverpool", "newcastle", "sheffield", "nottingham", "reading", "portsmouth"}
    )

    AVERAGE_PRICE_BY_CITY = {
        "london": 550_000,
        "manchester": 280_000,
        "birmingham": 250_000,
        "bristol": 350_000,
        "leeds": 230_000,
    }
    DEFAULT_AVERAGE_PRICE = 250_000

    # Monthly rent per room (GBP)
    ROOM_RATE_BY_CITY = {
        "london": 850,
        "manchester": 550,
        "birmingham": 500,
        "leeds": 480,
        "bristol": 600,
        "liverpool": 450,
        "newcastle": 450,
        "sheffield": 420,
        "nottingham": 450,
        "leicester": 450,
        "reading": 650,
        "portsmouth": 500,
        "southampton": 520,
        "brighton": 650,
        "oxford": 700,
        "cambridge": 700,
    }
    DEFAULT_ROOM_RATE = 450

    EPC_SCORES = {"A": 100, "B": 90, "C": 80, "D": 65, "E": 45, "F": 25, "G": 10}
    EPC_RENT_PREMIUM = frozenset({"A", "B"})
    EPC_RENT_DISCOUNT = frozenset({"F", "G"})

    def score(self, record: PropertyRecord) -> ScoreResult:
        """
        Score a single record.

        Args:
            record: The canonical property record.

        Returns:
            ScoreResult with deal score, breakdown and classification.
        """
        city = (record.city or "").strip().lower()
        epc = (record.epc_rating or "").strip().upper() or None
        bedrooms = record.bedrooms
        price = self._purchase_price(record)

        area = self.effective_floor_area(record)
        occupants = self.potential_occupants(bedrooms)
        rent = self.estimated_monthly_rent(occupants, city, epc)
        gross_yield = self.gross_yield_pct(rent, price)

        breakdown = ScoreBreakdown(
            size_score=self._calculate_size_score(area),
            location_score=self._calculate_location_score(city, record.article_4_area),
            price_score=self._calculate_price_score(price, city),
            yield_score=self._calculate_yield_score(gross_yield),
            epc_score=self._calculate_epc_score(epc),
        )

        weighted = (
            breakdown.size_score * self.WEIGHT_SIZE
            + breakdown.location_score * self.WEIGHT_LOCATION
            + breakdown.price_score * self.WEIGHT_PRICE
            + breakdown.yield_score * self.WEIGHT_YIELD
            + breakdown.epc_score * self.WEIGHT_EPC
        )
        deal_score = max(0, min(100, round_half_up(weighted)))

        if self.is_licensed_hmo(record):
            classification = None
            is_potential = False
        else:
            classification = self._classify(record, deal_score, epc, price)
            is_potential = classification in (
                Classification.READY_TO_GO,
                Classification.VALUE_ADD,
            )

        return ScoreResult(
            deal_score=deal_score,
            breakdown=breakdown,
            classification=classification,
            is_potential_hmo=is_potential,
            potential_occupants=occupants,
            estimated_monthly_rent=rent,
            estimated_yield_pct=round(gross_yield, 1) if gross_yield is not None else None,
            yield_band=yield_band(gross_yield),
            floor_area_band=floor_area_band(area),
        )

    def apply(self, record: PropertyRecord) -> ScoreResult:
        """Score a record and write the derived fields onto it."""
        result = self.score(record)
        for name, value in result.as_fields().items():
            setattr(record, name, value)
        return result

    def rank(self, records: Iterable[PropertyRecord]) -> List[tuple[PropertyRecord, ScoreResult]]:
        """Score records and return them sorted by deal score (descending)."""
        scored = [(record, self.score(record)) for record in records]
        return sorted(scored, key=lambda pair: pair[1].deal_score, reverse=True)

    # =========================================================================
    # Derived quantities
    # =========================================================================

    @staticmethod
    def is_licensed_hmo(record: PropertyRecord) -> bool:
        return bool(record.licensed_hmo) or record.hmo_status == LICENSED_HMO_STATUS

    @staticmethod
    def _purchase_price(record: PropertyRecord) -> Optional[int]:
        # Rent listings carry a monthly rent in `price`
        if record.listing_type == ListingType.RENT:
            return None
        if not record.price or record.price <= 0:
            return None
        return record.price

    def effective_floor_area(self, record: PropertyRecord) -> Optional[float]:
        if record.floor_area_sqm:
            return record.floor_area_sqm
        if record.bedrooms is None:
            return None
        base = self.BASE_AREA_BY_TYPE.get(record.property_type or "", self.DEFAULT_BASE_AREA)
        return float(base + record.bedrooms * self.AREA_PER_BEDROOM)

    def potential_occupants(self, bedrooms: Optional[int]) -> Optional[int]:
        if bedrooms is None:
            return None
        return min(bedrooms + 1, self.MAX_OCCUPANTS)

    def estimated_monthly_rent(
        self, occupants: Optional[int], city: str, epc: Optional[str]
    ) -> Optional[int]:
        if not occupants:
            return None
        rate = self.ROOM_RATE_BY_CITY.get(city, self.DEFAULT_ROOM_RATE)
        if epc in self.EPC_RENT_PREMIUM:
            rate = rate * 110 / 100
        elif epc in self.EPC_RENT_DISCOUNT:
            rate = rate * 85 / 100
        # Whole pounds per room, then per house
        return occupants * round_half_up(rate)

    @staticmethod
    def gross_yield_pct(monthly_rent: Optional[int], price: Optional[int]) -> Optional[float]:
        if monthly_rent is None or not price:
            return None
        return monthly_rent * 12 / price * 100

    # =========================================================================
    # Sub-scores
    # =========================================================================

    def _calculate_size_score(self, area: Optional[float]) -> int:
        if area is None:
            return self.NEUTRAL_SCORE
        if area < 60:
            return 20
        if area < 90:
            return 50
        if area <= 150:
            return 90
        return 75

    def _calculate_location_score(self, city: str, article_4_area: Optional[bool]) -> int:
        if city in self.HIGH_DEMAND_CITIES:
            score = 85
        elif city in self.MEDIUM_DEMAND_CITIES:
            score = 70
        else:
            score = 50
        if article_4_area:
            score -= self.ARTICLE_4_PENALTY
        return max(0, score)

    def _calculate_price_score(self, price: Optional[int], city: str) -> int:
        if price is None:
            return self.NEUTRAL_SCORE
        ratio = price / self.AVERAGE_PRICE_BY_CITY.get(city, self.DEFAULT_AVERAGE_PRICE)
        if ratio < 0.7:
            return 95
        if ratio < 0.85:
            return 80
        if ratio < 1.0:
            return 65
        if ratio < 1.15:
            return 50
        return 30

    def _calculate_yield_score(self, gross_yield: Optional[float]) -> int:
        if gross_yield is None:
            return self.NEUTRAL_SCORE
        if gross_yield >= 10:
            return 100
        if gross_yield >= 8:
            return 85
        if gross_yield >= 6:
            return 70
        if gross_yield >= 5:
            return 55
        if gross_yield >= 4:
            return 40
        return 25

    def _calculate_epc_score(self, epc: Optional[str]) -> int:
        if epc is None:
            return self.NEUTRAL_SCORE
        return self.EPC_SCORES.get(epc, self.NEUTRAL_SCORE)

    # =========================================================================
    # Classification
    # =========================================================================

    def _classify(
        self,
        record: PropertyRecord,
        deal_score: int,
        epc: Optional[str],
        price: Optional[int],
    ) -> Classification:
        bedrooms = record.bedrooms
        if bedrooms is None or bedrooms < self.MIN_BEDROOMS:
            return Classification.NOT_SUITABLE
        if price is None or deal_score < self.MIN_DEAL_SCORE:
            return Classification.NOT_SUITABLE
        if (
            deal_score >= self.READY_TO_GO_SCORE
            and not record.article_4_area
            and epc in self.READY_TO_GO_EPC
            and bedrooms >= self.READY_TO_GO_MIN_BEDROOMS
        ):
            return Classification.READY_TO_GO
        if deal_score >= self.VALUE_ADD_SCORE:
            return Classification.VALUE_ADD
        return Classification.NOT_SUITABLE
