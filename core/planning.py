"""
Planning Constraint Engine.

Ray-casting point-in-polygon over a GeoJSON-like FeatureCollection of
restricted areas, plus merging of auxiliary constraint strings into typed
PlanningConstraint entries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Final, Iterable, Optional, Sequence

from core.models import ConstraintCategory, PlanningConstraint


logger = logging.getLogger(__name__)


# =============================================================================
# Geometry
# =============================================================================


@dataclass(frozen=True)
class Point:
    """WGS84 point. GeoJSON order is (lon, lat)."""

    lon: float
    lat: float


@dataclass(frozen=True)
class RestrictionResult:
    in_area: bool
    area_name: Optional[str] = None


NOT_RESTRICTED: Final = RestrictionResult(in_area=False)


def point_in_ring(point: Point, ring: Sequence[Sequence[float]]) -> bool:
    """
    Odd/even crossing test of a horizontal ray from the point.

    Points exactly on a vertex or edge are not given a defined answer.
    """
    x, y = point.lon, point.lat
    inside = False
    n = len(ring)
    j = n - 1
    for i in range(n):
        xi, yi = float(ring[i][0]), float(ring[i][1])
        xj, yj = float(ring[j][0]), float(ring[j][1])
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def _validate_ring(ring: Any) -> list[tuple[float, float]]:
    if not isinstance(ring, (list, tuple)) or len(ring) < 3:
        raise ValueError("ring must have at least 3 positions")
    positions = []
    for position in ring:
        if not isinstance(position, (list, tuple)) or len(position) < 2:
            raise ValueError("position must be [lon, lat]")
        positions.append((float(position[0]), float(position[1])))
    return positions


def geometry_contains(geometry: Any, point: Point) -> bool:
    """
    Test a Polygon or MultiPolygon geometry.

    Polygons are tested against their outer ring. A MultiPolygon contains
    the point if any ring of any member polygon does.

    Raises:
        ValueError: If the geometry is malformed or of an unsupported type.
    """
    if not isinstance(geometry, dict):
        raise ValueError("geometry is not an object")
    geom_type = geometry.get("type")
    coordinates = geometry.get("coordinates")
    if not isinstance(coordinates, (list, tuple)) or not coordinates:
        raise ValueError("geometry has no coordinates")

    if geom_type == "Polygon":
        return point_in_ring(point, _validate_ring(coordinates[0]))
    if geom_type == "MultiPolygon":
        for polygon in coordinates:
            if not isinstance(polygon, (list, tuple)):
                raise ValueError("MultiPolygon member is not a polygon")
            for ring in polygon:
                if point_in_ring(point, _validate_ring(ring)):
                    return True
        return False
    raise ValueError(f"unsupported geometry type: {geom_type}")


def feature_name(feature: dict) -> Optional[str]:
    properties = feature.get("properties") or {}
    if not isinstance(properties, dict):
        return None
    return properties.get("name") or properties.get("description") or None


def is_restricted(point: Point, features: Iterable[Any]) -> RestrictionResult:
    """
    Check a point against a collection of restricted-area features.

    The first containing feature wins. Malformed features are skipped.
    """
    for index, feature in enumerate(features):
        try:
            if not isinstance(feature, dict):
                raise ValueError("feature is not an object")
            if geometry_contains(feature.get("geometry"), point):
                return RestrictionResult(in_area=True, area_name=feature_name(feature))
        except (ValueError, TypeError, ZeroDivisionError) as e:
            logger.debug("Skipping malformed planning feature %d: %s", index, e)
            continue
    return NOT_RESTRICTED


def features_of(collection: Any) -> list[dict]:
    """Features from a FeatureCollection (or a bare feature list)."""
    if isinstance(collection, list):
        return collection
    if isinstance(collection, dict):
        features = collection.get("features")
        if isinstance(features, list):
            return features
    return []


# =============================================================================
# Auxiliary constraints
# =============================================================================

_CATEGORY_KEYWORDS: Final[tuple[tuple[str, ConstraintCategory], ...]] = (
    ("article 4", ConstraintCategory.ARTICLE_4),
    ("article4", ConstraintCategory.ARTICLE_4),
    ("conservation", ConstraintCategory.CONSERVATION_AREA),
    ("listed", ConstraintCategory.LISTED_BUILDING),
)


def categorise_constraint(text: str) -> ConstraintCategory:
    lowered = (text or "").lower()
    for keyword, category in _CATEGORY_KEYWORDS:
        if keyword in lowered:
            return category
    return ConstraintCategory.OTHER


def normalise_listed_grade(grade: Any) -> Optional[str]:
    """Map 'Grade II*', '2*', 'I', '1' etc. onto 'I', 'II*' or 'II'."""
    if grade is None:
        return None
    text = str(grade).upper().replace("GRADE", "").strip()
    if text in ("I", "1"):
        return "I"
    if text in ("II*", "2*"):
        return "II*"
    if text in ("II", "2"):
        return "II"
    return None


class ConstraintMerger:
    """
    Builds a deduplicated list of typed planning constraints.

    Typed categories (Article 4, Conservation Area, Listed Building) are
    kept once each; 'Other' constraints are deduplicated by description.
    """

    def __init__(self, existing: Optional[Iterable[PlanningConstraint]] = None):
        self._constraints: list[PlanningConstraint] = []
        for constraint in existing or ():
            self.add(constraint)

    def _present(self, constraint: PlanningConstraint) -> bool:
        for current in self._constraints:
            if constraint.category != current.category:
                continue
            if constraint.category != ConstraintCategory.OTHER:
                return True
            if current.description.strip().lower() == constraint.description.strip().lower():
                return True
        return False

    def add(self, constraint: PlanningConstraint) -> bool:
        if self._present(constraint):
            return False
        self._constraints.append(constraint)
        return True

    def add_text(self, text: str, reference: Optional[str] = None) -> bool:
        if not text or not str(text).strip():
            return False
        text = str(text).strip()
        return self.add(
            PlanningConstraint(
                category=categorise_constraint(text),
                description=text,
                reference=reference,
            )
        )

    def has(self, category: ConstraintCategory) -> bool:
        return any(c.category == category for c in self._constraints)

    @property
    def constraints(self) -> list[PlanningConstraint]:
        return list(self._constraints)


def _first_present(payload: dict, keys: Sequence[str]) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def merge_constraint_payload(
    payload: dict,
    existing: Optional[Iterable[PlanningConstraint]] = None,
) -> dict[str, Any]:
    """
    Merge an authoritative constraints payload into typed record fields.

    Understood keys (all optional): article_4 / article_4_direction /
    article_4_area (bool) with article_4_name and article_4_reference,
    conservation_area (bool or name) with conservation_area_name,
    listed_building_grade with listed_building_reference, and constraints
    (strings or {type, name, description, reference} objects).

    Returns:
        Field values for the record; keys are omitted when the payload says nothing.
    """
    merger = ConstraintMerger(existing)
    fields: dict[str, Any] = {}

    article_4 = _first_present(payload, ("article_4", "article_4_direction", "article_4_area"))
    if article_4 is not None:
        fields["article_4_area"] = bool(article_4)
        if article_4:
            name = str(payload.get("article_4_name") or "Article 4 Direction")
            merger.add(
                PlanningConstraint(
                    ConstraintCategory.ARTICLE_4, name, payload.get("article_4_reference")
                )
            )
            fields["article_4_area_name"] = name

    conservation = payload.get("conservation_area")
    if conservation:
        fields["conservation_area"] = True
        name = payload.get("conservation_area_name")
        if not name and isinstance(conservation, str):
            name = conservation
        merger.add(
            PlanningConstraint(
                ConstraintCategory.CONSERVATION_AREA,
                "Property is within a designated conservation area",
                name,
            )
        )
    elif conservation is False:
        fields["conservation_area"] = False

    grade = normalise_listed_grade(payload.get("listed_building_grade"))
    if grade:
        fields["listed_building_grade"] = grade
        merger.add(
            PlanningConstraint(
                ConstraintCategory.LISTED_BUILDING,
                f"Grade {grade} listed building",
                payload.get("listed_building_reference"),
            )
        )

    for item in payload.get("constraints") or ():
        if isinstance(item, str):
            merger.add_text(item)
        elif isinstance(item, dict):
            kind = str(item.get("type") or "")
            text = str(item.get("description") or item.get("name") or kind).strip()
            if not text:
                continue
            merger.add(
                PlanningConstraint(
                    category=categorise_constraint(f"{kind} {text}"),
                    description=text,
                    reference=item.get("reference"),
                )
            )

    if merger.has(ConstraintCategory.CONSERVATION_AREA) and "conservation_area" not in fields:
        fields["conservation_area"] = True
    if merger.has(ConstraintCategory.ARTICLE_4) and not fields.get("article_4_area"):
        fields["article_4_area"] = True

    if merger.constraints:
        fields["planning_constraints"] = merger.constraints
    return fields
