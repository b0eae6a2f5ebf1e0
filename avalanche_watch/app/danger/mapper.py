"""
mapper.py — Derive a location's danger levels from a bulletin feature.

A bulletin feature describes one or more warning regions with a list of
danger rating bands. Each band is a level (1–5) bound to an optional
elevation range and a set of compass aspects:

    {"mainValue": "considerable",
     "elevation": {"lowerBound": "2200"},
     "aspects": ["N", "NE", "NW"]}

A location is an elevation range [elevation_min, elevation_max]. The
projection reads the band that applies at each end of that range.

═══════════════════════════════════════════════════════════════════════════
PROJECTION RULES
═══════════════════════════════════════════════════════════════════════════

    applies(band, e)  ⇔  (lower is None or e >= lower)
                          and (upper is None or e <= upper)

    low   = value of the LAST band (input order) applying to elevation_min
    high  = value of the LAST band applying to elevation_max
    max   = max(low, high)
    low / high default to 1 when no band applies

Later bands override earlier ones (last-wins), not "highest wins".
Aspects are the de-duplicated union, in first-seen order, of every band
that applies to either elevation.

═══════════════════════════════════════════════════════════════════════════
LEVEL NORMALISATION
═══════════════════════════════════════════════════════════════════════════

    numeric   → clamped to 1..5 ("4" → 4, 7 → 5, 0 → 1)
    named     → low=1 moderate=2 considerable=3 high=4 very_high=5
    anything else → None (band is dropped)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


MIN_LEVEL = 1
MAX_LEVEL = 5
DEFAULT_LEVEL = 1

NAMED_LEVELS: Dict[str, int] = {
    "low": 1,
    "moderate": 2,
    "considerable": 3,
    "high": 4,
    "very_high": 5,
}

LEVEL_NAMES: Dict[int, str] = {v: k for k, v in NAMED_LEVELS.items()}

NO_FEATURE = "no_feature"


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RatingBand:
    value: int
    elevation_lower: Optional[int] = None
    elevation_upper: Optional[int] = None
    aspects: Tuple[str, ...] = ()

    def applies_to(self, elevation: int) -> bool:
        if self.elevation_lower is not None and elevation < self.elevation_lower:
            return False
        if self.elevation_upper is not None and elevation > self.elevation_upper:
            return False
        return True


@dataclass(frozen=True)
class AvalancheProblem:
    type: Optional[str]
    aspects: Tuple[str, ...] = ()
    elevation_lower: Optional[int] = None
    elevation_upper: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "aspects": list(self.aspects),
            "elevation_lower": self.elevation_lower,
            "elevation_upper": self.elevation_upper,
        }


@dataclass(frozen=True)
class DangerExtract:
    rating_bands: Tuple[RatingBand, ...] = ()
    avalanche_problems: Tuple[AvalancheProblem, ...] = ()


@dataclass(frozen=True)
class ProjectedDanger:
    low: int = DEFAULT_LEVEL
    high: int = DEFAULT_LEVEL
    max: int = DEFAULT_LEVEL
    aspects: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "low": self.low,
            "high": self.high,
            "max": self.max,
            "aspects": list(self.aspects),
        }


@dataclass(frozen=True)
class DangerResolution:
    """
    Danger for one location against one bulletin.

    ``reason`` is None when the region's feature was found and projected,
    ``"no_feature"`` when the bulletin has no feature for the region and
    defaults were used.
    """
    danger: ProjectedDanger = field(default_factory=ProjectedDanger)
    problems: Tuple[AvalancheProblem, ...] = ()
    reason: Optional[str] = None

    @property
    def defaulted(self) -> bool:
        return self.reason is not None


# ═══════════════════════════════════════════════════════════════════════════
# Parsing
# ═══════════════════════════════════════════════════════════════════════════

def normalize_danger_level(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return max(MIN_LEVEL, min(MAX_LEVEL, int(value)))
    if isinstance(value, str):
        text = value.strip()
        try:
            return max(MIN_LEVEL, min(MAX_LEVEL, int(float(text))))
        except ValueError:
            return NAMED_LEVELS.get(text.lower())
    return None


def _bound(value: Any) -> Optional[int]:
    """Elevation bound in metres; non-numeric bounds count as unbounded."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        logger.debug("Non-numeric elevation bound %r treated as unbounded", value)
        return None


def _aspects(raw: Any) -> Tuple[str, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    return tuple(str(a) for a in raw)


def extract(feature: Dict[str, Any]) -> DangerExtract:
    """Parse rating bands and avalanche problems from a bulletin feature."""
    properties = (feature or {}).get("properties") or {}

    bands: List[RatingBand] = []
    for rating in properties.get("dangerRatings") or []:
        value = normalize_danger_level(rating.get("mainValue"))
        if value is None:
            logger.warning("Dropping rating band with unknown level %r", rating.get("mainValue"))
            continue
        elevation = rating.get("elevation") or {}
        bands.append(RatingBand(
            value=value,
            elevation_lower=_bound(elevation.get("lowerBound")),
            elevation_upper=_bound(elevation.get("upperBound")),
            aspects=_aspects(rating.get("aspects")),
        ))

    problems = []
    for problem in properties.get("avalancheProblems") or []:
        elevation = problem.get("elevation") or {}
        problems.append(AvalancheProblem(
            type=problem.get("problemType"),
            aspects=_aspects(problem.get("aspects")),
            elevation_lower=_bound(elevation.get("lowerBound")),
            elevation_upper=_bound(elevation.get("upperBound")),
        ))

    return DangerExtract(rating_bands=tuple(bands), avalanche_problems=tuple(problems))


# ═══════════════════════════════════════════════════════════════════════════
# Projection
# ═══════════════════════════════════════════════════════════════════════════

def project(
    rating_bands: Sequence[RatingBand],
    elevation_min: int,
    elevation_max: int,
) -> ProjectedDanger:
    low: Optional[int] = None
    high: Optional[int] = None
    aspects: List[str] = []

    for band in rating_bands:
        hits_low = band.applies_to(elevation_min)
        hits_high = band.applies_to(elevation_max)
        if hits_low:
            low = band.value
        if hits_high:
            high = band.value
        if hits_low or hits_high:
            for aspect in band.aspects:
                if aspect not in aspects:
                    aspects.append(aspect)

    low = low if low is not None else DEFAULT_LEVEL
    high = high if high is not None else DEFAULT_LEVEL
    return ProjectedDanger(low=low, high=high, max=max(low, high), aspects=tuple(aspects))


def find_feature_for_region(payload: Dict[str, Any], region_id: str) -> Optional[Dict[str, Any]]:
    """First feature whose ``properties.regions[].regionID`` lists the region."""
    wanted = str(region_id)
    for feature in (payload or {}).get("features") or []:
        if not isinstance(feature, dict):
            continue
        regions = (feature.get("properties") or {}).get("regions") or []
        for region in regions:
            if isinstance(region, dict) and str(region.get("regionID")) == wanted:
                return feature
    return None


def resolve_danger(
    payload: Dict[str, Any],
    region_id: str,
    elevation_min: int,
    elevation_max: int,
) -> DangerResolution:
    feature = find_feature_for_region(payload, region_id)
    if feature is None:
        logger.warning("No bulletin feature for region %s — using defaults", region_id,
                       extra={"region_id": region_id})
        return DangerResolution(reason=NO_FEATURE)

    data = extract(feature)
    return DangerResolution(
        danger=project(data.rating_bands, elevation_min, elevation_max),
        problems=data.avalanche_problems,
    )
