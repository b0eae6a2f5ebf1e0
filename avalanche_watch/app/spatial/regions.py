"""
regions.py — Map a point to a bulletin warning region.

Provides:
    - GeoJSON Polygon / MultiPolygon parsing into PolygonShape values
    - Ray-casting point-in-ring test
    - Containing-region lookup with optional hole subtraction
    - Nearest-region fallback for points outside every polygon
    - Haversine great-circle distance helper

Coordinates follow GeoJSON order: ``[longitude, latitude]``.

Ray Casting — How It Works
===========================
Cast a horizontal ray from the point towards +x and count how many ring
edges it crosses. An odd count means the point is inside.

For each edge (xi, yi) → (xj, yj):

    crosses = ((yi > y) != (yj > y))
              and x < (xj - xi) · (y - yi) / (yj - yi) + xi

Points exactly on an edge or vertex may land either side; region borders
are shared, so either answer is acceptable.

Nearest Fallback
=================
A location can sit just outside every polygon (digitisation gaps, lakes,
border tolerance). The fallback picks the region whose closest outer-ring
VERTEX is nearest in plain degree space:

    d = √((lng - vx)² + (lat - vy)²)

This is a planar approximation. It is deterministic and good enough for
picking between adjacent micro-regions; ``haversine_km`` is available for
callers that need real distances.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6_371.0088  # IAU mean radius

Ring = Sequence[Sequence[float]]


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PolygonShape:
    """One polygon: an outer ring plus zero or more hole rings."""
    outer_ring: Tuple[Tuple[float, float], ...]
    holes: Tuple[Tuple[Tuple[float, float], ...], ...] = ()


@dataclass
class GeoRegion:
    """
    A warning region with geometry parsed once per sync cycle.

    ``source`` is whatever the caller wants back on a match (typically the
    stored ``WarningRegion`` row).
    """
    region_id: str
    name: str
    shapes: Tuple[PolygonShape, ...] = ()
    source: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def from_geojson(
        cls, region_id: str, name: str, geometry: Optional[Dict[str, Any]], source: Any = None
    ) -> GeoRegion:
        return cls(region_id=region_id, name=name, shapes=parse_geometry(geometry), source=source)


# ---------------------------------------------------------------------------
# GeoJSON parsing
# ---------------------------------------------------------------------------

def _ring(raw: Iterable[Sequence[float]]) -> Tuple[Tuple[float, float], ...]:
    return tuple((float(p[0]), float(p[1])) for p in raw if len(p) >= 2)


def _polygon(rings: Sequence[Any]) -> Optional[PolygonShape]:
    if not rings:
        return None
    return PolygonShape(
        outer_ring=_ring(rings[0]),
        holes=tuple(_ring(r) for r in rings[1:]),
    )


def parse_geometry(geometry: Optional[Dict[str, Any]]) -> Tuple[PolygonShape, ...]:
    """
    Parse a GeoJSON geometry into polygon shapes.

    Polygon → one shape; MultiPolygon → one shape per member polygon;
    anything else (Point, LineString, missing) → no shapes.
    """
    if not geometry or not isinstance(geometry, dict):
        return ()

    gtype = geometry.get("type")
    coords = geometry.get("coordinates") or []

    if gtype == "Polygon":
        polygons = [coords]
    elif gtype == "MultiPolygon":
        polygons = list(coords)
    else:
        return ()

    shapes = []
    for rings in polygons:
        try:
            shape = _polygon(rings)
        except (TypeError, ValueError, IndexError) as e:
            logger.warning("Skipping malformed polygon: %s", e)
            continue
        if shape is not None:
            shapes.append(shape)
    return tuple(shapes)


# ---------------------------------------------------------------------------
# Containment
# ---------------------------------------------------------------------------

def point_in_ring(lng: float, lat: float, ring: Ring) -> bool:
    """Ray-casting test. Rings with fewer than 3 vertices contain nothing."""
    n = len(ring)
    if n < 3:
        return False

    inside = False
    j = n - 1
    for i in range(n):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < x_cross:
                inside = not inside
        j = i
    return inside


def shape_contains(shape: PolygonShape, lng: float, lat: float, subtract_holes: bool = False) -> bool:
    if not point_in_ring(lng, lat, shape.outer_ring):
        return False
    if subtract_holes:
        return not any(point_in_ring(lng, lat, hole) for hole in shape.holes)
    return True


def find_containing(
    lat: float,
    lng: float,
    regions: Sequence[GeoRegion],
    *,
    subtract_holes: bool = False,
) -> Optional[GeoRegion]:
    """
    First region (input order) with a polygon containing the point.

    By default holes are ignored: a point inside a hole still matches the
    surrounding polygon. ``subtract_holes=True`` excludes hole interiors.
    """
    for region in regions:
        for shape in region.shapes:
            if shape_contains(shape, lng, lat, subtract_holes):
                return region
    return None


# ---------------------------------------------------------------------------
# Nearest fallback
# ---------------------------------------------------------------------------

def vertex_distance(lat: float, lng: float, region: GeoRegion) -> float:
    """Smallest planar distance (degrees) from the point to an outer-ring vertex."""
    best = math.inf
    for shape in region.shapes:
        for vx, vy in shape.outer_ring:
            d = math.hypot(lng - vx, lat - vy)
            if d < best:
                best = d
    return best


def find_nearest(lat: float, lng: float, regions: Sequence[GeoRegion]) -> GeoRegion:
    """
    Region with the closest outer-ring vertex.

    Total for non-empty input: regions without vertices rank last, and the
    first region wins ties. Raises ValueError when ``regions`` is empty.
    """
    if not regions:
        raise ValueError("find_nearest() requires at least one region")

    nearest = regions[0]
    best = vertex_distance(lat, lng, nearest)
    for region in regions[1:]:
        d = vertex_distance(lat, lng, region)
        if d < best:
            nearest, best = region, d
    return nearest


def resolve_region(
    lat: float,
    lng: float,
    regions: Sequence[GeoRegion],
    *,
    subtract_holes: bool = False,
) -> Optional[GeoRegion]:
    """Containing region, else nearest; None only when ``regions`` is empty."""
    if not regions:
        return None
    region = find_containing(lat, lng, regions, subtract_holes=subtract_holes)
    if region is None:
        region = find_nearest(lat, lng, regions)
        logger.debug("Point (%.5f, %.5f) outside all regions — nearest is %s",
                     lat, lng, region.region_id)
    return region


# ---------------------------------------------------------------------------
# Haversine
# ---------------------------------------------------------------------------

def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Great-circle distance in kilometers, rounded to 4 decimal places.

    >>> haversine_km(46.8, 9.83, 46.8, 9.83)
    0.0
    """
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2.0) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    )
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return round(EARTH_RADIUS_KM * c, 4)
