"""Geospatial primitives shared by the visibility resolver and the alert engine.

All distances are meters. Coordinates are WGS84 decimal degrees.
"""

from __future__ import annotations

import hashlib
import math
import random
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

import geohash2

from locus.domain.proximity.exceptions import LocationValidationError

EARTH_RADIUS_M = 6_371_000
METERS_PER_DEGREE = math.pi * EARTH_RADIUS_M / 180.0
MAX_CELL_PRECISION = 9
# Cells must be a little larger than the radius so a point inside the geofence
# always falls in the centre cell or one of its 8 neighbours.
_CELL_MARGIN = 1.1
_POLE_LIMIT = 89.999999


@dataclass(frozen=True, slots=True)
class Coordinate:
    lat: float
    lng: float


def validate_coordinates(lat: object, lng: object) -> Coordinate:
    """Return a Coordinate or raise LocationValidationError."""
    if lat is None or lng is None:
        raise LocationValidationError("location_required")
    try:
        lat_f = float(lat)  # type: ignore[arg-type]
        lng_f = float(lng)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise LocationValidationError("invalid_location") from None
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise LocationValidationError("invalid_location")
    if not -90.0 <= lat_f <= 90.0 or not -180.0 <= lng_f <= 180.0:
        raise LocationValidationError("invalid_location")
    return Coordinate(lat_f, lng_f)


def distance_m(a: Coordinate, b: Coordinate) -> float:
    """Return the great-circle (haversine) distance between two points in meters."""

    phi1, phi2 = math.radians(a.lat), math.radians(b.lat)
    dphi = math.radians(b.lat - a.lat)
    dlambda = math.radians(b.lng - a.lng)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def _wrap_lng(lng: float) -> float:
    return ((lng + 180.0) % 360.0) - 180.0


def destination(origin: Coordinate, bearing_deg: float, distance: float) -> Coordinate:
    """Point reached travelling `distance` meters from `origin` along `bearing_deg`."""
    delta = distance / EARTH_RADIUS_M
    theta = math.radians(bearing_deg)
    phi1 = math.radians(origin.lat)
    lambda1 = math.radians(origin.lng)
    sin_phi2 = math.sin(phi1) * math.cos(delta) + math.cos(phi1) * math.sin(delta) * math.cos(theta)
    phi2 = math.asin(max(-1.0, min(1.0, sin_phi2)))
    lambda2 = lambda1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - math.sin(phi1) * math.sin(phi2),
    )
    return Coordinate(math.degrees(phi2), _wrap_lng(math.degrees(lambda2)))


def blur_seed(subject_id: str, observer_id: Optional[str], day: date) -> int:
    material = f"{subject_id}:{observer_id or 'public'}:{day.isoformat()}".encode("utf-8")
    return int.from_bytes(hashlib.sha256(material).digest()[:8], "big")


def blur(
    coord: Coordinate,
    *,
    subject_id: str,
    observer_id: Optional[str],
    day: date,
    min_m: float = 500.0,
    max_m: float = 1500.0,
) -> Coordinate:
    """Offset `coord` by a stable pseudo-random vector.

    The offset depends only on (subject, observer, UTC day) so repeated reads by one
    observer cannot be averaged back to the true position; a new offset is drawn daily.
    """
    rng = random.Random(blur_seed(subject_id, observer_id, day))
    offset = rng.uniform(min_m, max_m)
    bearing = rng.uniform(0.0, 360.0)
    return destination(coord, bearing, offset)


def _cell_dimensions_m(precision: int, lat: float) -> tuple[float, float]:
    bits = 5 * precision
    lng_bits = (bits + 1) // 2
    lat_bits = bits // 2
    height = (180.0 / (2 ** lat_bits)) * METERS_PER_DEGREE
    width = (360.0 / (2 ** lng_bits)) * METERS_PER_DEGREE * math.cos(math.radians(min(abs(lat), _POLE_LIMIT)))
    return height, width


def cell_precision_for_radius(radius_m: float, lat: float) -> int:
    """Finest geohash precision whose cells still cover `radius_m` in both axes."""
    needed = max(radius_m, 1.0) * _CELL_MARGIN
    # Width shrinks towards the poles, so size cells at the geofence's poleward edge.
    edge_lat = min(_POLE_LIMIT, abs(lat) + needed / METERS_PER_DEGREE)
    for precision in range(MAX_CELL_PRECISION, 0, -1):
        height, width = _cell_dimensions_m(precision, edge_lat)
        if height >= needed and width >= needed:
            return precision
    return 1


def alert_cell(lat: float, lng: float, radius_m: float) -> str:
    return geohash2.encode(lat, lng, precision=cell_precision_for_radius(radius_m, lat))


def neighbor_cells(lat: float, lng: float, precision: int) -> set[str]:
    """The cell containing (lat, lng) plus its 8 neighbours at `precision`."""
    center = geohash2.encode(lat, lng, precision=precision)
    c_lat, c_lng, lat_err, lng_err = (float(part) for part in geohash2.decode_exactly(center))
    height, width = 2 * lat_err, 2 * lng_err
    cells = {center}
    for d_lat in (-1, 0, 1):
        n_lat = max(-_POLE_LIMIT, min(_POLE_LIMIT, c_lat + d_lat * height))
        for d_lng in (-1, 0, 1):
            cells.add(geohash2.encode(n_lat, _wrap_lng(c_lng + d_lng * width), precision=precision))
    return cells


def search_cells(lat: float, lng: float, precisions: Iterable[int]) -> set[str]:
    cells: set[str] = set()
    for precision in sorted(set(precisions)):
        cells |= neighbor_cells(lat, lng, precision)
    return cells
