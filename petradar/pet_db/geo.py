"""
Geo helpers
-----------
Stateless builders used by the listing queries: point construction,
radius containment, distance and coordinate extraction.

Points are stored as Firestore GeoPoints next to a ``<field>_geohash``
string; radius queries scan the geohash cells around the centre and are
refined with an exact haversine check.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

import pygeohash as pgh
from google.cloud.firestore import GeoPoint
from google.cloud.firestore_v1.base_query import FieldFilter

from petradar.common.errors import ValidationError
from petradar.pet_db.models import calculate_distance, is_valid_coordinates

GEOHASH_PRECISION = 9  # ~5m cells
METERS_PER_DEGREE = 111_320


def _to_float(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number")
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f"{name} must be a finite number")
    return number


def make_point(longitude: Any, latitude: Any) -> GeoPoint:
    lon = _to_float(longitude, "longitude")
    lat = _to_float(latitude, "latitude")
    if not is_valid_coordinates(lat, lon):
        raise ValidationError("Invalid coordinates")
    return GeoPoint(lat, lon)


def encode_geohash(point: GeoPoint, precision: int = GEOHASH_PRECISION) -> str:
    return pgh.encode(point.latitude, point.longitude, precision=precision)


@dataclass(frozen=True)
class RadiusFilter:
    """Candidate geohash ranges plus the exact containment predicate"""
    field: str
    longitude: float
    latitude: float
    radius_m: float
    cells: Tuple[str, ...]

    @property
    def geohash_field(self) -> str:
        return f"{self.field}_geohash"

    def ranges(self) -> Iterator[Tuple[str, str]]:
        for cell in self.cells:
            # "~" sorts after every geohash character
            yield cell, cell + "~"

    def queries(self, collection) -> Iterator[Any]:
        for start, end in self.ranges():
            yield (collection
                   .where(filter=FieldFilter(self.geohash_field, ">=", start))
                   .where(filter=FieldFilter(self.geohash_field, "<", end)))

    def distance_of(self, doc: Dict[str, Any]) -> float:
        meters = distance(self.field, self.longitude, self.latitude)(doc)
        return math.inf if meters is None else meters

    def contains(self, doc: Dict[str, Any]) -> bool:
        return self.distance_of(doc) <= self.radius_m


def _covering_cells(latitude: float, longitude: float, radius_m: float) -> Tuple[str, ...]:
    for precision in range(GEOHASH_PRECISION, 0, -1):
        centre = pgh.encode(latitude, longitude, precision=precision)
        lat_c, lon_c, lat_err, lon_err = pgh.decode_exactly(centre)
        height = 2 * lat_err * METERS_PER_DEGREE
        width = 2 * lon_err * METERS_PER_DEGREE * math.cos(math.radians(lat_c))
        if min(height, width) < radius_m:
            continue

        cells = set()
        for dlat in (-2 * lat_err, 0.0, 2 * lat_err):
            for dlon in (-2 * lon_err, 0.0, 2 * lon_err):
                lat_n = lat_c + dlat
                if not -90 <= lat_n <= 90:
                    continue
                lon_n = ((lon_c + dlon + 180) % 360) - 180
                cells.add(pgh.encode(lat_n, lon_n, precision=precision))
        return tuple(sorted(cells))

    # Wider than any single cell: scan everything
    return ("",)


def within_radius(field: str, longitude: Any, latitude: Any, radius_m: Any) -> RadiusFilter:
    point = make_point(longitude, latitude)
    radius = _to_float(radius_m, "radius")
    if radius <= 0:
        raise ValidationError("radius must be positive")
    return RadiusFilter(
        field=field,
        longitude=point.longitude,
        latitude=point.latitude,
        radius_m=radius,
        cells=_covering_cells(point.latitude, point.longitude, radius),
    )


def distance(field: str, longitude: Any, latitude: Any) -> Callable[[Dict[str, Any]], Optional[float]]:
    """Meters between a document's point and the given coordinates"""
    origin = make_point(longitude, latitude)

    def _distance(doc: Dict[str, Any]) -> Optional[float]:
        point = doc.get(field)
        if point is None:
            return None
        return calculate_distance(origin.latitude, origin.longitude,
                                  point.latitude, point.longitude)

    return _distance


def get_coordinates(field: str) -> Callable[[Dict[str, Any]], Dict[str, Any]]:
    """Replace a point field with flat longitude/latitude keys"""

    def _extract(doc: Dict[str, Any]) -> Dict[str, Any]:
        out = {k: v for k, v in doc.items() if k not in (field, f"{field}_geohash")}
        point = doc.get(field)
        out["longitude"] = point.longitude if point is not None else None
        out["latitude"] = point.latitude if point is not None else None
        return out

    return _extract
