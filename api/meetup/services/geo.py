import math

import pygeohash as pgh

EARTH_RADIUS_M = 6_371_000
METERS_PER_DEGREE_LAT = 111_320.0
MAX_QUERY_PRECISION = 9


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return the great-circle distance between two points in meters."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def midpoint(a: tuple[float, float], b: tuple[float, float]) -> tuple[float, float]:
    return ((a[0] + b[0]) / 2, (a[1] + b[1]) / 2)


def encode_geohash(lat: float, lng: float, precision: int = 10) -> str:
    return pgh.encode(lat, lng, precision=precision)


def _cell(lat: float, lng: float, precision: int) -> tuple[float, float, float, float]:
    """Center and half extents (degrees) of the cell holding a point."""
    center_lat, center_lng, lat_err, lng_err = pgh.decode_exactly(pgh.encode(lat, lng, precision=precision))
    return center_lat, center_lng, lat_err, lng_err


def geohash_query_prefixes(lat: float, lng: float, radius_m: float) -> list[str]:
    """Geohash prefixes whose cells together cover a circle around a point.

    Picks the finest precision whose cell is at least ``radius_m`` on each side,
    then takes the cell under the point plus its eight neighbours.
    """
    precision = 1
    for p in range(MAX_QUERY_PRECISION, 0, -1):
        center_lat, _, lat_err, lng_err = _cell(lat, lng, p)
        height_m = 2 * lat_err * METERS_PER_DEGREE_LAT
        width_m = 2 * lng_err * METERS_PER_DEGREE_LAT * max(math.cos(math.radians(center_lat)), 0.01)
        if height_m >= radius_m and width_m >= radius_m:
            precision = p
            break

    center_lat, center_lng, lat_err, lng_err = _cell(lat, lng, precision)
    prefixes: list[str] = []
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            cell_lat = max(-89.999999, min(89.999999, center_lat + dy * 2 * lat_err))
            cell_lng = ((center_lng + dx * 2 * lng_err + 180.0) % 360.0) - 180.0
            prefix = encode_geohash(cell_lat, cell_lng, precision)
            if prefix not in prefixes:
                prefixes.append(prefix)
    return prefixes
