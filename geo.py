import logging
import math
from math import radians, degrees, sin, cos, sqrt, atan2, asin
from typing import List, Optional, Tuple

from errors import InvalidInput

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

LatLng = Tuple[float, float]


def haversine_km(a: LatLng, b: LatLng) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    rlat1 = radians(lat1)
    rlat2 = radians(lat2)
    a_ = sin(dlat / 2) ** 2 + cos(rlat1) * cos(rlat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a_), sqrt(1 - a_))
    return EARTH_RADIUS_KM * c


def haversine_m(a: LatLng, b: LatLng) -> float:
    return haversine_km(a, b) * 1000.0


def validate_point(lat, lng) -> LatLng:
    """Return (lat, lng) as floats rounded to 6 decimals, or raise InvalidInput."""
    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        raise InvalidInput("coordinates must be numbers", lat=lat, lng=lng)
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise InvalidInput("coordinates must be finite")
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lng <= 180.0:
        raise InvalidInput("coordinates out of range", lat=lat, lng=lng)
    return round(lat, 6), round(lng, 6)


def resolve_point(primary: Optional[LatLng], fallback: Optional[LatLng] = None) -> LatLng:
    """Prefer the caller's point; fall back to a stored one if the caller's is unusable."""
    if primary is not None:
        try:
            return validate_point(*primary)
        except InvalidInput:
            if fallback is None:
                raise
            logger.warning("Unusable coordinates %s, falling back to %s", primary, fallback)
    if fallback is None:
        raise InvalidInput("no usable coordinates")
    return validate_point(*fallback)


def destination_point(lat: float, lng: float, bearing_deg: float, distance_km: float) -> LatLng:
    """Point reached from (lat, lng) travelling distance_km along bearing_deg."""
    d = distance_km / EARTH_RADIUS_KM
    brg = radians(bearing_deg)
    lat1 = radians(lat)
    lon1 = radians(lng)
    lat2 = asin(sin(lat1) * cos(d) + cos(lat1) * sin(d) * cos(brg))
    lon2 = lon1 + atan2(sin(brg) * sin(d) * cos(lat1), cos(d) - sin(lat1) * sin(lat2))
    lon2 = (lon2 + 3 * math.pi) % (2 * math.pi) - math.pi
    return degrees(lat2), degrees(lon2)


def bounding_box(point: LatLng, radius_km: float) -> Tuple[float, float, List[Tuple[float, float]]]:
    """(min_lat, max_lat, lng_ranges) enclosing the search circle.

    Longitude comes back as one range, or two when the circle crosses the
    antimeridian.
    """
    lat, lng = point
    dlat = degrees(radius_km / EARTH_RADIUS_KM)
    min_lat, max_lat = max(-90.0, lat - dlat), min(90.0, lat + dlat)
    coslat = cos(radians(lat))
    if coslat < 1e-6 or min_lat <= -90.0 or max_lat >= 90.0:
        return min_lat, max_lat, [(-180.0, 180.0)]
    dlng = degrees(radius_km / (EARTH_RADIUS_KM * coslat))
    if dlng >= 180.0:
        return min_lat, max_lat, [(-180.0, 180.0)]
    lo, hi = lng - dlng, lng + dlng
    if lo < -180.0:
        return min_lat, max_lat, [(lo + 360.0, 180.0), (-180.0, hi)]
    if hi > 180.0:
        return min_lat, max_lat, [(lo, 180.0), (-180.0, hi - 360.0)]
    return min_lat, max_lat, [(lo, hi)]


def eta_minutes(distance_km: float, minutes_per_km: float) -> int:
    return max(1, math.ceil(distance_km * minutes_per_km))
