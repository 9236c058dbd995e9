"""Driver Location Index.

Drivers' clients ping their position continuously; dispatch and bidding ask
for the nearest available drivers around a pickup point.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select, col, or_

from config import settings
from db import get_session
from errors import NotFound, PreconditionFailed
from geo import LatLng, haversine_km, bounding_box, validate_point
from models import DriverLocation, DriverProfile, DriverCredit, iso, utcnow

logger = logging.getLogger(__name__)

DELIVERY_VEHICLE_CLASSES = {
    "flash": "moto",
    "flex": "standard",
    "maxicharge": "truck",
}


@dataclass
class DriverCandidate:
    driver_id: int
    lat: float
    lng: float
    distance_km: float
    rating_average: float = 0.0
    total_rides: int = 0
    is_verified: bool = False
    vehicle_class: str = "standard"
    rides_remaining: Optional[int] = None


def vehicle_class_for_delivery(delivery_type: Optional[str]) -> Optional[str]:
    if not delivery_type:
        return None
    return DELIVERY_VEHICLE_CLASSES.get(delivery_type.strip().lower())


def update_location(
    driver_id: int,
    lat: float,
    lng: float,
    heading: Optional[float] = None,
    speed: Optional[float] = None,
    accuracy: Optional[float] = None,
    is_available: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> DriverLocation:
    """Upsert a driver's position and refresh the last ping."""
    lat, lng = validate_point(lat, lng)
    now = now or utcnow()
    with get_session() as session:
        if session.get(DriverProfile, driver_id) is None:
            raise NotFound("driver not found", driver_id=driver_id)
        loc = session.get(DriverLocation, driver_id)
        if loc is None:
            loc = DriverLocation(driver_id=driver_id, lat=lat, lng=lng, last_ping=now)
        loc.lat = lat
        loc.lng = lng
        loc.heading = heading
        loc.speed = speed
        loc.accuracy = accuracy
        loc.is_online = True
        loc.last_ping = now
        if is_available is not None:
            loc.is_available = bool(is_available)
        session.add(loc)
        session.commit()
        session.refresh(loc)
        return loc


def set_online(driver_id: int, online: bool) -> DriverLocation:
    with get_session() as session:
        loc = session.get(DriverLocation, driver_id)
        if loc is None:
            raise NotFound("driver location not found", driver_id=driver_id)
        loc.is_online = online
        if not online:
            loc.is_available = False
        session.add(loc)
        session.commit()
        session.refresh(loc)
        return loc


def _has_credit(credit: Optional[DriverCredit], now: datetime) -> bool:
    if credit is None or credit.rides_remaining <= 0:
        return False
    if credit.plan_start is not None and credit.plan_start > now:
        return False
    if credit.plan_end is not None and credit.plan_end < now:
        return False
    return True


def check_eligible(
    session,
    driver_id: int,
    service_type: str,
    vehicle_class: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[DriverLocation, DriverProfile]:
    """Apply the search filters to one named driver, raising on the first miss.

    Used where a driver reaches a request without going through the search,
    i.e. offers during bidding.
    """
    now = now or utcnow()
    loc = session.get(DriverLocation, driver_id)
    profile = session.get(DriverProfile, driver_id)
    if loc is None or profile is None:
        raise NotFound("driver not found", driver_id=driver_id)
    if not loc.is_online:
        raise PreconditionFailed("driver is offline", code="driver_ineligible",
                                 driver_id=driver_id, reason="offline")
    cutoff = now - timedelta(seconds=settings.DRIVER_PING_MAX_AGE_SECS)
    if loc.last_ping < cutoff:
        raise PreconditionFailed("driver location is stale", code="driver_ineligible",
                                 driver_id=driver_id, reason="stale_location",
                                 last_ping=iso(loc.last_ping))
    if profile.service_type != service_type:
        raise PreconditionFailed("driver does not serve this request type", code="driver_ineligible",
                                 driver_id=driver_id, reason="service_type")
    if vehicle_class and profile.vehicle_class != vehicle_class:
        raise PreconditionFailed("driver vehicle does not match the request", code="driver_ineligible",
                                 driver_id=driver_id, reason="vehicle_class")
    if service_type in settings.CREDIT_GATED_SERVICES:
        credit = session.get(DriverCredit, driver_id)
        if not _has_credit(credit, now):
            raise PreconditionFailed("driver has no usable ride credits", code="insufficient_credits",
                                     driver_id=driver_id, balance=credit.rides_remaining if credit else 0)
    return loc, profile


def find_nearby_drivers(
    point: LatLng,
    radius_km: float,
    service_type: str,
    vehicle_class: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[DriverCandidate]:
    """Available, fresh drivers within radius_km of point, nearest first.

    Fails closed: a store error is logged and reported as "no drivers".
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.DRIVER_PING_MAX_AGE_SECS)
    min_lat, max_lat, lng_ranges = bounding_box(point, radius_km)
    credit_gated = service_type in settings.CREDIT_GATED_SERVICES

    stmt = (
        select(DriverLocation, DriverProfile, DriverCredit)
        .join(DriverProfile, DriverProfile.driver_id == DriverLocation.driver_id)
        .join(DriverCredit, DriverCredit.driver_id == DriverLocation.driver_id, isouter=True)
        .where(col(DriverLocation.is_online).is_(True))
        .where(col(DriverLocation.is_available).is_(True))
        .where(DriverLocation.last_ping >= cutoff)
        .where(DriverProfile.service_type == service_type)
        .where(col(DriverLocation.lat).between(min_lat, max_lat))
        .where(or_(*[col(DriverLocation.lng).between(lo, hi) for lo, hi in lng_ranges]))
    )
    if vehicle_class:
        stmt = stmt.where(DriverProfile.vehicle_class == vehicle_class)

    try:
        with get_session() as session:
            rows = session.exec(stmt).all()
    except SQLAlchemyError:
        logger.exception("Driver search failed around %s (radius %.1f km)", point, radius_km)
        return []

    out = []
    for loc, profile, credit in rows:
        if credit_gated and not _has_credit(credit, now):
            continue
        d = haversine_km(point, (loc.lat, loc.lng))
        if d > radius_km:
            continue
        out.append(DriverCandidate(
            driver_id=loc.driver_id,
            lat=loc.lat,
            lng=loc.lng,
            distance_km=round(d, 3),
            rating_average=profile.rating_average or 0.0,
            total_rides=profile.total_rides or 0,
            is_verified=bool(profile.is_verified),
            vehicle_class=profile.vehicle_class,
            rides_remaining=credit.rides_remaining if credit else None,
        ))
    out.sort(key=lambda c: (c.distance_km, c.driver_id))
    logger.info("Found %d driver(s) within %.1f km of %s", len(out), radius_km, point)
    return out[: settings.MAX_CANDIDATES]
