"""Dispatcher: binds a pending request to exactly one driver.

Writes are conditional on the prior state; a write that matches nothing is a no-op.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlmodel import select, update, col

import events
import notifications
from config import settings
from db import get_session, rows_affected
from errors import NotFound, InvalidInput
from geo import haversine_km, resolve_point, validate_point, eta_minutes
from locations import find_nearby_drivers, vehicle_class_for_delivery
from models import RideRequest, RideOffer, DriverLocation, User, RequestStatus, OfferStatus, iso, utcnow
from pricing import estimate_fare
from scoring import parse_priority, rank_candidates

logger = logging.getLogger(__name__)

ASSIGNED = "assigned"
DRIVER_BUSY = "driver_busy"
RACE_LOST = "race_lost"


@dataclass
class DispatchResult:
    request_id: int
    assigned: bool
    status: str
    driver_id: Optional[int] = None
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None
    score: Optional[float] = None
    agreed_price: Optional[int] = None
    search_radius_km: Optional[float] = None
    candidates: int = 0
    retry_after_seconds: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def request_to_dict(req: RideRequest) -> dict:
    return {
        "id": req.id,
        "requester_id": req.requester_id,
        "service_type": req.service_type,
        "vehicle_class": req.vehicle_class,
        "priority": req.priority,
        "pickup": [req.pickup_lat, req.pickup_lng],
        "destination": [req.dest_lat, req.dest_lng] if req.dest_lat is not None else None,
        "status": req.status,
        "driver_id": req.driver_id,
        "estimated_price": req.estimated_price,
        "agreed_price": req.agreed_price,
        "bidding_active": req.bidding_active,
        "proposed_price": req.proposed_price,
        "bidding_ends_at": iso(req.bidding_ends_at),
        "created_at": iso(req.created_at),
        "assigned_at": iso(req.assigned_at),
        "arrived_at": iso(req.arrived_at),
        "started_at": iso(req.started_at),
        "completed_at": iso(req.completed_at),
        "cancelled_at": iso(req.cancelled_at),
        "settled_at": iso(req.settled_at),
    }


def publish_request(req: RideRequest, event: str) -> None:
    events.publish(events.CHANNEL_REQUEST_UPDATES, {"event": event, "request": request_to_dict(req)})


def create_request(
    requester_id: int,
    pickup: Tuple[float, float],
    destination: Optional[Tuple[float, float]] = None,
    service_type: str = "taxi",
    vehicle_class: Optional[str] = None,
    delivery_type: Optional[str] = None,
    priority: str = "normal",
    estimated_price: Optional[int] = None,
) -> RideRequest:
    if pickup is None:
        raise InvalidInput("pickup coordinates are required")
    pickup = validate_point(*pickup)
    if destination is not None:
        destination = validate_point(*destination)
    priority = parse_priority(priority)
    service_type = (service_type or "taxi").strip().lower()
    if vehicle_class is None and service_type == "delivery":
        vehicle_class = vehicle_class_for_delivery(delivery_type)

    if estimated_price is not None:
        try:
            estimated_price = int(estimated_price)
        except (TypeError, ValueError):
            raise InvalidInput("estimated_price must be a number", estimated_price=estimated_price)
        if estimated_price <= 0:
            raise InvalidInput("estimated_price must be positive", estimated_price=estimated_price)
    elif destination is not None:
        estimated_price = estimate_fare(haversine_km(pickup, destination), vehicle_class)

    with get_session() as session:
        if session.get(User, requester_id) is None:
            raise NotFound("user not found", user_id=requester_id)
        req = RideRequest(
            requester_id=requester_id,
            service_type=service_type,
            vehicle_class=vehicle_class,
            priority=priority,
            pickup_lat=pickup[0],
            pickup_lng=pickup[1],
            dest_lat=destination[0] if destination else None,
            dest_lng=destination[1] if destination else None,
            estimated_price=estimated_price,
        )
        session.add(req)
        session.commit()
        session.refresh(req)
    logger.info("Request %s created by user %s (%s, %s)", req.id, requester_id, service_type, priority)
    publish_request(req, "created")
    return req


def get_request(request_id: int) -> RideRequest:
    with get_session() as session:
        req = session.get(RideRequest, request_id)
        if req is None:
            raise NotFound("request not found", request_id=request_id)
        return req


def assign(session, request_id: int, driver_id: int, now: datetime, agreed_price: Optional[int] = None) -> str:
    """Claim the driver, then the request, inside the caller's transaction.

    Returns ASSIGNED, DRIVER_BUSY or RACE_LOST. On anything but ASSIGNED the
    caller must roll back so a claimed driver is released again.
    """
    claimed = rows_affected(
        session,
        update(DriverLocation)
        .where(DriverLocation.driver_id == driver_id)
        .where(col(DriverLocation.is_available).is_(True))
        .values(is_available=False),
    )
    if not claimed:
        return DRIVER_BUSY

    values = {
        "status": RequestStatus.DRIVER_ASSIGNED.value,
        "driver_id": driver_id,
        "assigned_at": now,
        "bidding_active": False,
    }
    if agreed_price is not None:
        values["agreed_price"] = agreed_price
    won = rows_affected(
        session,
        update(RideRequest)
        .where(RideRequest.id == request_id)
        .where(RideRequest.status == RequestStatus.PENDING.value)
        .where(col(RideRequest.driver_id).is_(None))
        .values(**values),
    )
    if not won:
        return RACE_LOST
    return ASSIGNED


def expire_open_offers(session, request_id: int, now: datetime) -> List[int]:
    """Expire the request's pending offers inside the caller's transaction.

    Returns the drivers whose offers were closed.
    """
    drivers = list(session.exec(
        select(RideOffer.driver_id)
        .where(RideOffer.request_id == request_id)
        .where(RideOffer.status == OfferStatus.PENDING.value)
    ).all())
    if drivers:
        rows_affected(
            session,
            update(RideOffer)
            .where(RideOffer.request_id == request_id)
            .where(RideOffer.status == OfferStatus.PENDING.value)
            .values(status=OfferStatus.EXPIRED.value, responded_at=now),
        )
    return drivers


def notify_not_selected(driver_ids: List[int], request_id: int) -> None:
    for driver_id in driver_ids:
        notifications.notify(
            driver_id, "offer_not_selected", "Offer not selected",
            "The request went to another driver.",
            payload={"request_id": request_id}, request_id=request_id,
        )


def _noop_result(
req: RideRequest, **extra) -> DispatchResult:
    reason = "already_assigned" if req.driver_id is not None else req.status
    return DispatchResult(
        request_id=req.id,
        assigned=False,
        status=req.status,
        driver_id=req.driver_id,
        agreed_price=req.agreed_price,
        reason=reason,
        **extra,
    )


def _mark_no_driver(request_id: int, priority: str, radius_km: float, candidates: int) -> DispatchResult:
    with get_session() as session:
        moved = rows_affected(
            session,
            update(RideRequest)
            .where(RideRequest.id == request_id)
            .where(RideRequest.status == RequestStatus.PENDING.value)
            .values(status=RequestStatus.NO_DRIVER_AVAILABLE.value),
        )
        session.commit()
        req = session.get(RideRequest, request_id)
    if not moved:
        logger.info("Request %s left pending by another writer; not marking it unassigned", request_id)
        return _noop_result(req, search_radius_km=radius_km, candidates=candidates)

    retry_after = settings.backoff_for(priority)
    logger.info("No driver for request %s within %.1f km; retry in %ss", request_id, radius_km, retry_after)
    notifications.notify(
        req.requester_id,
        "no_driver_available",
        "No driver available",
        "No driver is available nearby right now. We will try again shortly.",
        payload={"request_id": request_id, "retry_after_seconds": retry_after},
        request_id=request_id,
    )
    publish_request(req, "no_driver_available")
    return DispatchResult(
        request_id=request_id,
        assigned=False,
        status=req.status,
        search_radius_km=radius_km,
        candidates=candidates,
        retry_after_seconds=retry_after,
        reason="no_driver_available",
    )


def _announce_assignment(req: RideRequest, distance_km: float, eta: int, now: datetime) -> None:
    notifications.notify(
        req.driver_id,
        "ride_request",
        "New ride request",
        f"Pickup {distance_km:.1f} km away, about {eta} min.",
        payload={
            "request_id": req.id,
            "pickup": [req.pickup_lat, req.pickup_lng],
            "distance_km": distance_km,
            "eta_minutes": eta,
            "price": req.agreed_price,
        },
        request_id=req.id,
        expires_at=now + timedelta(seconds=settings.DRIVER_NOTIFICATION_TTL_SECS),
    )
    notifications.notify(
        req.requester_id,
        "driver_assigned",
        "Driver on the way",
        f"Your driver arrives in about {eta} min.",
        payload={"request_id": req.id, "driver_id": req.driver_id, "eta_minutes": eta},
        request_id=req.id,
    )
    publish_request(req, "driver_assigned")


def dispatch(
    request_id: int,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    priority: Optional[str] = None,
    service_type: Optional[str] = None,
    vehicle_class: Optional[str] = None,
    agreed_price: Optional[int] = None,
    now: Optional[datetime] = None,
) -> DispatchResult:
    """Search, rank and assign the best available driver to a pending request.

    Returns a result whether or not a driver was assigned. A request that is
    no longer pending yields a no-op result; an empty search moves the request
    to ``no_driver_available`` and carries a retry hint scaled by priority.
    Credits are not touched here.
    """
    now = now or utcnow()
    with get_session() as session:
        req = session.get(RideRequest, request_id)
        if req is None:
            raise NotFound("request not found", request_id=request_id)
        if req.status == RequestStatus.NO_DRIVER_AVAILABLE.value:
            rows_affected(
                session,
                update(RideRequest)
                .where(RideRequest.id == request_id)
                .where(RideRequest.status == RequestStatus.NO_DRIVER_AVAILABLE.value)
                .values(status=RequestStatus.PENDING.value),
            )
            session.commit()
            session.refresh(req)
        if req.status != RequestStatus.PENDING.value:
            logger.info("Request %s is %s; dispatch is a no-op", request_id, req.status)
            return _noop_result(req)

    priority = parse_priority(priority or req.priority)
    service_type = service_type or req.service_type
    vehicle_class = vehicle_class or req.vehicle_class
    caller_point = (lat, lng) if lat is not None or lng is not None else None
    point = resolve_point(caller_point, (req.pickup_lat, req.pickup_lng))
    price = agreed_price if agreed_price is not None else req.estimated_price
    radius = settings.radius_for(priority)

    candidates = find_nearby_drivers(point, radius, service_type, vehicle_class, now=now)
    if not candidates:
        return _mark_no_driver(request_id, priority, radius, 0)

    for score, cand in rank_candidates(candidates, priority):
        with get_session() as session:
            outcome = assign(session, request_id, cand.driver_id, now, agreed_price=price)
            if outcome == ASSIGNED:
                superseded = expire_open_offers(session, request_id, now)
                session.commit()
            else:
                session.rollback()
            req = session.get(RideRequest, request_id)

        if outcome == DRIVER_BUSY:
            logger.info("Driver %s was claimed elsewhere; trying next candidate", cand.driver_id)
            continue
        if outcome == RACE_LOST:
            logger.info("Request %s was assigned concurrently; dropping our claim on driver %s",
                        request_id, cand.driver_id)
            return _noop_result(req, search_radius_km=radius, candidates=len(candidates))

        eta = eta_minutes(cand.distance_km, settings.ETA_MINUTES_PER_KM)
        logger.info("Request %s assigned to driver %s (%.2f km, score %.1f)",
                    request_id, cand.driver_id, cand.distance_km, score)
        _announce_assignment(req, cand.distance_km, eta, now)
        notify_not_selected([d for d in superseded if d != cand.driver_id], request_id)
        return DispatchResult(
            request_id=request_id,
            assigned=True,
            status=req.status,
            driver_id=cand.driver_id,
            distance_km=cand.distance_km,
            eta_minutes=eta,
            score=round(score, 2),
            agreed_price=req.agreed_price,
            search_radius_km=radius,
            candidates=len(candidates),
        )

    return _mark_no_driver(request_id, priority, radius, len(candidates))
