"""Bidding: a price window, driver offers, and accepting one of them."""
import logging
import math
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import List, Optional

from sqlmodel import select, update, col

import events
import notifications
from config import settings
from db import get_session, rows_affected
from dispatch import (
    ASSIGNED, DRIVER_BUSY, DispatchResult, assign, dispatch, publish_request,
    expire_open_offers, notify_not_selected,
)
from errors import NotFound, InvalidInput, NotAuthorized, StateConflict, PreconditionFailed
from geo import haversine_km, eta_minutes
from locations import check_eligible, find_nearby_drivers
from models import (
    RideRequest, RideOffer, RequestStatus, OfferStatus, iso, utcnow,
)
from pricing import offer_bounds, within_bounds

logger = logging.getLogger(__name__)


@dataclass
class BiddingWindow:
    request_id: int
    estimated_price: int
    proposed_price: int
    min_price: float
    max_price: float
    ends_at: datetime
    drivers_notified: int = 0
    reopened: bool = False

    def to_dict(self) -> dict:
        d = asdict(self)
        d["ends_at"] = iso(self.ends_at)
        return d


@dataclass
class AssignmentResult:
    request_id: int
    offer_id: int
    assigned: bool
    status: str
    driver_id: Optional[int] = None
    agreed_price: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def offer_to_dict(offer: RideOffer) -> dict:
    return {
        "id": offer.id,
        "request_id": offer.request_id,
        "driver_id": offer.driver_id,
        "offered_price": offer.offered_price,
        "is_counter_offer": offer.is_counter_offer,
        "message": offer.message,
        "driver_rating": offer.driver_rating,
        "distance_to_pickup_km": offer.distance_to_pickup_km,
        "eta_minutes": offer.eta_minutes,
        "status": offer.status,
        "expires_at": iso(offer.expires_at),
        "created_at": iso(offer.created_at),
        "responded_at": iso(offer.responded_at),
    }


def _publish_offer(offer: RideOffer, event: str) -> None:
    events.publish(events.CHANNEL_OFFER_UPDATES, {"event": event, "offer": offer_to_dict(offer)})


def _load_request(session, request_id: int) -> RideRequest:
    req = session.get(RideRequest, request_id)
    if req is None:
        raise NotFound("request not found", request_id=request_id)
    return req


def _load_offer(session, offer_id: int) -> RideOffer:
    offer = session.get(RideOffer, offer_id)
    if offer is None:
        raise NotFound("offer not found", offer_id=offer_id)
    return offer


def _check_requester(req: RideRequest, requester_id: int) -> None:
    if req.requester_id != requester_id:
        raise NotAuthorized("only the requester can manage bidding", request_id=req.id)


def _window_open(req: RideRequest, now: datetime) -> bool:
    return (
        req.status == RequestStatus.PENDING.value
        and req.bidding_active
        and req.bidding_ends_at is not None
        and now < req.bidding_ends_at
    )


def _broadcast(req: RideRequest, kind: str, title: str, now: datetime) -> int:
    """Non-exclusive notification to every candidate driver; returns how many."""
    radius = settings.radius_for(req.priority)
    candidates = find_nearby_drivers(
        (req.pickup_lat, req.pickup_lng), radius, req.service_type, req.vehicle_class, now=now
    )
    for cand in candidates:
        notifications.notify(
            cand.driver_id,
            kind,
            title,
            f"Proposed price {req.proposed_price} {settings.CURRENCY}, pickup {cand.distance_km:.1f} km away.",
            payload={
                "request_id": req.id,
                "proposed_price": req.proposed_price,
                "estimated_price": req.estimated_price,
                "distance_km": cand.distance_km,
                "ends_at": iso(req.bidding_ends_at),
            },
            request_id=req.id,
            expires_at=req.bidding_ends_at,
        )
    return len(candidates)


def _window(req: RideRequest, notified: int, reopened: bool = False) -> BiddingWindow:
    low, high = offer_bounds(req.estimated_price)
    return BiddingWindow(
        request_id=req.id,
        estimated_price=req.estimated_price,
        proposed_price=req.proposed_price,
        min_price=low,
        max_price=high,
        ends_at=req.bidding_ends_at,
        drivers_notified=notified,
        reopened=reopened,
    )


def open_bidding(
    request_id: int,
    requester_id: int,
    estimated_price: Optional[int] = None,
    proposed_price: Optional[int] = None,
    now: Optional[datetime] = None,
) -> BiddingWindow:
    now = now or utcnow()
    with get_session() as session:
        req = _load_request(session, request_id)
        _check_requester(req, requester_id)
        if req.status != RequestStatus.PENDING.value:
            raise StateConflict("bidding can only be opened on a pending request", status=req.status)

        estimate = estimated_price if estimated_price is not None else req.estimated_price
        if estimate is None or estimate <= 0:
            raise InvalidInput("a positive estimated price is required to open bidding")
        proposed = proposed_price if proposed_price is not None else estimate
        if not within_bounds(proposed, estimate):
            low, high = offer_bounds(estimate)
            raise InvalidInput("proposed price out of bounds", code="price_out_of_bounds",
                               price=proposed, min_price=low, max_price=high)

        ends_at = now + timedelta(seconds=settings.BIDDING_WINDOW_SECS)
        moved = rows_affected(
            session,
            update(RideRequest)
            .where(RideRequest.id == request_id)
            .where(RideRequest.status == RequestStatus.PENDING.value)
            .values(
                bidding_active=True,
                estimated_price=int(estimate),
                proposed_price=int(proposed),
                bidding_ends_at=ends_at,
            ),
        )
        if not moved:
            session.rollback()
            raise StateConflict("request is no longer pending", status=req.status)
        session.commit()
        session.refresh(req)

    notified = _broadcast(req, "bidding_request", "Price offer requested", now)
    logger.info("Bidding opened on request %s at %s (estimate %s), %d driver(s) notified",
                request_id, req.proposed_price, req.estimated_price, notified)
    publish_request(req, "bidding_opened")
    return _window(req, notified)


def submit_offer(
    request_id: int,
    driver_id: int,
    price: Optional[int] = None,
    is_counter_offer: bool = False,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RideOffer:
    """Record a driver's offer. Prices outside the band are rejected, never stored."""
    now = now or utcnow()
    with get_session() as session:
        req = _load_request(session, request_id)
        requester_id = req.requester_id
        if not _window_open(req, now):
            raise PreconditionFailed("bidding window is closed", code="bidding_closed",
                                     status=req.status, bidding_active=req.bidding_active)

        if not is_counter_offer:
            price = req.proposed_price
        try:
            price = int(price)
        except (TypeError, ValueError):
            raise InvalidInput("offer price must be a number", price=price)
        if price <= 0:
            raise InvalidInput("offer price must be positive", price=price)
        if not within_bounds(price, req.estimated_price):
            low, high = offer_bounds(req.estimated_price)
            raise InvalidInput("offer price out of bounds", code="price_out_of_bounds",
                               price=price, min_price=low, max_price=high)

        loc, profile = check_eligible(session, driver_id, req.service_type, req.vehicle_class, now)
        if not loc.is_available:
            raise PreconditionFailed("driver is on another trip", code="driver_ineligible",
                                     driver_id=driver_id, reason="busy")
        distance = haversine_km((req.pickup_lat, req.pickup_lng), (loc.lat, loc.lng))

        # one live offer per driver and request
        rows_affected(
            session,
            update(RideOffer)
            .where(RideOffer.request_id == request_id)
            .where(RideOffer.driver_id == driver_id)
            .where(RideOffer.status == OfferStatus.PENDING.value)
            .values(status=OfferStatus.EXPIRED.value, responded_at=now),
        )
        offer = RideOffer(
            request_id=request_id,
            driver_id=driver_id,
            offered_price=price,
            is_counter_offer=bool(is_counter_offer),
            message=message,
            driver_rating=profile.rating_average,
            distance_to_pickup_km=round(distance, 3),
            eta_minutes=eta_minutes(distance, settings.ETA_MINUTES_PER_KM),
            expires_at=req.bidding_ends_at,
            created_at=now,
        )
        session.add(offer)
        session.commit()
        session.refresh(offer)

    logger.info("Driver %s offered %s on request %s%s", driver_id, price, request_id,
                " (counter)" if offer.is_counter_offer else "")
    notifications.notify(
        requester_id, "new_offer", "New offer",
        f"A driver offered {price} {settings.CURRENCY}, {offer.eta_minutes} min away.",
        payload={"request_id": request_id, "offer_id": offer.id, "price": price},
        request_id=request_id,
    )
    _publish_offer(offer, "submitted")
    return offer


def list_offers(request_id: int, now: Optional[datetime] = None) -> List[RideOffer]:
    """Live offers, cheapest first, then soonest ETA."""
    now = now or utcnow()
    with get_session() as session:
        _load_request(session, request_id)
        stmt = (
            select(RideOffer)
            .where(RideOffer.request_id == request_id)
            .where(RideOffer.status == OfferStatus.PENDING.value)
            .where(RideOffer.expires_at > now)
            .order_by(col(RideOffer.offered_price), col(RideOffer.eta_minutes), col(RideOffer.id))
        )
        return list(session.exec(stmt).all())


def accept_offer(offer_id: int, requester_id: int, now: Optional[datetime] = None) -> AssignmentResult:
    """Accept one offer and assign its driver at its price.

    A lost race (request already assigned, offer already resolved, driver
    taken) rolls everything back and comes back as an unassigned result. A
    driver who has gone offline, stale or out of credits since offering is
    refused with PreconditionFailed.
    """
    now = now or utcnow()
    with get_session() as session:
        offer = _load_offer(session, offer_id)
        req = _load_request(session, offer.request_id)
        _check_requester(req, requester_id)

        def noop(reason: str) -> AssignmentResult:
            return AssignmentResult(
                request_id=req.id, offer_id=offer_id, assigned=False, status=req.status,
                driver_id=req.driver_id, agreed_price=req.agreed_price, reason=reason,
            )

        if offer.status == OfferStatus.ACCEPTED.value:
            return AssignmentResult(
                request_id=req.id, offer_id=offer_id, assigned=req.driver_id == offer.driver_id,
                status=req.status, driver_id=req.driver_id, agreed_price=req.agreed_price,
                reason="already_accepted",
            )
        if offer.status != OfferStatus.PENDING.value:
            return noop("offer_resolved")
        if req.status != RequestStatus.PENDING.value or req.driver_id is not None:
            return noop("already_assigned")
        if offer.expires_at <= now:
            return noop("offer_expired")
        check_eligible(session, offer.driver_id, req.service_type, req.vehicle_class, now)

        took = rows_affected(
            session,
            update(RideOffer)
            .where(RideOffer.id == offer_id)
            .where(RideOffer.status == OfferStatus.PENDING.value)
            .values(status=OfferStatus.ACCEPTED.value, responded_at=now),
        )
        if not took:
            session.rollback()
            session.refresh(req)
            return noop("offer_resolved")

        outcome = assign(session, req.id, offer.driver_id, now, agreed_price=offer.offered_price)
        if outcome != ASSIGNED:
            session.rollback()
            session.refresh(req)
            return noop("driver_unavailable" if outcome == DRIVER_BUSY else "already_assigned")

        losers = expire_open_offers(session, req.id, now)
        session.commit()
        session.refresh(req)
        session.refresh(offer)

    logger.info("Offer %s accepted: request %s assigned to driver %s at %s",
                offer_id, req.id, offer.driver_id, offer.offered_price)
    notifications.notify(
        offer.driver_id, "offer_accepted", "Offer accepted",
        f"Your offer of {offer.offered_price} {settings.CURRENCY} was accepted.",
        payload={"request_id": req.id, "offer_id": offer_id, "pickup": [req.pickup_lat, req.pickup_lng]},
        request_id=req.id,
        expires_at=now + timedelta(seconds=settings.DRIVER_NOTIFICATION_TTL_SECS),
    )
    notify_not_selected(losers, req.id)
    _publish_offer(offer, "accepted")
    publish_request(req, "driver_assigned")
    return AssignmentResult(
        request_id=req.id, offer_id=offer_id, assigned=True, status=req.status,
        driver_id=offer.driver_id, agreed_price=req.agreed_price,
    )


def reject_offer(offer_id: int, requester_id: int, now: Optional[datetime] = None) -> RideOffer:
    """Terminal for the offer only; the window stays open."""
    now = now or utcnow()
    with get_session() as session:
        offer = _load_offer(session, offer_id)
        req = _load_request(session, offer.request_id)
        _check_requester(req, requester_id)
        moved = rows_affected(
            session,
            update(RideOffer)
            .where(RideOffer.id == offer_id)
            .where(RideOffer.status == OfferStatus.PENDING.value)
            .values(status=OfferStatus.REJECTED.value, responded_at=now),
        )
        session.commit()
        session.refresh(offer)

    if not moved:
        logger.info("Offer %s already %s; reject is a no-op", offer_id, offer.status)
        return offer
    notifications.notify(
        offer.driver_id, "offer_rejected", "Offer declined",
        "The requester declined your offer.",
        payload={"request_id": offer.request_id, "offer_id": offer_id},
        request_id=offer.request_id,
    )
    _publish_offer(offer, "rejected")
    return offer


def raise_price(request_id: int, requester_id: int, now: Optional[datetime] = None) -> BiddingWindow:
    """Raise the proposed price by one increment, reopening an expired window."""
    now = now or utcnow()
    with get_session() as session:
        req = _load_request(session, request_id)
        _check_requester(req, requester_id)
        if req.status != RequestStatus.PENDING.value:
            raise StateConflict("request is no longer pending", status=req.status)
        current = req.proposed_price if req.proposed_price is not None else req.estimated_price
        if current is None or not req.estimated_price:
            raise PreconditionFailed("bidding has not been opened", code="bidding_not_opened")

        _, high = offer_bounds(req.estimated_price)
        new_price = min(current + settings.BID_RAISE_INCREMENT, int(math.floor(high)))
        if new_price <= current:
            raise PreconditionFailed("proposed price is already at the maximum", code="price_at_maximum",
                                     price=current, max_price=high)

        reopened = not _window_open(req, now)
        ends_at = now + timedelta(seconds=settings.BIDDING_WINDOW_SECS) if reopened else req.bidding_ends_at
        price_guard = (
            col(RideRequest.proposed_price).is_(None)
            if req.proposed_price is None
            else RideRequest.proposed_price == req.proposed_price
        )
        moved = rows_affected(
            session,
            update(RideRequest)
            .where(RideRequest.id == request_id)
            .where(RideRequest.status == RequestStatus.PENDING.value)
            .where(price_guard)
            .values(proposed_price=new_price, bidding_active=True, bidding_ends_at=ends_at),
        )
        if not moved:
            session.rollback()
            raise StateConflict("request changed while raising the price", status=req.status)
        session.commit()
        session.refresh(req)

    notified = _broadcast(req, "bidding_price_raised", "Price raised", now)
    logger.info("Request %s proposed price raised %s -> %s%s", request_id, current, new_price,
                " (window reopened)" if reopened else "")
    publish_request(req, "bidding_price_raised")
    return _window(req, notified, reopened=reopened)


def _close_bidding(session, request_id: int, now: datetime) -> None:
    rows_affected(
        session,
        update(RideRequest)
        .where(RideRequest.id == request_id)
        .values(bidding_active=False),
    )
    rows_affected(
        session,
        update(RideOffer)
        .where(RideOffer.request_id == request_id)
        .where(RideOffer.status == OfferStatus.PENDING.value)
        .values(status=OfferStatus.EXPIRED.value, responded_at=now),
    )


def fallback_to_dispatch(request_id: int, requester_id: int, now: Optional[datetime] = None) -> DispatchResult:
    """Give up on negotiation and dispatch directly at the original estimate."""
    now = now or utcnow()
    with get_session() as session:
        req = _load_request(session, request_id)
        _check_requester(req, requester_id)
        estimate = req.estimated_price
        _close_bidding(session, request_id, now)
        session.commit()
    logger.info("Request %s falls back to direct dispatch at %s", request_id, estimate)
    return dispatch(request_id, agreed_price=estimate, now=now)


def expire_offers(now: Optional[datetime] = None) -> dict:
    """Sweep: expire stale offers and close windows that ended without acceptance."""
    now = now or utcnow()
    with get_session() as session:
        expired = rows_affected(
            session,
            update(RideOffer)
            .where(RideOffer.status == OfferStatus.PENDING.value)
            .where(RideOffer.expires_at <= now)
            .values(status=OfferStatus.EXPIRED.value, responded_at=now),
        )
        ended = list(session.exec(
            select(RideRequest)
            .where(col(RideRequest.bidding_active).is_(True))
            .where(RideRequest.bidding_ends_at <= now)
        ).all())
        closed = []
        for req in ended:
            moved = rows_affected(
                session,
                update(RideRequest)
                .where(RideRequest.id == req.id)
                .where(col(RideRequest.bidding_active).is_(True))
                .where(RideRequest.bidding_ends_at <= now)
                .values(bidding_active=False),
            )
            if moved:
                closed.append((req.id, req.requester_id, req.status))
        session.commit()

    for request_id, requester_id, status in closed:
        if status != RequestStatus.PENDING.value:
            continue
        notifications.notify(
            requester_id, "bidding_expired", "No offer accepted",
            "The bidding window ended. Raise your price or request a direct dispatch.",
            payload={"request_id": request_id, "options": ["raise_price", "fallback_to_dispatch"]},
            request_id=request_id,
        )
    if expired or closed:
        logger.info("Offer sweep: %d offer(s) expired, %d window(s) closed", expired, len(closed))
    return {"offers_expired": expired, "windows_closed": len(closed)}
