"""Transitions after assignment: start, complete, cancel, re-dispatch."""
import logging
from datetime import datetime
from typing import Optional

from sqlmodel import update, col

import notifications
from db import get_session, rows_affected
from dispatch import publish_request
from errors import NotFound, NotAuthorized, StateConflict
from models import RideRequest, RideOffer, DriverLocation, DriverProfile, RequestStatus, OfferStatus, utcnow

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (
    RequestStatus.PENDING.value,
    RequestStatus.NO_DRIVER_AVAILABLE.value,
    RequestStatus.DRIVER_ASSIGNED.value,
    RequestStatus.DRIVER_ARRIVED.value,
)


def _load(session, request_id: int) -> RideRequest:
    req = session.get(RideRequest, request_id)
    if req is None:
        raise NotFound("request not found", request_id=request_id)
    return req


def _driver_guard(driver_id: Optional[int]):
    if driver_id is None:
        return col(RideRequest.driver_id).is_(None)
    return RideRequest.driver_id == driver_id


def _free_driver(session, driver_id: int) -> None:
    rows_affected(
        session,
        update(DriverLocation)
        .where(DriverLocation.driver_id == driver_id)
        .values(is_available=True),
    )


def start_trip(request_id: int, driver_id: int, now: Optional[datetime] = None) -> RideRequest:
    now = now or utcnow()
    with get_session() as session:
        req = _load(session, request_id)
        if req.driver_id != driver_id:
            raise NotAuthorized("only the assigned driver can start the trip", request_id=request_id)
        moved = rows_affected(
            session,
            update(RideRequest)
            .where(RideRequest.id == request_id)
            .where(RideRequest.status == RequestStatus.DRIVER_ARRIVED.value)
            .where(RideRequest.driver_id == driver_id)
            .values(status=RequestStatus.IN_PROGRESS.value, started_at=now),
        )
        if not moved:
            session.rollback()
            raise StateConflict("trip cannot be started", status=req.status)
        session.commit()
        session.refresh(req)
    logger.info("Request %s started by driver %s", request_id, driver_id)
    notifications.notify(
        req.requester_id, "trip_started", "Trip started", "Your trip has started.",
        payload={"request_id": request_id}, request_id=request_id,
    )
    publish_request(req, "in_progress")
    return req


def complete_trip(request_id: int, driver_id: int, now: Optional[datetime] = None) -> RideRequest:
    """in_progress -> completed (delivered for deliveries); frees the driver."""
    now = now or utcnow()
    with get_session() as session:
        req = _load(session, request_id)
        if req.driver_id != driver_id:
            raise NotAuthorized("only the assigned driver can complete the trip", request_id=request_id)
        final = RequestStatus.DELIVERED.value if req.service_type == "delivery" else RequestStatus.COMPLETED.value
        moved = rows_affected(
            session,
            update(RideRequest)
            .where(RideRequest.id == request_id)
            .where(RideRequest.status == RequestStatus.IN_PROGRESS.value)
            .where(RideRequest.driver_id == driver_id)
            .values(status=final, completed_at=now),
        )
        if not moved:
            session.rollback()
            raise StateConflict("trip cannot be completed", status=req.status)
        _free_driver(session, driver_id)
        rows_affected(
            session,
            update(DriverProfile)
            .where(DriverProfile.driver_id == driver_id)
            .values(total_rides=DriverProfile.total_rides + 1),
        )
        session.commit()
        session.refresh(req)
    logger.info("Request %s %s by driver %s", request_id, final, driver_id)
    notifications.notify(
        req.requester_id, "trip_completed", "Trip completed",
        "Please confirm to release the payment.",
        payload={"request_id": request_id, "status": final}, request_id=request_id,
    )
    publish_request(req, final)
    return req


def cancel_request(request_id: int, user_id: int, reason: Optional[str] = None,
                   now: Optional[datetime] = None) -> RideRequest:
    now = now or utcnow()
    with get_session() as session:
        req = _load(session, request_id)
        if user_id not in (req.requester_id, req.driver_id):
            raise NotAuthorized("only the requester or the assigned driver can cancel", request_id=request_id)
        driver_id = req.driver_id
        moved = rows_affected(
            session,
            update(RideRequest)
            .where(RideRequest.id == request_id)
            .where(col(RideRequest.status).in_(CANCELLABLE_STATUSES))
            .where(_driver_guard(driver_id))
            .values(status=RequestStatus.CANCELLED.value, cancelled_at=now, bidding_active=False),
        )
        if not moved:
            session.rollback()
            raise StateConflict("request cannot be cancelled", status=req.status)
        if driver_id is not None:
            _free_driver(session, driver_id)
        rows_affected(
            session,
            update(RideOffer)
            .where(RideOffer.request_id == request_id)
            .where(RideOffer.status == OfferStatus.PENDING.value)
            .values(status=OfferStatus.EXPIRED.value, responded_at=now),
        )
        session.commit()
        session.refresh(req)
    logger.info("Request %s cancelled by user %s (%s)", request_id, user_id, reason or "no reason")

    if driver_id is not None:
        notifications.expire_for_request(driver_id, request_id, "ride_request", now=now)
        other = driver_id if user_id == req.requester_id else req.requester_id
        notifications.notify(
            other, "request_cancelled", "Request cancelled",
            reason or "The request was cancelled.",
            payload={"request_id": request_id, "cancelled_by": user_id}, request_id=request_id,
        )
    publish_request(req, "cancelled")
    return req


def redispatch(request_id: int, user_id: Optional[int] = None, now: Optional[datetime] = None) -> RideRequest:
    """Reclaim a driver_assigned request so it can be dispatched again.

    Used when the driver does not respond, declines, or the pickup fails.
    ``user_id`` is None for system sweeps.
    """
    now = now or utcnow()
    with get_session() as session:
        req = _load(session, request_id)
        if user_id is not None and user_id not in (req.requester_id, req.driver_id):
            raise NotAuthorized("only the requester or the assigned driver can re-dispatch", request_id=request_id)
        driver_id = req.driver_id
        if driver_id is None:
            raise StateConflict("request has no assigned driver", status=req.status)
        moved = rows_affected(
            session,
            update(RideRequest)
            .where(RideRequest.id == request_id)
            .where(RideRequest.status == RequestStatus.DRIVER_ASSIGNED.value)
            .where(RideRequest.driver_id == driver_id)
            .values(status=RequestStatus.PENDING.value, driver_id=None, assigned_at=None),
        )
        if not moved:
            session.rollback()
            raise StateConflict("request cannot be re-dispatched", status=req.status)
        _free_driver(session, driver_id)
        session.commit()
        session.refresh(req)
    logger.info("Request %s released from driver %s for re-dispatch", request_id, driver_id)
    notifications.expire_for_request(driver_id, request_id, "ride_request", now=now)
    publish_request(req, "redispatched")
    return req
