"""Arrival confirmation: the one place a ride credit is spent.

The status flip and the credit decrement commit together.
"""
import logging
import math
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional

from sqlmodel import update

import notifications
from config import settings
from credits import consume_credit
from db import get_session, rows_affected
from dispatch import publish_request
from errors import NotFound, NotAuthorized, StateConflict, PreconditionFailed
from geo import haversine_m, validate_point
from models import RideRequest, DriverCredit, RequestStatus, iso, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ArrivalResult:
    request_id: int
    driver_id: int
    confirmed: bool
    already_confirmed: bool = False
    credits_remaining: Optional[int] = None
    distance_m: Optional[float] = None
    arrived_at: Optional[datetime] = None
    low_balance: bool = False

    def to_dict(self) -> dict:
        d = asdict(self)
        d["arrived_at"] = iso(self.arrived_at)
        return d


def _replay(session, req: RideRequest, driver_id: int) -> ArrivalResult:
    credit = session.get(DriverCredit, driver_id)
    return ArrivalResult(
        request_id=req.id,
        driver_id=driver_id,
        confirmed=True,
        already_confirmed=True,
        credits_remaining=credit.rides_remaining if credit else 0,
        arrived_at=req.arrived_at,
    )


def confirm_arrival(request_id: int, driver_id: int, lat: float, lng: float,
                    now: Optional[datetime] = None) -> ArrivalResult:
    point = validate_point(lat, lng)
    now = now or utcnow()
    with get_session() as session:
        req = session.get(RideRequest, request_id)
        if req is None:
            raise NotFound("request not found", request_id=request_id)
        if req.driver_id != driver_id:
            raise NotAuthorized("only the assigned driver can confirm arrival", request_id=request_id)
        if req.status == RequestStatus.DRIVER_ARRIVED.value:
            return _replay(session, req, driver_id)
        if req.status != RequestStatus.DRIVER_ASSIGNED.value:
            raise StateConflict("request is not awaiting arrival", status=req.status)

        elapsed = (now - (req.assigned_at or now)).total_seconds()
        if elapsed < settings.ARRIVAL_MIN_WAIT_SECS:
            remaining = math.ceil(settings.ARRIVAL_MIN_WAIT_SECS - elapsed)
            raise PreconditionFailed(
                f"too early to confirm arrival, wait {remaining} more seconds",
                code="too_early", remaining_seconds=remaining,
            )

        distance_m = haversine_m(point, (req.pickup_lat, req.pickup_lng))
        if distance_m > settings.ARRIVAL_MAX_DISTANCE_M:
            raise PreconditionFailed(
                f"too far from pickup ({distance_m:.0f} m)",
                code="too_far", distance_m=round(distance_m, 1),
                max_distance_m=settings.ARRIVAL_MAX_DISTANCE_M,
            )

        credit = session.get(DriverCredit, driver_id)
        balance = credit.rides_remaining if credit else 0
        if balance <= 0:
            raise PreconditionFailed("no ride credits left", code="insufficient_credits", balance=balance)

        moved = rows_affected(
            session,
            update(RideRequest)
            .where(RideRequest.id == request_id)
            .where(RideRequest.status == RequestStatus.DRIVER_ASSIGNED.value)
            .where(RideRequest.driver_id == driver_id)
            .values(status=RequestStatus.DRIVER_ARRIVED.value, arrived_at=now),
        )
        if not moved:
            session.rollback()
            session.refresh(req)
            if req.status == RequestStatus.DRIVER_ARRIVED.value and req.driver_id == driver_id:
                return _replay(session, req, driver_id)
            raise StateConflict("request is not awaiting arrival", status=req.status)

        remaining = consume_credit(session, driver_id, request_id)
        if remaining is None:
            session.rollback()
            raise PreconditionFailed("no ride credits left", code="insufficient_credits", balance=0)
        session.commit()
        session.refresh(req)

    low = remaining <= settings.LOW_CREDIT_THRESHOLD
    logger.info("Driver %s arrived for request %s (%.0f m); %d credit(s) left",
                driver_id, request_id, distance_m, remaining)
    notifications.notify(
        req.requester_id, "driver_arrived", "Your driver has arrived",
        "Your driver is waiting at the pickup point.",
        payload={"request_id": request_id, "driver_id": driver_id}, request_id=request_id,
    )
    if low:
        notifications.notify(
            driver_id, "low_credits", "Ride credits running low",
            f"You have {remaining} ride credit(s) left. Renew your plan to keep receiving requests.",
            payload={"rides_remaining": remaining}, request_id=request_id,
        )
    publish_request(req, "driver_arrived")
    return ArrivalResult(
        request_id=request_id,
        driver_id=driver_id,
        confirmed=True,
        credits_remaining=remaining,
        distance_m=round(distance_m, 1),
        arrived_at=now,
        low_balance=low,
    )
