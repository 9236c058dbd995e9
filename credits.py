"""Prepaid ride credits and their audit ledger."""
import logging
from datetime import datetime
from typing import Optional

from sqlmodel import select, update

from db import get_session, rows_affected
from errors import NotFound, InvalidInput
from models import DriverCredit, DriverProfile, CreditLedgerEntry, utcnow

logger = logging.getLogger(__name__)


def _current_balance(session, driver_id: int) -> int:
    return session.exec(
        select(DriverCredit.rides_remaining).where(DriverCredit.driver_id == driver_id)
    ).one()


def activate_plan(
    driver_id: int,
    rides: int,
    plan_start: Optional[datetime] = None,
    plan_end: Optional[datetime] = None,
) -> DriverCredit:
    """Add a purchased plan's rides to the driver's balance."""
    if not isinstance(rides, int) or rides <= 0:
        raise InvalidInput("rides must be a positive integer", rides=rides)
    with get_session() as session:
        if session.get(DriverProfile, driver_id) is None:
            raise NotFound("driver not found", driver_id=driver_id)
        if session.get(DriverCredit, driver_id) is None:
            session.add(DriverCredit(driver_id=driver_id))
            session.flush()
        rows_affected(
            session,
            update(DriverCredit)
            .where(DriverCredit.driver_id == driver_id)
            .values(
                rides_remaining=DriverCredit.rides_remaining + rides,
                plan_start=plan_start or utcnow(),
                plan_end=plan_end,
            ),
        )
        after = _current_balance(session, driver_id)
        session.add(CreditLedgerEntry(
            driver_id=driver_id,
            delta=rides,
            balance_before=after - rides,
            balance_after=after,
            reason="plan_activation",
        ))
        session.commit()
        credit = session.get(DriverCredit, driver_id)
        session.refresh(credit)
    logger.info("Driver %s plan activated: +%d rides, balance %d", driver_id, rides, after)
    return credit


def get_balance(driver_id: int) -> DriverCredit:
    with get_session() as session:
        if session.get(DriverProfile, driver_id) is None:
            raise NotFound("driver not found", driver_id=driver_id)
        credit = session.get(DriverCredit, driver_id)
        return credit if credit is not None else DriverCredit(driver_id=driver_id)


def consume_credit(session, driver_id: int, request_id: Optional[int]) -> Optional[int]:
    """Spend one credit inside the caller's transaction.

    Returns the new balance, or None when there was nothing to spend.
    """
    spent = rows_affected(
        session,
        update(DriverCredit)
        .where(DriverCredit.driver_id == driver_id)
        .where(DriverCredit.rides_remaining > 0)
        .values(
            rides_remaining=DriverCredit.rides_remaining - 1,
            rides_used=DriverCredit.rides_used + 1,
        ),
    )
    if not spent:
        return None
    after = _current_balance(session, driver_id)
    session.add(CreditLedgerEntry(
        driver_id=driver_id,
        request_id=request_id,
        delta=-1,
        balance_before=after + 1,
        balance_after=after,
        reason="arrival_confirmed",
    ))
    return after
