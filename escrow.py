"""Escrow Settlement. Funds are held per request and released to the seller once."""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select, update, col

import events
import notifications
from config import settings
from db import get_session, rows_affected
from errors import NotFound, InvalidInput, NotAuthorized, StateConflict, PreconditionFailed
from models import (
    EscrowTransaction, EscrowStatus, RideRequest, RequestStatus, Wallet, WalletTransaction,
    SETTLEABLE_STATUSES, iso, utcnow,
)
from pricing import split_amount

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("wallet", "cash")


@dataclass
class ReleaseResult:
    request_id: int
    released: bool
    already_released: bool = False
    net_amount: int = 0
    platform_fee: int = 0
    currency: str = "CDF"
    seller_id: Optional[int] = None
    wallet_balance: Optional[int] = None
    auto_released: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def escrow_to_dict(esc: EscrowTransaction) -> dict:
    return {
        "id": esc.id,
        "request_id": esc.request_id,
        "buyer_id": esc.buyer_id,
        "seller_id": esc.seller_id,
        "total_amount": esc.total_amount,
        "platform_fee": esc.platform_fee,
        "net_amount": esc.net_amount,
        "currency": esc.currency,
        "status": esc.status,
        "payment_method": esc.payment_method,
        "release_after": iso(esc.release_after),
        "created_at": iso(esc.created_at),
        "released_at": iso(esc.released_at),
        "auto_released": esc.auto_released,
    }


def _find(session, request_id: int) -> Optional[EscrowTransaction]:
    return session.exec(
        select(EscrowTransaction).where(EscrowTransaction.request_id == request_id)
    ).first()


def get_escrow(request_id: int) -> EscrowTransaction:
    with get_session() as session:
        esc = _find(session, request_id)
        if esc is None:
            raise NotFound("escrow not found", request_id=request_id)
        return esc


def hold_funds(
    request_id: int,
    buyer_id: int,
    seller_id: int,
    total_amount: int,
    payment_method: str = "wallet",
    now: Optional[datetime] = None,
) -> EscrowTransaction:
    """Create the escrow record for a request once; later calls return it unchanged."""
    try:
        total_amount = int(total_amount)
    except (TypeError, ValueError):
        raise InvalidInput("amount must be a number", amount=total_amount)
    if total_amount <= 0:
        raise InvalidInput("amount must be positive", amount=total_amount)
    if payment_method not in PAYMENT_METHODS:
        raise InvalidInput("unknown payment method", payment_method=payment_method)
    now = now or utcnow()

    with get_session() as session:
        if session.get(RideRequest, request_id) is None:
            raise NotFound("request not found", request_id=request_id)
        existing = _find(session, request_id)
        if existing is not None:
            return existing

        fee, net = split_amount(total_amount, settings.PLATFORM_FEE_BPS)
        esc = EscrowTransaction(
            request_id=request_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            total_amount=total_amount,
            platform_fee=fee,
            net_amount=net,
            currency=settings.CURRENCY,
            status=EscrowStatus.PENDING_CASH.value if payment_method == "cash" else EscrowStatus.HELD.value,
            payment_method=payment_method,
            release_after=now + timedelta(days=settings.ESCROW_AUTO_RELEASE_DAYS),
            created_at=now,
        )
        session.add(esc)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info("Escrow for request %s created concurrently; returning it", request_id)
            return _find(session, request_id)
        session.refresh(esc)

    logger.info("Escrow held for request %s: %s %s (fee %s, net %s, %s)",
                request_id, total_amount, esc.currency, fee, net, payment_method)
    events.publish(events.CHANNEL_ESCROW_UPDATES, {"event": "held", "escrow": escrow_to_dict(esc)})
    return esc


def hold_for_request(request_id: int, payment_method: str = "wallet",
                     now: Optional[datetime] = None) -> EscrowTransaction:
    with get_session() as session:
        req = session.get(RideRequest, request_id)
        if req is None:
            raise NotFound("request not found", request_id=request_id)
        if req.driver_id is None:
            raise PreconditionFailed("request has no assigned driver", code="no_driver", status=req.status)
        amount = req.agreed_price if req.agreed_price is not None else req.estimated_price
        if not amount:
            raise PreconditionFailed("request has no agreed price", code="no_price", status=req.status)
        buyer_id, seller_id = req.requester_id, req.driver_id
    return hold_funds(request_id, buyer_id, seller_id, amount, payment_method=payment_method, now=now)


def _get_or_create_wallet(session, user_id: int) -> Wallet:
    wallet = session.exec(select(Wallet).where(Wallet.user_id == user_id)).first()
    if wallet is None:
        wallet = Wallet(user_id=user_id, balance=0, currency=settings.CURRENCY)
        session.add(wallet)
        session.flush()
    return wallet


def _replay_result(session, esc: EscrowTransaction) -> ReleaseResult:
    wallet_balance = None
    if esc.payment_method != "cash":
        wallet_balance = session.exec(select(Wallet.balance).where(Wallet.user_id == esc.seller_id)).first()
    return ReleaseResult(
        request_id=esc.request_id,
        released=True,
        already_released=True,
        net_amount=esc.net_amount,
        platform_fee=esc.platform_fee,
        currency=esc.currency,
        seller_id=esc.seller_id,
        wallet_balance=wallet_balance,
        auto_released=esc.auto_released,
    )


def _release(session, esc: EscrowTransaction, now: datetime, auto: bool) -> ReleaseResult:
    """Flip, credit, record and commit in one transaction."""
    prior = esc.status
    flipped = rows_affected(
        session,
        update(EscrowTransaction)
        .where(EscrowTransaction.id == esc.id)
        .where(EscrowTransaction.status == prior)
        .values(status=EscrowStatus.RELEASED.value, released_at=now, auto_released=auto),
    )
    if not flipped:
        session.rollback()
        session.refresh(esc)
        if esc.status == EscrowStatus.RELEASED.value:
            logger.info("Escrow for request %s released concurrently", esc.request_id)
            return _replay_result(session, esc)
        raise StateConflict("escrow changed during release", status=esc.status)

    wallet_balance = None
    if esc.payment_method != "cash":
        wallet = _get_or_create_wallet(session, esc.seller_id)
        rows_affected(
            session,
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(balance=Wallet.balance + esc.net_amount),
        )
        wallet_balance = session.exec(select(Wallet.balance).where(Wallet.id == wallet.id)).one()
        session.add(WalletTransaction(
            wallet_id=wallet.id,
            user_id=esc.seller_id,
            amount=esc.net_amount,
            kind="escrow_release",
            reference_id=esc.request_id,
            balance_before=wallet_balance - esc.net_amount,
            balance_after=wallet_balance,
            created_at=now,
        ))
    rows_affected(
        session,
        update(RideRequest)
        .where(RideRequest.id == esc.request_id)
        .values(status=RequestStatus.COMPLETED.value, settled_at=now),
    )
    session.commit()
    session.refresh(esc)
    return ReleaseResult(
        request_id=esc.request_id,
        released=True,
        net_amount=esc.net_amount,
        platform_fee=esc.platform_fee,
        currency=esc.currency,
        seller_id=esc.seller_id,
        wallet_balance=wallet_balance,
        auto_released=auto,
    )


def _announce_release(result: ReleaseResult) -> None:
    notifications.notify(
        result.seller_id, "payment_released", "Payment released",
        f"{result.net_amount} {result.currency} has been credited to your wallet.",
        payload={"request_id": result.request_id, "net_amount": result.net_amount},
        request_id=result.request_id,
    )
    events.publish(events.CHANNEL_ESCROW_UPDATES, {"event": "released", **asdict(result)})


def release_escrow(request_id: int, confirmer_id: int, now: Optional[datetime] = None) -> ReleaseResult:
    """Release held funds to the counterparty once the buyer confirms.

    A repeated call returns the original amounts with ``already_released``.
    """
    now = now or utcnow()
    with get_session() as session:
        esc = _find(session, request_id)
        if esc is None:
            raise NotFound("escrow not found", request_id=request_id)
        if esc.status == EscrowStatus.RELEASED.value:
            return _replay_result(session, esc)
        if esc.buyer_id != confirmer_id:
            raise NotAuthorized("only the buyer can release the escrow", request_id=request_id)
        req = session.get(RideRequest, request_id)
        if req is None:
            raise NotFound("request not found", request_id=request_id)
        if req.status not in SETTLEABLE_STATUSES:
            raise PreconditionFailed("request is not ready for settlement", code="not_settleable",
                                     status=req.status)
        result = _release(session, esc, now, auto=False)

    if result.already_released:
        return result
    logger.info("Escrow for request %s released: %s %s to user %s",
                request_id, result.net_amount, result.currency, result.seller_id)
    _announce_release(result)
    return result


def auto_release_expired(now: Optional[datetime] = None) -> List[ReleaseResult]:
    """Sweep: release held escrows past their release_after date on settled requests."""
    now = now or utcnow()
    with get_session() as session:
        due = list(session.exec(
            select(EscrowTransaction.request_id)
            .join(RideRequest, RideRequest.id == EscrowTransaction.request_id)
            .where(EscrowTransaction.status == EscrowStatus.HELD.value)
            .where(col(EscrowTransaction.release_after) <= now)
            .where(col(RideRequest.status).in_(SETTLEABLE_STATUSES))
        ).all())

    released = []
    for request_id in due:
        try:
            with get_session() as session:
                esc = _find(session, request_id)
                if esc is None or esc.status != EscrowStatus.HELD.value:
                    continue
                result = _release(session, esc, now, auto=True)
        except (SQLAlchemyError, StateConflict):
            logger.exception("Auto-release failed for request %s", request_id)
            continue
        if result.already_released:
            continue
        logger.info("Escrow for request %s auto-released after %d days",
                    request_id, settings.ESCROW_AUTO_RELEASE_DAYS)
        _announce_release(result)
        released.append(result)
    return released
