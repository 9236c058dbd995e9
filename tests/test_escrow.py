"""
Escrow settlement.
Covers:
- Scenario D: hold, complete, release once, replay reports the original amount
- Only the buyer releases, only settleable requests release
- Cash escrows settle without a wallet credit
- Hold is created once per request
- Auto-release sweep after the holding period
"""
from datetime import timedelta

import pytest

import escrow
import notifications
from conftest import make_user, make_driver, make_request, load
from db import get_session
from errors import InvalidInput, NotAuthorized, NotFound, PreconditionFailed
from models import EscrowTransaction, RideRequest, Wallet, WalletTransaction, utcnow


def settled_ride(status="completed", price=5000):
    client = make_user("buyer")
    driver = make_driver(1.0)
    req = make_request(client.id, status=status, driver_id=driver, estimated_price=price)
    return client, driver, req


def wallet_of(user_id):
    with get_session() as session:
        return session.query(Wallet).filter(Wallet.user_id == user_id).first()


def wallet_rows(user_id):
    with get_session() as session:
        return session.query(WalletTransaction).filter(WalletTransaction.user_id == user_id).all()


def test_scenario_d():
    client, driver, req = settled_ride()
    esc = escrow.hold_funds(req.id, client.id, driver, 5000)
    assert esc.status == "held"
    assert (esc.platform_fee, esc.net_amount) == (250, 4750)
    assert esc.currency == "CDF"

    first = escrow.release_escrow(req.id, client.id)
    assert first.released
    assert not first.already_released
    assert first.net_amount == 4750
    assert first.wallet_balance == 4750
    assert wallet_of(driver).balance == 4750

    second = escrow.release_escrow(req.id, client.id)
    assert second.released
    assert second.already_released
    assert second.net_amount == 4750
    assert second.wallet_balance == 4750
    assert wallet_of(driver).balance == 4750

    rows = wallet_rows(driver)
    assert len(rows) == 1
    assert (rows[0].amount, rows[0].balance_before, rows[0].balance_after) == (4750, 0, 4750)
    assert rows[0].reference_id == req.id
    stored = load(EscrowTransaction, esc.id)
    assert stored.status == "released"
    assert stored.released_at is not None
    assert not stored.auto_released
    assert load(RideRequest, req.id).settled_at is not None
    assert "payment_released" in [n.kind for n in notifications.pending_for(driver)]


def test_release_adds_to_existing_wallet():
    client, driver, req = settled_ride()
    with get_session() as session:
        session.add(Wallet(user_id=driver, balance=1000))
        session.commit()
    escrow.hold_funds(req.id, client.id, driver, 5000)
    result = escrow.release_escrow(req.id, client.id)
    assert result.wallet_balance == 5750
    row = wallet_rows(driver)[0]
    assert (row.balance_before, row.balance_after) == (1000, 5750)


def test_only_buyer_can_release():
    client, driver, req = settled_ride()
    escrow.hold_funds(req.id, client.id, driver, 5000)
    with pytest.raises(NotAuthorized):
        escrow.release_escrow(req.id, driver)
    assert load(EscrowTransaction, 1).status == "held"


def test_release_requires_settleable_request():
    client, driver, req = settled_ride(status="in_progress")
    escrow.hold_funds(req.id, client.id, driver, 5000)
    with pytest.raises(PreconditionFailed) as exc:
        escrow.release_escrow(req.id, client.id)
    assert exc.value.code == "not_settleable"
    assert wallet_of(driver) is None
    assert load(EscrowTransaction, 1).status == "held"


def test_delivered_requests_are_settleable():
    client, driver, req = settled_ride(status="delivered")
    escrow.hold_funds(req.id, client.id, driver, 5000)
    assert escrow.release_escrow(req.id, client.id).released


def test_release_without_escrow():
    client, driver, req = settled_ride()
    with pytest.raises(NotFound):
        escrow.release_escrow(req.id, client.id)


def test_cash_escrow_releases_without_credit():
    client, driver, req = settled_ride()
    esc = escrow.hold_funds(req.id, client.id, driver, 5000, payment_method="cash")
    assert esc.status == "pending_cash"
    result = escrow.release_escrow(req.id, client.id)
    assert result.released
    assert result.wallet_balance is None
    assert wallet_of(driver) is None
    assert load(EscrowTransaction, esc.id).status == "released"


def test_hold_is_created_once():
    client, driver, req = settled_ride()
    first = escrow.hold_funds(req.id, client.id, driver, 5000)
    second = escrow.hold_funds(req.id, client.id, driver, 9000)
    assert second.id == first.id
    assert second.total_amount == 5000
    with get_session() as session:
        assert session.query(EscrowTransaction).count() == 1


@pytest.mark.parametrize("amount,method", [(0, "wallet"), (-5, "wallet"), ("abc", "wallet"), (100, "card")])
def test_hold_validation(amount, method):
    client, driver, req = settled_ride()
    with pytest.raises(InvalidInput):
        escrow.hold_funds(req.id, client.id, driver, amount, payment_method=method)


def test_hold_for_request_uses_agreed_price():
    client, driver, req = settled_ride(status="driver_assigned")
    with get_session() as session:
        r = session.get(RideRequest, req.id)
        r.agreed_price = 4000
        session.add(r)
        session.commit()
    esc = escrow.hold_for_request(req.id)
    assert esc.buyer_id == client.id
    assert esc.seller_id == driver
    assert esc.total_amount == 4000
    assert esc.net_amount == 3800


def test_hold_for_request_needs_a_driver():
    client = make_user("c")
    req = make_request(client.id)
    with pytest.raises(PreconditionFailed) as exc:
        escrow.hold_for_request(req.id)
    assert exc.value.code == "no_driver"


def test_auto_release_after_holding_period():
    client, driver, req = settled_ride()
    start = utcnow()
    escrow.hold_funds(req.id, client.id, driver, 5000, now=start)

    assert escrow.auto_release_expired(now=start + timedelta(days=6)) == []
    released = escrow.auto_release_expired(now=start + timedelta(days=7, seconds=1))
    assert [r.request_id for r in released] == [req.id]
    assert released[0].auto_released
    assert wallet_of(driver).balance == 4750
    assert load(EscrowTransaction, 1).auto_released

    # nothing left to sweep, and a manual release is now a replay
    assert escrow.auto_release_expired(now=start + timedelta(days=8)) == []
    assert escrow.release_escrow(req.id, client.id).already_released


def test_auto_release_skips_unsettled_requests():
    client, driver, req = settled_ride(status="in_progress")
    start = utcnow()
    escrow.hold_funds(req.id, client.id, driver, 5000, now=start)
    assert escrow.auto_release_expired(now=start + timedelta(days=30)) == []


def test_release_event_published(published):
    client, driver, req = settled_ride()
    escrow.hold_funds(req.id, client.id, driver, 5000)
    escrow.release_escrow(req.id, client.id)
    escrow.release_escrow(req.id, client.id)
    kinds = [p["event"] for ch, p in published if ch == "escrow-updates"]
    assert kinds == ["held", "released"]
