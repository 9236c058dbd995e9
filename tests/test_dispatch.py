"""
Dispatcher and driver search.
Covers:
- Scenario A: nearest, well-rated driver wins and is assigned
- Single assignment: a second dispatch on an assigned request is a no-op
- Empty search -> no_driver_available with a priority-scaled retry hint
- Search filters: freshness, availability, credits, service type, vehicle class, radius
- Fail-closed search and best-effort notifications
"""
from datetime import timedelta, timezone

import pytest
from sqlalchemy.exc import SQLAlchemyError

import dispatch
import locations
import notifications
from conftest import KINSHASA, make_user, make_driver, make_request, load
from db import get_session
from errors import NotFound, InvalidInput
from geo import destination_point
from models import DriverLocation, DriverCredit, RideRequest, CreditLedgerEntry, utcnow


def scenario_a():
    client = make_user("client")
    near = make_driver(2.0, rating=4.8, verified=True, name="near")
    mid = make_driver(5.0, bearing=200, rating=4.0, verified=True, name="mid")
    far = make_driver(9.0, bearing=300, rating=4.9, verified=True, name="far")
    req = make_request(client.id, pickup=KINSHASA)
    return client, req, near, mid, far


# ────────────────────────── direct dispatch ─────────────────────────────────

def test_scenario_a_assigns_nearest_best_rated_driver():
    client, req, near, mid, far = scenario_a()
    result = dispatch.dispatch(req.id)
    assert result.assigned
    assert result.driver_id == near
    assert result.status == "driver_assigned"
    assert result.distance_km == pytest.approx(2.0, abs=0.01)
    assert result.eta_minutes == 5
    assert result.candidates == 3
    assert result.search_radius_km == 10.0

    stored = load(RideRequest, req.id)
    assert stored.status == "driver_assigned"
    assert stored.driver_id == near
    assert stored.assigned_at is not None
    assert stored.agreed_price == 5000
    assert load(DriverLocation, near).is_available is False
    assert load(DriverLocation, mid).is_available is True


def test_dispatch_does_not_touch_credits():
    client, req, near, _, _ = scenario_a()
    dispatch.dispatch(req.id)
    assert load(DriverCredit, near).rides_remaining == 10
    with get_session() as session:
        assert session.query(CreditLedgerEntry).count() == 0


def test_stored_timestamps_come_back_in_utc():
    client, req, near, _, _ = scenario_a()
    dispatch.dispatch(req.id)
    stored = load(RideRequest, req.id)
    assert stored.created_at.tzinfo is not None
    assert stored.assigned_at.utcoffset() == timedelta(0)
    assert load(DriverLocation, near).last_ping.tzinfo == timezone.utc
    assert stored.assigned_at >= stored.created_at


def test_assigned_driver_gets_exclusive_expiring_notification():
    client, req, near, mid, far = scenario_a()
    before = utcnow()
    dispatch.dispatch(req.id)
    driver_notes = notifications.pending_for(near)
    assert [n.kind for n in driver_notes] == ["ride_request"]
    expires = driver_notes[0].expires_at
    assert before + timedelta(seconds=110) < expires < utcnow() + timedelta(seconds=130)
    # nobody else hears about it
    assert notifications.pending_for(mid) == []
    assert notifications.pending_for(far) == []
    assert "driver_assigned" in [n.kind for n in notifications.pending_for(client.id)]


def test_assignment_notification_expires():
    client, req, near, _, _ = scenario_a()
    dispatch.dispatch(req.id)
    later = utcnow() + timedelta(minutes=3)
    assert notifications.pending_for(near, now=later) == []


def test_second_dispatch_is_noop():
    client, req, near, mid, far = scenario_a()
    first = dispatch.dispatch(req.id)
    second = dispatch.dispatch(req.id)
    assert first.assigned
    assert not second.assigned
    assert second.reason == "already_assigned"
    assert second.driver_id == near
    assert load(RideRequest, req.id).driver_id == near
    # the runner-up was never claimed
    assert load(DriverLocation, mid).is_available is True


def test_dispatch_publishes_request_update(published):
    client, req, near, _, _ = scenario_a()
    dispatch.dispatch(req.id)
    updates = [p for ch, p in published if ch == "request-updates"]
    assert updates[-1]["event"] == "driver_assigned"
    assert updates[-1]["request"]["driver_id"] == near


def test_dispatch_unknown_request():
    with pytest.raises(NotFound):
        dispatch.dispatch(424242)


def test_dispatch_uses_stored_pickup_when_caller_point_is_bad():
    client, req, near, _, _ = scenario_a()
    result = dispatch.dispatch(req.id, lat=float("nan"), lng=15.3)
    assert result.assigned
    assert result.driver_id == near


def test_busy_top_candidate_moves_to_next(monkeypatch):
    client, req, near, mid, far = scenario_a()
    stale = locations.find_nearby_drivers(KINSHASA, 10.0, "taxi")
    # someone else grabs the best driver after our search
    with get_session() as session:
        loc = session.get(DriverLocation, near)
        loc.is_available = False
        session.add(loc)
        session.commit()
    monkeypatch.setattr(dispatch, "find_nearby_drivers", lambda *a, **kw: stale)
    result = dispatch.dispatch(req.id)
    assert result.assigned
    assert result.driver_id == mid


def test_assign_race_lost_rolls_back_driver_claim():
    client = make_user("c")
    d1 = make_driver(1.0, name="d1")
    d2 = make_driver(2.0, name="d2")
    req = make_request(client.id)
    now = utcnow()
    with get_session() as session:
        assert dispatch.assign(session, req.id, d1, now) == dispatch.ASSIGNED
        session.commit()
    with get_session() as session:
        assert dispatch.assign(session, req.id, d2, now) == dispatch.RACE_LOST
        session.rollback()
    assert load(DriverLocation, d2).is_available is True
    assert load(RideRequest, req.id).driver_id == d1


def test_assign_busy_driver():
    client = make_user("c")
    d1 = make_driver(1.0, available=False)
    req = make_request(client.id)
    with get_session() as session:
        assert dispatch.assign(session, req.id, d1, utcnow()) == dispatch.DRIVER_BUSY
    assert load(RideRequest, req.id).status == "pending"


# ────────────────────────── no driver ───────────────────────────────────────

@pytest.mark.parametrize("priority,backoff", [("normal", 60), ("high", 30), ("urgent", 15)])
def test_no_driver_gives_retry_hint(priority, backoff):
    client = make_user("c")
    req = make_request(client.id, priority=priority)
    result = dispatch.dispatch(req.id)
    assert not result.assigned
    assert result.status == "no_driver_available"
    assert result.reason == "no_driver_available"
    assert result.retry_after_seconds == backoff
    assert load(RideRequest, req.id).status == "no_driver_available"
    assert "no_driver_available" in [n.kind for n in notifications.pending_for(client.id)]


def test_retry_after_no_driver_reopens_and_assigns():
    client = make_user("c")
    req = make_request(client.id)
    assert dispatch.dispatch(req.id).status == "no_driver_available"
    driver = make_driver(3.0)
    result = dispatch.dispatch(req.id)
    assert result.assigned
    assert result.driver_id == driver


def test_urgent_priority_widens_search():
    client = make_user("c")
    make_driver(12.0)
    normal = make_request(client.id, priority="normal")
    assert not dispatch.dispatch(normal.id).assigned
    urgent = make_request(client.id, priority="urgent")
    result = dispatch.dispatch(urgent.id)
    assert result.assigned
    assert result.search_radius_km == 25.0


def test_priority_override_on_dispatch():
    client = make_user("c")
    make_driver(12.0)
    req = make_request(client.id)
    assert dispatch.dispatch(req.id, priority="high").assigned


def test_invalid_priority_rejected():
    client = make_user("c")
    req = make_request(client.id)
    with pytest.raises(InvalidInput):
        dispatch.dispatch(req.id, priority="whenever")


# ────────────────────────── driver search filters ───────────────────────────

def test_stale_driver_excluded():
    make_driver(1.0, last_ping=utcnow() - timedelta(minutes=5))
    assert locations.find_nearby_drivers(KINSHASA, 10.0, "taxi") == []


def test_search_across_the_antimeridian():
    pickup = (-17.0, 179.99)
    east = make_driver(3.0, bearing=90, origin=pickup)
    assert load(DriverLocation, east).lng < 0
    found = locations.find_nearby_drivers(pickup, 10.0, "taxi")
    assert [c.driver_id for c in found] == [east]
    assert found[0].distance_km == pytest.approx(3.0, abs=0.01)


def test_unavailable_and_offline_drivers_excluded():
    make_driver(1.0, available=False)
    make_driver(1.5, online=False)
    assert locations.find_nearby_drivers(KINSHASA, 10.0, "taxi") == []


def test_credit_gating():
    make_driver(1.0, credits=0, name="broke")
    make_driver(1.5, credits=None, name="no-plan")
    ok = make_driver(2.0, credits=1, name="ok")
    found = locations.find_nearby_drivers(KINSHASA, 10.0, "taxi")
    assert [c.driver_id for c in found] == [ok]
    assert found[0].rides_remaining == 1


def test_expired_plan_excluded():
    d = make_driver(1.0)
    with get_session() as session:
        credit = session.get(DriverCredit, d)
        credit.plan_end = utcnow() - timedelta(days=1)
        session.add(credit)
        session.commit()
    assert locations.find_nearby_drivers(KINSHASA, 10.0, "taxi") == []


def test_service_type_and_vehicle_class_filters():
    taxi = make_driver(1.0, service_type="taxi")
    moto = make_driver(1.0, bearing=10, service_type="delivery", vehicle_class="moto")
    make_driver(1.0, bearing=20, service_type="delivery", vehicle_class="truck")
    assert [c.driver_id for c in locations.find_nearby_drivers(KINSHASA, 10.0, "taxi")] == [taxi]
    found = locations.find_nearby_drivers(KINSHASA, 10.0, "delivery", vehicle_class="moto")
    assert [c.driver_id for c in found] == [moto]


def test_results_sorted_by_distance_and_within_radius():
    d3 = make_driver(3.0, bearing=10)
    d1 = make_driver(1.0, bearing=100)
    d2 = make_driver(2.0, bearing=200)
    make_driver(10.5, bearing=300)
    found = locations.find_nearby_drivers(KINSHASA, 10.0, "taxi")
    assert [c.driver_id for c in found] == [d1, d2, d3]
    assert all(c.distance_km <= 10.0 for c in found)


def test_search_fails_closed(monkeypatch):
    make_driver(1.0)

    def broken():
        raise SQLAlchemyError("connection lost")

    monkeypatch.setattr(locations, "get_session", broken)
    assert locations.find_nearby_drivers(KINSHASA, 10.0, "taxi") == []


def test_dispatch_with_failed_search_reports_no_driver(monkeypatch):
    client = make_user("c")
    make_driver(1.0)
    req = make_request(client.id)

    def broken():
        raise SQLAlchemyError("connection lost")

    monkeypatch.setattr(locations, "get_session", broken)
    result = dispatch.dispatch(req.id)
    assert not result.assigned
    assert result.retry_after_seconds == 60


def test_notification_failure_does_not_undo_assignment(monkeypatch):
    client, req, near, _, _ = scenario_a()

    def broken():
        raise SQLAlchemyError("notifications table locked")

    monkeypatch.setattr(notifications, "get_session", broken)
    result = dispatch.dispatch(req.id)
    assert result.assigned
    assert load(RideRequest, req.id).driver_id == near


# ────────────────────────── locations ───────────────────────────────────────

def test_update_location_upserts_and_refreshes_ping():
    d = make_driver(1.0)
    lat, lng = destination_point(KINSHASA[0], KINSHASA[1], 0, 0.5)
    loc = locations.update_location(d, lat, lng, heading=90.0, speed=8.5)
    assert loc.lat == pytest.approx(lat, abs=1e-6)
    assert loc.heading == 90.0
    assert loc.is_online is True


def test_update_location_unknown_driver():
    with pytest.raises(NotFound):
        locations.update_location(999, -4.3, 15.3)


def test_update_location_rejects_bad_coordinates():
    d = make_driver(1.0)
    with pytest.raises(InvalidInput):
        locations.update_location(d, 123.0, 15.3)


def test_going_offline_clears_availability():
    d = make_driver(1.0)
    loc = locations.set_online(d, False)
    assert loc.is_online is False
    assert loc.is_available is False


# ────────────────────────── create_request ──────────────────────────────────

def test_create_request_estimates_fare_from_destination():
    client = make_user("c")
    dest = destination_point(KINSHASA[0], KINSHASA[1], 90, 10.0)
    req = dispatch.create_request(client.id, KINSHASA, destination=dest)
    assert req.status == "pending"
    assert req.estimated_price == 5000


def test_create_delivery_request_maps_vehicle_class():
    client = make_user("c")
    req = dispatch.create_request(client.id, KINSHASA, service_type="delivery", delivery_type="flash")
    assert req.vehicle_class == "moto"


def test_create_request_validation():
    client = make_user("c")
    with pytest.raises(NotFound):
        dispatch.create_request(9999, KINSHASA)
    with pytest.raises(InvalidInput):
        dispatch.create_request(client.id, (95.0, 15.0))
    with pytest.raises(InvalidInput):
        dispatch.create_request(client.id, KINSHASA, estimated_price=-10)
    with pytest.raises(InvalidInput):
        dispatch.create_request(client.id, None)
