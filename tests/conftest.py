import os
import sys

import pytest
from sqlmodel import SQLModel

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import db as db_mod  # noqa: E402
import events  # noqa: E402
from geo import destination_point  # noqa: E402
from models import User, DriverProfile, DriverLocation, DriverCredit, RideRequest, utcnow  # noqa: E402

KINSHASA = (-4.3217, 15.3069)


# ────────────────────────── fixtures ────────────────────────────────────────

@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Each test runs against a fresh SQLite file database."""
    new_engine = db_mod.make_engine(f"sqlite:///{tmp_path}/test.db")
    monkeypatch.setattr(db_mod, "engine", new_engine)
    SQLModel.metadata.create_all(new_engine)
    yield new_engine
    SQLModel.metadata.drop_all(new_engine)
    new_engine.dispose()


@pytest.fixture(autouse=True)
def clean_events():
    events.clear()
    yield
    events.clear()


@pytest.fixture
def published():
    """Collect every payload published on any channel."""
    seen = []
    for channel in events.ALL_CHANNELS:
        events.subscribe(channel, lambda payload, channel=channel: seen.append((channel, payload)))
    return seen


# ────────────────────────── factories ───────────────────────────────────────

def make_user(name="Alice", role="client"):
    with db_mod.get_session() as session:
        u = User(name=name, role=role)
        session.add(u)
        session.commit()
        session.refresh(u)
        return u


def make_driver(distance_km=1.0, bearing=90.0, rating=4.5, total_rides=10, verified=True,
                credits=10, service_type="taxi", vehicle_class="standard", available=True,
                online=True, last_ping=None, origin=KINSHASA, name=None):
    """A driver placed distance_km from origin along bearing; returns the driver id."""
    u = make_user(name or f"driver-{distance_km}", role="driver")
    lat, lng = destination_point(origin[0], origin[1], bearing, distance_km)
    with db_mod.get_session() as session:
        session.add(DriverProfile(
            driver_id=u.id,
            display_name=u.name,
            service_type=service_type,
            vehicle_class=vehicle_class,
            rating_average=rating,
            total_rides=total_rides,
            is_verified=verified,
        ))
        session.add(DriverLocation(
            driver_id=u.id,
            lat=lat,
            lng=lng,
            is_online=online,
            is_available=available,
            last_ping=last_ping or utcnow(),
        ))
        if credits is not None:
            session.add(DriverCredit(driver_id=u.id, rides_remaining=credits))
        session.commit()
    return u.id


def make_request(requester_id, pickup=KINSHASA, status="pending", service_type="taxi",
                 priority="normal", estimated_price=5000, driver_id=None, assigned_at=None,
                 vehicle_class=None):
    with db_mod.get_session() as session:
        r = RideRequest(
            requester_id=requester_id,
            pickup_lat=pickup[0],
            pickup_lng=pickup[1],
            service_type=service_type,
            vehicle_class=vehicle_class,
            priority=priority,
            status=status,
            estimated_price=estimated_price,
            driver_id=driver_id,
            assigned_at=assigned_at,
        )
        session.add(r)
        session.commit()
        session.refresh(r)
        return r


def load(model, key):
    with db_mod.get_session() as session:
        return session.get(model, key)
