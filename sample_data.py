import random
from datetime import timedelta

from credits import activate_plan
from db import init_db, get_session
from geo import destination_point
from models import User, DriverProfile, DriverLocation, RideRequest, utcnow

CENTER = (-4.3217, 15.3069)  # Kinshasa, Gombe
VEHICLE_CLASSES = ["standard", "standard", "moto", "comfort"]


def seed(drivers=15, clients=10, requests=10):
    init_db()
    session = get_session()
    now = utcnow()

    client_users = [User(name=f"client{i}", role="client") for i in range(1, clients + 1)]
    driver_users = [User(name=f"driver{i}", role="driver") for i in range(1, drivers + 1)]
    session.add_all(client_users + driver_users)
    session.commit()
    for u in client_users + driver_users:
        session.refresh(u)

    # drivers scattered up to 12 km from the center, a few of them delivery riders
    for i, u in enumerate(driver_users):
        lat, lng = destination_point(CENTER[0], CENTER[1], random.uniform(0, 360), random.uniform(0.3, 12.0))
        service = "delivery" if i % 5 == 4 else "taxi"
        session.add(DriverProfile(
            driver_id=u.id,
            display_name=u.name,
            service_type=service,
            vehicle_class="moto" if service == "delivery" else random.choice(VEHICLE_CLASSES),
            rating_average=round(random.uniform(3.5, 5.0), 1),
            total_rides=random.randint(0, 250),
            is_verified=random.random() < 0.7,
        ))
        session.add(DriverLocation(driver_id=u.id, lat=lat, lng=lng, last_ping=now))
    driver_ids = [u.id for u in driver_users]
    session.commit()
    for driver_id in driver_ids:
        activate_plan(driver_id, random.choice([1, 5, 20]), plan_end=now + timedelta(days=30))

    for i in range(requests):
        u = client_users[i % len(client_users)]
        plat, plng = destination_point(CENTER[0], CENTER[1], random.uniform(0, 360), random.uniform(0, 8.0))
        dlat, dlng = destination_point(plat, plng, random.uniform(0, 360), random.uniform(1.0, 10.0))
        session.add(RideRequest(
            requester_id=u.id,
            pickup_lat=round(plat, 6),
            pickup_lng=round(plng, 6),
            dest_lat=round(dlat, 6),
            dest_lng=round(dlng, 6),
            priority=random.choice(["normal", "normal", "high", "urgent"]),
            estimated_price=random.choice([3000, 5000, 8000]),
        ))
    session.commit()
    session.close()
    print("Seeded sample data")


if __name__ == "__main__":
    seed()
