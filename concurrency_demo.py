"""Race demo: several dispatch calls and an offer acceptance hit the same
request at once through the in-process ASGI app. Exactly one of them assigns
a driver; the rest come back as no-ops.
Run: python concurrency_demo.py  (after python sample_data.py)
"""
import asyncio

import httpx
from sqlmodel import select

from bidding import open_bidding, submit_offer
from config import settings
from db import get_session
from locations import find_nearby_drivers
from main import app
from models import RideRequest


async def run():
    session = get_session()
    req = session.exec(select(RideRequest).where(RideRequest.status == "pending")).first()
    session.close()
    if req is None:
        print("No pending request; run sample_data.py first")
        return

    window = open_bidding(req.id, req.requester_id)
    print(f"Bidding open on request {req.id}, {window.drivers_notified} driver(s) notified")
    offer_id = None
    nearby = find_nearby_drivers(
        (req.pickup_lat, req.pickup_lng), settings.radius_for(req.priority), req.service_type
    )
    if nearby:
        offer_id = submit_offer(req.id, nearby[-1].driver_id).id

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        tasks = [client.post(f"/requests/{req.id}/dispatch") for _ in range(5)]
        if offer_id is not None:
            tasks.append(client.post(f"/offers/{offer_id}/accept", json={"requester_id": req.requester_id}))
        res = await asyncio.gather(*tasks)
        for r in res:
            print(r.status_code, r.json())
        final = (await client.get(f"/requests/{req.id}")).json()
    print("Final:", final["status"], "driver", final["driver_id"], "price", final["agreed_price"])


if __name__ == "__main__":
    asyncio.run(run())
