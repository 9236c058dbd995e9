import contextlib
import json
import logging

from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.requests import Request
from starlette.routing import Route

import arrival
import bidding
import credits
import dispatch
import escrow
import lifecycle
import locations
import notifications
from config import settings
from db import init_db
from errors import DispatchError, InvalidInput
from models import iso

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app):
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    logger.info("Dispatch service started")
    yield


async def handle_dispatch_error(request: Request, exc: DispatchError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def _payload(request: Request) -> dict:
    body = await request.body()
    if not body:
        return {}
    try:
        payload = json.loads(body)
    except ValueError:
        raise InvalidInput("request body must be JSON")
    if not isinstance(payload, dict):
        raise InvalidInput("request body must be a JSON object")
    return payload


def _require(payload: dict, *keys):
    for k in keys:
        if payload.get(k) is None:
            raise InvalidInput(f"missing {k}")


def _int(value, name: str):
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"{name} must be an integer", **{name: value})


def _path_id(request: Request, name: str = "request_id") -> int:
    return _int(request.path_params[name], name)


async def create_request(request: Request):
    payload = await _payload(request)
    _require(payload, "requester_id", "pickup_lat", "pickup_lng")
    destination = None
    if payload.get("dest_lat") is not None or payload.get("dest_lng") is not None:
        destination = (payload.get("dest_lat"), payload.get("dest_lng"))
    req = dispatch.create_request(
        requester_id=_int(payload["requester_id"], "requester_id"),
        pickup=(payload["pickup_lat"], payload["pickup_lng"]),
        destination=destination,
        service_type=payload.get("service_type", "taxi"),
        vehicle_class=payload.get("vehicle_class"),
        delivery_type=payload.get("delivery_type"),
        priority=payload.get("priority", "normal"),
        estimated_price=payload.get("estimated_price"),
    )
    return JSONResponse(dispatch.request_to_dict(req), status_code=201)


async def get_request(request: Request):
    req = dispatch.get_request(_path_id(request))
    return JSONResponse(dispatch.request_to_dict(req))


async def dispatch_request(request: Request):
    payload = await _payload(request)
    result = dispatch.dispatch(
        _path_id(request),
        lat=payload.get("lat"),
        lng=payload.get("lng"),
        priority=payload.get("priority"),
        service_type=payload.get("service_type"),
        vehicle_class=payload.get("vehicle_class"),
    )
    return JSONResponse(result.to_dict())


async def open_bidding(request: Request):
    payload = await _payload(request)
    _require(payload, "requester_id")
    window = bidding.open_bidding(
        _path_id(request),
        _int(payload["requester_id"], "requester_id"),
        estimated_price=_int(payload.get("estimated_price"), "estimated_price"),
        proposed_price=_int(payload.get("proposed_price"), "proposed_price"),
    )
    return JSONResponse(window.to_dict())


async def raise_price(request: Request):
    payload = await _payload(request)
    _require(payload, "requester_id")
    window = bidding.raise_price(_path_id(request), _int(payload["requester_id"], "requester_id"))
    return JSONResponse(window.to_dict())


async def fallback_to_dispatch(request: Request):
    payload = await _payload(request)
    _require(payload, "requester_id")
    result = bidding.fallback_to_dispatch(_path_id(request), _int(payload["requester_id"], "requester_id"))
    return JSONResponse(result.to_dict())


async def list_offers(request: Request):
    offers = bidding.list_offers(_path_id(request))
    return JSONResponse([bidding.offer_to_dict(o) for o in offers])


async def submit_offer(request: Request):
    payload = await _payload(request)
    _require(payload, "driver_id")
    offer = bidding.submit_offer(
        _path_id(request),
        _int(payload["driver_id"], "driver_id"),
        price=payload.get("price"),
        is_counter_offer=bool(payload.get("is_counter_offer", False)),
        message=payload.get("message"),
    )
    return JSONResponse(bidding.offer_to_dict(offer), status_code=201)


async def accept_offer(request: Request):
    payload = await _payload(request)
    _require(payload, "requester_id")
    result = bidding.accept_offer(_path_id(request, "offer_id"), _int(payload["requester_id"], "requester_id"))
    return JSONResponse(result.to_dict())


async def reject_offer(request: Request):
    payload = await _payload(request)
    _require(payload, "requester_id")
    offer = bidding.reject_offer(_path_id(request, "offer_id"), _int(payload["requester_id"], "requester_id"))
    return JSONResponse(bidding.offer_to_dict(offer))


async def confirm_arrival(request: Request):
    payload = await _payload(request)
    _require(payload, "driver_id", "lat", "lng")
    result = arrival.confirm_arrival(
        _path_id(request), _int(payload["driver_id"], "driver_id"), payload["lat"], payload["lng"]
    )
    return JSONResponse(result.to_dict())


async def start_trip(request: Request):
    payload = await _payload(request)
    _require(payload, "driver_id")
    req = lifecycle.start_trip(_path_id(request), _int(payload["driver_id"], "driver_id"))
    return JSONResponse(dispatch.request_to_dict(req))


async def complete_trip(request: Request):
    payload = await _payload(request)
    _require(payload, "driver_id")
    req = lifecycle.complete_trip(_path_id(request), _int(payload["driver_id"], "driver_id"))
    return JSONResponse(dispatch.request_to_dict(req))


async def cancel_request(request: Request):
    payload = await _payload(request)
    _require(payload, "user_id")
    req = lifecycle.cancel_request(
        _path_id(request), _int(payload["user_id"], "user_id"), reason=payload.get("reason")
    )
    return JSONResponse(dispatch.request_to_dict(req))


async def redispatch(request: Request):
    payload = await _payload(request)
    req = lifecycle.redispatch(_path_id(request), _int(payload.get("user_id"), "user_id"))
    return JSONResponse(dispatch.request_to_dict(req))


async def hold_escrow(request: Request):
    payload = await _payload(request)
    esc = escrow.hold_for_request(_path_id(request), payment_method=payload.get("payment_method", "wallet"))
    return JSONResponse(escrow.escrow_to_dict(esc), status_code=201)


async def get_escrow(request: Request):
    esc = escrow.get_escrow(_path_id(request))
    return JSONResponse(escrow.escrow_to_dict(esc))


async def release_escrow(request: Request):
    payload = await _payload(request)
    _require(payload, "confirmer_id")
    result = escrow.release_escrow(_path_id(request), _int(payload["confirmer_id"], "confirmer_id"))
    return JSONResponse(result.to_dict())


async def update_location(request: Request):
    driver_id = _path_id(request, "driver_id")
    payload = await _payload(request)
    _require(payload, "lat", "lng")
    loc = locations.update_location(
        driver_id,
        payload["lat"],
        payload["lng"],
        heading=payload.get("heading"),
        speed=payload.get("speed"),
        accuracy=payload.get("accuracy"),
        is_available=payload.get("is_available"),
    )
    return JSONResponse({
        "driver_id": loc.driver_id,
        "lat": loc.lat,
        "lng": loc.lng,
        "is_online": loc.is_online,
        "is_available": loc.is_available,
        "last_ping": iso(loc.last_ping),
    })


async def get_credits(request: Request):
    credit = credits.get_balance(_path_id(request, "driver_id"))
    return JSONResponse({
        "driver_id": credit.driver_id,
        "rides_remaining": credit.rides_remaining,
        "rides_used": credit.rides_used,
        "plan_start": iso(credit.plan_start),
        "plan_end": iso(credit.plan_end),
    })


async def user_notifications(request: Request):
    rows = notifications.pending_for(_path_id(request, "user_id"))
    return JSONResponse([
        {
            "id": n.id,
            "request_id": n.request_id,
            "kind": n.kind,
            "title": n.title,
            "message": n.message,
            "payload": n.payload,
            "expires_at": iso(n.expires_at),
            "created_at": iso(n.created_at),
        }
        for n in rows
    ])


async def sweep_offers(request: Request):
    return JSONResponse(bidding.expire_offers())


async def sweep_escrow(request: Request):
    released = escrow.auto_release_expired()
    return JSONResponse({"released": [r.to_dict() for r in released]})


routes = [
    Route("/requests", create_request, methods=["POST"]),
    Route("/requests/{request_id}", get_request, methods=["GET"]),
    Route("/requests/{request_id}/dispatch", dispatch_request, methods=["POST"]),
    Route("/requests/{request_id}/bidding", open_bidding, methods=["POST"]),
    Route("/requests/{request_id}/bidding/raise", raise_price, methods=["POST"]),
    Route("/requests/{request_id}/bidding/fallback", fallback_to_dispatch, methods=["POST"]),
    Route("/requests/{request_id}/offers", list_offers, methods=["GET"]),
    Route("/requests/{request_id}/offers", submit_offer, methods=["POST"]),
    Route("/offers/{offer_id}/accept", accept_offer, methods=["POST"]),
    Route("/offers/{offer_id}/reject", reject_offer, methods=["POST"]),
    Route("/requests/{request_id}/arrival", confirm_arrival, methods=["POST"]),
    Route("/requests/{request_id}/start", start_trip, methods=["POST"]),
    Route("/requests/{request_id}/complete", complete_trip, methods=["POST"]),
    Route("/requests/{request_id}/cancel", cancel_request, methods=["POST"]),
    Route("/requests/{request_id}/redispatch", redispatch, methods=["POST"]),
    Route("/requests/{request_id}/escrow", hold_escrow, methods=["POST"]),
    Route("/requests/{request_id}/escrow", get_escrow, methods=["GET"]),
    Route("/requests/{request_id}/escrow/release", release_escrow, methods=["POST"]),
    Route("/drivers/{driver_id}/location", update_location, methods=["POST"]),
    Route("/drivers/{driver_id}/credits", get_credits, methods=["GET"]),
    Route("/users/{user_id}/notifications", user_notifications, methods=["GET"]),
    Route("/sweeps/offers", sweep_offers, methods=["POST"]),
    Route("/sweeps/escrow", sweep_escrow, methods=["POST"]),
]

app = Starlette(
    debug=settings.DEBUG,
    routes=routes,
    exception_handlers={DispatchError: handle_dispatch_error},
    lifespan=lifespan,
)
