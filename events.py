"""In-process change notification on named channels."""
import logging
from collections import defaultdict
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

CHANNEL_REQUEST_UPDATES = "request-updates"
CHANNEL_OFFER_UPDATES = "offer-updates"
CHANNEL_ESCROW_UPDATES = "escrow-updates"
CHANNEL_NOTIFICATIONS = "notifications"

ALL_CHANNELS = [
    CHANNEL_REQUEST_UPDATES,
    CHANNEL_OFFER_UPDATES,
    CHANNEL_ESCROW_UPDATES,
    CHANNEL_NOTIFICATIONS,
]

_subscribers: Dict[str, List[Callable[[dict], None]]] = defaultdict(list)


def subscribe(channel: str, handler: Callable[[dict], None]) -> None:
    _subscribers[channel].append(handler)


def unsubscribe(channel: str, handler: Callable[[dict], None]) -> None:
    if handler in _subscribers.get(channel, []):
        _subscribers[channel].remove(handler)


def clear() -> None:
    _subscribers.clear()


def publish(channel: str, payload: dict) -> int:
    """Deliver payload to every subscriber of channel; returns how many succeeded."""
    delivered = 0
    for handler in list(_subscribers.get(channel, [])):
        try:
            handler(payload)
            delivered += 1
        except Exception:
            logger.exception("Subscriber failed on channel %s", channel)
    return delivered
