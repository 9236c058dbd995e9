from typing import Optional, Tuple

from config import settings


def estimate_fare(distance_km: float, vehicle_class: Optional[str] = None) -> int:
    """Reference fare used when the requester gives no estimate:
    price = (base + per_km * distance) * vehicle class multiplier
    """
    multiplier = settings.VEHICLE_CLASS_MULTIPLIERS.get((vehicle_class or "standard").lower(), 1.0)
    raw = (settings.BASE_FARE + settings.PER_KM_FARE * max(0.0, distance_km)) * multiplier
    return int(round(raw))


def offer_bounds(estimate: float) -> Tuple[float, float]:
    return estimate * settings.BID_MIN_FACTOR, estimate * settings.BID_MAX_FACTOR


def within_bounds(price: float, estimate: float) -> bool:
    low, high = offer_bounds(estimate)
    return low <= price <= high


def split_amount(total: int, fee_bps: int) -> Tuple[int, int]:
    """(platform_fee, net_amount) for a held total; fee rounds half up."""
    fee = (total * fee_bps + 5000) // 10000
    fee = min(max(fee, 0), total)
    return fee, total - fee
