from typing import Iterable, List, Tuple

from config import settings
from errors import InvalidInput
from locations import DriverCandidate
from models import Priority


def parse_priority(value) -> str:
    if value is None or value == "":
        return Priority.NORMAL.value
    try:
        return Priority(str(value).lower()).value
    except ValueError:
        raise InvalidInput(f"unknown priority {value!r}", priority=value)


def score_driver(candidate: DriverCandidate, priority: str = "normal") -> float:
    """Linear, explainable score; every term is non-negative.

    distance  max(0, 100 - 10 * km)
    rating    20 * rating_average          (0..100)
    exp       min(50, 0.5 * total_rides)
    verified  20
    then multiplied by the priority multiplier.
    """
    distance_score = max(0.0, 100.0 - 10.0 * candidate.distance_km)
    rating_score = 20.0 * max(0.0, candidate.rating_average or 0.0)
    experience_score = min(50.0, 0.5 * max(0, candidate.total_rides or 0))
    verified_bonus = 20.0 if candidate.is_verified else 0.0
    total = distance_score + rating_score + experience_score + verified_bonus
    return total * settings.multiplier_for(priority)


def rank_candidates(candidates: Iterable[DriverCandidate], priority: str = "normal") -> List[Tuple[float, DriverCandidate]]:
    """(score, candidate) pairs, best first; ties go to the nearer driver, then the lower id."""
    scored = [(score_driver(c, priority), c) for c in candidates]
    scored.sort(key=lambda sc: (-sc[0], sc[1].distance_km, sc[1].driver_id))
    return scored
