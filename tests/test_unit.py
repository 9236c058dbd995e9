"""
Unit tests for the pure pieces of the engine.
Covers:
- Haversine distance, coordinate validation and fallback
- Scoring formula terms, clamping and priority multipliers
- Ranking order and tie-breaks
- Fare estimate, bidding band and fee split
- Config parsing and priority radius / backoff tables
"""
import math

import pytest

from config import Settings, _parse_map, settings
from errors import InvalidInput
from geo import (
    haversine_km, haversine_m, validate_point, resolve_point, destination_point,
    bounding_box, eta_minutes,
)
from locations import DriverCandidate, vehicle_class_for_delivery
from pricing import estimate_fare, offer_bounds, within_bounds, split_amount
from scoring import score_driver, rank_candidates, parse_priority


def cand(driver_id=1, distance_km=1.0, rating=4.0, rides=0, verified=False):
    return DriverCandidate(
        driver_id=driver_id, lat=0.0, lng=0.0, distance_km=distance_km,
        rating_average=rating, total_rides=rides, is_verified=verified,
    )


# ────────────────────────── geo ─────────────────────────────────────────────

def test_haversine_zero():
    assert haversine_km((-4.3217, 15.3069), (-4.3217, 15.3069)) == 0.0


def test_haversine_known_distance():
    # Kinshasa to Brazzaville across the river is just under 10 km
    kinshasa = (-4.3217, 15.3069)
    brazzaville = (-4.2634, 15.2429)
    d = haversine_km(kinshasa, brazzaville)
    assert 8 < d < 10


def test_haversine_m_matches_km():
    a, b = (0.0, 0.0), (0.0, 0.001)
    assert haversine_m(a, b) == pytest.approx(haversine_km(a, b) * 1000)


def test_destination_point_round_trips_distance():
    lat, lng = destination_point(-4.3217, 15.3069, 45.0, 5.0)
    assert haversine_km((-4.3217, 15.3069), (lat, lng)) == pytest.approx(5.0, abs=1e-6)


@pytest.mark.parametrize("lat,lng", [
    (91, 0), (-90.5, 0), (0, 180.1), (0, -181), (float("nan"), 0), (0, float("inf")), (None, 1), ("x", 1),
])
def test_validate_point_rejects_bad_coordinates(lat, lng):
    with pytest.raises(InvalidInput):
        validate_point(lat, lng)


def test_validate_point_rounds_and_accepts_strings():
    assert validate_point("-4.32171234", "15.30691234") == (-4.321712, 15.306912)


def test_resolve_point_falls_back_to_stored_point():
    assert resolve_point((float("nan"), 15.3), (-4.3217, 15.3069)) == (-4.3217, 15.3069)
    assert resolve_point(None, (-4.3217, 15.3069)) == (-4.3217, 15.3069)


def test_resolve_point_without_usable_point_raises():
    with pytest.raises(InvalidInput):
        resolve_point((200, 0), None)
    with pytest.raises(InvalidInput):
        resolve_point(None, None)


def test_bounding_box_contains_circle():
    center = (-4.3217, 15.3069)
    min_lat, max_lat, ranges = bounding_box(center, 10.0)
    assert len(ranges) == 1
    for bearing in range(0, 360, 30):
        lat, lng = destination_point(center[0], center[1], bearing, 9.99)
        assert min_lat <= lat <= max_lat
        assert any(lo <= lng <= hi for lo, hi in ranges)


def test_bounding_box_splits_at_antimeridian():
    center = (-17.0, 179.95)
    min_lat, max_lat, ranges = bounding_box(center, 10.0)
    assert len(ranges) == 2
    assert ranges[0][1] == 180.0
    assert ranges[1][0] == -180.0
    for bearing in range(0, 360, 30):
        lat, lng = destination_point(center[0], center[1], bearing, 9.99)
        assert any(lo <= lng <= hi for lo, hi in ranges)
    lat, lng = destination_point(center[0], center[1], 90, 8.0)
    assert lng < 0
    assert any(lo <= lng <= hi for lo, hi in ranges)


def test_bounding_box_near_pole_covers_all_longitudes():
    assert bounding_box((89.99, 10.0), 5.0)[2] == [(-180.0, 180.0)]


def test_eta_minutes():
    assert eta_minutes(2.0, 2.5) == 5
    assert eta_minutes(2.1, 2.5) == 6
    assert eta_minutes(0.0, 2.5) == 1


# ────────────────────────── scoring ─────────────────────────────────────────

def test_score_formula_terms():
    # distance 2 km -> 80, rating 4.8 -> 96, 40 rides -> 20, verified -> 20
    assert score_driver(cand(distance_km=2.0, rating=4.8, rides=40, verified=True)) == pytest.approx(216.0)


def test_score_distance_term_floors_at_zero():
    far = score_driver(cand(distance_km=15.0, rating=0.0))
    assert far == 0.0


def test_score_experience_capped_at_50():
    a = score_driver(cand(rides=100))
    b = score_driver(cand(rides=5000))
    assert a == b


def test_score_priority_multiplier():
    base = score_driver(cand(), "normal")
    assert score_driver(cand(), "high") == pytest.approx(base * 1.2)
    assert score_driver(cand(), "urgent") == pytest.approx(base * 1.3)


def test_rank_scenario_a_nearest_wins():
    ranked = rank_candidates([
        cand(1, distance_km=2.0, rating=4.8, verified=True),
        cand(2, distance_km=5.0, rating=4.0, verified=True),
        cand(3, distance_km=9.0, rating=4.9, verified=True),
    ])
    # 196 vs 150 vs 128
    assert [c.driver_id for _, c in ranked] == [1, 2, 3]


def test_rank_ties_break_on_distance_then_id():
    # same score: 1 km/4.0 rating == 2 km/4.5 rating (90+80 vs 80+90)
    ranked = rank_candidates([
        cand(7, distance_km=2.0, rating=4.5),
        cand(9, distance_km=1.0, rating=4.0),
        cand(4, distance_km=1.0, rating=4.0),
    ])
    assert [c.driver_id for _, c in ranked] == [4, 9, 7]


def test_parse_priority():
    assert parse_priority(None) == "normal"
    assert parse_priority("URGENT") == "urgent"
    with pytest.raises(InvalidInput):
        parse_priority("asap")


# ────────────────────────── pricing ─────────────────────────────────────────

def test_estimate_fare_standard():
    assert estimate_fare(10.0, "standard") == 2000 + 300 * 10


def test_estimate_fare_vehicle_multiplier():
    assert estimate_fare(10.0, "truck") == 10000
    assert estimate_fare(10.0, "moto") < estimate_fare(10.0, None)


def test_offer_bounds():
    assert offer_bounds(5000) == (2500.0, 7500.0)
    assert within_bounds(7500, 5000)
    assert within_bounds(2500, 5000)
    assert not within_bounds(8000, 5000)
    assert not within_bounds(2499, 5000)


def test_split_amount():
    assert split_amount(10000, 500) == (500, 9500)
    fee, net = split_amount(4010, 500)
    assert fee + net == 4010
    assert fee == 201  # 200.5 rounds half up
    assert split_amount(100, 0) == (0, 100)


# ────────────────────────── config ──────────────────────────────────────────

def test_radius_monotonic_with_priority():
    assert settings.radius_for("normal") <= settings.radius_for("high") <= settings.radius_for("urgent")


def test_backoff_shrinks_with_priority():
    assert settings.backoff_for("normal") >= settings.backoff_for("high") >= settings.backoff_for("urgent")


def test_parse_map_skips_garbage_and_falls_back():
    assert _parse_map("normal=5,high=oops,urgent=9", {}) == {"normal": 5.0, "urgent": 9.0}
    assert _parse_map("", {"normal": 1.0}) == {"normal": 1.0}
    assert _parse_map(",,=", {"normal": 1.0}) == {"normal": 1.0}


def test_unknown_priority_uses_normal_radius():
    s = Settings()
    assert s.radius_for("weird") == s.radius_for("normal")
    assert math.isclose(s.multiplier_for("weird"), 1.0)


def test_delivery_vehicle_mapping():
    assert vehicle_class_for_delivery("flash") == "moto"
    assert vehicle_class_for_delivery("Flex") == "standard"
    assert vehicle_class_for_delivery("maxicharge") == "truck"
    assert vehicle_class_for_delivery(None) is None
