import math

import pytest

from conftest import OFFICE_LAT, OFFICE_LNG
from core.config import GeofenceConfig
from core.errors import InvalidCoordinates
from services.geofence_service import GeofenceClassification, GeofenceEvaluator
from utils.geofence import haversine_dist


@pytest.mark.parametrize(
    "a, b",
    [
        ((OFFICE_LAT, OFFICE_LNG), (11.5620, 104.9160)),
        ((0.0, 0.0), (0.0, 1.0)),
        ((-33.8688, 151.2093), (51.5074, -0.1278)),
        ((89.9, 179.9), (-89.9, -179.9)),
    ],
)
def test_distance_is_symmetric(a, b):
    assert haversine_dist(*a, *b) == pytest.approx(haversine_dist(*b, *a))


def test_distance_to_self_is_zero():
    assert haversine_dist(OFFICE_LAT, OFFICE_LNG, OFFICE_LAT, OFFICE_LNG) == 0


def test_one_degree_of_longitude_on_equator():
    # 2 * pi * R / 360
    assert haversine_dist(0, 0, 0, 1) == pytest.approx(111194.93, abs=0.01)


def test_office_center_is_inside(evaluator):
    decision = evaluator.evaluate(OFFICE_LAT, OFFICE_LNG)

    assert decision.distance_meters == 0
    assert decision.classification == GeofenceClassification.INSIDE
    assert decision.is_inside


def test_eleven_meters_north_is_outside_a_ten_meter_fence():
    evaluator = GeofenceEvaluator(
        GeofenceConfig(center_lat=OFFICE_LAT, center_lng=OFFICE_LNG, radius_meters=10, buffer_meters=0)
    )

    decision = evaluator.evaluate(OFFICE_LAT + 0.0001, OFFICE_LNG)

    assert decision.distance_meters == pytest.approx(11.12, abs=0.01)
    assert decision.classification == GeofenceClassification.OUTSIDE


def test_buffer_band_between_core_and_outer_radius(evaluator):
    # ~11.1m with core 10m and buffer 5m
    decision = evaluator.evaluate(OFFICE_LAT + 0.0001, OFFICE_LNG)

    assert decision.classification == GeofenceClassification.BUFFER


def test_outer_edge_of_buffer_is_inclusive():
    evaluator = GeofenceEvaluator(
        GeofenceConfig(center_lat=0, center_lng=0, radius_meters=100, buffer_meters=20)
    )
    just_inside_buffer = 119.9 / 111194.93
    just_outside_buffer = 120.1 / 111194.93

    assert evaluator.evaluate(0, just_inside_buffer).classification == GeofenceClassification.BUFFER
    assert evaluator.evaluate(0, just_outside_buffer).classification == GeofenceClassification.OUTSIDE


def test_distance_is_reported_to_two_decimals(evaluator):
    decision = evaluator.evaluate(OFFICE_LAT + 0.00005, OFFICE_LNG + 0.00003)

    assert decision.distance_meters == round(decision.distance_meters, 2)


@pytest.mark.parametrize(
    "lat, lng",
    [
        (90.0001, 0),
        (-91, 0),
        (0, 180.5),
        (0, -181),
        (math.nan, 0),
        (0, math.inf),
        (True, 0),
        ("11.5", 104.9),
        (None, 104.9),
    ],
)
def test_invalid_coordinates_are_rejected(evaluator, lat, lng):
    with pytest.raises(InvalidCoordinates):
        evaluator.evaluate(lat, lng)


def test_poles_and_antimeridian_are_valid(evaluator):
    assert evaluator.evaluate(90, 180).classification == GeofenceClassification.OUTSIDE
    assert evaluator.evaluate(-90, -180).classification == GeofenceClassification.OUTSIDE


def test_estimated_arrival_is_distance_over_speed(evaluator):
    lat, lng = OFFICE_LAT + 0.001, OFFICE_LNG
    distance = haversine_dist(OFFICE_LAT, OFFICE_LNG, lat, lng)

    assert evaluator.estimated_arrival_seconds(lat, lng, 2.0) == pytest.approx(distance / 2.0)


def test_estimated_arrival_needs_positive_speed(evaluator):
    with pytest.raises(ValueError):
        evaluator.estimated_arrival_seconds(OFFICE_LAT, OFFICE_LNG, 0)


def test_eta_rounds_minutes_up(evaluator):
    eta = evaluator.eta(OFFICE_LAT + 0.001, OFFICE_LNG)

    # ~111m at 1.4 m/s is ~79s
    assert eta.eta_seconds == 79
    assert eta.eta_minutes == 2
    assert eta.walking_speed_mps == 1.4


def test_check_in_hint_per_classification(evaluator):
    inside = evaluator.check_in_hint(OFFICE_LAT, OFFICE_LNG)
    near = evaluator.check_in_hint(OFFICE_LAT + 0.0001, OFFICE_LNG)
    far = evaluator.check_in_hint(OFFICE_LAT + 0.01, OFFICE_LNG)

    assert (inside.can_check_in, inside.severity) == (True, "success")
    assert (near.can_check_in, near.severity) == (False, "warning")
    assert "closer to check in" in near.message
    assert (far.can_check_in, far.severity) == (False, "error")
    assert "within 10m" in far.message
