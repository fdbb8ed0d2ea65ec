"""
tests/test_geo.py
Tests for great-circle distance, radius ranking and the SQL prefilter box.
"""

from types import SimpleNamespace

import pytest

from shared.utils.geo import bounding_box, distance_km, find_nearby


def _point(name, lat, lng):
    return SimpleNamespace(name=name, latitude=lat, longitude=lng)


LONDON = (51.5074, -0.1278)
PARIS = (48.8566, 2.3522)
NEW_YORK = (40.7128, -74.0060)
LOS_ANGELES = (34.0522, -118.2437)


@pytest.mark.parametrize(
    "a, b, expected",
    [
        (LONDON, PARIS, 343.56),
        (NEW_YORK, LOS_ANGELES, 3935.75),
        ((0.0, 0.0), (0.0, 90.0), 10007.54),
    ],
)
def test_known_distances(a, b, expected):
    assert distance_km(a, b) == pytest.approx(expected, rel=0.005)


def test_distance_is_symmetric():
    assert distance_km(LONDON, NEW_YORK) == pytest.approx(distance_km(NEW_YORK, LONDON))


def test_distance_to_self_is_zero():
    assert distance_km(PARIS, PARIS) == 0.0


def test_antipodal_points_do_not_fail():
    # Rounding can push the haversine term just past 1
    assert distance_km((0.0, 0.0), (0.0, 180.0)) == pytest.approx(20015.09, rel=0.001)


def test_find_nearby_filters_by_radius_and_sorts():
    origin = (12.9716, 77.5946)
    far = _point("far", 13.0827, 80.2707)          # ~290 km
    mid = _point("mid", 13.0358, 77.5970)          # ~7 km
    near = _point("near", 12.9750, 77.6000)        # <1 km

    result = find_nearby([far, mid, near], origin, radius_km=10)

    assert [item.name for item, _ in result] == ["near", "mid"]
    distances = [d for _, d in result]
    assert distances == sorted(distances)
    assert all(d <= 10 for d in distances)


def test_find_nearby_includes_boundary():
    origin = (0.0, 0.0)
    target = _point("edge", 0.0, 1.0)
    exact = distance_km(origin, (0.0, 1.0))

    assert find_nearby([target], origin, radius_km=exact) == [(target, exact)]


def test_find_nearby_drops_candidates_without_coordinates():
    origin = (0.0, 0.0)
    located = _point("located", 0.0, 0.01)
    missing_lat = _point("no-lat", None, 0.0)
    missing_lng = _point("no-lng", 0.0, None)

    result = find_nearby([missing_lat, located, missing_lng], origin, radius_km=100)

    assert [item.name for item, _ in result] == ["located"]


def test_find_nearby_truncates_to_limit():
    origin = (0.0, 0.0)
    points = [_point(str(i), 0.0, i * 0.01) for i in range(10)]

    result = find_nearby(points, origin, radius_km=100, limit=3)

    assert [item.name for item, _ in result] == ["0", "1", "2"]


def test_find_nearby_keeps_input_order_for_ties():
    origin = (0.0, 0.0)
    a = _point("a", 0.0, 0.05)
    b = _point("b", 0.0, -0.05)

    result = find_nearby([a, b], origin, radius_km=100)

    assert [item.name for item, _ in result] == ["a", "b"]


def test_find_nearby_empty_for_zero_limit():
    assert find_nearby([_point("x", 0.0, 0.0)], (0.0, 0.0), radius_km=1, limit=0) == []


def test_find_nearby_custom_key():
    origin = (0.0, 0.0)
    pairs = [("b", (0.0, 0.2)), ("a", (0.0, 0.1))]

    result = find_nearby(pairs, origin, radius_km=50, key=lambda p: p[1])

    assert [p[0] for p, _ in result] == ["a", "b"]


def test_bounding_box_contains_radius():
    origin = (39.78, -89.65)
    min_lat, max_lat, min_lng, max_lng = bounding_box(origin, 10)

    assert min_lat < origin[0] < max_lat
    assert min_lng < origin[1] < max_lng
    # Points just inside the radius along each axis fall inside the box
    assert distance_km(origin, (max_lat, origin[1])) == pytest.approx(10, rel=0.01)
    assert min_lng <= -89.65 - 0.1 and max_lng >= -89.65 + 0.1


def test_bounding_box_opens_longitude_near_pole():
    _, max_lat, min_lng, max_lng = bounding_box((89.95, 10.0), 50)

    assert max_lat == 90.0
    assert (min_lng, max_lng) == (-180.0, 180.0)


def test_bounding_box_opens_longitude_across_antimeridian():
    _, _, min_lng, max_lng = bounding_box((0.0, 179.99), 20)

    assert (min_lng, max_lng) == (-180.0, 180.0)
