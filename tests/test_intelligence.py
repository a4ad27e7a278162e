import math
from datetime import datetime, timezone

from aegis_ics.intelligence import GeospatialMatcher
from aegis_ics.models import Helper, HelperRole, Location

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _helper(helper_id: str, latitude: float, longitude: float, is_active: bool = True) -> Helper:
    return Helper(
        id=helper_id,
        name=helper_id,
        mobile_number="+1 617 555 0100",
        role=HelperRole.VOLUNTEER,
        location=Location(latitude, longitude),
        created_at=NOW,
        updated_at=NOW,
        is_active=is_active,
    )


def test_distance_is_symmetric() -> None:
    matcher = GeospatialMatcher()
    pairs = [
        ((42.3601, -71.0942), (42.3646, -71.0942)),
        ((14.123, 121.456), (-33.8688, 151.2093)),
        ((89.9, 0.0), (-89.9, 179.9)),
        ((0.0, -179.99), (0.0, 179.99)),
    ]

    for (lat1, lng1), (lat2, lng2) in pairs:
        forward = matcher.distance_km(lat1, lng1, lat2, lng2)
        backward = matcher.distance_km(lat2, lng2, lat1, lng1)
        assert abs(forward - backward) < 1e-9


def test_distance_of_identical_points_is_negligible() -> None:
    assert GeospatialMatcher.distance_km(42.3601, -71.0942, 42.3601, -71.0942) < 1e-3


def test_distance_matches_known_offsets() -> None:
    half_km = GeospatialMatcher.distance_km(42.3601, -71.0942, 42.3646, -71.0942)
    three_km = GeospatialMatcher.distance_km(42.3601, -71.0942, 42.3871, -71.0942)

    assert abs(half_km - 0.5) < 0.01
    assert abs(three_km - 3.0) < 0.01


def test_radius_is_clamped() -> None:
    assert GeospatialMatcher.clamp_radius(1000) == 50.0
    assert GeospatialMatcher.clamp_radius(-5) == 0.1
    assert GeospatialMatcher.clamp_radius(None) == 2.0
    assert GeospatialMatcher.clamp_radius(math.nan) == 2.0
    assert GeospatialMatcher.clamp_radius(7.5) == 7.5


def test_rank_keeps_helpers_within_radius() -> None:
    matcher = GeospatialMatcher()
    near = _helper("A", 42.3646, -71.0942)
    far = _helper("B", 42.3871, -71.0942)

    ranked = matcher.rank(42.3601, -71.0942, [far, near], radius_km=2)

    assert [item.helper.id for item in ranked] == ["A"]
    assert abs(ranked[0].distance_km - 0.5) < 0.01


def test_rank_skips_inactive_and_sorts_by_distance() -> None:
    matcher = GeospatialMatcher()
    helpers = [
        _helper("mid", 42.3691, -71.0942),
        _helper("off-duty", 42.3602, -71.0942, is_active=False),
        _helper("closest", 42.3611, -71.0942),
        _helper("edge", 42.3781, -71.0942),
        _helper("outside", 42.5, -71.0942),
    ]

    ranked = matcher.rank(42.3601, -71.0942, helpers, radius_km=2.5)

    assert [item.helper.id for item in ranked] == ["closest", "mid", "edge"]
    distances = [item.distance_km for item in ranked]
    assert distances == sorted(distances)
    assert all(d <= 2.5 for d in distances)
