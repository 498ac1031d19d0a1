import math

import mpmath
import pytest

from autosign_core.constants import BEACON_POINTS, EARTH_RADIUS_M
from autosign_core.errors import GeolocationError
from autosign_core.geolocation import DistanceObservation, estimate_position, haversine


def _distances_from(lon, lat, keys):
    ctx = mpmath.MPContext()
    ctx.dps = 60
    radius = ctx.mpf(EARTH_RADIUS_M)
    observations = []
    for key in keys:
        b_lon, b_lat = BEACON_POINTS[key]
        d = haversine(ctx, ctx.mpf(repr(lon)), ctx.mpf(repr(lat)),
                      ctx.mpf(repr(b_lon)), ctx.mpf(repr(b_lat)), radius)
        observations.append(DistanceObservation(b_lon, b_lat, float(d)))
    return observations


def test_recovers_position_from_exact_distances():
    true_lon, true_lat = 120.0855, 30.3045
    obs = _distances_from(true_lon, true_lat, ["ZJGD1", "ZJGX1", "ZJGB1", "ZJG4"])

    fit = estimate_position(obs)

    assert fit.converged
    assert abs(fit.longitude - true_lon) < 1e-6
    assert abs(fit.latitude - true_lat) < 1e-6
    assert fit.rms < 1e-3


def test_three_observations_are_enough():
    obs = _distances_from(120.1225, 30.2635, ["YQ4", "YQ1", "YQ7"])
    fit = estimate_position(obs)
    assert abs(fit.longitude - 120.1225) < 1e-6
    assert abs(fit.latitude - 30.2635) < 1e-6


def test_unusable_distances_are_dropped_before_fitting():
    obs = _distances_from(120.0855, 30.3045, ["ZJGD1", "ZJGX1", "ZJGB1"])
    obs += [
        DistanceObservation(120.2, 30.2, 0),
        DistanceObservation(120.2, 30.2, -5),
        DistanceObservation(120.2, 30.2, math.nan),
        DistanceObservation(120.2, 30.2, math.inf),
    ]
    fit = estimate_position(obs)
    assert abs(fit.longitude - 120.0855) < 1e-6


def test_fewer_than_three_usable_raises():
    obs = [
        DistanceObservation(120.08, 30.30, 100.0),
        DistanceObservation(120.09, 30.30, 200.0),
        DistanceObservation(120.10, 30.30, 0.0),
    ]
    with pytest.raises(GeolocationError):
        estimate_position(obs)


def test_usable_flag():
    assert DistanceObservation(0, 0, 12.5).usable
    assert not DistanceObservation(0, 0, None).usable
    assert not DistanceObservation(0, 0, "far").usable
    assert not DistanceObservation(0, 0, 0).usable


def test_haversine_matches_known_scale():
    ctx = mpmath.MPContext()
    ctx.dps = 30
    radius = ctx.mpf(EARTH_RADIUS_M)
    # One degree of latitude on this sphere.
    d = haversine(ctx, ctx.mpf(0), ctx.mpf(1), ctx.mpf(0), ctx.mpf(0), radius)
    assert float(d) == pytest.approx(float(radius) * math.pi / 180, rel=1e-12)


def test_coincident_points_return_best_effort_estimate():
    obs = [DistanceObservation(120.089136, 30.302331, 150.0) for _ in range(3)]
    fit = estimate_position(obs)

    assert not fit.converged
    assert math.isfinite(fit.longitude) and math.isfinite(fit.latitude)
    assert fit.rms == pytest.approx(150.0)
