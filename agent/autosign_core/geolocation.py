"""
Sphere fit: estimate a (longitude, latitude) from distances measured at
known beacon points.

Gauss–Newton on the squared residuals between observed distances and
haversine distances from the candidate point, starting at the centroid of
the observation coordinates. The residuals are a few hundred metres on an
Earth-sized model and the Jacobian is a forward difference with a 1e-12
degree step, so everything runs in a private 100-digit mpmath context.
A private context keeps concurrent fits from touching the global mp.dps.
"""

import math
from dataclasses import dataclass

import mpmath

from .config import log
from .constants import (
    EARTH_RADIUS_M, FIT_DET_EPS, FIT_JACOBIAN_EPS, FIT_MAX_ITER, FIT_PRECISION_DPS, FIT_STEP_TOL,
)
from .errors import GeolocationError


@dataclass(frozen=True)
class DistanceObservation:
    longitude: float
    latitude: float
    distance: float

    @property
    def usable(self) -> bool:
        try:
            d = float(self.distance)
        except (TypeError, ValueError):
            return False
        return math.isfinite(d) and d > 0


@dataclass(frozen=True)
class FitResult:
    longitude: float
    latitude: float
    rms: float
    iterations: int
    converged: bool


def _context():
    ctx = mpmath.MPContext()
    ctx.dps = FIT_PRECISION_DPS
    return ctx


def _num(ctx, value):
    # Parse floats through their shortest repr so 120.089136 means exactly that.
    if isinstance(value, float):
        return ctx.mpf(repr(value))
    return ctx.mpf(value)


def haversine(ctx, lon, lat, lon_i, lat_i, radius):
    """Great-circle distance between two points given in degrees."""
    deg = ctx.pi / 180
    phi = lat * deg
    phi_i = lat_i * deg
    d_phi = phi - phi_i
    d_lambda = (lon - lon_i) * deg
    h = ctx.sin(d_phi / 2) ** 2 + ctx.cos(phi) * ctx.cos(phi_i) * ctx.sin(d_lambda / 2) ** 2
    if h > 1:
        h = ctx.mpf(1)
    return radius * 2 * ctx.asin(ctx.sqrt(h))


def _residuals(ctx, lon, lat, points, radius):
    return [d - haversine(ctx, lon, lat, p_lon, p_lat, radius) for p_lon, p_lat, d in points]


def _jacobian(ctx, lon, lat, points, radius, base):
    eps = ctx.mpf(FIT_JACOBIAN_EPS)
    res_lon = _residuals(ctx, lon + eps, lat, points, radius)
    res_lat = _residuals(ctx, lon, lat + eps, points, radius)
    return [
        (-(rl - b) / eps, -(rt - b) / eps)
        for rl, rt, b in zip(res_lon, res_lat, base)
    ]


def _rms(ctx, residuals):
    return ctx.sqrt(ctx.fsum(r * r for r in residuals) / len(residuals))


def estimate_position(observations):
    """Fit a position to >= 3 usable DistanceObservations.

    Non-positive and non-finite distances are dropped first; fewer than
    three survivors raises GeolocationError. Degenerate geometry (singular
    normal matrix) stops the iteration and returns the best estimate so
    far with converged=False.
    """
    usable = [o for o in observations if o.usable]
    if len(usable) < 3:
        raise GeolocationError(
            f"need at least 3 usable distance observations, got {len(usable)}")

    ctx = _context()
    radius = ctx.mpf(EARTH_RADIUS_M)
    step_tol = ctx.mpf(FIT_STEP_TOL)
    det_eps = ctx.mpf(FIT_DET_EPS)
    points = [(_num(ctx, o.longitude), _num(ctx, o.latitude), _num(ctx, o.distance))
              for o in usable]

    lon = ctx.fsum(p[0] for p in points) / len(points)
    lat = ctx.fsum(p[1] for p in points) / len(points)

    converged = False
    iterations = 0
    for iterations in range(1, FIT_MAX_ITER + 1):
        r = _residuals(ctx, lon, lat, points, radius)
        jac = _jacobian(ctx, lon, lat, points, radius, r)

        a00 = ctx.fsum(j[0] * j[0] for j in jac)
        a01 = ctx.fsum(j[0] * j[1] for j in jac)
        a11 = ctx.fsum(j[1] * j[1] for j in jac)
        b0 = ctx.fsum(j[0] * ri for j, ri in zip(jac, r))
        b1 = ctx.fsum(j[1] * ri for j, ri in zip(jac, r))

        det = a00 * a11 - a01 * a01
        scale = a00 * a11
        if scale == 0 or abs(det) <= det_eps * abs(scale):
            log.warning("Sphere fit: degenerate geometry at iteration %d (det=%s)",
                        iterations, ctx.nstr(det, 5))
            break

        d_lon = (a11 * b0 - a01 * b1) / det
        d_lat = (a00 * b1 - a01 * b0) / det
        lon += d_lon
        lat += d_lat
        log.debug("Sphere fit iter %d: lon=%s lat=%s", iterations,
                  ctx.nstr(lon, 15), ctx.nstr(lat, 15))

        if abs(d_lon) < step_tol and abs(d_lat) < step_tol:
            converged = True
            break

    rms = _rms(ctx, _residuals(ctx, lon, lat, points, radius))
    return FitResult(
        longitude=float(lon),
        latitude=float(lat),
        rms=float(rms),
        iterations=iterations,
        converged=converged,
    )
