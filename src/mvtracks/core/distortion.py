"""
FOV (field-of-view) radial distortion on calibrated image coordinates.

Single coefficient `w` (radians), following Devernay & Faugeras:

  r_d = atan(2 r_u tan(w / 2)) / w
  r_u = tan(r_d w) / (2 tan(w / 2))

`w == 0` is the identity. The direction of a point is never changed, only its
distance to the principal point. All functions accept arrays shaped (..., 2).
"""

from __future__ import annotations

import numpy as np

# Undistortion needs tan(w * r) with w * r strictly below pi/2.
UNDISTORT_MARGIN = 1e-6

# Below this radius the radial scale factor is replaced by its limit at r = 0.
_SMALL_RADIUS = 1e-12


def _radius(p: np.ndarray) -> np.ndarray:
    return np.hypot(p[..., 0], p[..., 1])


def check_w(w: float) -> float:
    w = float(w)
    if not np.isfinite(w) or w < 0.0 or w >= np.pi:
        raise ValueError(f"FOV distortion coefficient must be in [0, pi), got {w}")
    return w


def distort(p: np.ndarray, w: float) -> np.ndarray:
    """Map undistorted calibrated coordinates to distorted ones."""
    p = np.asarray(p, dtype=np.float64)
    w = check_w(w)
    if w == 0.0:
        return p.copy()
    r_u = _radius(p)
    two_tan = 2.0 * np.tan(0.5 * w)
    small = r_u < _SMALL_RADIUS
    r_safe = np.where(small, 1.0, r_u)
    # d(r_d)/d(r_u) at the origin is 2 tan(w/2) / w.
    scale = np.where(small, two_tan / w, np.arctan(r_safe * two_tan) / (w * r_safe))
    return p * scale[..., None]


def undistort(p: np.ndarray, w: float) -> np.ndarray:
    """
    Map distorted calibrated coordinates to undistorted ones.

    Only meaningful where `is_undistortable` holds; outside that radius the
    result wraps around through tan().
    """
    p = np.asarray(p, dtype=np.float64)
    w = check_w(w)
    if w == 0.0:
        return p.copy()
    r_d = _radius(p)
    two_tan = 2.0 * np.tan(0.5 * w)
    small = r_d < _SMALL_RADIUS
    r_safe = np.where(small, 1.0, r_d)
    scale = np.where(small, w / two_tan, np.tan(r_safe * w) / (two_tan * r_safe))
    return p * scale[..., None]


def is_undistortable(p: np.ndarray, w: float) -> np.ndarray | bool:
    """
    True where `undistort` is well defined, i.e. w * r_d stays below pi/2.

    Returns a plain bool for a single point and a boolean array otherwise.
    """
    p = np.asarray(p, dtype=np.float64)
    w = check_w(w)
    r_d = _radius(p)
    ok = np.isfinite(r_d) & (w * r_d < 0.5 * np.pi - UNDISTORT_MARGIN)
    if ok.ndim == 0:
        return bool(ok)
    return ok


def max_distorted_radius(w: float) -> float:
    """Distorted radius of a point at infinity (inf when w == 0)."""
    w = check_w(w)
    if w == 0.0:
        return float("inf")
    return float(0.5 * np.pi / w)


def distort_point_at_infinity(direction: np.ndarray, w: float) -> np.ndarray:
    """
    Finite distorted position of the image point at infinity along `direction`.

    A projective point (x, y, 0) diverges in undistorted coordinates, but the
    FOV model squeezes the whole plane into a disk of radius pi / (2 w). With
    w == 0 there is no finite image and the result is +/-inf.
    """
    d = np.asarray(direction, dtype=np.float64)
    norm = _radius(d)
    if np.any(norm == 0.0):
        raise ValueError("direction of a point at infinity must be non-zero")
    radius = max_distorted_radius(w)
    if not np.isfinite(radius):
        return np.full(d.shape, np.inf, dtype=np.float64)
    return d / norm[..., None] * radius
