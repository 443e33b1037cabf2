from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np
from scipy import optimize

from mvtracks.core import distortion
from mvtracks.core.camera import Camera, CameraPose, CameraProperties
from mvtracks.core.geometry import image_point_from_homogeneous, world_point_to_homogeneous
from mvtracks.errors import DegenerateProjectionError, LimitCycleError, RayExtentError

logger = logging.getLogger(__name__)

# |A' x B'| below this (relative) means the ray images to a single point.
_PARALLEL_RTOL = 1e-12

# Camera centres closer than this (relative to their magnitude) coincide.
_CENTER_RTOL = 1e-12

# Depths within a few ulps of the cancellation a3 + lambda b3 count as zero.
_DEPTH_RTOL = 4.0 * np.finfo(np.float64).eps


@dataclass(frozen=True)
class QuantizationParams:
    """
    Parameters of the ray quantisation.

    - `delta_px`: spacing between consecutive candidates, in pixels
    - `tolerance_bits`: bisection stops once the bracket agrees to this many bits
    - `lambda_xtol`: absolute bisection tolerance on the ray parameter
    - `max_candidates`: cap on candidates per (point, view); longer rays are truncated
    - `max_doublings`: cap on the search for a finite upper bracket
    - `max_bisection_iterations`: cap on a single root search
    """

    delta_px: float = 1.0
    tolerance_bits: int = 16
    lambda_xtol: float = 2e-12
    max_candidates: int = 10000
    max_doublings: int = 1000
    max_bisection_iterations: int = 200

    def __post_init__(self) -> None:
        if not np.isfinite(self.delta_px) or self.delta_px <= 0.0:
            raise ValueError("delta_px must be > 0")
        if not 1 <= int(self.tolerance_bits) <= 50:
            raise ValueError("tolerance_bits must be in [1, 50]")
        if not np.isfinite(self.lambda_xtol) or self.lambda_xtol <= 0.0:
            raise ValueError("lambda_xtol must be > 0")
        if self.max_candidates < 1:
            raise ValueError("max_candidates must be >= 1")
        if self.max_doublings < 1:
            raise ValueError("max_doublings must be >= 1")
        if self.max_bisection_iterations < 1:
            raise ValueError("max_bisection_iterations must be >= 1")

    @property
    def rtol(self) -> float:
        return 2.0 ** (1 - int(self.tolerance_bits))


@dataclass(frozen=True)
class OtherView:
    index: int
    camera: Camera


@dataclass(frozen=True)
class Ray:
    """3D half line center + lambda * direction, lambda >= 0."""

    center: np.ndarray  # (3,)
    direction: np.ndarray  # (3,)

    def point(self, lam: float) -> np.ndarray:
        return self.center + float(lam) * self.direction


@dataclass(frozen=True)
class RayExtent:
    """Candidates for one (point, other view) pair, ordered by increasing lambda."""

    view_index: int
    lambdas: np.ndarray  # (N,)
    points_px: np.ndarray  # (N,2)

    def __len__(self) -> int:
        return int(self.lambdas.shape[0])

    @classmethod
    def empty(cls, view_index: int) -> "RayExtent":
        return cls(
            view_index=view_index,
            lambdas=np.zeros((0,), dtype=np.float64),
            points_px=np.zeros((0, 2), dtype=np.float64),
        )

    @classmethod
    def from_lists(cls, view_index: int, lambdas: list[float], points: list[np.ndarray]) -> "RayExtent":
        if not lambdas:
            return cls.empty(view_index)
        return cls(
            view_index=view_index,
            lambdas=np.asarray(lambdas, dtype=np.float64),
            points_px=np.asarray(points, dtype=np.float64).reshape(-1, 2),
        )


def back_project(point: np.ndarray, pose: CameraPose) -> Ray:
    """
    Ray of world points that project onto a calibrated, undistorted image point.

    The projection constraint is A X = 0 with A = R_xy - w R_z and w = (x, y)
    for points relative to the camera center. Its 1D null space is spanned by
    the cross product of the two rows, negated because depth is negative in
    front of the camera.
    """
    w = np.asarray(point, dtype=np.float64).reshape(2)
    R = pose.rotation
    A = R[:2] - np.outer(w, R[2])
    v = -np.cross(A[0], A[1])
    return Ray(center=np.array(pose.center, dtype=np.float64), direction=v)


@dataclass(frozen=True)
class ProjectedRay:
    """
    Image of a ray in another camera: homogeneous A' + lambda B', mapped to
    distorted pixels. Points with zero depth are points at infinity, which the
    distortion model sends to a finite radius (or to inf without distortion).
    """

    A: np.ndarray  # (3,)
    B: np.ndarray  # (3,)
    intrinsics: CameraProperties
    coincident: bool = False

    @classmethod
    def from_camera(cls, ray: Ray, camera: Camera) -> "ProjectedRay":
        P = camera.projection_matrix()
        A = P @ world_point_to_homogeneous(ray.center)
        B = P @ world_point_to_homogeneous(ray.direction, 0.0)
        c = camera.extrinsics.center
        offset = np.linalg.norm(ray.center - c)
        scale = max(1.0, float(np.linalg.norm(ray.center)), float(np.linalg.norm(c)))
        return cls(A=A, B=B, intrinsics=camera.intrinsics, coincident=bool(offset <= _CENTER_RTOL * scale))

    def homogeneous(self, lam: float) -> np.ndarray:
        return self.A + float(lam) * self.B

    def at_infinity(self, X_xy: np.ndarray) -> np.ndarray:
        """
        Pixel image of the homogeneous point (X_xy, 0) reached from the visible
        side: x = X_xy / z with z -> 0 from below heads along -X_xy.
        """
        x = distortion.distort_point_at_infinity(-np.asarray(X_xy, dtype=np.float64), self.intrinsics.distort_w)
        if not np.all(np.isfinite(x)):
            return np.full((2,), np.inf, dtype=np.float64)
        return self.intrinsics.uncalibrate(x)

    def position(self, lam: float) -> np.ndarray:
        X = self.homogeneous(lam)
        if abs(X[2]) <= _DEPTH_RTOL * (abs(self.A[2]) + abs(float(lam) * self.B[2])):
            return self.at_infinity(X[:2])
        return self.intrinsics.distort_and_uncalibrate(X[:2] / X[2])

    def is_degenerate(self) -> bool:
        """True when the whole ray images to one point (it passes through the camera center)."""
        if self.coincident:
            return True
        scale = np.linalg.norm(self.A) * np.linalg.norm(self.B)
        return bool(np.linalg.norm(np.cross(self.A, self.B)) <= _PARALLEL_RTOL * scale)


Position = Callable[[float], np.ndarray]


def distance_error(position: Position, x_ref: np.ndarray, lam: float, delta: float) -> float:
    """Pixel distance from x_ref minus delta; +inf when the point is at infinity."""
    d = position(lam) - x_ref
    if not np.all(np.isfinite(d)):
        return float("inf")
    return float(np.hypot(d[0], d[1])) - delta


def _bisect(f: Callable[[float], float], lo: float, hi: float, params: QuantizationParams) -> float:
    try:
        root = optimize.bisect(
            f,
            lo,
            hi,
            xtol=params.lambda_xtol,
            rtol=params.rtol,
            maxiter=params.max_bisection_iterations,
        )
    except (ValueError, RuntimeError) as e:
        raise RayExtentError(f"bisection failed on [{lo!r}, {hi!r}]: {e}") from e
    return float(root)


def find_upper_bracket(
    position: Position,
    limit: np.ndarray,
    lambda_min: float,
    params: QuantizationParams,
) -> float:
    """
    Smallest doubled lambda whose image is within delta of the limit point.

    Lambda = infinity cannot be used for bisection, and anything past this
    bound is indistinguishable from the limit at the requested resolution.
    """
    lam = max(1.0, 2.0 * lambda_min)
    for _ in range(params.max_doublings):
        if distance_error(position, limit, lam, params.delta_px) < 0.0:
            return lam
        lam *= 2.0
    raise RayExtentError(f"no lambda within {params.delta_px} px of the limit after {params.max_doublings} doublings")


def quantize_backward(
    position: Position,
    x_ref: np.ndarray,
    lambda_min: float,
    lambda_max: float,
    params: QuantizationParams,
) -> tuple[list[float], list[np.ndarray]]:
    """
    Quantise [lambda_min, lambda_max] starting from the image-plane limit x_ref.

    Each step bisects for the lambda whose image is exactly delta pixels from
    the last accepted position, then shrinks the bracket to end there. Stops
    once the start of the segment is within delta of the last position.
    Returned in increasing lambda order.
    """
    delta = params.delta_px
    x_ref = np.asarray(x_ref, dtype=np.float64)
    lambdas: list[float] = []
    points: list[np.ndarray] = []
    lam = float(lambda_max)

    while True:
        f_max = distance_error(position, x_ref, lambda_min, delta)
        if np.isnan(f_max):
            raise DegenerateProjectionError(f"distance at lambda={lambda_min!r} is undefined")
        if f_max < 0.0:
            break
        if len(lambdas) >= params.max_candidates:
            logger.warning("Ray truncated at %d candidates", len(lambdas))
            break
        if not lam > lambda_min:
            raise LimitCycleError(f"bracket collapsed at lambda={lam!r} with {f_max:.3g} px still to cover")

        old_lambda = lam
        lam = _bisect(lambda l: distance_error(position, x_ref, l, delta), lambda_min, lam, params)
        if lam == old_lambda:
            raise LimitCycleError(f"entered limit cycle at lambda={lam!r}")

        x_ref = position(lam)
        if not np.all(np.isfinite(x_ref)):
            raise DegenerateProjectionError(f"candidate at lambda={lam!r} is not finite")
        lambdas.append(lam)
        points.append(x_ref)
        logger.debug("x(%.9g) => (%.3f, %.3f)", lam, x_ref[0], x_ref[1])

    return lambdas[::-1], points[::-1]


def _forward_bracket(f: Callable[[float], float], lam: float, lambda_max: float, params: QuantizationParams) -> float | None:
    if np.isfinite(lambda_max):
        return lambda_max if f(lambda_max) >= 0.0 else None
    step = max(1.0, abs(lam))
    for _ in range(params.max_doublings):
        if f(lam + step) >= 0.0:
            return lam + step
        step *= 2.0
    raise RayExtentError(f"no lambda {params.delta_px} px past lambda={lam!r} after {params.max_doublings} doublings")


def quantize_forward(
    position: Position,
    lambda_min: float,
    lambda_max: float,
    params: QuantizationParams,
) -> tuple[list[float], list[np.ndarray]]:
    """
    Quantise a segment whose far end has no finite image (no distortion to
    bring infinity back into the frame): start at lambda_min and step away by
    delta pixels until the far end is reached or the candidate cap is hit.
    """
    delta = params.delta_px
    lam = float(lambda_min)
    x_ref = position(lam)
    if not np.all(np.isfinite(x_ref)):
        raise DegenerateProjectionError(f"segment start at lambda={lam!r} is not finite")
    lambdas = [lam]
    points = [x_ref]

    while True:
        if len(lambdas) >= params.max_candidates:
            logger.warning("Unbounded ray segment truncated at %d candidates", len(lambdas))
            break

        def f(l: float, x_ref: np.ndarray = x_ref) -> float:
            return distance_error(position, x_ref, l, delta)

        hi = _forward_bracket(f, lam, lambda_max, params)
        if hi is None:
            break

        old_lambda = lam
        lam = _bisect(f, lam, hi, params)
        if lam == old_lambda:
            raise LimitCycleError(f"entered limit cycle at lambda={lam!r}")

        x_ref = position(lam)
        if not np.all(np.isfinite(x_ref)):
            raise DegenerateProjectionError(f"candidate at lambda={lam!r} is not finite")
        lambdas.append(lam)
        points.append(x_ref)
        logger.debug("x(%.9g) => (%.3f, %.3f)", lam, x_ref[0], x_ref[1])

    return lambdas, points


def find_ray_extent_in_view(ray: Ray, view: OtherView, params: QuantizationParams | None = None) -> RayExtent:
    """
    Quantise the visible part of `ray` in one other view into candidates spaced
    `delta_px` apart in that view's distorted pixel coordinates.

    Visibility follows the signs of the homogeneous depths a3 (ray origin) and
    b3 (ray direction); negative is in front of the camera.
    """
    if params is None:
        params = QuantizationParams()

    proj = ProjectedRay.from_camera(ray, view.camera)
    a3 = float(proj.A[2])
    b3 = float(proj.B[2])

    # Zero depths count as not visible: the crossing lambda would be undefined.
    if a3 >= 0.0 and b3 >= 0.0:
        logger.debug("View %d: ray is not observed (a3=%g, b3=%g)", view.index, a3, b3)
        return RayExtent.empty(view.index)

    if a3 < 0.0:
        logger.debug("View %d: ray starts in front of camera", view.index)
        lambda_min = 0.0
    else:
        logger.debug("View %d: ray starts behind camera", view.index)
        lambda_min = -a3 / b3

    if proj.is_degenerate():
        # Ray passes through this camera's center: its image is one point.
        x = view.camera.intrinsics.distort_and_uncalibrate(image_point_from_homogeneous(proj.B))
        logger.debug("View %d: ray images to a single point %s", view.index, x)
        return RayExtent.from_lists(view.index, [lambda_min], [x])

    if b3 < 0.0:
        logger.debug("View %d: ray ends in front of camera", view.index)
        limit = view.camera.intrinsics.distort_and_uncalibrate(image_point_from_homogeneous(proj.B))
        lambda_max = find_upper_bracket(proj.position, limit, lambda_min, params)
        lambdas, points = quantize_backward(proj.position, limit, lambda_min, lambda_max, params)
    elif b3 == 0.0:
        logger.debug("View %d: ray is parallel to the image plane", view.index)
        limit = proj.at_infinity(proj.B[:2])
        if np.all(np.isfinite(limit)):
            lambda_max = find_upper_bracket(proj.position, limit, lambda_min, params)
            lambdas, points = quantize_backward(proj.position, limit, lambda_min, lambda_max, params)
        else:
            lambdas, points = quantize_forward(proj.position, lambda_min, float("inf"), params)
    else:
        logger.debug("View %d: ray ends behind camera", view.index)
        lambda_max = -a3 / b3
        limit = proj.at_infinity(proj.homogeneous(lambda_max)[:2])
        if np.all(np.isfinite(limit)):
            lambdas, points = quantize_backward(proj.position, limit, lambda_min, lambda_max, params)
        else:
            lambdas, points = quantize_forward(proj.position, lambda_min, lambda_max, params)

    logger.debug("View %d: quantized ray into %d positions", view.index, len(lambdas))
    return RayExtent.from_lists(view.index, lambdas, points)


def find_extent_of_ray(
    point: np.ndarray,
    pose: CameraPose,
    others: Sequence[OtherView],
    params: QuantizationParams | None = None,
) -> list[RayExtent]:
    """
    Candidates in every other view for one calibrated, undistorted point of the
    reference view. Raises RayExtentError on the first view that fails.
    """
    ray = back_project(point, pose)
    return [find_ray_extent_in_view(ray, view, params) for view in others]
