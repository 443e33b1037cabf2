import logging

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from mvtracks.core.camera import Camera, CameraPose, CameraProperties
from mvtracks.errors import LimitCycleError
from mvtracks.ray3d.extent import (
    OtherView,
    QuantizationParams,
    back_project,
    find_extent_of_ray,
    find_ray_extent_in_view,
    quantize_backward,
)


def _camera(center, R=None, *, f: float = 100.0, w: float = 0.0) -> Camera:
    K = CameraProperties.from_focal(fx=f, fy=f, cx=320.0, cy=240.0, distort_w=w)
    if R is None:
        R = np.eye(3)
    return Camera(intrinsics=K, extrinsics=CameraPose(rotation=R, center=np.asarray(center, dtype=np.float64)))


def _steps(points: np.ndarray) -> np.ndarray:
    return np.linalg.norm(np.diff(points, axis=0), axis=1)


def test_back_projected_ray_reprojects_onto_point():
    R = Rotation.from_rotvec([0.3, -0.1, 0.2]).as_matrix()
    pose = CameraPose(rotation=R, center=np.array([1.0, -2.0, 0.5]))
    x = np.array([0.12, -0.07])
    ray = back_project(x, pose)
    P = pose.matrix()
    for lam in (0.5, 1.0, 10.0):
        X = P @ np.append(ray.point(lam), 1.0)
        assert X[2] < 0.0
        assert np.allclose(X[:2] / X[2], x)


def test_identical_camera_sees_the_original_point():
    ref = _camera([0.0, 0.0, 0.0], w=0.5)
    pixel = np.array([400.0, 300.0])
    x = ref.intrinsics.calibrate_and_undistort(pixel)

    extent = find_ray_extent_in_view(back_project(x, ref.extrinsics), OtherView(index=1, camera=ref))

    assert len(extent) == 1
    assert np.allclose(extent.points_px[0], pixel, atol=1e-9)


def test_identical_posed_camera_sees_the_original_point():
    rng = np.random.default_rng(11)
    pixel = np.array([400.0, 300.0])
    for _ in range(50):
        R = Rotation.from_rotvec(rng.normal(size=3)).as_matrix()
        cam = _camera(10.0 * rng.normal(size=3), R=R, w=0.5)
        x = cam.intrinsics.calibrate_and_undistort(pixel)

        extent = find_ray_extent_in_view(back_project(x, cam.extrinsics), OtherView(index=1, camera=cam))

        assert len(extent) == 1
        assert np.allclose(extent.points_px[0], pixel, atol=1e-6)


def test_translated_camera_quantizes_epipolar_line():
    ref = _camera([0.0, 0.0, 0.0])
    other = _camera([1.0, 0.0, 1.0])
    ray = back_project(np.zeros(2), ref.extrinsics)

    extent = find_ray_extent_in_view(ray, OtherView(index=1, camera=other))

    # Image of the ray runs from u = 420 (ray origin) to the vanishing point u = 320.
    assert len(extent) in (99, 100)
    assert np.all(np.diff(extent.lambdas) > 0.0)
    assert np.allclose(extent.points_px[:, 1], 240.0)
    assert np.all(np.diff(extent.points_px[:, 0]) < 0.0)
    assert np.max(np.abs(_steps(extent.points_px) - 1.0)) < 2e-3
    assert np.all((extent.points_px[:, 0] > 320.0) & (extent.points_px[:, 0] <= 420.0 + 1e-6))

    # A world point on the ray lands next to a candidate.
    target = other.project(ray.point(5.0))
    assert np.min(np.linalg.norm(extent.points_px - target, axis=1)) < 0.6


def test_sideways_translation_without_distortion_is_capped():
    ref = _camera([0.0, 0.0, 0.0])
    other = _camera([1.0, 0.0, 0.0])
    ray = back_project(np.zeros(2), ref.extrinsics)
    params = QuantizationParams(max_candidates=50, tolerance_bits=30)

    extent = find_ray_extent_in_view(ray, OtherView(index=1, camera=other), params)

    assert len(extent) == 50
    assert np.all(np.isfinite(extent.points_px))
    assert np.all(np.diff(extent.lambdas) > 0.0)
    assert np.max(np.abs(_steps(extent.points_px) - 1.0)) < 1e-3


def test_cap_is_reported(caplog):
    ref = _camera([0.0, 0.0, 0.0])
    other = _camera([1.0, 0.0, 0.0])
    ray = back_project(np.zeros(2), ref.extrinsics)
    with caplog.at_level(logging.WARNING, logger="mvtracks.ray3d.extent"):
        find_ray_extent_in_view(ray, OtherView(index=1, camera=other), QuantizationParams(max_candidates=5))
    assert any("truncated" in rec.getMessage() for rec in caplog.records)


def test_ray_entirely_behind_camera_has_no_candidates():
    ref = _camera([0.0, 0.0, 0.0])
    # Looks along +z while the ray heads towards -z.
    other = _camera([0.0, 0.0, 5.0], R=np.diag([-1.0, 1.0, -1.0]))
    ray = back_project(np.zeros(2), ref.extrinsics)

    extent = find_ray_extent_in_view(ray, OtherView(index=1, camera=other))

    assert len(extent) == 0
    assert extent.points_px.shape == (0, 2)


def test_ray_starting_on_principal_plane_and_heading_behind_is_skipped():
    ref = _camera([0.0, 0.0, 0.0])
    # The ray origin has zero depth and the ray moves behind this camera.
    other = _camera([1.0, 0.0, 0.0], R=np.diag([-1.0, 1.0, -1.0]))
    ray = back_project(np.zeros(2), ref.extrinsics)

    extent = find_ray_extent_in_view(ray, OtherView(index=1, camera=other))

    assert len(extent) == 0


def test_ray_starting_behind_camera_with_distortion_is_bounded():
    w = 0.5
    ref = _camera([0.0, 0.0, 0.0])
    other = _camera([0.5, 0.0, -10.0], w=w)
    ray = back_project(np.zeros(2), ref.extrinsics)
    params = QuantizationParams(tolerance_bits=30)

    extent = find_ray_extent_in_view(ray, OtherView(index=1, camera=other), params)

    assert len(extent) > 10
    # Visible part starts where the ray crosses the camera plane (lambda = 10).
    assert np.all(extent.lambdas >= 10.0)
    assert np.all(np.diff(extent.lambdas) > 0.0)
    assert np.max(np.abs(_steps(extent.points_px) - 1.0)) < 1e-3
    # Everything stays inside the distortion disk.
    radius_px = 100.0 * 0.5 * np.pi / w
    r = np.linalg.norm(extent.points_px - np.array([320.0, 240.0]), axis=1)
    assert np.all(r <= radius_px + 1e-6)
    # From the edge of the disk towards the vanishing point.
    assert r[0] > r[-1]
    assert r[0] > radius_px - 1.5


def test_ray_leaving_through_camera_plane_with_distortion():
    w = 0.7
    ref = _camera([0.0, 0.0, 0.0])
    # Looks sideways: the ray enters and then crosses its principal plane.
    R = Rotation.from_rotvec([0.0, np.pi / 2.0, 0.0]).as_matrix()
    other = _camera([-2.0, 0.3, -1.0], R=R, w=w)
    ray = back_project(np.array([0.05, 0.0]), ref.extrinsics)
    proj_a3 = (other.projection_matrix() @ np.append(ray.center, 1.0))[2]
    proj_b3 = (other.projection_matrix() @ np.append(ray.direction, 0.0))[2]
    assert proj_a3 < 0.0 < proj_b3

    extent = find_ray_extent_in_view(ray, OtherView(index=1, camera=other), QuantizationParams(tolerance_bits=30))

    assert len(extent) > 10
    assert np.all(np.diff(extent.lambdas) > 0.0)
    assert np.max(np.abs(_steps(extent.points_px) - 1.0)) < 1e-3
    lambda_cross = -proj_a3 / proj_b3
    assert np.all(extent.lambdas <= lambda_cross)


def test_unbounded_segment_without_distortion_is_capped_with_warning(caplog):
    ref = _camera([0.0, 0.0, 0.0])
    R = Rotation.from_rotvec([0.0, np.pi / 2.0, 0.0]).as_matrix()
    other = _camera([-2.0, 0.3, -1.0], R=R)
    ray = back_project(np.array([0.05, 0.0]), ref.extrinsics)

    with caplog.at_level(logging.WARNING, logger="mvtracks.ray3d.extent"):
        extent = find_ray_extent_in_view(ray, OtherView(index=1, camera=other), QuantizationParams(max_candidates=5))

    assert len(extent) == 5
    assert extent.lambdas[0] == 0.0
    assert np.all(np.diff(extent.lambdas) > 0.0)
    assert any(rec.levelno == logging.WARNING and "truncated" in rec.getMessage() for rec in caplog.records)


def test_random_configurations_keep_pixel_spacing():
    rng = np.random.default_rng(7)
    ref = _camera([0.0, 0.0, 0.0], f=300.0, w=0.6)
    R = Rotation.from_rotvec([0.05, -0.35, 0.1]).as_matrix()
    others = [
        OtherView(index=1, camera=_camera([0.5, 0.0, 0.0], R=R, f=300.0, w=0.6)),
        OtherView(index=2, camera=_camera([-0.4, 0.2, -0.3], f=150.0, w=0.3)),
    ]
    params = QuantizationParams(tolerance_bits=30)

    total = 0
    for _ in range(3):
        pixel = rng.uniform([220.0, 140.0], [420.0, 340.0])
        x = ref.intrinsics.calibrate_and_undistort(pixel)
        extents = find_extent_of_ray(x, ref.extrinsics, others, params)
        assert [e.view_index for e in extents] == [1, 2]
        for e in extents:
            total += len(e)
            if len(e) < 2:
                continue
            assert np.all(np.diff(e.lambdas) > 0.0)
            assert np.max(np.abs(_steps(e.points_px) - 1.0)) < 1e-3
    assert total > 0


def test_quantization_stops_when_segment_is_shorter_than_delta():
    lambdas, points = quantize_backward(
        lambda l: np.array([l, 0.0]),
        np.array([0.5, 0.0]),
        0.0,
        1.0,
        QuantizationParams(),
    )
    assert lambdas == []
    assert points == []


def test_straight_segment_is_split_into_unit_steps():
    lambdas, points = quantize_backward(
        lambda l: np.array([10.0 * l, 0.0]),
        np.array([10.25, 0.0]),
        0.0,
        1.0,
        QuantizationParams(tolerance_bits=40),
    )
    assert np.allclose([p[0] for p in points], np.arange(10) + 0.25, atol=1e-6)
    assert np.all(np.diff(lambdas) > 0.0)


def test_collapsed_bracket_is_a_limit_cycle():
    with pytest.raises(LimitCycleError):
        quantize_backward(
            lambda l: np.array([l, 0.0]),
            np.array([10.0, 0.0]),
            2.0,
            2.0,
            QuantizationParams(),
        )


def test_bisection_that_does_not_move_is_a_limit_cycle():
    # The upper end already sits exactly delta away, so bisection returns it unchanged.
    with pytest.raises(LimitCycleError):
        quantize_backward(
            lambda l: np.array([l, 0.0]),
            np.array([6.0, 0.0]),
            0.0,
            5.0,
            QuantizationParams(),
        )


@pytest.mark.parametrize(
    "kwargs",
    [
        {"delta_px": 0.0},
        {"tolerance_bits": 0},
        {"tolerance_bits": 60},
        {"max_candidates": 0},
        {"lambda_xtol": -1.0},
    ],
)
def test_invalid_params(kwargs):
    with pytest.raises(ValueError):
        QuantizationParams(**kwargs)
