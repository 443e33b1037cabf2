from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from mvtracks.core import distortion
from mvtracks.core.geometry import (
    image_point_from_homogeneous,
    image_point_to_homogeneous,
    is_rotation_matrix,
    world_point_to_homogeneous,
)


@dataclass(frozen=True)
class CameraProperties:
    """
    Intrinsics: 3x3 calibration matrix and FOV distortion coefficient `distort_w`.

    Pixel <-> calibrated mapping is x_px ~ K x_cal; distortion acts on
    calibrated coordinates.
    """

    matrix: np.ndarray  # (3,3)
    distort_w: float = 0.0

    def __post_init__(self) -> None:
        K = np.asarray(self.matrix, dtype=np.float64)
        if K.shape != (3, 3) or not np.all(np.isfinite(K)):
            raise ValueError("calibration matrix must be a finite 3x3 array")
        if abs(float(np.linalg.det(K))) < 1e-12:
            raise ValueError("calibration matrix must be invertible")
        K = K.copy()
        K.setflags(write=False)
        object.__setattr__(self, "matrix", K)
        object.__setattr__(self, "distort_w", distortion.check_w(self.distort_w))

    @classmethod
    def from_focal(
        cls,
        *,
        fx: float,
        fy: float,
        cx: float,
        cy: float,
        skew: float = 0.0,
        distort_w: float = 0.0,
    ) -> "CameraProperties":
        K = np.array([[fx, skew, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64)
        return cls(matrix=K, distort_w=distort_w)

    def inverse_matrix(self) -> np.ndarray:
        return np.linalg.inv(self.matrix)

    def calibrate(self, x_px: np.ndarray) -> np.ndarray:
        X = image_point_to_homogeneous(x_px)
        return image_point_from_homogeneous(X @ self.inverse_matrix().T)

    def uncalibrate(self, x: np.ndarray) -> np.ndarray:
        X = image_point_to_homogeneous(x)
        return image_point_from_homogeneous(X @ self.matrix.T)

    def distort_and_uncalibrate(self, x: np.ndarray) -> np.ndarray:
        return self.uncalibrate(distortion.distort(x, self.distort_w))

    def calibrate_and_undistort(self, x_px: np.ndarray) -> np.ndarray:
        return distortion.undistort(self.calibrate(x_px), self.distort_w)


@dataclass(frozen=True)
class CameraPose:
    """
    Extrinsics: world -> camera rotation and camera center in world coordinates.

    Points in front of the camera have negative depth in camera coordinates.
    """

    rotation: np.ndarray  # (3,3)
    center: np.ndarray  # (3,)

    def __post_init__(self) -> None:
        R = np.asarray(self.rotation, dtype=np.float64)
        c = np.asarray(self.center, dtype=np.float64).reshape(-1)
        if not is_rotation_matrix(R):
            raise ValueError("rotation must be orthonormal with det = +1")
        if c.shape != (3,) or not np.all(np.isfinite(c)):
            raise ValueError("center must be a finite 3-vector")
        R = R.copy()
        c = c.copy()
        R.setflags(write=False)
        c.setflags(write=False)
        object.__setattr__(self, "rotation", R)
        object.__setattr__(self, "center", c)

    def matrix(self) -> np.ndarray:
        """3x4 projection [R | -R c]."""
        R = self.rotation
        return np.hstack([R, (-R @ self.center).reshape(3, 1)])


@dataclass(frozen=True)
class Camera:
    intrinsics: CameraProperties
    extrinsics: CameraPose

    def projection_matrix(self) -> np.ndarray:
        return self.extrinsics.matrix()

    def project(self, X_world: np.ndarray) -> np.ndarray:
        """World point (3,) -> distorted pixel (2,)."""
        X = self.projection_matrix() @ world_point_to_homogeneous(X_world)
        return self.intrinsics.distort_and_uncalibrate(image_point_from_homogeneous(X))
