from __future__ import annotations

import numpy as np

from mvtracks.errors import DegenerateProjectionError


def image_point_to_homogeneous(x: np.ndarray) -> np.ndarray:
    """(..., 2) -> (..., 3) with a unit third coordinate."""
    x = np.asarray(x, dtype=np.float64)
    return np.concatenate([x, np.ones(x.shape[:-1] + (1,), dtype=np.float64)], axis=-1)


def image_point_from_homogeneous(X: np.ndarray) -> np.ndarray:
    """
    (..., 3) -> (..., 2). A zero third coordinate is a point at infinity and has
    no finite representative, so it raises instead of returning inf/nan.
    """
    X = np.asarray(X, dtype=np.float64)
    z = X[..., 2]
    if np.any(z == 0.0):
        raise DegenerateProjectionError("cannot dehomogenise an image point with zero depth")
    return X[..., :2] / z[..., None]


def world_point_to_homogeneous(X: np.ndarray, w: float = 1.0) -> np.ndarray:
    """
    (3,) -> (4,). Use w=0 for a direction (point at infinity), which ignores
    translation when multiplied by a projection matrix.
    """
    X = np.asarray(X, dtype=np.float64).reshape(3)
    return np.append(X, float(w))


def is_rotation_matrix(R: np.ndarray, atol: float = 1e-6) -> bool:
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3) or not np.all(np.isfinite(R)):
        return False
    if not np.allclose(R @ R.T, np.eye(3), atol=atol):
        return False
    return bool(np.linalg.det(R) > 0.0)
