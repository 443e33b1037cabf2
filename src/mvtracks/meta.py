from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import numpy as np

from mvtracks.core.camera import CameraPose, CameraProperties
from mvtracks.ray3d.extent import QuantizationParams

INTRINSICS_SCHEMA = "mvtracks.camera_properties.v0"
EXTRINSICS_SCHEMA = "mvtracks.camera_pose.v0"
CONFIG_SCHEMA = "mvtracks.config.v0"


class MetaValidationError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise MetaValidationError(msg)


def _read_json(path: Path) -> dict[str, Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    _require(isinstance(data, dict), f"{path}: top-level JSON value must be an object")
    return data


def _matrix(value: Any, shape: tuple[int, ...], name: str) -> np.ndarray:
    try:
        arr = np.asarray(value, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise MetaValidationError(f"{name} must be numeric") from e
    _require(arr.shape == shape, f"{name} must have shape {shape}, got {arr.shape}")
    _require(bool(np.all(np.isfinite(arr))), f"{name} must be finite")
    return arr


def parse_camera_properties(data: dict[str, Any]) -> CameraProperties:
    _require(data.get("schema_version") == INTRINSICS_SCHEMA, f"schema_version must be {INTRINSICS_SCHEMA}")

    w_raw = data.get("distort_w", 0.0)
    _require(isinstance(w_raw, (int, float)), "distort_w must be a number")
    w = float(w_raw)
    _require(0.0 <= w < np.pi, "distort_w must be in [0, pi)")

    if "matrix" in data:
        K = _matrix(data["matrix"], (3, 3), "matrix")
    else:
        missing = [k for k in ("fx", "fy", "cx", "cy") if k not in data]
        _require(not missing, f"either matrix or fx/fy/cx/cy is required (missing {missing})")
        K = np.array(
            [
                [float(data["fx"]), float(data.get("skew", 0.0)), float(data["cx"])],
                [0.0, float(data["fy"]), float(data["cy"])],
                [0.0, 0.0, 1.0],
            ],
            dtype=np.float64,
        )
    _require(abs(float(np.linalg.det(K))) > 1e-12, "matrix must be invertible")

    return CameraProperties(matrix=K, distort_w=w)


def parse_camera_pose(data: dict[str, Any]) -> CameraPose:
    _require(data.get("schema_version") == EXTRINSICS_SCHEMA, f"schema_version must be {EXTRINSICS_SCHEMA}")
    _require("rotation" in data and "center" in data, "rotation and center are required")
    R = _matrix(data["rotation"], (3, 3), "rotation")
    c = _matrix(data["center"], (3,), "center")
    try:
        return CameraPose(rotation=R, center=c)
    except ValueError as e:
        raise MetaValidationError(str(e)) from e


def parse_quantization_params(data: dict[str, Any]) -> QuantizationParams:
    _require(data.get("schema_version") == CONFIG_SCHEMA, f"schema_version must be {CONFIG_SCHEMA}")
    q = data.get("quantization", {})
    _require(isinstance(q, dict), "quantization must be an object")
    known = set(QuantizationParams.__dataclass_fields__)
    unknown = sorted(set(q) - known)
    _require(not unknown, f"unknown quantization keys: {unknown}")
    try:
        return QuantizationParams(**q)
    except (TypeError, ValueError) as e:
        raise MetaValidationError(f"invalid quantization parameters: {e}") from e


def load_camera_properties(path: Path) -> CameraProperties:
    return parse_camera_properties(_read_json(path))


def load_camera_pose(path: Path) -> CameraPose:
    return parse_camera_pose(_read_json(path))


def load_quantization_params(path: Path) -> QuantizationParams:
    return parse_quantization_params(_read_json(path))
