from __future__ import annotations

import logging

import numpy as np

from mvtracks.core import distortion
from mvtracks.core.camera import CameraProperties
from mvtracks.core.track import Track

logger = logging.getLogger(__name__)


def calibrate_track(track: Track, intrinsics: CameraProperties) -> Track:
    """Apply the inverse calibration matrix to every point of a pixel track."""
    return {t: intrinsics.calibrate(np.asarray(x_px, dtype=np.float64)) for t, x_px in track.items()}


def calibrate_and_undistort_track(track: Track, intrinsics: CameraProperties) -> Track:
    """
    Pixel track -> calibrated, undistorted track.

    Points outside the radius where the distortion model can be inverted are
    dropped rather than undistorted, so the result may be shorter than the input.
    """
    w = intrinsics.distort_w
    calibrated = calibrate_track(track, intrinsics)

    valid: Track = {}
    for t, x in calibrated.items():
        if distortion.is_undistortable(x, w):
            valid[t] = x
        else:
            logger.debug("Dropping point at time %d: %s is outside the undistortable radius", t, x)
    logger.debug("%d / %d points could be undistorted", len(valid), len(calibrated))

    return {t: distortion.undistort(x, w) for t, x in sorted(valid.items())}


def calibrate_and_undistort_tracks(tracks: list[Track], intrinsics: CameraProperties) -> list[Track]:
    out = [calibrate_and_undistort_track(track, intrinsics) for track in tracks]
    kept = sum(len(t) for t in out)
    total = sum(len(t) for t in tracks)
    logger.info("Calibrated %d tracks, kept %d / %d points", len(tracks), kept, total)
    return out
