from mvtracks import meta
from mvtracks.api import load_multiview_track_list, load_track_list, save_multiview_track_list, save_track_list
from mvtracks.core.calibration import calibrate_and_undistort_track
from mvtracks.core.camera import Camera, CameraPose, CameraProperties
from mvtracks.core.track import MultiviewTrack, MultiviewTrackList, Track
from mvtracks.errors import DegenerateProjectionError, LimitCycleError, RayExtentError
from mvtracks.ray3d import (
    OtherView,
    QuantizationParams,
    find_extent_of_ray,
    find_multiview_tracks,
)

__all__ = [
    "meta",
    "Camera",
    "CameraPose",
    "CameraProperties",
    "Track",
    "MultiviewTrack",
    "MultiviewTrackList",
    "OtherView",
    "QuantizationParams",
    "calibrate_and_undistort_track",
    "find_extent_of_ray",
    "find_multiview_tracks",
    "load_track_list",
    "save_track_list",
    "load_multiview_track_list",
    "save_multiview_track_list",
    "RayExtentError",
    "LimitCycleError",
    "DegenerateProjectionError",
]
