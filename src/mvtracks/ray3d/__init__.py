"""
Ray-based multiview correspondence search.

A point seen in the reference view back-projects to a 3D ray. Its image in
every other view is quantised into candidate pixels spaced a fixed distance
apart, which is the search space for the matching point.
"""

from mvtracks.ray3d.extent import (
    OtherView,
    QuantizationParams,
    Ray,
    RayExtent,
    back_project,
    find_extent_of_ray,
    find_ray_extent_in_view,
)
from mvtracks.ray3d.multiview import MultiviewResult, UnitFailure, find_multiview_track, find_multiview_tracks

__all__ = [
    "OtherView",
    "QuantizationParams",
    "Ray",
    "RayExtent",
    "back_project",
    "find_extent_of_ray",
    "find_ray_extent_in_view",
    "MultiviewResult",
    "UnitFailure",
    "find_multiview_track",
    "find_multiview_tracks",
]
