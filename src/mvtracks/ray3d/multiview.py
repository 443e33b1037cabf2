from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from mvtracks.core.camera import CameraPose
from mvtracks.core.track import MultiviewTrack, MultiviewTrackList, Track
from mvtracks.errors import RayExtentError
from mvtracks.ray3d.extent import OtherView, QuantizationParams, back_project, find_ray_extent_in_view

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitFailure:
    """A (track, view) pair dropped because its quantisation failed."""

    track_index: int
    view_index: int
    time: int
    reason: str


@dataclass
class MultiviewResult:
    tracks: MultiviewTrackList
    failures: list[UnitFailure] = field(default_factory=list)


def find_multiview_track(
    track: Track,
    pose: CameraPose,
    other_views: Sequence[OtherView],
    *,
    reference_index: int,
    reference_pixels: Track | None = None,
    params: QuantizationParams | None = None,
    track_index: int = 0,
) -> tuple[MultiviewTrack, list[UnitFailure]]:
    """
    Candidates in every other view for one calibrated, undistorted track.

    A failure in one view drops that view's candidate track and is reported;
    the other views are unaffected. `reference_pixels` (the original pixel
    track) fills the reference slot, restricted to the surviving times.
    """
    if params is None:
        params = QuantizationParams()
    num_views = len(other_views) + 1
    views: list[Track] = [{} for _ in range(num_views)]
    failures: list[UnitFailure] = []

    if reference_pixels is not None:
        views[reference_index] = {t: np.asarray(reference_pixels[t], dtype=np.float64) for t in track}
    else:
        views[reference_index] = dict(track)

    rays = {t: back_project(x, pose) for t, x in track.items()}
    for view in other_views:
        candidates: Track = {}
        for t, ray in rays.items():
            try:
                extent = find_ray_extent_in_view(ray, view, params)
            except RayExtentError as e:
                logger.warning("Track %d, view %d, time %d: %s", track_index, view.index, t, e)
                failures.append(UnitFailure(track_index=track_index, view_index=view.index, time=t, reason=str(e)))
                candidates = {}
                break
            if len(extent):
                candidates[t] = extent.points_px
        views[view.index] = candidates

    return MultiviewTrack(views=tuple(views)), failures


# Per-worker context, installed once by the pool initializer.
_context: dict | None = None


def _init_worker(pose: CameraPose, other_views: Sequence[OtherView], reference_index: int, params: QuantizationParams) -> None:
    global _context
    _context = {
        "pose": pose,
        "other_views": list(other_views),
        "reference_index": reference_index,
        "params": params,
    }


def _run_track(args: tuple[int, Track, Track | None]) -> tuple[MultiviewTrack, list[UnitFailure]]:
    track_index, track, pixels = args
    if _context is None:
        raise RuntimeError("worker context not initialised")
    return find_multiview_track(
        track,
        _context["pose"],
        _context["other_views"],
        reference_index=_context["reference_index"],
        reference_pixels=pixels,
        params=_context["params"],
        track_index=track_index,
    )


def find_multiview_tracks(
    tracks: Sequence[Track],
    pose: CameraPose,
    other_views: Sequence[OtherView],
    *,
    reference_index: int,
    reference_pixels: Sequence[Track] | None = None,
    params: QuantizationParams | None = None,
    workers: int = 1,
) -> MultiviewResult:
    """
    One multiview track per input track, in input order.

    `other_views` must cover every view index except `reference_index`.
    With `workers > 1` tracks are processed in a process pool; each (track,
    time, view) unit is independent so results are identical to a serial run.
    """
    if params is None:
        params = QuantizationParams()
    num_views = len(other_views) + 1
    indices = sorted([reference_index] + [v.index for v in other_views])
    if indices != list(range(num_views)):
        raise ValueError(f"view indices {indices} do not cover 0..{num_views - 1}")
    if reference_pixels is not None and len(reference_pixels) != len(tracks):
        raise ValueError("reference_pixels must have one track per input track")

    jobs = [
        (i, track, None if reference_pixels is None else reference_pixels[i])
        for i, track in enumerate(tracks)
    ]

    if workers > 1 and len(jobs) > 1:
        with ProcessPoolExecutor(
            max_workers=workers,
            initializer=_init_worker,
            initargs=(pose, list(other_views), reference_index, params),
        ) as pool:
            results = list(pool.map(_run_track, jobs, chunksize=1))
    else:
        results = [
            find_multiview_track(
                track,
                pose,
                other_views,
                reference_index=reference_index,
                reference_pixels=pixels,
                params=params,
                track_index=i,
            )
            for i, track, pixels in jobs
        ]

    out = MultiviewResult(tracks=MultiviewTrackList(num_views=num_views))
    for mv_track, failures in results:
        out.tracks.append(mv_track)
        out.failures.extend(failures)

    total = sum(mv.num_candidates(v.index) for mv in out.tracks for v in other_views)
    logger.info(
        "Built %d multiview tracks over %d views (%d candidates, %d failed units)",
        len(out.tracks),
        num_views,
        total,
        len(out.failures),
    )
    return out
