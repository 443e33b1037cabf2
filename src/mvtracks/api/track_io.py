from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from mvtracks.core.camera import Camera
from mvtracks.core.track import MultiviewTrack, MultiviewTrackList, Track
from mvtracks.meta import MetaValidationError, load_camera_pose, load_camera_properties

logger = logging.getLogger(__name__)

TRACK_LIST_SCHEMA = "mvtracks.track_list.v0"
MULTIVIEW_TRACK_LIST_SCHEMA = "mvtracks.multiview_track_list.v0"


def _finite_point(value: Any, where: str) -> np.ndarray:
    p = np.asarray(value, dtype=np.float64).reshape(-1)
    if p.shape != (2,) or not np.all(np.isfinite(p)):
        raise MetaValidationError(f"{where}: point must be two finite numbers")
    return p


def save_track_list(path: Path, tracks: Sequence[Track]) -> Path:
    """Single-view tracks as JSON: one list of {t, x, y} per track, sorted by time."""
    path = Path(path)
    doc = {
        "schema_version": TRACK_LIST_SCHEMA,
        "tracks": [
            [{"t": int(t), "x": float(p[0]), "y": float(p[1])} for t, p in sorted(track.items())]
            for track in tracks
        ],
    }
    path.write_text(json.dumps(doc, indent=2), encoding="utf-8")
    return path


def load_track_list(path: Path) -> list[Track]:
    path = Path(path)
    doc = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(doc, dict) or doc.get("schema_version") != TRACK_LIST_SCHEMA:
        raise MetaValidationError(f"{path}: schema_version must be {TRACK_LIST_SCHEMA}")

    tracks: list[Track] = []
    for i, entries in enumerate(doc.get("tracks", [])):
        track: Track = {}
        for e in entries:
            t = int(e["t"])
            if t in track:
                raise MetaValidationError(f"{path}: track {i} has duplicate time {t}")
            track[t] = _finite_point((e["x"], e["y"]), f"{path}: track {i} time {t}")
        tracks.append(track)
    logger.info("Loaded %d single-view tracks from %s", len(tracks), path)
    return tracks


def save_multiview_track_list(path: Path, mv_tracks: MultiviewTrackList) -> Path:
    """
    Multiview tracks as JSON. Every view entry stores a list of pixel points per
    time: one point for an observed view, the ordered candidates otherwise.
    """
    path = Path(path)
    doc = {
        "schema_version": MULTIVIEW_TRACK_LIST_SCHEMA,
        "num_views": int(mv_tracks.num_views),
        "tracks": [
            [
                [
                    {"t": int(t), "points": np.asarray(p, dtype=np.float64).reshape(-1, 2).tolist()}
                    for t, p in sorted(view.items())
                ]
                for view in mv.views
            ]
            for mv in mv_tracks
        ],
    }
    path.write_text(json.dumps(doc), encoding="utf-8")
    return path


def load_multiview_track_list(path: Path) -> MultiviewTrackList:
    path = Path(path)
    doc = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(doc, dict) or doc.get("schema_version") != MULTIVIEW_TRACK_LIST_SCHEMA:
        raise MetaValidationError(f"{path}: schema_version must be {MULTIVIEW_TRACK_LIST_SCHEMA}")

    out = MultiviewTrackList(num_views=int(doc["num_views"]))
    for views in doc.get("tracks", []):
        tracks: list[Track] = []
        for view in views:
            tracks.append({int(e["t"]): np.asarray(e["points"], dtype=np.float64).reshape(-1, 2) for e in view})
        out.append(MultiviewTrack(views=tuple(tracks)))
    return out


def read_lines(path: Path) -> list[str]:
    """Non-empty, stripped lines of a text file (e.g. the list of view names)."""
    text = Path(path).read_text(encoding="utf-8")
    return [line.strip() for line in text.splitlines() if line.strip()]


def make_view_filename(fmt: str, name: str) -> Path:
    """Expand a per-view path pattern such as 'intrinsics/{}.json'."""
    return Path(fmt.format(name))


def load_views(names: Sequence[str], intrinsics_format: str, extrinsics_format: str) -> list[Camera]:
    cameras = []
    for name in names:
        intrinsics = load_camera_properties(make_view_filename(intrinsics_format, name))
        extrinsics = load_camera_pose(make_view_filename(extrinsics_format, name))
        cameras.append(Camera(intrinsics=intrinsics, extrinsics=extrinsics))
    logger.info("Loaded cameras for %d views", len(cameras))
    return cameras
