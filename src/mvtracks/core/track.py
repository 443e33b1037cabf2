from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

import numpy as np

# time index -> point (2,) for observed tracks, or (n,2) candidates for other views.
Track = dict[int, np.ndarray]


def make_track(points: dict[int, object]) -> Track:
    """Copy a {time: (x, y)} mapping into a Track of float64 arrays."""
    track: Track = {}
    for t, p in points.items():
        arr = np.asarray(p, dtype=np.float64)
        if arr.shape[-1] != 2:
            raise ValueError(f"point at time {t} must have 2 coordinates, got shape {arr.shape}")
        track[int(t)] = arr
    return track


@dataclass(frozen=True)
class MultiviewTrack:
    """
    One feature across all views. `views[i]` is the track in view i; the
    reference view holds observed pixels, other views hold candidate arrays.
    """

    views: tuple[Track, ...]

    @classmethod
    def empty(cls, num_views: int) -> "MultiviewTrack":
        return cls(views=tuple({} for _ in range(int(num_views))))

    @property
    def num_views(self) -> int:
        return len(self.views)

    def __getitem__(self, view: int) -> Track:
        return self.views[view]

    def num_candidates(self, view: int) -> int:
        return int(sum(np.asarray(p).reshape(-1, 2).shape[0] for p in self.views[view].values()))


@dataclass
class MultiviewTrackList:
    num_views: int
    tracks: list[MultiviewTrack] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.num_views < 1:
            raise ValueError("num_views must be >= 1")
        for track in self.tracks:
            self._check(track)

    def _check(self, track: MultiviewTrack) -> None:
        if track.num_views != self.num_views:
            raise ValueError(f"multiview track has {track.num_views} views, expected {self.num_views}")

    def append(self, track: MultiviewTrack) -> None:
        self._check(track)
        self.tracks.append(track)

    def __len__(self) -> int:
        return len(self.tracks)

    def __iter__(self) -> Iterator[MultiviewTrack]:
        return iter(self.tracks)

    def __getitem__(self, i: int) -> MultiviewTrack:
        return self.tracks[i]
