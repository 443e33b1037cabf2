from mvtracks.api.track_io import (
    load_multiview_track_list,
    load_track_list,
    load_views,
    save_multiview_track_list,
    save_track_list,
)

__all__ = [
    "load_track_list",
    "save_track_list",
    "load_multiview_track_list",
    "save_multiview_track_list",
    "load_views",
]
