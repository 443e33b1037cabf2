from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

from mvtracks.api.track_io import load_track_list, load_views, read_lines, save_multiview_track_list
from mvtracks.core.calibration import calibrate_and_undistort_tracks
from mvtracks.meta import load_quantization_params
from mvtracks.ray3d.extent import OtherView, QuantizationParams
from mvtracks.ray3d.multiview import find_multiview_tracks

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def run_find_multiview_tracks(
    *,
    view_index: int,
    tracks_path: Path,
    intrinsics_format: str,
    extrinsics_format: str,
    views_path: Path,
    out_path: Path,
    params: QuantizationParams,
    workers: int = 1,
) -> int:
    """Returns the number of (track, view) units that failed."""
    pixel_tracks = load_track_list(tracks_path)
    names = read_lines(views_path)
    if not 0 <= view_index < len(names):
        raise ValueError(f"view index {view_index} out of range for {len(names)} views")
    logger.info("Matching to %d views", len(names))

    cameras = load_views(names, intrinsics_format, extrinsics_format)
    reference = cameras[view_index]
    other_views = [OtherView(index=i, camera=cam) for i, cam in enumerate(cameras) if i != view_index]

    undistorted = calibrate_and_undistort_tracks(pixel_tracks, reference.intrinsics)
    result = find_multiview_tracks(
        undistorted,
        reference.extrinsics,
        other_views,
        reference_index=view_index,
        reference_pixels=pixel_tracks,
        params=params,
        workers=workers,
    )

    save_multiview_track_list(out_path, result.tracks)
    logger.info("Wrote %s", out_path)
    for failure in result.failures:
        logger.warning(
            "Failed unit: track %d, view %s (time %d): %s",
            failure.track_index,
            names[failure.view_index],
            failure.time,
            failure.reason,
        )
    return len(result.failures)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="mvtracks")
    sub = parser.add_subparsers(dest="cmd", required=True)

    find = sub.add_parser(
        "find-multiview-tracks",
        help="Find candidate positions in every other view for tracks observed in one view.",
    )
    find.add_argument("view_index", type=int, help="Zero-based index of the view the tracks belong to.")
    find.add_argument("tracks", type=Path, help="Single-view track list (JSON).")
    find.add_argument("intrinsics_format", help="Per-view intrinsics path, e.g. intrinsics/{}.json")
    find.add_argument("extrinsics_format", help="Per-view extrinsics path, e.g. extrinsics/{}.json")
    find.add_argument("views", type=Path, help="Text file whose lines are the view names.")
    find.add_argument("output", type=Path, help="Output multiview track list (JSON).")
    find.add_argument("--config", type=Path, default=None, help="Quantization config (JSON).")
    find.add_argument("--delta", type=float, default=None, help="Candidate spacing in pixels (overrides config).")
    find.add_argument(
        "--max-candidates",
        type=int,
        default=None,
        help="Cap on candidates per point and view (overrides config).",
    )
    find.add_argument("--workers", type=int, default=1, help="Worker processes (1 = serial).")
    find.add_argument("--strict", action="store_true", help="Exit with status 1 if any track/view unit failed.")
    find.add_argument("-v", "--verbose", action="store_true")

    args = parser.parse_args(argv)

    if args.cmd == "find-multiview-tracks":
        setup_logging(args.verbose)
        params = load_quantization_params(args.config) if args.config else QuantizationParams()
        overrides = {}
        if args.delta is not None:
            overrides["delta_px"] = args.delta
        if args.max_candidates is not None:
            overrides["max_candidates"] = args.max_candidates
        try:
            params = dataclasses.replace(params, **overrides)
        except ValueError as e:
            parser.error(str(e))
        if args.view_index < 0:
            parser.error("view_index must be >= 0")

        failed = run_find_multiview_tracks(
            view_index=args.view_index,
            tracks_path=args.tracks,
            intrinsics_format=args.intrinsics_format,
            extrinsics_format=args.extrinsics_format,
            views_path=args.views,
            out_path=args.output,
            params=params,
            workers=args.workers,
        )
        if failed and args.strict:
            return 1
        return 0

    raise AssertionError(f"Unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
