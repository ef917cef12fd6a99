"""
Command-line orchestration for lazy_cutplan.

Subcommands:
- compile: segments -> filter graph (+ retimed subtitles)
- windows: segments -> sample windows on the kept timeline
- search:  media + segments -> chosen encode parameter
"""

import argparse
import json
import signal
import sys
from pathlib import Path
from typing import List, Optional

from ..config import config_overrides, get_config
from ..utils.logging import get_logger, set_debug_mode, set_quiet_mode
from .modules.analysis.media_utils import probe_media
from .modules.analysis.timeline import Timeline, load_segments
from .modules.errors import CutplanError, SearchCancelled
from .modules.optimization.quality_search import SearchStatus
from .modules.optimization.sample_windows import extract_windows
from .modules.processing.filter_graph import CompilerOptions, FilterGraphCompiler
from .modules.processing.subtitle_retiming import SubtitleEvent, events_from_records, format_srt, parse_srt
from .modules.system.cancellation import CancellationToken, install_sigint_handler
from .modules.system.system_utils import cleanup_temp_files
from .modules.system.tool_backends import BACKENDS, get_backend
from .planner import EncodePlanner

logger = get_logger("main")

EXIT_CODES = {
    SearchStatus.MET: 0,
    SearchStatus.APPROXIMATE: 2,
    SearchStatus.EXHAUSTED: 3,
}
EXIT_ERROR = 1


def load_subtitles(path: Path) -> List[SubtitleEvent]:
    """Subtitle events from an .srt file or a JSON list of {start, end, text, style}."""
    text = path.read_text(encoding='utf-8')
    if path.suffix.lower() == ".srt":
        return parse_srt(text)
    data = json.loads(text)
    if isinstance(data, dict):
        data = data.get("events", [])
    return events_from_records(data)


def _timeline_from_args(args) -> Timeline:
    return Timeline.build(load_segments(Path(args.segments)), args.fps, args.total_frames)


def cmd_compile(args, config) -> int:
    timeline = _timeline_from_args(args)
    events = load_subtitles(Path(args.subtitles)) if args.subtitles else None
    options = CompilerOptions(
        select_threshold=args.threshold if args.threshold is not None else config['select_threshold'],
        audio_tracks=args.audio_tracks,
        subtitles=events is not None,
    )
    graph = FilterGraphCompiler(options).compile(timeline, events)

    if args.json:
        print(json.dumps({
            'strategy': graph.strategy.value,
            'parts': [[float(p.source.start), float(p.source.end)] for p in graph.parts],
            'kept_duration': float(timeline.kept_duration()),
            'filter_complex': graph.to_filter_complex(),
            'map': graph.map_args(),
        }, indent=2))
    else:
        logger.result(f"{graph.strategy.value}: {graph.segment_count} kept parts, "
                      f"{float(timeline.kept_duration()):.3f}s kept")
        print(graph.to_filter_complex())

    if events is not None and args.srt_out:
        Path(args.srt_out).write_text(format_srt(graph.subtitle_events), encoding='utf-8')
        logger.info(f"Wrote {len(graph.subtitle_events)} retimed subtitle events to {args.srt_out}")
    return 0


def cmd_windows(args, config) -> int:
    timeline = _timeline_from_args(args)
    duration = args.duration if args.duration is not None else config['sample_duration']
    interval = args.interval if args.interval is not None else config['sample_interval']
    windows = extract_windows(timeline, duration, interval)
    for window in windows:
        ranges = ", ".join(f"{float(r.start):.3f}-{float(r.end):.3f}" for r in window.source_ranges)
        print(f"{window.index:3d}  kept {float(window.kept_start):9.3f}-{float(window.kept_end):9.3f}  "
              f"source {ranges}")
    logger.result(f"{len(windows)} sample windows")
    return 0


def cmd_search(args, config) -> int:
    media = probe_media(Path(args.input))
    segments = load_segments(Path(args.segments))
    events = load_subtitles(Path(args.subtitles)) if args.subtitles else None

    backend_kwargs = {}
    if args.encoder:
        backend_kwargs['encoder'] = args.encoder
    if args.preset:
        backend_kwargs['preset'] = args.preset
    backend = get_backend(args.backend, **backend_kwargs)

    token = CancellationToken()
    previous = install_sigint_handler(token)
    try:
        planner = EncodePlanner(config, cancel_token=token, backend=backend,
                                show_progress=not args.quiet)
        plan = planner.plan(media, segments, events)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    print(json.dumps(plan.describe(), indent=2))
    if events is not None and args.srt_out:
        Path(args.srt_out).write_text(format_srt(plan.subtitle_events), encoding='utf-8')
    return EXIT_CODES[plan.search.status]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lazy-cutplan",
        description="Lazy Cutplan - compile cut lists and plan quality-targeted encodes")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    parser.add_argument("--quiet", action="store_true", help="Only print warnings, errors and results")
    sub = parser.add_subparsers(dest="command", required=True)

    def timeline_args(p):
        p.add_argument("segments", help="JSON segment list from the boundary detector")
        p.add_argument("--fps", required=True, help="Exact frame rate, e.g. 30000/1001")
        p.add_argument("--total-frames", type=int, required=True, help="Frame count of the source")

    p_compile = sub.add_parser("compile", help="Compile segments into a filter graph")
    timeline_args(p_compile)
    p_compile.add_argument("--audio-tracks", type=int, default=0, help="Audio tracks to cut alongside video")
    p_compile.add_argument("--threshold", type=int, default=None,
                           help="Max kept segments for single-pass select (default: SELECT_THRESHOLD)")
    p_compile.add_argument("--subtitles", help="Subtitle events (.srt or .json) to retime")
    p_compile.add_argument("--srt-out", help="Write retimed subtitles here")
    p_compile.add_argument("--json", action="store_true", help="Print the graph as JSON")
    p_compile.set_defaults(func=cmd_compile)

    p_windows = sub.add_parser("windows", help="List sample windows on the kept timeline")
    timeline_args(p_windows)
    p_windows.add_argument("--duration", type=float, default=None, help="Sample duration in seconds")
    p_windows.add_argument("--interval", type=float, default=None, help="Seconds between sample starts")
    p_windows.set_defaults(func=cmd_windows)

    p_search = sub.add_parser("search", help="Find the encode parameter meeting the quality target")
    p_search.add_argument("input", help="Source media file")
    p_search.add_argument("segments", help="JSON segment list from the boundary detector")
    p_search.add_argument("--backend", choices=sorted(BACKENDS), default="vmaf", help="Quality metric")
    p_search.add_argument("--encoder", default=None, help="Encoder (default: backend's)")
    p_search.add_argument("--preset", default=None, help="Encoder preset (default: medium)")
    p_search.add_argument("--target", type=float, default=None, help="Score target (default: SCORE_TARGET)")
    p_search.add_argument("--max-ratio", type=float, default=None, help="Max encoded/source size ratio")
    p_search.add_argument("--min", dest="param_min", type=float, default=None, help="Lowest parameter")
    p_search.add_argument("--max", dest="param_max", type=float, default=None, help="Highest parameter")
    p_search.add_argument("--step", type=float, default=None, help="Parameter increment")
    p_search.add_argument("--sample-duration", type=float, default=None)
    p_search.add_argument("--sample-interval", type=float, default=None)
    p_search.add_argument("--max-iterations", type=int, default=None)
    p_search.add_argument("--workers", type=int, default=None, help="Parallel sample workers (0 = auto)")
    p_search.add_argument("--timeout", type=float, default=None, help="Per-tool timeout in seconds")
    p_search.add_argument("--cache", type=Path, default=None, help="JSON result cache file")
    p_search.add_argument("--subtitles", help="Subtitle events (.srt or .json) to retime")
    p_search.add_argument("--srt-out", help="Write retimed subtitles here")
    p_search.set_defaults(func=cmd_search)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for lazy-cutplan."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = get_config()
    except ValueError as e:
        logger.error(str(e))
        return EXIT_ERROR

    if args.debug or config['debug']:
        set_debug_mode(True)
    if args.quiet:
        set_quiet_mode(True)

    if args.command == "search":
        config = config_overrides(
            config,
            score_target=args.target,
            max_size_ratio=args.max_ratio,
            param_min=args.param_min,
            param_max=args.param_max,
            param_increment=args.step,
            sample_duration=args.sample_duration,
            sample_interval=args.sample_interval,
            max_iterations=args.max_iterations,
            max_workers=args.workers,
            tool_timeout=args.timeout,
            cache_path=args.cache,
        )

    try:
        return args.func(args, config)
    except SearchCancelled as e:
        logger.warn(f"Cancelled: {e}")
        return EXIT_ERROR
    except (CutplanError, ValueError, OSError) as e:
        logger.error(str(e))
        return EXIT_ERROR
    finally:
        cleanup_temp_files()


if __name__ == "__main__":
    sys.exit(main())
