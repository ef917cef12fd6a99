"""
FilterGraphCompiler: Timeline -> deterministic multi-stream processing graph

Two strategies, picked by choose_strategy() from the kept segment count:
- SELECT: one pass over video with a frame membership predicate (OR of
  [start, end) range tests), timestamps rewritten continuously; audio is
  cut per part with atrim and concatenated, since aselect only decides per
  decoded audio frame (1024 samples for AAC)
- TRIM_CONCAT: per kept segment and per stream a trim + timestamp reset,
  concatenated in original order (scales linearly, per-segment A/V sync)

Audio tracks are always cut at exactly the same boundaries as video. The graph
is abstract; to_filter_complex() renders it for ffmpeg.
"""

from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from typing import ClassVar, Dict, Iterable, List, Optional, Sequence, Tuple

from ....utils.logging import get_logger
from ..analysis.timeline import Timeline, TimeRange
from ..errors import InvalidSegment
from .subtitle_retiming import SubtitleEvent, retime_events

logger = get_logger("filter_graph")

DEFAULT_SELECT_THRESHOLD = 8
TIME_DIGITS = 9


class GraphStrategy(Enum):
    SELECT = "select"
    TRIM_CONCAT = "trim_concat"


def choose_strategy(segment_count: int, threshold: int) -> GraphStrategy:
    """SELECT for few segments (single pass), TRIM_CONCAT for many."""
    return GraphStrategy.SELECT if segment_count <= threshold else GraphStrategy.TRIM_CONCAT


def format_seconds(value: Fraction) -> str:
    """Fixed-point rendering of an exact time, rounded to TIME_DIGITS places."""
    scale = 10 ** TIME_DIGITS
    q = round(Fraction(value) * scale)
    sign = "-" if q < 0 else ""
    q = abs(q)
    whole, frac = divmod(q, scale)
    if frac == 0:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{frac:0{TIME_DIGITS}d}".rstrip("0")


@dataclass(frozen=True)
class CompilerOptions:
    select_threshold: int = DEFAULT_SELECT_THRESHOLD
    audio_tracks: int = 0
    subtitles: bool = False

    def __post_init__(self):
        if self.select_threshold < 0:
            raise ValueError("select_threshold must be >= 0")
        if self.audio_tracks < 0:
            raise ValueError("audio_tracks must be >= 0")

    @classmethod
    def from_config(cls, config: Dict, audio_tracks: int = 0, subtitles: bool = False) -> "CompilerOptions":
        return cls(
            select_threshold=int(config.get('select_threshold', DEFAULT_SELECT_THRESHOLD)),
            audio_tracks=audio_tracks,
            subtitles=subtitles,
        )


@dataclass(frozen=True)
class GraphPart:
    """One kept sub-range of the source, in output order."""
    index: int
    source: TimeRange
    start_frame: Optional[int] = None
    end_frame: Optional[int] = None  # exclusive

    @property
    def frame_aligned(self) -> bool:
        return self.start_frame is not None and self.end_frame is not None


@dataclass(frozen=True)
class StreamTrim:
    """A trim + timestamp reset applied to one stream for one part."""
    stream: str
    media_type: str
    part: int
    start: Fraction
    end: Fraction

    @property
    def duration(self) -> Fraction:
        return self.end - self.start


@dataclass(frozen=True)
class CompiledGraph:
    parts: Tuple[GraphPart, ...]
    audio_tracks: int = 0
    subtitle_events: Tuple[SubtitleEvent, ...] = field(default_factory=tuple)

    strategy: ClassVar[GraphStrategy]

    @property
    def duration(self) -> Fraction:
        return sum((p.source.duration for p in self.parts), Fraction(0))

    @property
    def segment_count(self) -> int:
        return len(self.parts)

    def streams(self) -> List[str]:
        return ["0:v:0"] + [f"0:a:{k}" for k in range(self.audio_tracks)]

    def output_labels(self, prefix: str = "") -> List[str]:
        return [f"{prefix}outv"] + [f"{prefix}outa{k}" for k in range(self.audio_tracks)]

    def output_offsets(self) -> List[Fraction]:
        """Output start time of each part; continuous, no gaps or overlaps."""
        offsets, t = [], Fraction(0)
        for part in self.parts:
            offsets.append(t)
            t += part.source.duration
        return offsets

    def map_args(self) -> List[str]:
        args: List[str] = []
        for label in self.output_labels():
            args.extend(["-map", f"[{label}]"])
        return args

    def stream_trims(self, stream: Optional[str] = None) -> List[StreamTrim]:
        trims: List[StreamTrim] = []
        for part in self.parts:
            for name in self.streams():
                if stream is not None and name != stream:
                    continue
                media_type = "video" if ":v:" in name else "audio"
                trims.append(StreamTrim(name, media_type, part.index, part.source.start, part.source.end))
        return trims

    def _audio_trim(self, input_index: int, prefix: str, track: int, i: int, part: GraphPart) -> str:
        # Sample-accurate cut at the part's exact source times
        start, end = format_seconds(part.source.start), format_seconds(part.source.end)
        return (f"[{input_index}:a:{track}]atrim=start={start}:end={end},"
                f"asetpts=PTS-STARTPTS[{prefix}a{track}p{i}]")

    def to_filter_complex(self, input_index: int = 0, prefix: str = "") -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class TrimConcatGraph(CompiledGraph):
    strategy: ClassVar[GraphStrategy] = GraphStrategy.TRIM_CONCAT

    def _video_trim(self, part: GraphPart) -> str:
        # Frame indices are exact for video; times are kept for unaligned sample ranges
        if part.frame_aligned:
            return f"trim=start_frame={part.start_frame}:end_frame={part.end_frame}"
        return f"trim=start={format_seconds(part.source.start)}:end={format_seconds(part.source.end)}"

    def to_filter_complex(self, input_index: int = 0, prefix: str = "") -> str:
        chains: List[str] = []
        concat_inputs: List[str] = []
        for i, part in enumerate(self.parts):
            chains.append(f"[{input_index}:v:0]{self._video_trim(part)},setpts=PTS-STARTPTS[{prefix}v{i}]")
            concat_inputs.append(f"[{prefix}v{i}]")
            for k in range(self.audio_tracks):
                chains.append(self._audio_trim(input_index, prefix, k, i, part))
                concat_inputs.append(f"[{prefix}a{k}p{i}]")
        outputs = "".join(f"[{label}]" for label in self.output_labels(prefix))
        chains.append(f"{''.join(concat_inputs)}concat=n={len(self.parts)}:v=1:a={self.audio_tracks}{outputs}")
        return ";".join(chains)


@dataclass(frozen=True)
class SelectGraph(CompiledGraph):
    strategy: ClassVar[GraphStrategy] = GraphStrategy.SELECT

    def __post_init__(self):
        if not all(p.frame_aligned for p in self.parts):
            raise ValueError("SelectGraph needs frame-aligned parts")

    def contains_frame(self, frame: int) -> bool:
        return any(p.start_frame <= frame < p.end_frame for p in self.parts)  # type: ignore[operator]

    def frame_predicate(self) -> str:
        return "+".join(f"between(n,{p.start_frame},{p.end_frame - 1})" for p in self.parts)  # type: ignore[operator]

    def to_filter_complex(self, input_index: int = 0, prefix: str = "") -> str:
        chains = [f"[{input_index}:v:0]select='{self.frame_predicate()}',setpts=N/FRAME_RATE/TB[{prefix}outv]"]
        for k in range(self.audio_tracks):
            chains.extend(self._audio_trim(input_index, prefix, k, i, part) for i, part in enumerate(self.parts))
            inputs = "".join(f"[{prefix}a{k}p{i}]" for i in range(len(self.parts)))
            chains.append(f"{inputs}concat=n={len(self.parts)}:v=0:a=1[{prefix}outa{k}]")
        return ";".join(chains)


def _timeline_parts(timeline: Timeline) -> Tuple[GraphPart, ...]:
    return tuple(
        GraphPart(index=span.index, source=span.source,
                  start_frame=span.segment.start_frame, end_frame=span.segment.end_frame)
        for span in timeline.kept_view()
    )


class FilterGraphCompiler:
    """Compiles a Timeline into a CompiledGraph."""

    def __init__(self, options: Optional[CompilerOptions] = None):
        self.options = options or CompilerOptions()

    def compile(self, timeline: Timeline,
                subtitle_events: Optional[Iterable[SubtitleEvent]] = None) -> CompiledGraph:
        parts = _timeline_parts(timeline)
        if not parts:
            raise InvalidSegment("timeline has no MAIN segment to keep")

        events: Tuple[SubtitleEvent, ...] = ()
        if self.options.subtitles and subtitle_events is not None:
            events = tuple(retime_events(subtitle_events, timeline))

        strategy = choose_strategy(len(parts), self.options.select_threshold)
        graph_cls = SelectGraph if strategy is GraphStrategy.SELECT else TrimConcatGraph
        graph = graph_cls(parts=parts, audio_tracks=self.options.audio_tracks, subtitle_events=events)
        logger.graph(f"{strategy.value}: {len(parts)} kept parts, {self.options.audio_tracks} audio tracks, "
                     f"{float(graph.duration):.3f}s")
        return graph


def compile_timeline(timeline: Timeline, audio_tracks: int = 0,
                     select_threshold: int = DEFAULT_SELECT_THRESHOLD,
                     subtitle_events: Optional[Iterable[SubtitleEvent]] = None) -> CompiledGraph:
    options = CompilerOptions(select_threshold=select_threshold, audio_tracks=audio_tracks,
                              subtitles=subtitle_events is not None)
    return FilterGraphCompiler(options).compile(timeline, subtitle_events)


def compile_ranges(ranges: Sequence[TimeRange], audio_tracks: int = 0) -> TrimConcatGraph:
    """Trim/concat graph over arbitrary source ranges (sample windows)."""
    if not ranges:
        raise ValueError("compile_ranges needs at least one range")
    parts = tuple(GraphPart(index=i, source=r) for i, r in enumerate(ranges))
    return TrimConcatGraph(parts=parts, audio_tracks=audio_tracks)
