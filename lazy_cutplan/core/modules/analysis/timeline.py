"""
Frame-indexed timeline model for lazy_cutplan.

A Timeline is the validated, immutable list of segments describing one input:
- Segment: a [start_frame, end_frame) range tagged MAIN, EXCLUDED or UNCERTAIN
- Exact frame <-> time conversion with rational frame rates (no drift)
- Kept view: MAIN segments concatenated into one virtual continuous timeline,
  with the inverse mapping back to source time used by sampling and retiming
"""

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from functools import cached_property
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from ..errors import InvalidFrameRange, InvalidSegment

FpsLike = Union[Fraction, int, str, Tuple[int, int]]


class SegmentKind(Enum):
    MAIN = "main"
    EXCLUDED = "excluded"
    UNCERTAIN = "uncertain"

    @classmethod
    def parse(cls, value: Union["SegmentKind", str]) -> "SegmentKind":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().lower()
            for kind in cls:
                if kind.value == key:
                    return kind
        raise InvalidSegment(f"unknown segment kind: {value!r}")


def _is_frame_index(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class Segment:
    start_frame: int
    end_frame: int  # exclusive
    kind: SegmentKind = SegmentKind.MAIN

    def __post_init__(self):
        if not _is_frame_index(self.start_frame) or not _is_frame_index(self.end_frame):
            raise InvalidSegment(f"frame bounds must be integers: {self.start_frame!r}, {self.end_frame!r}")
        if self.start_frame < 0:
            raise InvalidSegment(f"segment starts before frame 0: {self.start_frame}")
        if self.end_frame <= self.start_frame:
            raise InvalidSegment(f"segment is empty or reversed: [{self.start_frame}, {self.end_frame})")
        object.__setattr__(self, "kind", SegmentKind.parse(self.kind))

    @property
    def frame_count(self) -> int:
        return self.end_frame - self.start_frame

    @property
    def is_main(self) -> bool:
        return self.kind is SegmentKind.MAIN


@dataclass(frozen=True)
class TimeRange:
    """Half-open [start, end) range in exact seconds."""
    start: Fraction
    end: Fraction

    @property
    def duration(self) -> Fraction:
        return self.end - self.start

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start < other.end and other.start < self.end


@dataclass(frozen=True)
class KeptSpan:
    """One MAIN segment placed on the kept (post-cut) timeline."""
    index: int  # position among MAIN segments
    segment: Segment
    source: TimeRange
    kept_start: Fraction

    @property
    def kept_end(self) -> Fraction:
        return self.kept_start + self.source.duration


def parse_fps(value: FpsLike) -> Fraction:
    """Parse a frame rate into an exact Fraction ("30000/1001", (30000, 1001), 25...)."""
    try:
        if isinstance(value, Fraction):
            fps = value
        elif isinstance(value, tuple):
            num, den = value
            fps = Fraction(int(num), int(den))
        elif isinstance(value, str):
            fps = Fraction(value.strip())
        elif _is_frame_index(value):
            fps = Fraction(value)
        else:
            raise InvalidFrameRange(f"unsupported frame rate type: {value!r}")
    except (ValueError, ZeroDivisionError, TypeError) as e:
        raise InvalidFrameRange(f"invalid frame rate {value!r}: {e}") from e
    if fps <= 0:
        raise InvalidFrameRange(f"frame rate must be positive: {value!r}")
    return fps


@dataclass(frozen=True)
class Timeline:
    fps: Fraction
    total_frames: int
    segments: Tuple[Segment, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "fps", parse_fps(self.fps))
        object.__setattr__(self, "segments", tuple(self.segments))
        if not _is_frame_index(self.total_frames) or self.total_frames <= 0:
            raise InvalidFrameRange(f"total_frames must be a positive integer: {self.total_frames!r}")

        previous: Optional[Segment] = None
        for seg in self.segments:
            if not isinstance(seg, Segment):
                raise InvalidSegment(f"not a Segment: {seg!r}")
            if seg.end_frame > self.total_frames:
                raise InvalidFrameRange(
                    f"segment [{seg.start_frame}, {seg.end_frame}) exceeds total_frames {self.total_frames}")
            if previous is not None:
                if seg.start_frame < previous.start_frame:
                    raise InvalidSegment(
                        f"segments not sorted: {seg.start_frame} after {previous.start_frame}")
                if seg.start_frame < previous.end_frame:
                    raise InvalidSegment(
                        f"segment [{seg.start_frame}, {seg.end_frame}) overlaps "
                        f"[{previous.start_frame}, {previous.end_frame})")
            previous = seg

    @classmethod
    def build(cls, segments: Iterable[Union[Segment, Sequence]], fps: FpsLike,
              total_frames: int) -> "Timeline":
        """Validate boundary-detector output and construct a Timeline.

        Segments may be Segment objects or (start_frame, end_frame, kind) tuples.
        Raises InvalidSegment / InvalidFrameRange; never returns a partial timeline.
        """
        parsed: List[Segment] = []
        for item in segments:
            if isinstance(item, Segment):
                parsed.append(item)
                continue
            try:
                start, end, kind = item
            except (TypeError, ValueError) as e:
                raise InvalidSegment(f"expected (start_frame, end_frame, kind), got {item!r}") from e
            parsed.append(Segment(start, end, SegmentKind.parse(kind)))
        return cls(fps=parse_fps(fps), total_frames=total_frames, segments=tuple(parsed))

    # -- frame/time conversion -------------------------------------------------

    def frame_to_time(self, frame: int) -> Fraction:
        """Exact presentation time of a frame boundary: frame * den / num."""
        return Fraction(frame * self.fps.denominator, self.fps.numerator)

    def time_to_frame(self, seconds) -> int:
        """Index of the frame shown at `seconds` (floor)."""
        return math.floor(Fraction(seconds) * self.fps)

    @property
    def frame_duration(self) -> Fraction:
        return 1 / self.fps

    @property
    def duration(self) -> Fraction:
        return self.frame_to_time(self.total_frames)

    def segment_range(self, segment: Segment) -> TimeRange:
        return TimeRange(self.frame_to_time(segment.start_frame), self.frame_to_time(segment.end_frame))

    # -- kept view ----------------------------------------------------------------

    def main_segments(self) -> Tuple[Segment, ...]:
        return tuple(seg for seg in self.segments if seg.is_main)

    @cached_property
    def _kept_spans(self) -> Tuple[KeptSpan, ...]:
        spans: List[KeptSpan] = []
        offset = Fraction(0)
        for seg in self.main_segments():
            source = self.segment_range(seg)
            spans.append(KeptSpan(index=len(spans), segment=seg, source=source, kept_start=offset))
            offset += source.duration
        return tuple(spans)

    def kept_view(self) -> Tuple[KeptSpan, ...]:
        return self._kept_spans

    def kept_frames(self) -> int:
        return sum(seg.frame_count for seg in self.main_segments())

    def kept_duration(self) -> Fraction:
        """Sum of MAIN segment durations, exact."""
        return self.frame_to_time(self.kept_frames())

    def kept_to_source(self, kept_start, kept_end) -> List[TimeRange]:
        """Map a kept-time range to source-time sub-ranges, split at every cut."""
        kept_start, kept_end = Fraction(kept_start), Fraction(kept_end)
        if kept_start < 0 or kept_end > self.kept_duration() or kept_end <= kept_start:
            raise ValueError(f"kept range [{kept_start}, {kept_end}) outside [0, {self.kept_duration()})")
        ranges: List[TimeRange] = []
        for span in self._kept_spans:
            lo = max(kept_start, span.kept_start)
            hi = min(kept_end, span.kept_end)
            if hi <= lo:
                continue
            shift = span.source.start - span.kept_start
            ranges.append(TimeRange(lo + shift, hi + shift))
        return ranges

    def source_to_kept(self, seconds) -> Optional[Fraction]:
        """Kept-time position of a source instant, or None when it was cut."""
        t = Fraction(seconds)
        for span in self._kept_spans:
            if span.source.start <= t < span.source.end:
                return span.kept_start + (t - span.source.start)
        spans = self._kept_spans
        if spans and t == spans[-1].source.end:
            return spans[-1].kept_end
        return None


def segments_from_records(records: Iterable) -> List[Tuple[int, int, str]]:
    """Normalise boundary-detector records ([s, e, kind] or {"start_frame"...})."""
    out: List[Tuple[int, int, str]] = []
    for rec in records:
        if isinstance(rec, dict):
            try:
                out.append((rec["start_frame"], rec["end_frame"], rec.get("kind", "main")))
            except KeyError as e:
                raise InvalidSegment(f"segment record missing {e}: {rec!r}") from e
        else:
            out.append(tuple(rec))  # type: ignore[arg-type]
    return out


def load_segments(path: Path) -> List[Tuple[int, int, str]]:
    """Load a JSON segment list written by the boundary-detection step."""
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("segments", [])
    return segments_from_records(data)
