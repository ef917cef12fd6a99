"""
Sample window placement for quality probes.

Windows are placed on the kept (post-cut) timeline:
1. Start at kept-time 0, one window every `interval` seconds (start to start)
2. Each window lasts `duration`, or what is left of the kept timeline
3. Stop once the remaining kept time is below `min_fraction * duration`;
   a short trailing window is dropped, never padded
4. Map every window back to source time, split at cuts, so a sample never
   contains EXCLUDED or UNCERTAIN material
"""

from dataclasses import dataclass
from fractions import Fraction
from typing import List, Tuple

from ....utils.logging import get_logger
from ..analysis.timeline import Timeline, TimeRange
from ..processing.filter_graph import TrimConcatGraph, compile_ranges, format_seconds

logger = get_logger("sample_windows")

DEFAULT_MIN_FRACTION = 0.5


@dataclass(frozen=True)
class SampleWindow:
    index: int
    kept_start: Fraction
    kept_end: Fraction
    source_ranges: Tuple[TimeRange, ...]

    @property
    def duration(self) -> Fraction:
        return self.kept_end - self.kept_start

    @property
    def crosses_cut(self) -> bool:
        return len(self.source_ranges) > 1

    def identity(self) -> str:
        """Stable description of the window's content, used in fingerprints."""
        ranges = ",".join(f"{format_seconds(r.start)}-{format_seconds(r.end)}" for r in self.source_ranges)
        return f"[{ranges}]"

    def reference_graph(self, audio_tracks: int = 0) -> TrimConcatGraph:
        """Trim/concat graph extracting this window's reference content."""
        return compile_ranges(self.source_ranges, audio_tracks=audio_tracks)


def extract_windows(timeline: Timeline, duration, interval,
                    min_fraction: float = DEFAULT_MIN_FRACTION) -> List[SampleWindow]:
    """Place sample windows over the kept view of `timeline`."""
    duration = Fraction(duration)
    interval = Fraction(interval)
    if duration <= 0:
        raise ValueError(f"sample duration must be positive: {duration}")
    if interval <= 0:
        raise ValueError(f"sample interval must be positive: {interval}")
    if not 0 < min_fraction <= 1:
        raise ValueError(f"min_fraction must be in (0, 1]: {min_fraction}")

    kept_total = timeline.kept_duration()
    min_length = duration * Fraction(min_fraction)
    windows: List[SampleWindow] = []
    start = Fraction(0)

    while kept_total - start >= min_length and kept_total - start > 0:
        end = min(start + duration, kept_total)
        ranges = tuple(timeline.kept_to_source(start, end))
        windows.append(SampleWindow(index=len(windows), kept_start=start, kept_end=end, source_ranges=ranges))
        start += interval

    split = sum(1 for w in windows if w.crosses_cut)
    logger.sample(f"{len(windows)} windows of {float(duration):.1f}s every {float(interval):.1f}s "
                  f"over {float(kept_total):.1f}s kept ({split} split at cuts)")
    return windows
