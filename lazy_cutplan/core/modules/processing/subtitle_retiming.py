"""Subtitle retiming onto the kept (post-cut) timeline."""

import re
from dataclasses import dataclass, replace
from fractions import Fraction
from typing import Iterable, List, Optional

from ....utils.logging import get_logger
from ..analysis.timeline import KeptSpan, Timeline

logger = get_logger("subtitle_retiming")


def _as_fraction(value) -> Fraction:
    # Decimal seconds such as 0.1 should stay 1/10, not the binary float expansion
    if isinstance(value, float):
        return Fraction(repr(value))
    return Fraction(value)


@dataclass(frozen=True)
class SubtitleEvent:
    start: Fraction
    end: Fraction
    text: str = ""
    style: str = "Default"

    def __post_init__(self):
        start, end = _as_fraction(self.start), _as_fraction(self.end)
        if end < start:
            raise ValueError(f"subtitle event ends before it starts: [{self.start}, {self.end}]")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @property
    def duration(self) -> Fraction:
        return self.end - self.start


def _overlapping_spans(event: SubtitleEvent, spans: Iterable[KeptSpan]) -> List[KeptSpan]:
    if event.start == event.end:
        return [s for s in spans if s.source.start <= event.start < s.source.end]
    return [s for s in spans if event.start < s.source.end and s.source.start < event.end]


def retime_event(event: SubtitleEvent, timeline: Timeline) -> Optional[SubtitleEvent]:
    """Clip and shift one event; None when it lies entirely in cut material."""
    hits = _overlapping_spans(event, timeline.kept_view())
    if not hits:
        return None
    first, last = hits[0], hits[-1]
    start = first.kept_start + (max(event.start, first.source.start) - first.source.start)
    end = last.kept_start + (min(event.end, last.source.end) - last.source.start)
    return replace(event, start=start, end=end)


def retime_events(events: Iterable[SubtitleEvent], timeline: Timeline) -> List[SubtitleEvent]:
    """Map events onto the kept timeline.

    Events disjoint from every MAIN segment are dropped, events straddling a cut
    are clipped to the kept portion, and everything is shifted by the kept
    duration of the MAIN segments before it. An event spanning several MAIN
    segments becomes one event, since the kept timeline is contiguous there.
    """
    retimed: List[SubtitleEvent] = []
    dropped = 0
    for event in events:
        new_event = retime_event(event, timeline)
        if new_event is None:
            dropped += 1
            continue
        retimed.append(new_event)
    if dropped:
        logger.debug(f"Dropped {dropped} subtitle events inside cut material")
    return retimed


def events_from_records(records: Iterable[dict]) -> List[SubtitleEvent]:
    return [
        SubtitleEvent(
            start=rec["start"],
            end=rec["end"],
            text=rec.get("text", ""),
            style=rec.get("style", "Default"),
        )
        for rec in records
    ]


def _format_srt_time(seconds: Fraction) -> str:
    total_ms = round(seconds * 1000)
    h, rem = divmod(total_ms, 3_600_000)
    m, rem = divmod(rem, 60_000)
    s, ms = divmod(rem, 1000)
    return f"{h:02d}:{m:02d}:{s:02d},{ms:03d}"


def format_srt(events: Iterable[SubtitleEvent]) -> str:
    lines: List[str] = []
    for i, event in enumerate(events, 1):
        lines.append(str(i))
        lines.append(f"{_format_srt_time(event.start)} --> {_format_srt_time(event.end)}")
        lines.append(event.text)
        lines.append("")
    return "\n".join(lines)


_SRT_TIME = r"(\d+):(\d{2}):(\d{2})[,.](\d{3})"
_SRT_CUE = re.compile(_SRT_TIME + r"\s*-->\s*" + _SRT_TIME)


def _srt_seconds(h: str, m: str, s: str, ms: str) -> Fraction:
    return Fraction(int(h) * 3600 + int(m) * 60 + int(s)) + Fraction(int(ms), 1000)


def parse_srt(text: str) -> List[SubtitleEvent]:
    """Parse SRT cues; cue numbers are ignored."""
    events: List[SubtitleEvent] = []
    for block in re.split(r"\n\s*\n", text.replace("\r\n", "\n").strip()):
        lines = block.split("\n")
        for idx, line in enumerate(lines):
            match = _SRT_CUE.search(line)
            if match:
                g = match.groups()
                events.append(SubtitleEvent(
                    start=_srt_seconds(*g[:4]),
                    end=_srt_seconds(*g[4:]),
                    text="\n".join(lines[idx + 1:]),
                ))
                break
    return events
