"""
Regression tests for kept-duration drift.

Cut lists at 30000/1001 fps used to lose or gain fractions of a frame per cut
when segment boundaries went through floating point seconds. The compiled
graph, the sample windows and the retimed subtitles must all agree with the
exact kept duration.
"""

import unittest
from fractions import Fraction

from lazy_cutplan.core.modules.analysis.timeline import Timeline
from lazy_cutplan.core.modules.optimization.sample_windows import extract_windows
from lazy_cutplan.core.modules.processing.filter_graph import compile_timeline, format_seconds
from lazy_cutplan.core.modules.processing.subtitle_retiming import SubtitleEvent, retime_events

NTSC = "30000/1001"


def many_cuts_timeline(cuts: int = 400) -> Timeline:
    # Alternating 1001-frame kept parts and 7-frame cuts
    segments, frame = [], 0
    for _ in range(cuts):
        segments.append((frame, frame + 1001, "main"))
        segments.append((frame + 1001, frame + 1008, "excluded"))
        frame += 1008
    return Timeline.build(segments, NTSC, frame)


class TestKeptDurationRegression(unittest.TestCase):

    def setUp(self):
        self.timeline = many_cuts_timeline()

    def test_kept_duration_exact(self):
        # 400 parts of 1001 frames, each exactly 1001 * 1001 / 30000 s
        self.assertEqual(self.timeline.kept_duration(), Fraction(400 * 1001 * 1001, 30000))

    def test_both_strategies_agree(self):
        select = compile_timeline(self.timeline, audio_tracks=1, select_threshold=1000)
        trim = compile_timeline(self.timeline, audio_tracks=1, select_threshold=0)
        self.assertEqual(select.duration, trim.duration)
        self.assertEqual(select.duration, self.timeline.kept_duration())

    def test_rendered_boundaries_within_half_frame(self):
        trim = compile_timeline(self.timeline, audio_tracks=1, select_threshold=0)
        half_frame = self.timeline.frame_duration / 2
        for t in trim.stream_trims("0:a:0"):
            self.assertLess(abs(Fraction(format_seconds(t.start)) - t.start), half_frame)
            self.assertLess(abs(Fraction(format_seconds(t.end)) - t.end), half_frame)

    def test_windows_stay_inside_kept_duration(self):
        windows = extract_windows(self.timeline, 20, 45)
        kept = self.timeline.kept_duration()
        self.assertTrue(windows)
        for window in windows:
            self.assertLessEqual(window.kept_end, kept)
            total = sum((r.duration for r in window.source_ranges), Fraction(0))
            self.assertEqual(total, window.duration)

    def test_subtitles_never_past_end(self):
        end = self.timeline.duration
        events = [SubtitleEvent(end - 1, end)]
        retimed = retime_events(events, self.timeline)
        self.assertEqual(len(retimed), 1)
        self.assertEqual(retimed[0].end, self.timeline.kept_duration())


if __name__ == '__main__':
    unittest.main()
