"""
Unit tests for the filter_graph module.

Tests strategy selection, duration and ordering guarantees, audio/video
boundary agreement and ffmpeg filter_complex rendering.
"""

import unittest
from fractions import Fraction

from lazy_cutplan.core.modules.analysis.timeline import Timeline, TimeRange
from lazy_cutplan.core.modules.errors import InvalidSegment
from lazy_cutplan.core.modules.processing.filter_graph import (
    CompilerOptions, FilterGraphCompiler, GraphPart, GraphStrategy, SelectGraph, TrimConcatGraph,
    choose_strategy, compile_ranges, compile_timeline, format_seconds
)
from lazy_cutplan.core.modules.processing.subtitle_retiming import SubtitleEvent

SCENARIO_SEGMENTS = [
    (0, 1234, "main"),
    (1234, 2000, "excluded"),
    (2000, 3456, "main"),
    (3456, 5000, "excluded"),
    (5000, 8999, "main"),
]


def scenario_timeline() -> Timeline:
    return Timeline.build(SCENARIO_SEGMENTS, "30000/1001", 9000)


class TestStrategyChoice(unittest.TestCase):
    """Test the pure strategy selection rule."""

    def test_threshold_boundary(self):
        self.assertIs(choose_strategy(8, 8), GraphStrategy.SELECT)
        self.assertIs(choose_strategy(9, 8), GraphStrategy.TRIM_CONCAT)
        self.assertIs(choose_strategy(1, 0), GraphStrategy.TRIM_CONCAT)

    def test_compiler_uses_threshold(self):
        timeline = scenario_timeline()
        select = FilterGraphCompiler(CompilerOptions(select_threshold=3)).compile(timeline)
        trim = FilterGraphCompiler(CompilerOptions(select_threshold=2)).compile(timeline)
        self.assertIsInstance(select, SelectGraph)
        self.assertIsInstance(trim, TrimConcatGraph)

    def test_options_from_config(self):
        options = CompilerOptions.from_config({'select_threshold': 3}, audio_tracks=2)
        self.assertEqual(options.select_threshold, 3)
        self.assertEqual(options.audio_tracks, 2)

    def test_invalid_options(self):
        with self.assertRaises(ValueError):
            CompilerOptions(select_threshold=-1)
        with self.assertRaises(ValueError):
            CompilerOptions(audio_tracks=-1)


class TestFormatSeconds(unittest.TestCase):
    """Test fixed-point time rendering."""

    def test_whole_and_fractional(self):
        self.assertEqual(format_seconds(Fraction(2)), "2")
        self.assertEqual(format_seconds(Fraction(1, 2)), "0.5")
        self.assertEqual(format_seconds(Fraction(1234 * 1001, 30000)), "41.174466667")

    def test_rendering_error_below_half_frame(self):
        fps = Fraction(30000, 1001)
        for frame in (1, 999, 12345, 170000):
            exact = Fraction(frame) / fps
            rendered = Fraction(format_seconds(exact))
            self.assertLess(abs(rendered - exact), Fraction(1, 2) / fps)


class TestGraphGuarantees(unittest.TestCase):
    """Test duration, order and sync invariants for both strategies."""

    def setUp(self):
        self.timeline = scenario_timeline()

    def graphs(self):
        for threshold in (8, 0):
            yield FilterGraphCompiler(CompilerOptions(select_threshold=threshold, audio_tracks=2)).compile(
                self.timeline)

    def test_three_kept_parts(self):
        for graph in self.graphs():
            self.assertEqual(graph.segment_count, 3)

    def test_duration_matches_kept_duration(self):
        for graph in self.graphs():
            self.assertEqual(graph.duration, self.timeline.kept_duration())
            self.assertLess(abs(graph.duration - self.timeline.kept_duration()), self.timeline.frame_duration)

    def test_segment_order_preserved(self):
        for graph in self.graphs():
            starts = [p.source.start for p in graph.parts]
            self.assertEqual(starts, sorted(starts))
            self.assertEqual([p.index for p in graph.parts], [0, 1, 2])

    def test_output_offsets_continuous(self):
        for graph in self.graphs():
            offsets = graph.output_offsets()
            self.assertEqual(offsets[0], 0)
            for i in range(1, len(offsets)):
                self.assertEqual(offsets[i], offsets[i - 1] + graph.parts[i - 1].source.duration)
            self.assertEqual(offsets[-1] + graph.parts[-1].source.duration, graph.duration)

    def test_audio_trimmed_at_video_boundaries(self):
        graph = FilterGraphCompiler(CompilerOptions(select_threshold=0, audio_tracks=2)).compile(self.timeline)
        video = graph.stream_trims("0:v:0")
        for track in ("0:a:0", "0:a:1"):
            audio = graph.stream_trims(track)
            self.assertEqual([(t.start, t.end) for t in audio], [(t.start, t.end) for t in video])
            self.assertTrue(all(t.media_type == "audio" for t in audio))

    def test_no_main_segment(self):
        timeline = Timeline.build([(0, 100, "excluded")], 25, 100)
        with self.assertRaises(InvalidSegment):
            FilterGraphCompiler().compile(timeline)


class TestSelectRendering(unittest.TestCase):
    """Test single-pass select rendering."""

    def setUp(self):
        self.graph = compile_timeline(scenario_timeline(), audio_tracks=2)

    def test_frame_predicate(self):
        self.assertEqual(self.graph.frame_predicate(),
                         "between(n,0,1233)+between(n,2000,3455)+between(n,5000,8998)")

    def test_membership(self):
        self.assertTrue(self.graph.contains_frame(0))
        self.assertTrue(self.graph.contains_frame(1233))
        self.assertFalse(self.graph.contains_frame(1234))
        self.assertTrue(self.graph.contains_frame(2000))
        self.assertFalse(self.graph.contains_frame(8999))

    def test_filter_complex(self):
        fc = self.graph.to_filter_complex()
        chains = fc.split(";")
        self.assertEqual(len(chains), 9)
        self.assertTrue(chains[0].startswith("[0:v:0]select='between(n,0,1233)"))
        self.assertTrue(chains[0].endswith("setpts=N/FRAME_RATE/TB[outv]"))
        self.assertEqual(chains[1], "[0:a:0]atrim=start=0:end=41.174466667,asetpts=PTS-STARTPTS[a0p0]")
        self.assertEqual(chains[4], "[a0p0][a0p1][a0p2]concat=n=3:v=0:a=1[outa0]")
        self.assertEqual(chains[8], "[a1p0][a1p1][a1p2]concat=n=3:v=0:a=1[outa1]")
        self.assertNotIn("aselect", fc)

    def test_audio_cut_at_video_frame_boundaries(self):
        timeline = scenario_timeline()
        chains = self.graph.to_filter_complex().split(";")
        for track in range(2):
            trims = [c for c in chains if c.startswith(f"[0:a:{track}]atrim=")]
            expected = [
                f"[0:a:{track}]atrim=start={format_seconds(timeline.frame_to_time(p.start_frame))}"
                f":end={format_seconds(timeline.frame_to_time(p.end_frame))},asetpts=PTS-STARTPTS[a{track}p{i}]"
                for i, p in enumerate(self.graph.parts)
            ]
            self.assertEqual(trims, expected)
        self.assertIn("atrim=start=66.733333333:end=115.3152,", chains[2])

    def test_audio_trims_match_video(self):
        video = self.graph.stream_trims("0:v:0")
        audio = self.graph.stream_trims("0:a:1")
        self.assertEqual([(t.start, t.end) for t in audio], [(t.start, t.end) for t in video])

    def test_map_args(self):
        self.assertEqual(self.graph.map_args(),
                         ["-map", "[outv]", "-map", "[outa0]", "-map", "[outa1]"])

    def test_requires_frame_aligned_parts(self):
        with self.assertRaises(ValueError):
            SelectGraph(parts=(GraphPart(0, TimeRange(Fraction(0), Fraction(1))),))


class TestTrimConcatRendering(unittest.TestCase):
    """Test trim/concat rendering."""

    def test_filter_complex(self):
        graph = compile_timeline(scenario_timeline(), audio_tracks=1, select_threshold=0)
        chains = graph.to_filter_complex().split(";")
        self.assertEqual(chains[0], "[0:v:0]trim=start_frame=0:end_frame=1234,setpts=PTS-STARTPTS[v0]")
        self.assertEqual(chains[1], "[0:a:0]atrim=start=0:end=41.174466667,asetpts=PTS-STARTPTS[a0p0]")
        self.assertEqual(chains[-1], "[v0][a0p0][v1][a0p1][v2][a0p2]concat=n=3:v=1:a=1[outv][outa0]")

    def test_compile_ranges_uses_times(self):
        graph = compile_ranges([TimeRange(Fraction(1), Fraction(3, 2)), TimeRange(Fraction(4), Fraction(5))])
        fc = graph.to_filter_complex()
        self.assertIn("[0:v:0]trim=start=1:end=1.5,setpts=PTS-STARTPTS[v0]", fc)
        self.assertIn("[0:v:0]trim=start=4:end=5,setpts=PTS-STARTPTS[v1]", fc)
        self.assertTrue(fc.endswith("concat=n=2:v=1:a=0[outv]"))
        self.assertEqual(graph.duration, Fraction(3, 2))

    def test_input_index_and_prefix(self):
        graph = compile_ranges([TimeRange(Fraction(0), Fraction(1))])
        fc = graph.to_filter_complex(input_index=1, prefix="ref")
        self.assertEqual(fc, "[1:v:0]trim=start=0:end=1,setpts=PTS-STARTPTS[refv0];[refv0]concat=n=1:v=1:a=0[refoutv]")

    def test_compile_ranges_empty(self):
        with self.assertRaises(ValueError):
            compile_ranges([])


class TestSubtitlesInGraph(unittest.TestCase):
    """Test subtitle retiming inside compilation."""

    def test_events_retimed_when_enabled(self):
        timeline = Timeline.build([(0, 25, "main"), (25, 50, "excluded"), (50, 100, "main")], 25, 100)
        events = [SubtitleEvent(Fraction(1, 2), Fraction(3, 2), "a"), SubtitleEvent(Fraction(5, 2), 3, "b")]
        graph = compile_timeline(timeline, subtitle_events=events)
        self.assertEqual([(e.start, e.end) for e in graph.subtitle_events],
                         [(Fraction(1, 2), Fraction(1)), (Fraction(3, 2), Fraction(2))])

    def test_events_ignored_when_disabled(self):
        timeline = Timeline.build([(0, 25, "main")], 25, 100)
        graph = FilterGraphCompiler(CompilerOptions(subtitles=False)).compile(
            timeline, [SubtitleEvent(0, 1, "a")])
        self.assertEqual(graph.subtitle_events, ())


if __name__ == '__main__':
    unittest.main()
