"""
Encode planning orchestration for lazy_cutplan.

This module coordinates one planning run for one input:
- Segment validation into a Timeline (fails before any tool runs)
- Filter graph compilation, in parallel with the search since it only
  depends on the Timeline
- Quality search over sample windows through the tool gateway + result cache
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..config import get_config
from ..utils.logging import format_duration, get_logger
from .modules.analysis.media_utils import MediaDescriptor
from .modules.analysis.timeline import Timeline
from .modules.errors import InvalidSegment
from .modules.optimization.quality_search import QualitySearchEngine, SearchConfig, SearchResult
from .modules.optimization.sample_windows import SampleWindow, extract_windows
from .modules.processing.filter_graph import CompiledGraph, CompilerOptions, FilterGraphCompiler
from .modules.processing.subtitle_retiming import SubtitleEvent
from .modules.system.cancellation import CancellationToken
from .modules.system.result_cache import JsonFileCacheStore, MemoryCacheStore, ResultCache
from .modules.system.tool_backends import ToolBackend, VmafBackend
from .modules.system.tool_gateway import ExternalToolGateway, GatewayEvaluator, RetryPolicy, SampleEvaluator

logger = get_logger("planner")


@dataclass(frozen=True)
class EncodePlan:
    """Everything the final encode step needs."""
    timeline: Timeline
    graph: CompiledGraph
    search: SearchResult

    @property
    def parameter(self) -> float:
        return self.search.parameter

    @property
    def subtitle_events(self) -> List[SubtitleEvent]:
        return list(self.graph.subtitle_events)

    def describe(self) -> Dict[str, Any]:
        return {
            'strategy': self.graph.strategy.value,
            'kept_parts': self.graph.segment_count,
            'kept_duration': float(self.timeline.kept_duration()),
            'parameter': self.search.parameter,
            'score': round(self.search.score, 3),
            'size_ratio': round(self.search.size_ratio, 4),
            'iterations': self.search.iterations,
            'status': self.search.status.value,
        }


def cache_from_config(config: Dict[str, Any]) -> ResultCache:
    cache_path: Optional[Path] = config.get('cache_path')
    if cache_path:
        return ResultCache(JsonFileCacheStore(Path(cache_path)))
    return ResultCache(MemoryCacheStore())


class EncodePlanner:
    """Validates segments, then compiles the graph and searches the parameter concurrently."""

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 cache: Optional[ResultCache] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 backend: Optional[ToolBackend] = None,
                 show_progress: bool = True):
        self.config = config if config is not None else get_config()
        self.cache = cache if cache is not None else cache_from_config(self.config)
        self.cancel_token = cancel_token or CancellationToken()
        self.backend = backend or VmafBackend()
        self.show_progress = show_progress

    def build_timeline(self, media: MediaDescriptor, segments: Iterable) -> Timeline:
        return Timeline.build(segments, media.fps, media.total_frames)

    def evaluator_for(self, media: MediaDescriptor) -> SampleEvaluator:
        gateway = ExternalToolGateway(
            retry_policy=RetryPolicy.from_config(self.config),
            timeout=float(self.config.get('tool_timeout', 600)),
            cancel_token=self.cancel_token,
        )
        return GatewayEvaluator(gateway, self.backend, media)

    def plan(self, media: MediaDescriptor, segments: Iterable,
             subtitle_events: Optional[Iterable[SubtitleEvent]] = None,
             evaluator: Optional[SampleEvaluator] = None) -> EncodePlan:
        """Full planning run for one input."""
        timeline = self.build_timeline(media, segments)
        options = CompilerOptions.from_config(self.config, audio_tracks=media.audio_tracks,
                                              subtitles=subtitle_events is not None)
        return self.plan_timeline(timeline, options, evaluator or self.evaluator_for(media),
                                  subtitle_events, content_id=media.identity())

    def plan_timeline(self, timeline: Timeline, options: CompilerOptions, evaluator: SampleEvaluator,
                      subtitle_events: Optional[Iterable[SubtitleEvent]] = None,
                      content_id: str = "") -> EncodePlan:
        if not timeline.main_segments():
            raise InvalidSegment("timeline has no MAIN segment to keep")
        search_config = SearchConfig.from_config(self.config)
        engine = QualitySearchEngine(
            evaluator, search_config,
            cache=self.cache,
            cancel_token=self.cancel_token,
            max_workers=int(self.config.get('max_workers', 0)),
            content_id=content_id,
            show_progress=self.show_progress,
        )
        events = list(subtitle_events) if subtitle_events is not None else None

        logger.info(f"Planning {len(timeline.main_segments())} kept segments, "
                    f"{format_duration(float(timeline.kept_duration()))} of "
                    f"{format_duration(float(timeline.duration))}")

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="graph") as executor:
            graph_future = executor.submit(FilterGraphCompiler(options).compile, timeline, events)
            result = engine.search_timeline(timeline)
            graph = graph_future.result()

        plan = EncodePlan(timeline=timeline, graph=graph, search=result)
        logger.result(f"{graph.strategy.value} graph, {graph.segment_count} parts; {result.summary()}")
        return plan

    def sample_windows(self, timeline: Timeline) -> List[SampleWindow]:
        search_config = SearchConfig.from_config(self.config)
        return extract_windows(timeline, search_config.sample_duration, search_config.sample_interval,
                               search_config.min_fraction)


def plan_encode(media: MediaDescriptor, segments: Iterable,
                subtitle_events: Optional[Iterable[SubtitleEvent]] = None,
                config: Optional[Dict[str, Any]] = None, **kwargs) -> EncodePlan:
    """Convenience wrapper: one EncodePlanner, one plan."""
    return EncodePlanner(config, **kwargs).plan(media, segments, subtitle_events)
