"""
Quality search: pick the encode parameter that meets a score target within a
size budget, using as few expensive probes as possible.

The score is assumed non-increasing in the parameter (higher CRF, lower
quality, smaller output). The search is an interpolated binary search over the
parameter grid lo, lo + inc, ..., hi:

1. First probe: bracket midpoint, snapped half-up to the grid
2. Probe = every sample window encoded + measured at that parameter (cached),
   mean score over the samples that succeeded, size ratio over their bytes
3. Score and size both within limits: keep it as the incumbent and move the
   low end of the bracket past it, looking for a cheaper parameter that still
   meets the target
4. Otherwise shrink the bracket on the violated side
5. Next probe: interpolated toward the target score between the two
   observations nearest it, kept close enough to the bracket midpoint that
   the bracket empties within ceil(log2(grid points + 1)) + 2 probes
6. No unevaluated grid point left in the bracket: MET with the highest
   feasible parameter, or APPROXIMATE with the best observation
7. Iteration cap: MET if anything was feasible, else EXHAUSTED

Observations that contradict monotonicity are logged, the bracket is widened
back to the outermost passing bounds and the rest of the search bisects
instead of interpolating.
"""

import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple

from ....utils.logging import create_progress_bar, get_logger
from ..analysis.timeline import Timeline
from ..errors import EvaluationFailed, SampleEvaluationError, SearchCancelled, SearchExhausted
from ..system.cancellation import CancellationToken
from ..system.result_cache import ResultCache, fingerprint
from ..system.system_utils import worker_count
from ..system.tool_gateway import SampleEvaluator, SampleMeasurement
from .sample_windows import DEFAULT_MIN_FRACTION, SampleWindow, extract_windows

logger = get_logger("quality_search")

GRID_EPSILON = 1e-9
# Probes allowed beyond plain bisection before interpolation is reined in
INTERPOLATION_SLACK = 2


@dataclass(frozen=True)
class SearchConfig:
    target_score: float = 95.0
    max_size_ratio: float = 0.8
    param_min: float = 10
    param_max: float = 51
    increment: float = 1
    sample_duration: float = 20
    sample_interval: float = 300
    max_iterations: int = 12
    min_fraction: float = DEFAULT_MIN_FRACTION

    def __post_init__(self):
        if self.param_min > self.param_max:
            raise ValueError(f"param_min {self.param_min} > param_max {self.param_max}")
        if self.increment <= 0:
            raise ValueError("increment must be positive")
        if self.target_score <= 0:
            raise ValueError("target_score must be positive")
        if self.max_size_ratio <= 0:
            raise ValueError("max_size_ratio must be positive")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")

    @classmethod
    def from_config(cls, config: Dict) -> "SearchConfig":
        defaults = cls()
        return cls(
            target_score=float(config.get('score_target', defaults.target_score)),
            max_size_ratio=float(config.get('max_size_ratio', defaults.max_size_ratio)),
            param_min=float(config.get('param_min', defaults.param_min)),
            param_max=float(config.get('param_max', defaults.param_max)),
            increment=float(config.get('param_increment', defaults.increment)),
            sample_duration=float(config.get('sample_duration', defaults.sample_duration)),
            sample_interval=float(config.get('sample_interval', defaults.sample_interval)),
            max_iterations=int(config.get('max_iterations', defaults.max_iterations)),
        )

    @property
    def grid_size(self) -> int:
        """Index of the last grid point (hi snapped down onto the grid)."""
        return int(math.floor((self.param_max - self.param_min) / self.increment + GRID_EPSILON))

    def parameter_at(self, index: int) -> float:
        return round(self.param_min + index * self.increment, 9)

    @property
    def probe_budget(self) -> int:
        """Probes that empty the bracket on a monotonic curve."""
        return math.ceil(math.log2(self.grid_size + 2)) + INTERPOLATION_SLACK


class SearchStatus(Enum):
    MET = "met"
    APPROXIMATE = "approximate"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class ProbeObservation:
    parameter: float
    score: float
    size_ratio: float
    samples: int
    failed_samples: int = 0

    def quality_ok(self, config: SearchConfig) -> bool:
        return self.score >= config.target_score

    def size_ok(self, config: SearchConfig) -> bool:
        return self.size_ratio <= config.max_size_ratio

    def meets(self, config: SearchConfig) -> bool:
        return self.quality_ok(config) and self.size_ok(config)

    def shortfall(self, config: SearchConfig) -> float:
        """Normalised distance from feasibility; 0 when both limits hold."""
        quality = max(0.0, config.target_score - self.score) / config.target_score
        size = max(0.0, self.size_ratio - config.max_size_ratio) / config.max_size_ratio
        return quality + size


@dataclass(frozen=True)
class SearchResult:
    parameter: float
    score: float
    size_ratio: float
    iterations: int
    status: SearchStatus
    observations: Tuple[ProbeObservation, ...] = field(default_factory=tuple)

    @property
    def met(self) -> bool:
        return self.status is SearchStatus.MET

    def raise_for_status(self) -> "SearchResult":
        if self.status is SearchStatus.EXHAUSTED:
            raise SearchExhausted(self)
        return self

    def summary(self) -> str:
        return (f"{self.status.value.upper()}: parameter {self.parameter:g}, score {self.score:.2f}, "
                f"size ratio {self.size_ratio:.3f} after {self.iterations} probes")


def best_observation(observations: Sequence[ProbeObservation], config: SearchConfig) -> ProbeObservation:
    """Smallest shortfall; ties go to the higher (cheaper) parameter."""
    return min(observations, key=lambda o: (o.shortfall(config), -o.parameter))


def interpolate(a: ProbeObservation, b: ProbeObservation, target: float) -> Optional[float]:
    """Parameter where the line through a and b reaches `target`."""
    if a.score == b.score:
        return None
    return a.parameter + (target - a.score) * (b.parameter - a.parameter) / (b.score - a.score)


class QualitySearchEngine:
    """Interpolated binary search over the encode parameter."""

    def __init__(self, evaluator: SampleEvaluator, config: Optional[SearchConfig] = None,
                 cache: Optional[ResultCache] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 max_workers: int = 0, content_id: str = "",
                 show_progress: bool = True):
        self.evaluator = evaluator
        self.config = config or SearchConfig()
        self.cache = cache
        self.cancel_token = cancel_token or CancellationToken()
        self.max_workers = max_workers
        self.content_id = content_id
        self.show_progress = show_progress
        self._tool_identity: Optional[Dict[str, str]] = None

    def windows_for(self, timeline: Timeline) -> List[SampleWindow]:
        return extract_windows(timeline, self.config.sample_duration, self.config.sample_interval,
                               self.config.min_fraction)

    def search_timeline(self, timeline: Timeline) -> SearchResult:
        windows = self.windows_for(timeline)
        if not windows:
            # Kept material shorter than a useful window: sample all of it once
            kept = timeline.kept_duration()
            windows = extract_windows(timeline, kept, kept)
        return self.search(windows)

    # ---- probe evaluation ----

    def _evaluate_sample(self, window: SampleWindow, parameter: float) -> SampleMeasurement:
        self.cancel_token.raise_if_cancelled()
        if self.cache is None:
            return self.evaluator.evaluate(window, parameter)
        key = fingerprint(self.content_id, window, parameter, self._tool_identity)
        return self.cache.evaluate_or_wait(key, lambda: self.evaluator.evaluate(window, parameter))

    def evaluate_probe(self, windows: Sequence[SampleWindow], parameter: float) -> ProbeObservation:
        """Evaluate every window at `parameter` over a bounded pool and aggregate."""
        self.cancel_token.raise_if_cancelled()
        measurements: Dict[int, SampleMeasurement] = {}
        errors: List[SampleEvaluationError] = []
        workers = worker_count(len(windows), self.max_workers)

        with create_progress_bar(total=len(windows), desc=f"[PROBE] {parameter:g}", unit="sample",
                                 leave=False, disable=None if self.show_progress else True) as pbar:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as executor:
                future_to_window = {
                    executor.submit(self._evaluate_sample, window, parameter): window
                    for window in windows
                }
                try:
                    for future in as_completed(future_to_window):
                        window = future_to_window[future]
                        try:
                            measurements[window.index] = future.result()
                        except SampleEvaluationError as e:
                            errors.append(e)
                            logger.warn(str(e))
                        finally:
                            pbar.update(1)
                except SearchCancelled:
                    for pending in future_to_window:
                        pending.cancel()
                    raise

        # Partial results of a cancelled probe are discarded
        self.cancel_token.raise_if_cancelled()
        if not measurements:
            raise EvaluationFailed(parameter, errors)

        scores = [m.score for m in measurements.values()]
        encoded = sum(m.encoded_size for m in measurements.values())
        reference = sum(m.reference_size for m in measurements.values())
        size_ratio = encoded / reference if reference > 0 else 0.0
        return ProbeObservation(
            parameter=parameter,
            score=sum(scores) / len(scores),
            size_ratio=size_ratio,
            samples=len(measurements),
            failed_samples=len(errors),
        )

    # ---- search ----

    def _next_index(self, lo: int, hi: int, observed: Dict[int, ProbeObservation],
                    failed: Set[int], bisect: bool, radius: int = -1) -> Optional[int]:
        """Next grid index to probe; within `radius` of both bracket ends when it fits."""
        candidates = [k for k in range(lo, hi + 1) if k not in observed and k not in failed]
        if not candidates:
            return None

        estimate: Optional[float] = None
        if not bisect and len(observed) >= 2:
            estimate = self._interpolated_index(observed)
        if estimate is None:
            estimate = (lo + hi) / 2

        low, high = lo, hi
        if radius >= 0 and hi - radius <= lo + radius:
            # Either outcome leaves at most `radius` candidates
            low, high = hi - radius, lo + radius
        snapped = math.floor(min(max(estimate, low, lo), high, hi) + 0.5)
        return min(candidates, key=lambda k: (abs(k - snapped), -k))

    def _radius(self, probes: int) -> int:
        """Largest bracket remainder that keeps the probe budget after `probes` probes."""
        remaining = self.config.probe_budget - probes - 1
        return (1 << remaining) - 1 if remaining >= 0 else -1

    def _interpolated_index(self, observed: Dict[int, ProbeObservation]) -> Optional[float]:
        target = self.config.target_score
        above = [k for k, o in observed.items() if o.score >= target]
        below = [k for k, o in observed.items() if o.score < target]
        if above and below:
            a, b = observed[max(above)], observed[min(below)]
        else:
            nearest = sorted(observed, key=lambda k: abs(observed[k].score - target))[:2]
            a, b = observed[nearest[0]], observed[nearest[1]]
        parameter = interpolate(a, b, target)
        if parameter is None:
            return None
        return (parameter - self.config.param_min) / self.config.increment

    def _shrink(self, k: int, obs: ProbeObservation, lo: int, hi: int) -> Tuple[int, int]:
        """Exclude the side of the bracket the probe rules out.

        A feasible probe rules out everything below it: lower parameters
        only cost more bytes for quality that is already enough.
        """
        if not obs.quality_ok(self.config):
            hi = min(hi, k - 1)
        if obs.meets(self.config) or not obs.size_ok(self.config):
            lo = max(lo, k + 1)
        return lo, hi

    @staticmethod
    def _contradiction(k: int, obs: ProbeObservation,
                       observed: Dict[int, ProbeObservation]) -> Optional[ProbeObservation]:
        """An earlier observation that breaks monotonicity against this probe."""
        for j, other in observed.items():
            if j == k:
                continue
            lower, higher = (other, obs) if j < k else (obs, other)
            if higher.score > lower.score or higher.size_ratio > lower.size_ratio:
                return other
        return None

    def _widen(self, lo: int, hi: int, observed: Dict[int, ProbeObservation]) -> Tuple[int, int]:
        """Stretch the bracket back to the lowest quality pass and the highest size pass."""
        quality_passed = [j for j, o in observed.items() if o.quality_ok(self.config)]
        size_passed = [j for j, o in observed.items() if o.size_ok(self.config)]
        if quality_passed:
            lo = min(lo, min(quality_passed))
        if size_passed:
            hi = max(hi, max(size_passed))
        return max(lo, 0), min(hi, self.config.grid_size)

    def _result(self, status: SearchStatus, observed: Dict[int, ProbeObservation],
                iterations: int) -> SearchResult:
        ordered = tuple(observed[k] for k in sorted(observed))
        best = best_observation(ordered, self.config)
        return SearchResult(parameter=best.parameter, score=best.score, size_ratio=best.size_ratio,
                            iterations=iterations, status=status, observations=ordered)

    def search(self, windows: Sequence[SampleWindow]) -> SearchResult:
        """Run the search over fixed sample windows."""
        if not windows:
            raise ValueError("quality search needs at least one sample window")
        config = self.config
        if self.cache is not None and self._tool_identity is None:
            self._tool_identity = self.evaluator.identity()

        lo, hi = 0, config.grid_size
        observed: Dict[int, ProbeObservation] = {}
        failed: Set[int] = set()
        last_failure: Optional[EvaluationFailed] = None
        fallback = False
        monotonic = True
        iterations = 0

        logger.search(f"target {config.target_score:g}, max size ratio {config.max_size_ratio:g}, "
                      f"range [{config.param_min:g}, {config.parameter_at(config.grid_size):g}] "
                      f"step {config.increment:g}, {len(windows)} samples")

        while True:
            self.cancel_token.raise_if_cancelled()
            radius = self._radius(len(observed)) if monotonic and not failed else -1
            k = self._next_index(lo, hi, observed, failed, fallback or not monotonic, radius)
            if k is None:
                status = SearchStatus.APPROXIMATE
                break
            if iterations >= config.max_iterations:
                status = SearchStatus.EXHAUSTED
                break

            parameter = config.parameter_at(k)
            iterations += 1
            try:
                obs = self.evaluate_probe(windows, parameter)
            except EvaluationFailed as e:
                logger.warn(f"Probe {parameter:g} failed on every sample, trying the next candidate")
                failed.add(k)
                last_failure = e
                fallback = True
                continue

            fallback = False
            observed[k] = obs
            logger.probe(f"#{iterations} param {parameter:g}: score {obs.score:.2f}, "
                         f"size ratio {obs.size_ratio:.3f}"
                         + (f" ({obs.failed_samples} samples failed)" if obs.failed_samples else ""))
            other = self._contradiction(k, obs, observed)
            if other is None:
                lo, hi = self._shrink(k, obs, lo, hi)
            else:
                logger.warn(f"Non-monotonic observations: {obs.parameter:g} -> score {obs.score:.2f}, "
                            f"ratio {obs.size_ratio:.3f} vs {other.parameter:g} -> score {other.score:.2f}, "
                            f"ratio {other.size_ratio:.3f}; widening the bracket and bisecting")
                monotonic = False
                lo, hi = self._widen(lo, hi, observed)
            logger.debug(f"bracket now [{config.parameter_at(lo):g}, {config.parameter_at(hi):g}]")

        if not observed:
            if last_failure is not None:
                raise last_failure
            raise EvaluationFailed(config.param_min)

        if any(o.meets(config) for o in observed.values()):
            if status is SearchStatus.EXHAUSTED:
                logger.warn(f"Iteration cap {config.max_iterations} reached before the feasible edge was pinned")
            status = SearchStatus.MET
        result = self._result(status, observed, iterations)
        if self.cache is not None:
            logger.debug(f"cache stats: {self.cache.stats()}")
        if status is SearchStatus.MET:
            logger.result(result.summary())
        else:
            logger.warn(result.summary())
        return result
