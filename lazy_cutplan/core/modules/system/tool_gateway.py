"""
External tool gateway for lazy_cutplan.

Every encode and measurement process goes through ExternalToolGateway:
- Processes get a wall-clock timeout and are killed when it expires
- Failures are mapped to ToolNotFound / ToolTimeout / ToolFailed / OutputParseError
- Transient failures are retried per RetryPolicy with exponential backoff
- Running processes are registered with the CancellationToken so cancel()
  terminates them

GatewayEvaluator adapts a gateway + backend + media into the SampleEvaluator
interface the search engine consumes.
"""

import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Tuple, Type, TypeVar

from ....utils.logging import get_logger
from ..analysis.media_utils import MediaDescriptor
from ..errors import (
    OutputParseError,
    SampleEvaluationError,
    SearchCancelled,
    ToolError,
    ToolFailed,
    ToolNotFound,
    ToolTimeout,
)
from ..optimization.sample_windows import SampleWindow
from .cancellation import CancellationToken
from .system_utils import file_exists, format_size, temporary_file

logger = get_logger("tool_gateway")

T = TypeVar("T")

DEFAULT_TOOL_TIMEOUT = 600.0
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF = 2.0
MAX_BACKOFF = 60.0


def exponential_backoff(base: float = DEFAULT_RETRY_BACKOFF, factor: float = 2.0,
                        maximum: float = MAX_BACKOFF) -> Callable[[int], float]:
    """Delay before retry n (1-based): base * factor**(n-1), capped."""
    def _delay(attempt: int) -> float:
        return min(maximum, base * factor ** max(0, attempt - 1))
    return _delay


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    backoff: Callable[[int], float] = exponential_backoff()
    retry_on: Tuple[Type[Exception], ...] = (ToolNotFound, ToolTimeout, ToolFailed, OutputParseError)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def should_retry(self, error: Exception, attempt: int) -> bool:
        return isinstance(error, self.retry_on) and attempt < self.max_attempts

    def delay(self, attempt: int) -> float:
        return max(0.0, float(self.backoff(attempt)))

    @classmethod
    def from_config(cls, config: Dict) -> "RetryPolicy":
        return cls(
            max_attempts=int(config.get('retry_attempts', DEFAULT_RETRY_ATTEMPTS)),
            backoff=exponential_backoff(float(config.get('retry_backoff', DEFAULT_RETRY_BACKOFF))),
        )


@dataclass(frozen=True)
class ToolOutput:
    args: Tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    elapsed: float

    @property
    def combined(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


@dataclass(frozen=True)
class SampleMeasurement:
    """One sample encoded and scored at one parameter."""
    score: float
    encoded_size: int
    reference_size: int

    @property
    def size_ratio(self) -> float:
        if self.reference_size <= 0:
            return 0.0
        return self.encoded_size / self.reference_size


def _excerpt(stderr: str, lines: int = 3) -> str:
    return " | ".join((stderr or "").strip().splitlines()[-lines:])


class ExternalToolGateway:
    """Runs external tools with timeouts, error mapping, retry and cancellation."""

    def __init__(self, retry_policy: Optional[RetryPolicy] = None,
                 timeout: float = DEFAULT_TOOL_TIMEOUT,
                 cancel_token: Optional[CancellationToken] = None,
                 work_dir: Optional[Path] = None):
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.cancel_token = cancel_token or CancellationToken()
        self.work_dir = work_dir

    def run(self, args: Sequence[str], timeout: Optional[float] = None) -> ToolOutput:
        """Run one process to completion; raises a ToolError subclass on failure."""
        args = [str(a) for a in args]
        tool = args[0]
        limit = self.timeout if timeout is None else timeout
        self.cancel_token.raise_if_cancelled()
        logger.cmd(" ".join(shlex.quote(a) for a in args))

        start = time.monotonic()
        try:
            proc = subprocess.Popen(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                    stdin=subprocess.DEVNULL, text=True, errors="replace")
        except FileNotFoundError as e:
            raise ToolNotFound(f"{tool} not found on PATH", tool=tool) from e
        except PermissionError as e:
            raise ToolNotFound(f"{tool} is not executable: {e}", tool=tool) from e

        if not self.cancel_token.register(proc):
            raise SearchCancelled(f"cancelled before {tool} started")
        try:
            try:
                stdout, stderr = proc.communicate(timeout=limit)
            except subprocess.TimeoutExpired as e:
                proc.kill()
                proc.communicate()
                raise ToolTimeout(f"{tool} exceeded {limit:g}s", tool=tool, timeout=limit) from e
        finally:
            self.cancel_token.unregister(proc)

        elapsed = time.monotonic() - start
        if self.cancel_token.cancelled:
            raise SearchCancelled(f"{tool} terminated by cancellation")
        if proc.returncode != 0:
            raise ToolFailed(f"{tool} exited with code {proc.returncode}", tool=tool,
                             exit_code=proc.returncode, excerpt=_excerpt(stderr))
        logger.debug(f"{tool} finished in {elapsed:.1f}s")
        return ToolOutput(tuple(args), proc.returncode, stdout or "", stderr or "", elapsed)

    def retry(self, operation: Callable[[], T], describe: str) -> T:
        """Call `operation` until it succeeds or the policy gives up."""
        attempt = 0
        while True:
            attempt += 1
            self.cancel_token.raise_if_cancelled()
            try:
                return operation()
            except ToolError as e:
                if not self.retry_policy.should_retry(e, attempt):
                    raise
                delay = self.retry_policy.delay(attempt)
                logger.tool_retry(f"{describe}: {e} (attempt {attempt}/{self.retry_policy.max_attempts}), "
                                  f"retrying in {delay:.1f}s")
                if self.cancel_token.wait(delay):
                    raise SearchCancelled(f"cancelled while waiting to retry {describe}") from e

    def run_with_retry(self, args: Sequence[str], timeout: Optional[float] = None,
                       describe: Optional[str] = None) -> ToolOutput:
        return self.retry(lambda: self.run(args, timeout), describe or str(args[0]))

    def evaluate_sample(self, backend, media: MediaDescriptor, window: SampleWindow,
                        parameter: float) -> SampleMeasurement:
        """Encode one window at `parameter` and score it against the reference.

        The encode + measure pair is retried as a unit. A failure that survives
        the retry policy is raised as SampleEvaluationError.
        """
        reference_size = int(round(media.bytes_per_second * float(window.duration)))
        describe = f"sample {window.index} @ {parameter:g}"

        def attempt() -> SampleMeasurement:
            with temporary_file(suffix=backend.output_suffix, prefix=f"cutplan_s{window.index}_",
                                directory=self.work_dir) as encoded:
                self.run(backend.encode_args(media.path, window, parameter, encoded))
                encoded_size = encoded.stat().st_size if file_exists(encoded) else 0
                if encoded_size <= 0:
                    raise OutputParseError(f"encode of {describe} produced no output", tool=backend.binary)
                output = self.run(backend.measure_args(media.path, window, encoded))
                score = backend.parse_score(output.combined)
            return SampleMeasurement(score=score, encoded_size=encoded_size, reference_size=reference_size)

        try:
            measurement = self.retry(attempt, describe)
        except ToolError as e:
            raise SampleEvaluationError(parameter, window.index, e) from e
        logger.sample(f"{describe}: score {measurement.score:.2f}, {format_size(measurement.encoded_size)} "
                      f"of {format_size(measurement.reference_size)} (ratio {measurement.size_ratio:.3f})")
        return measurement


class SampleEvaluator:
    """Scores one sample window at one parameter."""

    def evaluate(self, window: SampleWindow, parameter: float) -> SampleMeasurement:
        raise NotImplementedError

    def identity(self) -> Dict[str, str]:
        """Tool version and configuration folded into cache fingerprints."""
        return {}


class GatewayEvaluator(SampleEvaluator):
    def __init__(self, gateway: ExternalToolGateway, backend, media: MediaDescriptor):
        self.gateway = gateway
        self.backend = backend
        self.media = media

    def evaluate(self, window: SampleWindow, parameter: float) -> SampleMeasurement:
        return self.gateway.evaluate_sample(self.backend, self.media, window, parameter)

    def identity(self) -> Dict[str, str]:
        return {
            "tool": self.backend.tool_version(self.gateway),
            "config": self.backend.config_identity(),
        }

