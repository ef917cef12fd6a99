"""
Error taxonomy for lazy_cutplan.

- Input validation (fatal, raised before any external call):
  InvalidSegment, InvalidFrameRange
- External tools (transient, retried by the gateway before surfacing):
  ToolNotFound, ToolTimeout, ToolFailed, OutputParseError
- Probe-local: SampleEvaluationError (one sample), EvaluationFailed (whole probe)
- Search outcome: SearchExhausted (non-fatal, only via SearchResult.raise_for_status),
  SearchCancelled
- Cache: CacheIOError (never fatal, the cache degrades to uncached evaluation)
"""

from typing import Optional


class CutplanError(Exception):
    """Base class for every error raised by lazy_cutplan."""


class TimelineError(CutplanError, ValueError):
    """Timeline input rejected at construction."""


class InvalidSegment(TimelineError):
    """A segment is malformed, unsorted or overlaps its neighbour."""


class InvalidFrameRange(TimelineError):
    """Frame bounds or frame rate are outside the media's range."""


class ToolError(CutplanError):
    """An external encode or measurement tool failed."""

    def __init__(self, message: str, tool: Optional[str] = None):
        super().__init__(message)
        self.tool = tool


class ToolNotFound(ToolError):
    pass


class ToolTimeout(ToolError):
    def __init__(self, message: str, tool: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(message, tool)
        self.timeout = timeout


class ToolFailed(ToolError):
    def __init__(self, message: str, tool: Optional[str] = None,
                 exit_code: Optional[int] = None, excerpt: str = ""):
        super().__init__(message, tool)
        self.exit_code = exit_code
        self.excerpt = excerpt


class OutputParseError(ToolError):
    """The tool ran but its report held no usable score."""


class SampleEvaluationError(CutplanError):
    """A tool error wrapped with the probe parameter and sample window it hit."""

    def __init__(self, parameter: float, window_index: int, cause: Exception):
        super().__init__(f"sample {window_index} at parameter {parameter:g} failed: {cause}")
        self.parameter = parameter
        self.window_index = window_index
        self.cause = cause


class EvaluationFailed(CutplanError):
    """Every sample of a probe failed; the probe yields no observation."""

    def __init__(self, parameter: float, errors=None):
        errors = list(errors or [])
        detail = f": {errors[0]}" if errors else ""
        super().__init__(f"probe at parameter {parameter:g} produced no scores{detail}")
        self.parameter = parameter
        self.errors = errors


class SearchExhausted(CutplanError):
    """The iteration cap was hit; carries the best-known result."""

    def __init__(self, result):
        super().__init__(f"search exhausted after {result.iterations} probes, "
                         f"best parameter {result.parameter:g}")
        self.result = result


class SearchCancelled(CutplanError):
    """The search was cancelled cooperatively."""


class CacheIOError(CutplanError):
    """The cache store could not be read or written."""
