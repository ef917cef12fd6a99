"""
Encoder/metric command builders for sample evaluation.

A backend knows how to:
- Encode one sample window at a given quality parameter
- Measure the encoded sample against the same reference window
- Pull the quality score out of the metric tool's output

VmafBackend scores with libvmaf (0-100), SsimBackend with ffmpeg's ssim filter
scaled to 0-100. Both feed the reference through the window's trim/concat
graph so the metric never sees cut material.
"""

import re
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from ....utils.logging import get_logger
from ..errors import OutputParseError
from ..optimization.sample_windows import SampleWindow

logger = get_logger("tool_backends")

VMAF_PATTERNS = [
    r'VMAF score:\s*([0-9.]+)',
    r'VMAF score\s*=\s*([0-9.]+)',
    r'"vmaf":\s*\{[^}]*"mean":\s*([0-9.]+)',
]

SSIM_PATTERN = r'SSIM\s.*All:\s*([0-9.]+)'


class ToolBackend:
    """Base class: ffmpeg encode + metric pass over one sample window."""

    name = "base"
    binary = "ffmpeg"
    output_suffix = ".mkv"

    def __init__(self, encoder: str = "libx265", preset: str = "medium",
                 extra_args: Optional[Sequence[str]] = None, threads: int = 0):
        self.encoder = encoder
        self.preset = preset
        self.extra_args = list(extra_args or [])
        self.threads = threads
        self._version: Optional[str] = None
        self._version_lock = threading.Lock()

    def version_args(self) -> List[str]:
        return [self.binary, "-hide_banner", "-version"]

    def tool_version(self, gateway) -> str:
        """First line of `ffmpeg -version`, fetched once per backend."""
        with self._version_lock:
            if self._version is None:
                output = gateway.run_with_retry(self.version_args(), describe=f"{self.binary} -version")
                lines = output.stdout.strip().splitlines()
                self._version = lines[0] if lines else "unknown"
                logger.tool(f"{self.name}: {self._version}")
            return self._version

    def config_identity(self) -> str:
        extra = " ".join(self.extra_args)
        return f"{self.name}:{self.encoder}:{self.preset}:{extra}"

    def parameter_args(self, parameter: float) -> List[str]:
        return ["-crf", f"{parameter:g}"]

    def encode_args(self, source: Path, window: SampleWindow, parameter: float, output: Path) -> List[str]:
        graph = window.reference_graph()
        cmd = [
            self.binary, "-hide_banner", "-nostdin", "-y", "-loglevel", "error",
            "-i", str(source),
            "-filter_complex", graph.to_filter_complex(),
            *graph.map_args(),
            "-c:v", self.encoder, "-preset", self.preset,
            *self.parameter_args(parameter),
        ]
        if self.threads > 0:
            cmd.extend(["-threads", str(self.threads)])
        cmd.extend(self.extra_args)
        cmd.extend(["-an", "-sn", str(output)])
        return cmd

    def metric_filter(self) -> str:
        raise NotImplementedError

    def measure_args(self, source: Path, window: SampleWindow, encoded: Path) -> List[str]:
        # distorted first, reference second
        graph = window.reference_graph()
        reference = graph.to_filter_complex(input_index=1, prefix="ref")
        lavfi = f"{reference};[0:v:0][refoutv]{self.metric_filter()}"
        return [
            self.binary, "-hide_banner", "-nostdin", "-loglevel", "info",
            "-i", str(encoded),
            "-i", str(source),
            "-filter_complex", lavfi,
            "-f", "null", "-",
        ]

    def parse_score(self, text: str) -> float:
        raise NotImplementedError


class VmafBackend(ToolBackend):
    name = "vmaf"

    def __init__(self, encoder: str = "libx265", preset: str = "medium",
                 extra_args: Optional[Sequence[str]] = None, threads: int = 0,
                 vmaf_threads: int = 0):
        super().__init__(encoder, preset, extra_args, threads)
        self.vmaf_threads = vmaf_threads

    def metric_filter(self) -> str:
        opts = []
        if self.vmaf_threads > 0:
            opts.append(f"n_threads={self.vmaf_threads}")
        return "libvmaf" + (f"={':'.join(opts)}" if opts else "")

    def parse_score(self, text: str) -> float:
        for pattern in VMAF_PATTERNS:
            match = re.search(pattern, text)
            if match:
                try:
                    return float(match.group(1))
                except ValueError:
                    continue
        raise OutputParseError("no VMAF score in ffmpeg output", tool=self.binary)


class SsimBackend(ToolBackend):
    """SSIM (All) scaled to 0-100 so targets share the VMAF range."""

    name = "ssim"

    def __init__(self, encoder: str = "libx264", preset: str = "medium",
                 extra_args: Optional[Sequence[str]] = None, threads: int = 0):
        super().__init__(encoder, preset, extra_args, threads)

    def metric_filter(self) -> str:
        return "ssim"

    def parse_score(self, text: str) -> float:
        matches = re.findall(SSIM_PATTERN, text)
        if not matches:
            raise OutputParseError("no SSIM summary in ffmpeg output", tool=self.binary)
        return float(matches[-1]) * 100.0


BACKENDS = {
    VmafBackend.name: VmafBackend,
    SsimBackend.name: SsimBackend,
}


def get_backend(name: str, **kwargs) -> ToolBackend:
    try:
        return BACKENDS[name](**kwargs)
    except KeyError:
        raise ValueError(f"unknown metric backend '{name}' (choose from {', '.join(sorted(BACKENDS))})") from None
