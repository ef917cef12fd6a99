"""
System utilities for lazy_cutplan.

This module provides system-level utilities including:
- Available concurrency detection (psutil)
- Temporary file tracking and cleanup
- Subprocess helpers for short-lived probe commands
- Size formatting
"""

import atexit
import contextlib
import os
import shlex
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Optional

import psutil

from ....utils.logging import get_logger

logger = get_logger("system_utils")


class _TempFiles:
    """Thread-safe registry of temporary paths removed at exit."""

    def __init__(self):
        self._paths: set[str] = set()
        self._lock = threading.Lock()

    def add(self, path) -> None:
        with self._lock:
            self._paths.add(str(path))

    def discard(self, path) -> None:
        with self._lock:
            self._paths.discard(str(path))

    def __contains__(self, path) -> bool:
        with self._lock:
            return str(path) in self._paths

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)

    def snapshot(self) -> list[str]:
        with self._lock:
            return sorted(self._paths)


TEMP_FILES = _TempFiles()


def file_exists(path: "str | os.PathLike[str] | Path") -> bool:
    """Thin existence wrapper; returns False on OSError instead of raising."""
    try:
        return Path(path).exists()
    except OSError:
        return False


def cleanup_temp_files():
    """Remove every tracked temporary file."""
    for path_str in TEMP_FILES.snapshot():
        try:
            if file_exists(path_str):
                os.remove(path_str)
                logger.cleanup(f"removed {path_str}")
        except OSError as e:
            logger.debug(f"Failed to remove {path_str}: {e}")
        finally:
            TEMP_FILES.discard(path_str)


atexit.register(cleanup_temp_files)


def available_concurrency() -> int:
    """Number of logical CPUs usable for sample workers."""
    try:
        usable = len(psutil.Process().cpu_affinity())  # type: ignore[attr-defined]
    except (AttributeError, psutil.Error, OSError):
        usable = psutil.cpu_count(logical=True) or 1
    return max(1, usable)


def worker_count(sample_count: int, configured: int = 0) -> int:
    """Pool size for one probe: min(available concurrency, sample count)."""
    limit = configured if configured and configured > 0 else available_concurrency()
    return max(1, min(limit, sample_count))


def run_command(cmd: list[str], timeout: int = 30, capture_output: bool = True,
                text: bool = True, check: bool = False) -> subprocess.CompletedProcess:
    """
    Standardized subprocess runner for short probe commands (ffprobe, -version).

    Args:
        cmd: Command as list of strings
        timeout: Timeout in seconds (default: 30)
        capture_output: Whether to capture stdout/stderr (default: True)
        text: Whether to use text mode (default: True)
        check: Whether to raise exception on non-zero exit (default: False)

    Returns:
        CompletedProcess object
    """
    logger.cmd(" ".join(shlex.quote(c) for c in cmd))
    try:
        return subprocess.run(
            cmd,
            capture_output=capture_output,
            text=text,
            timeout=timeout,
            check=check
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {' '.join(cmd[:3])}...")
        raise


@contextlib.contextmanager
def temporary_file(suffix: str = ".tmp", prefix: str = "lazy_cutplan_",
                   directory: Optional[Path] = None):
    """
    Context manager for temporary files with automatic cleanup.

    The path is tracked in TEMP_FILES so an interrupted run still removes it at exit.
    """
    temp_file = None
    try:
        fd, temp_path = tempfile.mkstemp(suffix=suffix, prefix=prefix,
                                         dir=str(directory) if directory else None)
        os.close(fd)
        temp_file = Path(temp_path)
        TEMP_FILES.add(temp_file)
        yield temp_file
    finally:
        if temp_file:
            try:
                if file_exists(temp_file):
                    temp_file.unlink()
            except OSError as e:
                logger.debug(f"Failed to cleanup temp file {temp_file}: {e}")
            finally:
                TEMP_FILES.discard(temp_file)


def format_size(bytes_size: int) -> str:
    """Convert bytes to human readable format ("500 B", "1.50 KB", "2.00 MB")."""
    negative = bytes_size < 0
    size = float(abs(bytes_size))
    units = ['B', 'KB', 'MB', 'GB', 'TB', 'PB']
    unit_index = 0
    while unit_index < len(units) - 1 and size >= 1024.0:
        size /= 1024.0
        unit_index += 1
    unit = units[unit_index]
    if unit == 'B':
        formatted = f"{int(size)} {unit}"
    else:
        formatted = f"{size:.2f} {unit}"
    return f"-{formatted}" if negative else formatted
