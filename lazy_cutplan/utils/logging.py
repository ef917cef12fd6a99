"""
Centralized logging utilities for lazy_cutplan

Provides consistent logging patterns with configurable debug levels:
- [INFO] for general information
- [WARN] for warnings
- [ERROR] for errors
- [RESULT] for final results
- [DEBUG] for debug information
- [SEARCH] / [PROBE] for quality search messages
- [CACHE] for result cache messages
- [TOOL] / [CMD] for external tool invocations
- [GRAPH] for filter graph compilation
- [SAMPLE] for sample window placement

Usage:
    from lazy_cutplan.utils.logging import get_logger, set_debug_mode

    set_debug_mode(True)  # Enable debug messages

    logger = get_logger("quality_search")
    logger.info("This is an info message")
    logger.debug("This is a debug message")  # Only shows if debug enabled
    logger.search("Probe converged")
"""

import os
import threading
from enum import Enum
from typing import Optional

from tqdm import tqdm

# Global logging configuration
_DEBUG_ENABLED = False
_QUIET_MODE = False
_LOG_LEVEL = "INFO"

# Sample workers log from several threads at once
_PRINT_LOCK = threading.Lock()


class LogLevel(Enum):
    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3


def _init_debug_mode():
    global _DEBUG_ENABLED
    if os.getenv('DEBUG', '').lower() in ('1', 'true', 'yes'):
        _DEBUG_ENABLED = True

_init_debug_mode()


def set_debug_mode(enabled: bool):
    """Enable or disable debug mode globally"""
    global _DEBUG_ENABLED
    _DEBUG_ENABLED = enabled


def set_quiet_mode(enabled: bool):
    """Enable or disable quiet mode (suppress INFO and DEBUG messages)"""
    global _QUIET_MODE
    _QUIET_MODE = enabled


def set_log_level(level: str):
    """Set the global log level: DEBUG, INFO, WARN, ERROR"""
    global _LOG_LEVEL
    _LOG_LEVEL = level.upper()


def get_debug_mode() -> bool:
    """Get current debug mode setting"""
    return _DEBUG_ENABLED


def _emit(line: str):
    # tqdm.write keeps active progress bars intact
    with _PRINT_LOCK:
        tqdm.write(line)


class Logger:
    """Centralized logger with consistent formatting and configurable output"""

    def __init__(self, module_name: str = ""):
        self.module_name = module_name
        self.prefix = f"[{module_name}] " if module_name else ""

    def _should_log(self, level: LogLevel) -> bool:
        """Check if message should be logged based on current settings"""
        if _QUIET_MODE and level in (LogLevel.DEBUG, LogLevel.INFO):
            return False

        level_hierarchy = {
            "DEBUG": LogLevel.DEBUG,
            "INFO": LogLevel.INFO,
            "WARN": LogLevel.WARN,
            "ERROR": LogLevel.ERROR
        }

        current_level = level_hierarchy.get(_LOG_LEVEL, LogLevel.INFO)
        if level == LogLevel.DEBUG and _DEBUG_ENABLED:
            return True
        return level.value >= current_level.value

    def _tagged(self, tag: str, message: str, level: LogLevel = LogLevel.INFO):
        if level == LogLevel.DEBUG and not _DEBUG_ENABLED:
            return
        if not self._should_log(level):
            return
        _emit(f"[{tag}] {self.prefix}{message}")

    def debug(self, message: str):
        """Log debug message (only if debug mode enabled)"""
        self._tagged("DEBUG", message, LogLevel.DEBUG)

    def info(self, message: str):
        """Log informational message"""
        self._tagged("INFO", message)

    def warn(self, message: str):
        """Log warning message"""
        self._tagged("WARN", message, LogLevel.WARN)

    def error(self, message: str):
        """Log error message"""
        self._tagged("ERROR", message, LogLevel.ERROR)

    def result(self, message: str):
        """Log result message"""
        self._tagged("RESULT", message)

    # Domain-specific logging methods
    def search(self, message: str):
        """Log quality search message"""
        self._tagged("SEARCH", message)

    def probe(self, message: str):
        """Log a single probe outcome"""
        self._tagged("PROBE", message)

    def cache(self, message: str):
        """Log result cache message"""
        self._tagged("CACHE", message, LogLevel.DEBUG)

    def cache_degraded(self, message: str):
        """Log cache degraded-mode message"""
        self._tagged("CACHE-DEGRADED", message, LogLevel.WARN)

    def tool(self, message: str):
        """Log external tool message"""
        self._tagged("TOOL", message)

    def tool_retry(self, message: str):
        """Log external tool retry message"""
        self._tagged("TOOL-RETRY", message, LogLevel.WARN)

    def cmd(self, message: str):
        """Log command execution message"""
        self._tagged("CMD", message, LogLevel.DEBUG)

    def graph(self, message: str):
        """Log filter graph message"""
        self._tagged("GRAPH", message, LogLevel.DEBUG)

    def sample(self, message: str):
        """Log sample window message"""
        self._tagged("SAMPLE", message, LogLevel.DEBUG)

    def cleanup(self, message: str):
        """Log cleanup operation"""
        self._tagged("CLEANUP", message, LogLevel.DEBUG)


def get_logger(module_name: str = "") -> Logger:
    """Get a logger instance for a module"""
    return Logger(module_name)


def create_progress_bar(total: Optional[int] = None, desc: str = "", unit: str = "it",
                        position: Optional[int] = None, leave: bool = True,
                        disable: Optional[bool] = None):
    """Create a progress bar with consistent styling"""
    if disable is None:
        disable = _QUIET_MODE
    return tqdm(total=total, desc=desc, unit=unit, position=position, leave=leave, disable=disable)


def format_duration(seconds: float) -> str:
    """Format duration in seconds to a human-readable string"""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{seconds/60:.1f}m"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"
