"""Configuration management for lazy-cutplan."""

import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional


def load_env_file(env_path: Optional[Path] = None) -> Dict[str, str]:
    """Load environment variables from .env file."""
    if env_path is None:
        # Look for .env in current directory, then in package directory
        candidates = [
            Path.cwd() / ".env",
            Path(__file__).parent.parent / ".env",
        ]

        for candidate in candidates:
            if candidate.exists():
                env_path = candidate
                break

    env_vars = {}

    if env_path and env_path.exists():
        with open(env_path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    if '=' in line:
                        key, value = line.split('=', 1)
                        env_vars[key.strip()] = value.strip().strip('"\'')

    return env_vars


def _as_bool(value: str) -> bool:
    return value.lower() in ('true', '1', 'yes')


def _optional_path(value: str) -> Optional[Path]:
    return Path(value).expanduser() if value else None


# key: (environment variable, default, parser)
_SETTINGS: Dict[str, tuple] = {
    'score_target': ('SCORE_TARGET', '95.0', float),
    'max_size_ratio': ('MAX_SIZE_RATIO', '0.8', float),
    'param_min': ('PARAM_MIN', '10', float),
    'param_max': ('PARAM_MAX', '51', float),
    'param_increment': ('PARAM_INCREMENT', '1', float),
    'sample_duration': ('SAMPLE_DURATION', '20', float),
    'sample_interval': ('SAMPLE_INTERVAL', '300', float),
    'max_iterations': ('MAX_ITERATIONS', '12', int),
    'select_threshold': ('SELECT_THRESHOLD', '8', int),
    'tool_timeout': ('TOOL_TIMEOUT', '600', float),
    'retry_attempts': ('RETRY_ATTEMPTS', '3', int),
    'retry_backoff': ('RETRY_BACKOFF', '2.0', float),
    'max_workers': ('MAX_WORKERS', '0', int),
    'cache_path': ('CACHE_PATH', '', _optional_path),
    'debug': ('DEBUG', 'false', _as_bool),
}


def get_config(env_path: Optional[Path] = None) -> Dict[str, Any]:
    """Get configuration from environment variables and .env file.

    A key in the .env file wins over the environment variable, which wins over
    the default. Values that fail to parse raise ValueError naming the key.
    """
    env_vars = load_env_file(env_path)

    config: Dict[str, Any] = {}
    for key, (env_name, default, parse) in _SETTINGS.items():
        raw = env_vars.get(key, os.getenv(env_name, default))
        try:
            config[key] = parse(raw)
        except ValueError as e:
            raise ValueError(f"invalid value for {key} ({env_name}): {raw!r}") from e

    return config


def config_overrides(config: Dict[str, Any], **overrides: Any) -> Dict[str, Any]:
    """Copy of `config` with every non-None override applied (CLI flags)."""
    merged = dict(config)
    merged.update({k: v for k, v in overrides.items() if v is not None})
    return merged
