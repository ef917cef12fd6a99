"""
Lazy Cutplan - Cut-list compilation and quality-targeted encode planning.
"""

__version__ = "1.0.0"
__author__ = "Rallade"
__email__ = "rallade@hotmail.com"

from .config import get_config, load_env_file
from .core.planner import EncodePlan, EncodePlanner, plan_encode

__all__ = [
    "get_config",
    "load_env_file",
    "EncodePlan",
    "EncodePlanner",
    "plan_encode",
]
