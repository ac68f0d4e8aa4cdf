"""Utility modules for safepoint."""

from .env import env_int, env_list, env_str, get_global_safepoint_dir, get_home_dir, is_debug_mode
from .fs import atomic_write, locked_append, safe_json_load
from .log import configure_logging

__all__ = [
    "atomic_write",
    "configure_logging",
    "env_int",
    "env_list",
    "env_str",
    "get_global_safepoint_dir",
    "get_home_dir",
    "is_debug_mode",
    "locked_append",
    "safe_json_load",
]
