"""Environment utilities for safepoint."""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def is_debug_mode() -> bool:
    """Check if debug mode is enabled.

    Returns:
        True if SAFEPOINT_DEBUG is set to a truthy value
    """
    val = os.environ.get("SAFEPOINT_DEBUG", "").lower()
    return val in ("1", "true", "yes", "on")


def get_home_dir() -> Path:
    return Path.home()


def get_global_safepoint_dir() -> Path:
    """Get global safepoint directory (~/.safepoint).

    Returns:
        Path to global config directory
    """
    return get_home_dir() / ".safepoint"


def env_str(name: str) -> str | None:
    val = os.environ.get(name)
    if isinstance(val, str) and val.strip():
        return val.strip()
    return None


def env_int(name: str, minimum: int = 0) -> int | None:
    """Read a non-negative integer from the environment.

    Malformed values are ignored (with a warning) so the next
    configuration layer applies.
    """
    raw = env_str(name)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning("ignoring %s=%r: not an integer", name, raw)
        return None
    if value < minimum:
        logger.warning("ignoring %s=%r: must be >= %d", name, raw, minimum)
        return None
    return value


def env_list(name: str) -> list[str] | None:
    raw = env_str(name)
    if raw is None:
        return None
    return [part.strip() for part in raw.split(",") if part.strip()]
