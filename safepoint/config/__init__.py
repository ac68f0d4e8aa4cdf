"""Configuration management for safepoint."""

from .types import SafepointConfig
from .loader import ConfigLoader

__all__ = [
    "SafepointConfig",
    "ConfigLoader",
]
