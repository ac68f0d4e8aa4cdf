"""Configuration loader for safepoint.

Handles loading and merging configuration from multiple sources.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from ..core.models import SnapshotKind, UncommittedPolicy
from ..utils.env import env_int, env_list, env_str, get_global_safepoint_dir
from ..utils.fs import atomic_write, safe_json_load
from .types import SafepointConfig

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"


class ConfigLoader:
    """Loads and manages safepoint configuration."""

    def __init__(self, project_root: Path | None = None):
        """Initialize config loader.

        Args:
            project_root: Project root directory (for project-local config)
        """
        self.project_root = project_root
        self._config: SafepointConfig | None = None

    @property
    def config(self) -> SafepointConfig:
        """Get loaded configuration, loading if necessary."""
        if self._config is None:
            self._config = self.load()
        return self._config

    def project_config_path(self) -> Path | None:
        if not self.project_root:
            return None
        return self.project_root / SafepointConfig().state_dir / CONFIG_FILE

    def load(self) -> SafepointConfig:
        """Load configuration from all sources.

        Priority (highest to lowest):
        1. Environment variables (SAFEPOINT_*)
        2. Project-local config (.safepoint/config.json)
        3. Global config (~/.safepoint/config.json)
        4. Default values

        Explicit arguments to controller operations override all of these.

        Returns:
            Merged SafepointConfig
        """
        merged: dict[str, Any] = {}

        global_config_path = get_global_safepoint_dir() / CONFIG_FILE
        if global_config_path.exists():
            global_data = safe_json_load(global_config_path, {})
            if isinstance(global_data, dict):
                merged = self._deep_merge(merged, global_data)

        project_config_path = self.project_config_path()
        if project_config_path is not None and project_config_path.exists():
            project_data = safe_json_load(project_config_path, {})
            if isinstance(project_data, dict):
                merged = self._deep_merge(merged, project_data)

        merged = self._deep_merge(merged, self._env_overrides())
        return SafepointConfig.from_dict(merged)

    def reload(self) -> SafepointConfig:
        """Force reload configuration."""
        self._config = None
        return self.config

    @staticmethod
    def _env_overrides() -> dict[str, Any]:
        overrides: dict[str, Any] = {}

        freshness = env_int("SAFEPOINT_FRESHNESS_MINUTES")
        if freshness is not None:
            overrides["freshnessThresholdMinutes"] = freshness

        retention = env_int("SAFEPOINT_RETENTION_DAYS")
        if retention is not None:
            overrides["retentionDays"] = retention

        ttl = env_int("SAFEPOINT_CACHE_TTL")
        if ttl is not None:
            overrides["cacheTtlSeconds"] = ttl

        kind = env_str("SAFEPOINT_DEFAULT_KIND")
        if kind is not None:
            if kind.lower() in {k.value for k in SnapshotKind}:
                overrides["defaultKind"] = kind.lower()
            else:
                logger.warning("ignoring SAFEPOINT_DEFAULT_KIND=%r: unknown kind", kind)

        policy = env_str("SAFEPOINT_UNCOMMITTED_POLICY")
        if policy is not None:
            if policy.lower() in {p.value for p in UncommittedPolicy}:
                overrides["uncommittedPolicy"] = policy.lower()
            else:
                logger.warning("ignoring SAFEPOINT_UNCOMMITTED_POLICY=%r: unknown policy", policy)

        key_env = env_str("SAFEPOINT_KEY_ENV")
        if key_env is not None:
            overrides["encryptionKeyEnv"] = key_env

        patterns = env_list("SAFEPOINT_EXEMPT_PATTERNS")
        if patterns is not None:
            overrides["exemptPatterns"] = patterns

        return overrides

    def save_config(self, config: SafepointConfig, scope: str = "project") -> Path:
        """Save configuration to file.

        Args:
            config: Configuration to save
            scope: "project" or "global"

        Returns:
            Path where config was saved
        """
        if scope == "global":
            config_path = get_global_safepoint_dir() / CONFIG_FILE
        else:
            config_path = self.project_config_path()
            if config_path is None:
                raise ValueError("No project root set for project-scope config")

        atomic_write(config_path, json.dumps(config.to_dict(), indent=2) + "\n")

        return config_path

    @staticmethod
    def _deep_merge(base: dict, override: dict) -> dict:
        """Deep merge two dictionaries.

        Args:
            base: Base dictionary
            override: Dictionary to merge (takes precedence)

        Returns:
            Merged dictionary
        """
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigLoader._deep_merge(result[key], value)
            else:
                result[key] = value
        return result
