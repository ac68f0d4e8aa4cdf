"""Configuration schemas for safepoint."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..core.models import SnapshotKind, UncommittedPolicy

DEFAULT_FRESHNESS_MINUTES = 25  # 30-minute window minus a 5-minute buffer
DEFAULT_RETENTION_DAYS = 30
DEFAULT_CACHE_TTL_SECONDS = 5
DEFAULT_KEY_ENV = "SAFEPOINT_ARCHIVE_KEY"


@dataclass
class SafepointConfig:
    """Main safepoint configuration."""
    freshness_threshold_minutes: int = DEFAULT_FRESHNESS_MINUTES
    retention_days: int = DEFAULT_RETENTION_DAYS
    default_kind: SnapshotKind = SnapshotKind.MARKER
    encryption_key_env: str = DEFAULT_KEY_ENV
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    uncommitted_policy: UncommittedPolicy = UncommittedPolicy.ABORT
    exempt_patterns: list[str] = field(default_factory=lambda: ["*release*", "*prod*"])
    state_dir: str = ".safepoint"
    log_file: str = "snapshot-log.md"
    backup_dir: str = "backups"
    snapshot_prefix: str = "before-"
    backup_kind: SnapshotKind = SnapshotKind.MARKER

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SafepointConfig:
        """Create SafepointConfig from a (camelCase) dictionary.

        Unknown or malformed values keep their defaults.
        """
        defaults = cls()

        def _int(key: str, default: int) -> int:
            val = data.get(key)
            return val if isinstance(val, int) and not isinstance(val, bool) and val >= 0 else default

        def _str(key: str, default: str) -> str:
            val = data.get(key)
            return val if isinstance(val, str) and val.strip() else default

        def _kind(key: str, default: SnapshotKind) -> SnapshotKind:
            val = data.get(key)
            try:
                return SnapshotKind(val) if isinstance(val, str) else default
            except ValueError:
                return default

        policy = defaults.uncommitted_policy
        policy_val = data.get("uncommittedPolicy")
        if isinstance(policy_val, str) and policy_val in {p.value for p in UncommittedPolicy}:
            policy = UncommittedPolicy(policy_val)

        patterns = data.get("exemptPatterns")
        if not (isinstance(patterns, list) and all(isinstance(p, str) for p in patterns)):
            patterns = defaults.exempt_patterns

        return cls(
            freshness_threshold_minutes=_int("freshnessThresholdMinutes", defaults.freshness_threshold_minutes),
            retention_days=_int("retentionDays", defaults.retention_days),
            default_kind=_kind("defaultKind", defaults.default_kind),
            encryption_key_env=_str("encryptionKeyEnv", defaults.encryption_key_env),
            cache_ttl_seconds=_int("cacheTtlSeconds", defaults.cache_ttl_seconds),
            uncommitted_policy=policy,
            exempt_patterns=list(patterns),
            state_dir=_str("stateDir", defaults.state_dir),
            log_file=_str("logFile", defaults.log_file),
            backup_dir=_str("backupDir", defaults.backup_dir),
            snapshot_prefix=_str("snapshotPrefix", defaults.snapshot_prefix),
            backup_kind=_kind("backupKind", defaults.backup_kind),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "freshnessThresholdMinutes": self.freshness_threshold_minutes,
            "retentionDays": self.retention_days,
            "defaultKind": self.default_kind.value,
            "encryptionKeyEnv": self.encryption_key_env,
            "cacheTtlSeconds": self.cache_ttl_seconds,
            "uncommittedPolicy": self.uncommitted_policy.value,
            "exemptPatterns": list(self.exempt_patterns),
            "stateDir": self.state_dir,
            "logFile": self.log_file,
            "backupDir": self.backup_dir,
            "snapshotPrefix": self.snapshot_prefix,
            "backupKind": self.backup_kind.value,
        }
