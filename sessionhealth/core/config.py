"""Configuration for sessionhealth."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

_DEFAULT_HEALTH_DIR = "~/.claude/session-health"
_DEFAULT_CONFIG_PATH = "~/.claude/session-health/config.yaml"

# Known locations of the hot-swap session registry, first readable wins
_DEFAULT_REGISTRY_PATHS = [
    "~/_claude-configs/hot-swap/claude-sessions.yaml",
    "~/.claude/hot-swap/claude-sessions.yaml",
    "~/.claude/config/claude-sessions.yaml",
]


@dataclass
class Config:
    # Storage
    health_dir: str = _DEFAULT_HEALTH_DIR

    # Gather cycle
    gather_deadline_ms: int = 20_000
    memory_ttl_ms: int = 10_000

    # Quota
    quota_stale_ms: int = 300_000
    recommendation_stale_ms: int = 900_000
    sessions_registry_paths: List[str] = field(
        default_factory=lambda: list(_DEFAULT_REGISTRY_PATHS)
    )
    refresh_command: Optional[List[str]] = None

    # Health thresholds
    context_warning_percent: int = 70
    intent_max_age_ms: int = 600_000

    # category -> {fresh_ms, stale_ms, cooldown_ms}
    freshness: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Optional[str] = None) -> Config:
        """Load config from YAML file, falling back to defaults."""
        config_path = _config_path(path)

        data: dict = {}
        if config_path.exists():
            try:
                with open(config_path) as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Ignoring unreadable config {config_path}: {e}")
            if not isinstance(data, dict):
                data = {}

        cfg = cls()

        if "health_dir" in data:
            cfg.health_dir = str(data["health_dir"])
        if "gather_deadline_ms" in data:
            cfg.gather_deadline_ms = int(data["gather_deadline_ms"])
        if "memory_ttl_ms" in data:
            cfg.memory_ttl_ms = int(data["memory_ttl_ms"])
        if "quota_stale_ms" in data:
            cfg.quota_stale_ms = int(data["quota_stale_ms"])
        if "recommendation_stale_ms" in data:
            cfg.recommendation_stale_ms = int(data["recommendation_stale_ms"])
        if "context_warning_percent" in data:
            cfg.context_warning_percent = int(data["context_warning_percent"])
        if "intent_max_age_ms" in data:
            cfg.intent_max_age_ms = int(data["intent_max_age_ms"])
        if isinstance(data.get("sessions_registry_paths"), list):
            cfg.sessions_registry_paths = [str(p) for p in data["sessions_registry_paths"]]
        if isinstance(data.get("refresh_command"), list):
            cfg.refresh_command = [str(a) for a in data["refresh_command"]]
        if isinstance(data.get("freshness"), dict):
            cfg.freshness = {
                str(k): v for k, v in data["freshness"].items() if isinstance(v, dict)
            }

        # Environment overrides
        if env_dir := os.getenv("SESSIONHEALTH_DIR"):
            cfg.health_dir = env_dir
        if env_deadline := os.getenv("SESSIONHEALTH_DEADLINE_MS"):
            try:
                cfg.gather_deadline_ms = int(env_deadline)
            except ValueError:
                logger.warning(f"Invalid SESSIONHEALTH_DEADLINE_MS: {env_deadline!r}")

        return cfg

    @staticmethod
    def set_config(key: str, value: Any, path: Optional[str] = None) -> None:
        """Write one key to the YAML config, keeping the others."""
        config_path = _config_path(path)
        data: dict = {}
        if config_path.exists():
            try:
                data = yaml.safe_load(config_path.read_text()) or {}
            except (OSError, yaml.YAMLError):
                data = {}
        data[key] = value
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(yaml.safe_dump(data, sort_keys=True))

    # ── Resolved paths ──────────────────────────────────────────────────

    @property
    def resolved_health_dir(self) -> Path:
        return Path(self.health_dir).expanduser()

    @property
    def intents_dir(self) -> Path:
        return self.resolved_health_dir / "refresh-intents"

    @property
    def sessions_dir(self) -> Path:
        return self.resolved_health_dir / "sessions"

    @property
    def data_cache_path(self) -> Path:
        return self.resolved_health_dir / "data-cache.json"

    @property
    def billing_cache_path(self) -> Path:
        return self.resolved_health_dir / "billing-cache.json"

    @property
    def quota_cache_path(self) -> Path:
        return self.resolved_health_dir / "merged-quota-cache.json"

    @property
    def quota_lock_path(self) -> Path:
        return self.resolved_health_dir / ".quota-fetch.lock"

    @property
    def registry_paths(self) -> List[Path]:
        return [Path(p).expanduser() for p in self.sessions_registry_paths]


def _config_path(path: Optional[str]) -> Path:
    return Path(
        path or os.getenv("SESSIONHEALTH_CONFIG", _DEFAULT_CONFIG_PATH)
    ).expanduser()
