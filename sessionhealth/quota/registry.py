"""
Hot-swap session registry (claude-sessions.yaml).

    active_account: slot-2
    accounts:
      slot-1:
        email: a@example.com
        config_dir: /home/me/.claude-slot-1
        status: inactive
        deactivated_at: 2026-01-10T12:00:00Z
        deactivation_reason: subscription ended
      slot-2:
        email: b@example.com
        config_dir: /home/me/.claude-slot-2
        status: active

The file is edited by hand and by the hot-swap tooling, so anything
unreadable is treated as an empty registry.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from ..core.cache import MemoryCache, now_ms

logger = logging.getLogger(__name__)

ACTIVE = "active"
INACTIVE = "inactive"
UNKNOWN = "unknown"


class SessionRegistry:
    def __init__(
        self,
        paths: List[Path],
        *,
        ttl_ms: int = 10_000,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.paths = [Path(p) for p in paths]
        self._memory = MemoryCache(ttl_ms, clock=clock or now_ms)

    def _load(self) -> Dict[str, Any]:
        cached = self._memory.get("registry")
        if cached is not None:
            return cached

        data: Dict[str, Any] = {}
        for path in self.paths:
            if not path.is_file():
                continue
            try:
                with open(path) as f:
                    loaded = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Cannot read session registry {path}: {e}")
                continue
            if isinstance(loaded, dict):
                data = loaded
                break

        self._memory.put("registry", data)
        return data

    def clear_cache(self) -> None:
        self._memory.invalidate()

    def accounts(self) -> Dict[str, Dict[str, Any]]:
        raw = self._load().get("accounts")
        if not isinstance(raw, dict):
            return {}
        return {str(k): v for k, v in raw.items() if isinstance(v, dict)}

    def slot_statuses(self) -> Dict[str, str]:
        statuses = {}
        for slot_id, entry in self.accounts().items():
            status = entry.get("status")
            if status in (ACTIVE, INACTIVE):
                statuses[slot_id] = status
        return statuses

    def slot_status(self, slot_id: str) -> str:
        return self.slot_statuses().get(slot_id, UNKNOWN)

    def active_slot(self) -> Optional[str]:
        value = self._load().get("active_account")
        return str(value).strip() if value else None

    def slot_for_config_dir(self, config_dir: str) -> Optional[str]:
        for slot_id, entry in self.accounts().items():
            if entry.get("config_dir") == config_dir:
                return slot_id
        return None
