"""Per-session snapshot and durable state files."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.cache import atomic_write_json, now_ms
from ..core.models import SessionHealth
from . import change, serializer
from .durable import MAX_STATE_BYTES, SCHEMA_VERSION

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"[^A-Za-z0-9._-]")


def _safe_id(session_id: str) -> str:
    return _SAFE_ID.sub("_", session_id) or "unknown"


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Unreadable session file {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


class HealthStore:
    def __init__(self, base_dir: Path, *, clock: Optional[Callable[[], int]] = None):
        self.base_dir = Path(base_dir)
        self._clock = clock or now_ms

    def health_path(self, session_id: str) -> Path:
        return self.base_dir / f"{_safe_id(session_id)}.json"

    def state_path(self, session_id: str) -> Path:
        return self.base_dir / f"{_safe_id(session_id)}.state.json"

    # ── Snapshots ───────────────────────────────────────────────────────

    def read_session_health(self, session_id: str) -> Optional[SessionHealth]:
        data = _read_json(self.health_path(session_id))
        if data is None:
            return None
        return SessionHealth.from_dict(data)

    def write_session_health(self, health: SessionHealth) -> bool:
        return atomic_write_json(self.health_path(health.session_id), health.to_dict())

    # ── Durable state ───────────────────────────────────────────────────

    def read_state(self, session_id: str) -> Optional[Dict[str, Any]]:
        data = _read_json(self.state_path(session_id))
        if data is None or data.get("v") != SCHEMA_VERSION:
            return None
        return data

    def publish_state(self, health: SessionHealth) -> Tuple[bool, bool]:
        """Serialize and stamp the snapshot; write only when its hash changed.

        Returns (changed, written). written is False for an unchanged state
        and for a write that failed.
        """
        state = serializer.serialize(health)
        previous = self.read_state(health.session_id)
        if previous is not None:
            prev_meta = previous.get("meta", {})
            state["meta"]["uc"] = prev_meta.get("uc", 0)
            state["meta"]["hash"] = prev_meta.get("hash", "")
            state["meta"]["ca"] = prev_meta.get("ca") or state["meta"]["ca"]

        if not change.stamp(state):
            return False, False

        size = serializer.estimate_size(state)
        if size >= MAX_STATE_BYTES:
            logger.error(f"Durable state for {health.session_id} is {size} bytes")
        written = atomic_write_json(self.state_path(health.session_id), state)
        if not written:
            logger.warning(f"Durable state for {health.session_id} changed but was not written")
        return True, written

    # ── Housekeeping ────────────────────────────────────────────────────

    def list_session_ids(self) -> List[str]:
        try:
            names = [p.name for p in self.base_dir.glob("*.json")]
        except OSError:
            return []
        return sorted(n[:-5] for n in names if not n.endswith(".state.json"))

    def clean_old_sessions(self, max_age_ms: int) -> List[str]:
        """Delete sessions whose snapshot file is older than max_age_ms."""
        now = self._clock()
        removed = []
        for session_id in self.list_session_ids():
            path = self.health_path(session_id)
            try:
                age = now - int(path.stat().st_mtime * 1000)
            except OSError:
                continue
            if age <= max_age_ms:
                continue
            for p in (path, self.state_path(session_id)):
                try:
                    p.unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning(f"Cannot remove {p}: {e}")
            removed.append(session_id)
        if removed:
            logger.info(f"Cleaned {len(removed)} old sessions")
        return removed
