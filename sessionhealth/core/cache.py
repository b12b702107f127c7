"""
Read-through JSON file caches.

Every cache file shared between the statusline and its refresh daemons
is written with temp-file + rename, so a reader never sees a torn
write. Reads are held in memory for a short TTL so one gather cycle
costs one disk read per file.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def now_ms() -> int:
    return int(time.time() * 1000)


# ── Atomic writes ────────────────────────────────────────────────────────────

def atomic_write_text(path: Path, text: str) -> bool:
    """Write text via a same-directory temp file and rename. Returns success."""
    path = Path(path)
    tmp = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
        return True
    except OSError as e:
        logger.debug(f"Atomic write to {path} failed: {e}")
        try:
            tmp.unlink()
        except OSError:
            pass
        return False


def atomic_write_json(path: Path, data: Any) -> bool:
    try:
        text = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.error(f"Cannot serialize data for {path}: {e}")
        return False
    return atomic_write_text(path, text)


# ── Memory cache ─────────────────────────────────────────────────────────────

class MemoryCache:
    """In-process key/value cache with a fixed TTL."""

    def __init__(self, ttl_ms: int, *, clock: Optional[Clock] = None):
        self.ttl_ms = ttl_ms
        self._clock = clock or now_ms
        self._entries: Dict[str, tuple] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_ms:
            # Tier threads may expire the same key together
            self._entries.pop(key, None)
            return None
        return value

    def put(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock(), value)

    def invalidate(self, key: Optional[str] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)


# ── JSON file cache ──────────────────────────────────────────────────────────

class JsonFileCache:
    """Versioned JSON document on disk, read through a memory cache.

    read() never raises: a missing, empty, malformed, wrong-version or
    incomplete file yields default_factory().
    """

    def __init__(
        self,
        path: Path,
        *,
        default_factory: Callable[[], Dict[str, Any]],
        version: Optional[int] = None,
        required_keys: Iterable[str] = (),
        ttl_ms: int = 10_000,
        clock: Optional[Clock] = None,
    ):
        self.path = Path(path)
        self.version = version
        self.required_keys = tuple(required_keys)
        self.default_factory = default_factory
        self._clock = clock or now_ms
        self._memory = MemoryCache(ttl_ms, clock=self._clock)

    def read(self) -> Dict[str, Any]:
        cached = self._memory.get("doc")
        if cached is not None:
            return cached

        data = self._read_disk()
        if data is None:
            data = self.default_factory()
        self._memory.put("doc", data)
        return data

    def read_fresh(self) -> Dict[str, Any]:
        """Read straight from disk, bypassing the memory cache."""
        self.clear_cache()
        return self.read()

    def clear_cache(self) -> None:
        self._memory.invalidate()

    def write(self, data: Dict[str, Any]) -> bool:
        ok = atomic_write_json(self.path, data)
        if ok:
            self._memory.put("doc", data)
        return ok

    def update(self, partial: Dict[str, Any]) -> bool:
        """Shallow-merge partial into the on-disk document and write it back."""
        current = self._read_disk()
        if current is None:
            current = self.default_factory()
        current.update(partial)
        current["updated_at"] = self._clock()
        return self.write(current)

    def exists(self) -> bool:
        return self.path.is_file()

    def _read_disk(self) -> Optional[Dict[str, Any]]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug(f"Cannot read {self.path}: {e}")
            return None

        if not content.strip():
            return None

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            logger.warning(f"Corrupt cache file {self.path}, treating as empty")
            return None

        if not isinstance(parsed, dict):
            return None
        if self.version is not None and parsed.get("version") != self.version:
            logger.debug(
                f"Cache {self.path} has version {parsed.get('version')!r}, "
                f"expected {self.version}"
            )
            return None
        if any(k not in parsed for k in self.required_keys):
            return None
        return parsed


# ── Concrete caches ──────────────────────────────────────────────────────────

DATA_CACHE_VERSION = 2
BILLING_CACHE_VERSION = 1


def empty_data_cache() -> Dict[str, Any]:
    return {"version": DATA_CACHE_VERSION, "updated_at": 0, "sources": {}}


def empty_billing_cache() -> Dict[str, Any]:
    return {
        "version": BILLING_CACHE_VERSION,
        "updated_at": 0,
        "cost_today": 0.0,
        "burn_rate_per_hour": 0.0,
        "budget_remaining_minutes": 0,
        "budget_percent_used": 0,
        "reset_time": "",
        "last_fetched": 0,
    }


class DataCache(JsonFileCache):
    """Global cache of tier-3 source results shared by all sessions."""

    def __init__(self, path: Path, *, ttl_ms: int = 10_000, clock: Optional[Clock] = None):
        super().__init__(
            path,
            default_factory=empty_data_cache,
            version=DATA_CACHE_VERSION,
            required_keys=("sources",),
            ttl_ms=ttl_ms,
            clock=clock,
        )

    def get_entry(self, source_id: str) -> Optional[Dict[str, Any]]:
        entry = self.read().get("sources", {}).get(source_id)
        return entry if isinstance(entry, dict) else None

    def put_entries(self, entries: Dict[str, Dict[str, Any]]) -> bool:
        """Merge per-source entries into the on-disk cache."""
        current = self._read_disk() or self.default_factory()
        sources = current.setdefault("sources", {})
        sources.update(entries)
        current["updated_at"] = self._clock()
        return self.write(current)

    def put_source(self, source_id: str, data: Any) -> bool:
        return self.put_entries({
            source_id: {
                "data": data,
                "fetched_at": self._clock(),
                "fetched_by": os.getpid(),
            }
        })


class BillingCache(JsonFileCache):
    """Billing numbers written by the external billing fetcher."""

    def __init__(self, path: Path, *, ttl_ms: int = 10_000, clock: Optional[Clock] = None):
        super().__init__(
            path,
            default_factory=empty_billing_cache,
            version=BILLING_CACHE_VERSION,
            required_keys=("cost_today", "last_fetched"),
            ttl_ms=ttl_ms,
            clock=clock,
        )
