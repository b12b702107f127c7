"""
Multi-account quota resolution.

Figures out which credential slot the current session is running on by
trying a list of strategies in order; the first one that names a slot
wins. Staleness is recomputed here from ``last_fetched`` rather than
trusted from the cache file.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..core.cache import JsonFileCache, now_ms
from ..core.locks import PidLock
from ..core.models import QuotaCache, QuotaSlot, SlotResolution
from .registry import INACTIVE, UNKNOWN, SessionRegistry

logger = logging.getLogger(__name__)

QUOTA_CACHE_VERSION = 1
NO_RECOMMENDATION = "none"


# ── Cache ────────────────────────────────────────────────────────────────────

def empty_quota_cache() -> Dict[str, Any]:
    return {
        "version": QUOTA_CACHE_VERSION,
        "ts": 0,
        "active_slot": None,
        "recommended_slot": None,
        "failover_needed": False,
        "all_exhausted": False,
        "slots": {},
    }


class QuotaCacheStore:
    """Merged quota cache written by the background quota broker."""

    def __init__(
        self,
        path: Path,
        *,
        ttl_ms: int = 10_000,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.file = JsonFileCache(
            path,
            default_factory=empty_quota_cache,
            version=QUOTA_CACHE_VERSION,
            required_keys=("ts", "slots"),
            ttl_ms=ttl_ms,
            clock=clock,
        )

    def read(self) -> QuotaCache:
        return QuotaCache.from_dict(self.file.read())

    def write(self, cache: QuotaCache) -> bool:
        data = asdict(cache)
        data["version"] = QUOTA_CACHE_VERSION
        return self.file.write(data)

    def clear_cache(self) -> None:
        self.file.clear_cache()


# ── Strategies ───────────────────────────────────────────────────────────────

@dataclass
class ResolveHints:
    config_dir: Optional[str] = None
    keychain_service: Optional[str] = None
    email: Optional[str] = None
    registry_active: Optional[str] = None


Statuses = Dict[str, str]
Strategy = Callable[[QuotaCache, ResolveHints, Statuses], Optional[str]]


def _effective_status(slot_id: str, slot: QuotaSlot, statuses: Statuses) -> str:
    return statuses.get(slot_id) or slot.status or UNKNOWN


def match_config_dir(cache: QuotaCache, hints: ResolveHints, statuses: Statuses) -> Optional[str]:
    if not hints.config_dir:
        return None
    for slot_id, slot in cache.slots.items():
        if slot.config_dir and slot.config_dir == hints.config_dir:
            return slot_id
    return None


def match_keychain(cache: QuotaCache, hints: ResolveHints, statuses: Statuses) -> Optional[str]:
    if not hints.keychain_service:
        return None
    for slot_id, slot in cache.slots.items():
        if slot.keychain_hash and hints.keychain_service.endswith(slot.keychain_hash):
            return slot_id
    return None


def match_email(cache: QuotaCache, hints: ResolveHints, statuses: Statuses) -> Optional[str]:
    if not hints.email:
        return None
    wanted = hints.email.strip().lower()
    for slot_id, slot in cache.slots.items():
        if slot.email and slot.email.strip().lower() == wanted:
            return slot_id
    return None


def match_active_pointer(cache: QuotaCache, hints: ResolveHints, statuses: Statuses) -> Optional[str]:
    """Cache's active_slot, else the registry's active_account. Inactive slots never match."""
    for pointer in (cache.active_slot, hints.registry_active):
        slot = cache.slots.get(pointer) if pointer else None
        if slot is not None and _effective_status(pointer, slot, statuses) != INACTIVE:
            return pointer
    return None


def match_single_slot(cache: QuotaCache, hints: ResolveHints, statuses: Statuses) -> Optional[str]:
    if len(cache.slots) == 1:
        return next(iter(cache.slots))
    return None


def match_best_rank(cache: QuotaCache, hints: ResolveHints, statuses: Statuses) -> Optional[str]:
    candidates = [
        (slot.rank, slot_id)
        for slot_id, slot in cache.slots.items()
        if _effective_status(slot_id, slot, statuses) != INACTIVE
    ]
    if not candidates:
        return None
    return min(candidates)[1]


DEFAULT_STRATEGIES: List[Tuple[str, Strategy]] = [
    ("config_dir", match_config_dir),
    ("keychain", match_keychain),
    ("email", match_email),
    ("active_pointer", match_active_pointer),
    ("single_slot", match_single_slot),
    ("best_rank", match_best_rank),
]


# ── Resolver ─────────────────────────────────────────────────────────────────

class QuotaResolver:
    def __init__(
        self,
        store: QuotaCacheStore,
        registry: Optional[SessionRegistry] = None,
        *,
        stale_ms: int = 300_000,
        recommendation_stale_ms: int = 900_000,
        clock: Optional[Callable[[], int]] = None,
        strategies: Optional[Sequence[Tuple[str, Strategy]]] = None,
    ):
        self.store = store
        self.registry = registry
        self.stale_ms = stale_ms
        self.recommendation_stale_ms = recommendation_stale_ms
        self._clock = clock or now_ms
        self.strategies = list(strategies) if strategies is not None else list(DEFAULT_STRATEGIES)

    def _statuses(self) -> Statuses:
        return self.registry.slot_statuses() if self.registry is not None else {}

    def is_slot_stale(self, slot: QuotaSlot) -> bool:
        if not slot.last_fetched or slot.last_fetched <= 0:
            return True
        return self._clock() - slot.last_fetched > self.stale_ms

    def slot_status(self, slot_id: str) -> str:
        """Lifecycle status: session registry first, then the cache's own record."""
        status = self._statuses().get(slot_id)
        if status:
            return status
        slot = self.store.read().slots.get(slot_id)
        return (slot.status or UNKNOWN) if slot is not None else UNKNOWN

    def resolve(
        self,
        config_dir: Optional[str] = None,
        keychain_service: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[SlotResolution]:
        cache = self.store.read()
        if not cache.slots:
            return None

        statuses = self._statuses()
        hints = ResolveHints(
            config_dir=config_dir,
            keychain_service=keychain_service,
            email=email,
            registry_active=self.registry.active_slot() if self.registry is not None else None,
        )

        for name, strategy in self.strategies:
            slot_id = strategy(cache, hints, statuses)
            if slot_id is None or slot_id not in cache.slots:
                continue
            slot = cache.slots[slot_id]
            resolution = SlotResolution(
                slot_id=slot_id,
                slot=slot,
                strategy=name,
                is_stale=self.is_slot_stale(slot),
                slot_status=_effective_status(slot_id, slot, statuses),
            )
            logger.debug(f"Resolved quota slot {slot_id} via {name}")
            return resolution

        return None

    def switch_message(self, current_slot: Optional[str]) -> Optional[str]:
        if current_slot is None:
            return None
        cache = self.store.read()
        if not cache.ts or self._clock() - cache.ts > self.recommendation_stale_ms:
            return None
        recommended = cache.recommended_slot
        if not recommended or recommended == NO_RECOMMENDATION or recommended == current_slot:
            return None
        slot = cache.slots.get(recommended)
        if slot is None:
            return None

        details = [slot.email]
        if slot.subscription_type:
            details.append(slot.subscription_type)
        details.append(f"{slot.seven_day_util:g}% used")
        details.append(f"{slot.weekly_budget_remaining_hours:g}h budget")
        return f"Switch to {recommended} ({', '.join(details)})"

    def get_slot_by_config_dir(self, config_dir: str) -> Optional[Tuple[str, QuotaSlot]]:
        cache = self.store.read()
        for slot_id, slot in cache.slots.items():
            if slot.config_dir and slot.config_dir == config_dir:
                return slot_id, slot
        return None


# ── Background refresh ───────────────────────────────────────────────────────

def spawn_detached(command: List[str]) -> Optional[int]:
    try:
        proc = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        logger.warning(f"Failed to spawn quota refresher {command[0]!r}: {e}")
        return None
    return proc.pid


class RefreshGate:
    """Spawns at most one background quota refresher while data is stale."""

    def __init__(
        self,
        lock_path: Path,
        command: Optional[List[str]],
        *,
        spawner: Callable[[List[str]], Optional[int]] = spawn_detached,
    ):
        self.lock = PidLock(lock_path)
        self.command = command
        self.spawner = spawner
        self._spawned = False

    def maybe_spawn(self, is_stale: bool) -> bool:
        if not is_stale or not self.command or self._spawned:
            return False
        # try_acquire() clears a lock left by a dead refresher
        if not self.lock.try_acquire():
            return False

        pid = self.spawner(self.command)
        if pid is None:
            self.lock.release()
            return False
        # Hand the lock over to the refresher
        PidLock(self.lock.path, pid=pid).claim()
        self._spawned = True
        logger.info(f"Spawned quota refresher (pid {pid})")
        return True
