"""
Built-in data sources.

Each factory returns a DataSourceDescriptor. Fetches return plain
JSON-serializable dicts so shared sources can live in the global data
cache; merges write only into the sections the descriptor declares.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..core.cache import BillingCache, DataCache, now_ms
from ..core.config import Config
from ..core.freshness import FreshnessManager, build_categories
from ..core.intents import RefreshIntentCoordinator
from ..core.models import (
    ContextInfo,
    DataSourceDescriptor,
    GatherContext,
    ModelInfo,
    TranscriptHealth,
)
from ..quota import urgency
from ..quota.registry import SessionRegistry
from ..quota.resolver import QuotaCacheStore, QuotaResolver, RefreshGate
from .orchestrator import Broker
from .registry import SourceRegistry

logger = logging.getLogger(__name__)


# ── Context (tier 1) ─────────────────────────────────────────────────────────

DEFAULT_WINDOW = 200_000
MIN_WINDOW = 10_000
MAX_WINDOW = 500_000
COMPACTION_RATIO = 0.78
NEAR_COMPACTION_PERCENT = 70


def _non_negative(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def calculate_context(json_input: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Token usage against the auto-compaction threshold (78% of the window)."""
    result = ContextInfo()
    window_info = (json_input or {}).get("context_window")
    if not isinstance(window_info, dict):
        return asdict(result)

    window = _non_negative(window_info.get("context_window_size")) or DEFAULT_WINDOW
    if window < MIN_WINDOW or window > MAX_WINDOW:
        window = DEFAULT_WINDOW
    result.window_size = window

    usage = window_info.get("current_usage") or {}
    used = (
        _non_negative(usage.get("input_tokens"))
        + _non_negative(usage.get("output_tokens"))
        + _non_negative(usage.get("cache_read_input_tokens"))
    )
    # Counters beyond 1.5x the window are garbage
    if used > window * 1.5:
        used = window
    result.tokens_used = used

    threshold = int(window * COMPACTION_RATIO)
    result.tokens_left = max(0, threshold - used)
    result.percent_used = min(100, used * 100 // threshold) if threshold > 0 else 0
    result.near_compaction = result.percent_used >= NEAR_COMPACTION_PERCENT
    return asdict(result)


def context_source() -> DataSourceDescriptor:
    def merge(view, data):
        view.context = ContextInfo(**data)

    return DataSourceDescriptor(
        id="context",
        tier=1,
        freshness_category="context",
        timeout_ms=100,
        fetch=lambda ctx: calculate_context(ctx.json_input),
        merge=merge,
        sections=("context",),
    )


# ── Model (tier 1) ───────────────────────────────────────────────────────────

_FAMILY_AFTER = re.compile(r"(opus|sonnet|haiku)[\s-]*(\d{1,2})(?!\d)(?:[.-](\d{1,2})(?!\d))?", re.I)
_FAMILY_BEFORE = re.compile(r"(\d+)(?:[.-](\d{1,2}))?[\s-]+(opus|sonnet|haiku)", re.I)


def format_model_name(raw: str) -> str:
    """'Claude Opus 4.5' / 'claude-opus-4-5-20251101' -> 'Opus4.5'."""
    if m := _FAMILY_AFTER.search(raw):
        family, major, minor = m.group(1), m.group(2), m.group(3)
    elif m := _FAMILY_BEFORE.search(raw):
        major, minor, family = m.group(1), m.group(2), m.group(3)
    else:
        return raw.strip() or "Claude"
    version = f"{major}.{minor}" if minor else major
    return f"{family.capitalize()}{version}"


def read_settings_model(paths: List[Path]) -> Optional[str]:
    for path in paths:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            continue
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Ignoring settings file {path}: {e}")
            continue
        if isinstance(data, dict) and data.get("model"):
            return str(data["model"])
    return None


def resolve_model(
    json_input: Optional[Dict[str, Any]], settings_model: Optional[str]
) -> Dict[str, Any]:
    model = (json_input or {}).get("model")
    if isinstance(model, dict):
        name = model.get("display_name") or model.get("id") or model.get("model_id")
        if name:
            return asdict(ModelInfo(format_model_name(str(name)), "json_input", 80))
    if settings_model:
        return asdict(ModelInfo(format_model_name(settings_model), "settings", 30))
    return asdict(ModelInfo())


def model_source(settings_paths: Optional[List[Path]] = None) -> DataSourceDescriptor:
    def fetch(ctx: GatherContext):
        paths = list(settings_paths or [])
        if ctx.config_dir:
            paths.insert(0, Path(ctx.config_dir) / "settings.json")
        if not paths:
            paths = [Path("~/.claude/settings.json").expanduser()]
        return resolve_model(ctx.json_input, read_settings_model(paths))

    def merge(view, data):
        view.model = ModelInfo(**data)

    return DataSourceDescriptor(
        id="model",
        tier=1,
        freshness_category="model",
        timeout_ms=500,
        fetch=fetch,
        merge=merge,
        sections=("model",),
    )


# ── Transcript (tier 2) ──────────────────────────────────────────────────────

SYNCED_WITHIN_MS = 60_000
TRANSCRIPT_STALE_MS = 5 * 60_000


def format_ago(timestamp: int, now: int) -> str:
    if not timestamp:
        return "unknown"
    seconds = (now - timestamp) // 1000
    if seconds < 60:
        return "<1m"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def transcript_source(clock: Optional[Callable[[], int]] = None) -> DataSourceDescriptor:
    clock = clock or now_ms

    def fetch(ctx: GatherContext):
        info = TranscriptHealth()
        stale = False
        if not ctx.transcript_path:
            info.last_modified_ago = ""
        else:
            try:
                st = os.stat(ctx.transcript_path)
            except OSError:
                st = None
            if st is not None:
                now = clock()
                mtime = int(st.st_mtime * 1000)
                info = TranscriptHealth(
                    exists=True,
                    size_bytes=st.st_size,
                    last_modified=mtime,
                    last_modified_ago=format_ago(mtime, now),
                    is_synced=now - mtime < SYNCED_WITHIN_MS,
                )
                stale = now - mtime > TRANSCRIPT_STALE_MS
        # Host is feeding live input, so the session is active
        active = ctx.json_input is not None
        return {"transcript": asdict(info), "stale": stale, "active": active}

    def merge(view, data):
        view.transcript = TranscriptHealth(**data["transcript"])
        view.alerts.transcript_stale = data["stale"]
        view.alerts.data_loss_risk = data["stale"] and data["active"]

    return DataSourceDescriptor(
        id="transcript",
        tier=2,
        freshness_category="transcript",
        timeout_ms=3000,
        fetch=fetch,
        merge=merge,
        sections=("transcript", "alerts"),
    )


# ── Git (tier 3) ─────────────────────────────────────────────────────────────

def _git(args: List[str], cwd: str, timeout_s: float) -> Optional[str]:
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"git {' '.join(args)} failed: {e}")
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout


def read_git_status(cwd: str, timeout_s: float = 2.0) -> Dict[str, Any]:
    branch = _git(["branch", "--show-current"], cwd, timeout_s)
    if branch is None:
        return {"branch": "", "ahead": 0, "behind": 0, "dirty": 0}

    status = _git(["status", "--porcelain"], cwd, timeout_s) or ""
    ahead = _git(["rev-list", "--count", "@{u}..HEAD"], cwd, timeout_s)
    behind = _git(["rev-list", "--count", "HEAD..@{u}"], cwd, timeout_s)
    return {
        "branch": branch.strip(),
        "ahead": _non_negative((ahead or "0").strip()),
        "behind": _non_negative((behind or "0").strip()),
        "dirty": sum(1 for line in status.splitlines() if line.strip()),
    }


def git_source(clock: Optional[Callable[[], int]] = None, timeout_ms: int = 5000) -> DataSourceDescriptor:
    clock = clock or now_ms

    def fetch(ctx: GatherContext):
        started = clock()
        cwd = ctx.project_path or os.getcwd()
        budget_s = max(0.1, min(timeout_ms, ctx.remaining_ms(started)) / 1000 / 4)
        data = read_git_status(cwd, timeout_s=budget_s)
        data["last_checked"] = started
        return data

    def merge(view, data):
        git = view.git
        git.branch = data["branch"]
        git.ahead = data["ahead"]
        git.behind = data["behind"]
        git.dirty = data["dirty"]
        git.last_checked = data["last_checked"]

    # Per-project, so it stays out of the global data cache
    return DataSourceDescriptor(
        id="git_status",
        tier=3,
        freshness_category="git_status",
        timeout_ms=timeout_ms,
        fetch=fetch,
        merge=merge,
        sections=("git",),
        shared=False,
    )


# ── Billing (tier 3) ─────────────────────────────────────────────────────────

def billing_source(cache: BillingCache) -> DataSourceDescriptor:
    def fetch(ctx: GatherContext):
        data = cache.read_fresh()
        if not data.get("last_fetched"):
            return None
        return {
            "cost_today": float(data.get("cost_today") or 0),
            "burn_rate_per_hour": float(data.get("burn_rate_per_hour") or 0),
            "budget_remaining": _non_negative(data.get("budget_remaining_minutes")),
            "budget_percent_used": _non_negative(data.get("budget_percent_used")),
            "reset_time": str(data.get("reset_time") or ""),
            "last_fetched": int(data["last_fetched"]),
        }

    def merge(view, data):
        billing = view.billing
        for key, value in data.items():
            setattr(billing, key, value)

    return DataSourceDescriptor(
        id="billing",
        tier=3,
        freshness_category="billing_oauth",
        timeout_ms=20_000,
        fetch=fetch,
        merge=merge,
        sections=("billing",),
        shared=True,
    )


# ── Quota (tier 3) ───────────────────────────────────────────────────────────

def quota_source(resolver: QuotaResolver, gate: Optional[RefreshGate] = None) -> DataSourceDescriptor:
    def fetch(ctx: GatherContext):
        resolution = resolver.resolve(
            config_dir=ctx.config_dir,
            keychain_service=ctx.keychain_service,
            email=ctx.auth_email,
        )
        if gate is not None:
            gate.maybe_spawn(resolution is None or resolution.is_stale)
        if resolution is None:
            return None

        slot = resolution.slot
        score = slot.urgency or urgency.calculate(
            weekly_percent_used=slot.seven_day_util,
            daily_percent_used=slot.five_hour_util,
        ).score
        return {
            "slot_id": resolution.slot_id,
            "email": slot.email,
            "slot_status": resolution.slot_status,
            "strategy": resolution.strategy,
            "five_hour_util": slot.five_hour_util,
            "seven_day_util": slot.seven_day_util,
            "weekly_budget_remaining_hours": slot.weekly_budget_remaining_hours,
            "weekly_reset_day": slot.weekly_reset_day,
            "urgency": score,
            "last_fetched": slot.last_fetched,
            "is_stale": resolution.is_stale,
        }

    def merge(view, data):
        quota = view.quota
        for key in (
            "slot_id", "email", "slot_status", "strategy", "five_hour_util",
            "seven_day_util", "weekly_budget_remaining_hours", "urgency",
            "last_fetched", "is_stale",
        ):
            setattr(quota, key, data[key])

        billing = view.billing
        billing.weekly_budget_percent_used = int(round(data["seven_day_util"]))
        billing.weekly_budget_remaining = data["weekly_budget_remaining_hours"]
        billing.weekly_reset_day = data["weekly_reset_day"]
        billing.weekly_last_modified = data["last_fetched"]
        if data["five_hour_util"] > 0:
            billing.budget_percent_used = int(round(data["five_hour_util"]))

    return DataSourceDescriptor(
        id="quota",
        tier=3,
        freshness_category="quota_broker",
        timeout_ms=1000,
        fetch=fetch,
        merge=merge,
        sections=("quota", "billing"),
        shared=False,
    )


def slot_recommendation_source(resolver: QuotaResolver) -> DataSourceDescriptor:
    def fetch(ctx: GatherContext):
        resolution = resolver.resolve(
            config_dir=ctx.config_dir,
            keychain_service=ctx.keychain_service,
            email=ctx.auth_email,
        )
        current = resolution.slot_id if resolution is not None else None
        return {"message": resolver.switch_message(current)}

    def merge(view, data):
        view.quota.switch_message = data["message"]

    return DataSourceDescriptor(
        id="slot_recommendation",
        tier=3,
        freshness_category="slot_recommendation",
        timeout_ms=1000,
        fetch=fetch,
        merge=merge,
        sections=("quota",),
        dependencies=("quota",),
        shared=False,
    )


# ── Wiring ───────────────────────────────────────────────────────────────────

def build_default_registry(
    config: Config,
    *,
    clock: Optional[Callable[[], int]] = None,
    spawner=None,
) -> SourceRegistry:
    clock = clock or now_ms
    store = QuotaCacheStore(config.quota_cache_path, ttl_ms=config.memory_ttl_ms, clock=clock)
    sessions = SessionRegistry(config.registry_paths, ttl_ms=config.memory_ttl_ms, clock=clock)
    resolver = QuotaResolver(
        store,
        sessions,
        stale_ms=config.quota_stale_ms,
        recommendation_stale_ms=config.recommendation_stale_ms,
        clock=clock,
    )
    gate_kwargs = {"spawner": spawner} if spawner is not None else {}
    gate = RefreshGate(config.quota_lock_path, config.refresh_command, **gate_kwargs)

    registry = SourceRegistry()
    registry.register(context_source())
    registry.register(model_source())
    registry.register(transcript_source(clock))
    registry.register(git_source(clock))
    registry.register(billing_source(
        BillingCache(config.billing_cache_path, ttl_ms=config.memory_ttl_ms, clock=clock)
    ))
    registry.register(quota_source(resolver, gate))
    registry.register(slot_recommendation_source(resolver))
    return registry


def build_broker(
    config: Config,
    *,
    registry: Optional[SourceRegistry] = None,
    clock: Optional[Callable[[], int]] = None,
) -> Broker:
    clock = clock or now_ms
    return Broker(
        registry if registry is not None else build_default_registry(config, clock=clock),
        freshness=FreshnessManager(build_categories(config.freshness), clock=clock),
        intents=RefreshIntentCoordinator(config.intents_dir, clock=clock),
        data_cache=DataCache(config.data_cache_path, ttl_ms=config.memory_ttl_ms, clock=clock),
        clock=clock,
        deadline_ms=config.gather_deadline_ms,
        context_warning_percent=config.context_warning_percent,
    )
