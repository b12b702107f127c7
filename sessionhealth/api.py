"""
sessionhealth API — importable functions for every operation.

Every function returns JSON-serializable dicts/lists.
Used by the shealth CLI and by status line scripts.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Optional

from .core.config import Config

DEFAULT_SESSION_MAX_AGE_MS = 24 * 3_600_000


def _store(cfg: Config):
    from .state.store import HealthStore
    return HealthStore(cfg.sessions_dir)


# ── Gather ───────────────────────────────────────────────────────────────────

def gather(
    session_id: str,
    *,
    transcript_path: Optional[str] = None,
    json_input: Optional[Dict[str, Any]] = None,
    project_path: Optional[str] = None,
    config_dir: Optional[str] = None,
    keychain_service: Optional[str] = None,
    auth_email: Optional[str] = None,
    config: Optional[Config] = None,
    broker=None,
) -> Dict[str, Any]:
    """Run one gather cycle, persist the snapshot, and publish durable state."""
    from .broker.sources import build_broker
    from .state import serializer

    cfg = config or Config.load()
    store = _store(cfg)
    broker = broker or build_broker(cfg)

    existing = store.read_session_health(session_id)
    health = broker.gather(
        session_id,
        transcript_path=transcript_path,
        json_input=json_input,
        project_path=project_path,
        config_dir=config_dir,
        keychain_service=keychain_service,
        auth_email=auth_email,
        existing_health=existing,
    )
    store.write_session_health(health)
    changed, written = store.publish_state(health)

    return {
        "health": health.to_dict(),
        "changed": changed,
        "written": written,
        "state_bytes": serializer.estimate_size(serializer.serialize(health)),
    }


# ── Status ───────────────────────────────────────────────────────────────────

def status(session_id: Optional[str] = None, *, config: Optional[Config] = None) -> Dict[str, Any]:
    """Stored snapshot for one session, or a summary of all sessions."""
    from .core.freshness import FreshnessManager, build_categories

    cfg = config or Config.load()
    store = _store(cfg)

    if session_id is None:
        sessions = []
        for sid in store.list_session_ids():
            health = store.read_session_health(sid)
            if health is None:
                continue
            sessions.append({
                "session_id": sid,
                "status": health.health.status,
                "model": health.model.value,
                "gathered_at": health.gathered_at,
                "issues": health.health.issues,
            })
        return {"health_dir": str(cfg.resolved_health_dir), "sessions": sessions}

    health = store.read_session_health(session_id)
    if health is None:
        return {"error": f"No snapshot for session {session_id}"}

    freshness = FreshnessManager(build_categories(cfg.freshness))
    report = freshness.get_report({
        "billing_oauth": health.billing.last_fetched,
        "git_status": health.git.last_checked,
        "transcript": health.transcript.last_modified,
        "quota_broker": health.quota.last_fetched,
    })
    return {
        "health": health.to_dict(),
        "state": store.read_state(session_id),
        "freshness": report,
    }


def sources(*, config: Optional[Config] = None) -> Dict[str, Any]:
    from .broker.sources import build_default_registry

    cfg = config or Config.load()
    registry = build_default_registry(cfg)
    return {
        "count": registry.size(),
        "by_tier": {
            str(tier): [s.id for s in registry.get_by_tier(tier)] for tier in (1, 2, 3)
        },
        "sources": [
            {
                "id": s.id,
                "tier": s.tier,
                "freshness_category": s.freshness_category,
                "timeout_ms": s.timeout_ms,
                "shared": s.shared,
                "dependencies": list(s.dependencies),
            }
            for s in registry.get_all()
        ],
    }


# ── Intents ──────────────────────────────────────────────────────────────────

def intents(*, config: Optional[Config] = None) -> Dict[str, Any]:
    from .core.intents import RefreshIntentCoordinator

    cfg = config or Config.load()
    coordinator = RefreshIntentCoordinator(cfg.intents_dir)
    pending = coordinator.get_pending_intents()
    return {
        "pending": [
            {
                "category": category,
                "age_ms": coordinator.get_intent_age(category),
                "in_progress": coordinator.is_refresh_in_progress(category),
            }
            for category in pending
        ],
    }


def clean(
    *,
    intent_max_age_ms: Optional[int] = None,
    session_max_age_ms: int = DEFAULT_SESSION_MAX_AGE_MS,
    config: Optional[Config] = None,
) -> Dict[str, Any]:
    from .core.intents import RefreshIntentCoordinator

    cfg = config or Config.load()
    coordinator = RefreshIntentCoordinator(cfg.intents_dir)
    removed_markers = coordinator.clean_stale(intent_max_age_ms or cfg.intent_max_age_ms)
    removed_sessions = _store(cfg).clean_old_sessions(session_max_age_ms)
    return {"markers_removed": removed_markers, "sessions_removed": removed_sessions}


def refresh(*, max_intents: int = 50, config: Optional[Config] = None) -> Dict[str, Any]:
    """Run the background refresher once."""
    from .broker.sources import build_broker
    from .worker import process_intents

    cfg = config or Config.load()
    broker = build_broker(cfg)
    return {"refreshed": process_intents(broker, max_intents=max_intents)}


# ── Quota ────────────────────────────────────────────────────────────────────

def quota(
    *,
    config_dir: Optional[str] = None,
    email: Optional[str] = None,
    config: Optional[Config] = None,
) -> Dict[str, Any]:
    from .quota.registry import SessionRegistry
    from .quota.resolver import QuotaCacheStore, QuotaResolver

    cfg = config or Config.load()
    resolver = QuotaResolver(
        QuotaCacheStore(cfg.quota_cache_path),
        SessionRegistry(cfg.registry_paths),
        stale_ms=cfg.quota_stale_ms,
        recommendation_stale_ms=cfg.recommendation_stale_ms,
    )
    resolution = resolver.resolve(config_dir=config_dir, email=email)
    if resolution is None:
        return {"resolved": False}
    return {
        "resolved": True,
        "slot_id": resolution.slot_id,
        "strategy": resolution.strategy,
        "is_stale": resolution.is_stale,
        "slot_status": resolution.slot_status,
        "slot": asdict(resolution.slot),
        "switch_message": resolver.switch_message(resolution.slot_id),
    }
