"""
Tiered gather of one session health snapshot.

Tier 1 (pure), tier 2 (session-local I/O) and tier 3 (global, account
or network state) run strictly one after another. Inside a tier every
fetch runs on its own worker thread and is bounded by
min(source timeout, time left before the gather deadline). A fetch that
errors or runs late is dropped and the sections it owns keep the values
from the previous snapshot.

Shared tier-3 sources go through the global data cache: a fresh entry
is merged without fetching, a stale one is refreshed by at most one
process at a time (single flight through refresh intents).
"""

from __future__ import annotations

import copy
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.cache import DataCache, now_ms
from ..core.freshness import FreshnessManager
from ..core.intents import RefreshIntentCoordinator
from ..core.models import (
    DataSourceDescriptor,
    GatherContext,
    SessionHealth,
    SnapshotView,
)
from .registry import SourceRegistry

logger = logging.getLogger(__name__)

TIERS = (1, 2, 3)
DEFAULT_DEADLINE_MS = 20_000

# Per-source outcomes recorded in performance.sources
OK = "ok"
CACHED = "cached"
STALE_CACHE = "stale_cache"
EMPTY = "empty"
TIMEOUT = "timeout"
ERROR = "error"
DEADLINE = "deadline"
SKIPPED = "skipped"

_FAILED = (EMPTY, TIMEOUT, ERROR, DEADLINE, SKIPPED)


def _restore(health: SessionHealth, sections: Tuple[str, ...], existing: SessionHealth) -> None:
    for section in sections:
        setattr(health, section, copy.deepcopy(getattr(existing, section)))


class Broker:
    def __init__(
        self,
        registry: SourceRegistry,
        *,
        freshness: Optional[FreshnessManager] = None,
        intents: Optional[RefreshIntentCoordinator] = None,
        data_cache: Optional[DataCache] = None,
        clock: Optional[Callable[[], int]] = None,
        deadline_ms: int = DEFAULT_DEADLINE_MS,
        context_warning_percent: int = 70,
        max_workers: int = 8,
    ):
        self.registry = registry
        self._clock = clock or now_ms
        self.freshness = freshness or FreshnessManager(clock=self._clock)
        self.intents = intents
        self.data_cache = data_cache
        self.deadline_ms = deadline_ms
        self.context_warning_percent = context_warning_percent
        self.max_workers = max_workers

    # ── Diagnostics ─────────────────────────────────────────────────────

    def now(self) -> int:
        return self._clock()

    def get_registered_source_count(self) -> int:
        return self.registry.size()

    def get_sources_by_tier(self) -> Dict[int, List[str]]:
        return {tier: [s.id for s in self.registry.get_by_tier(tier)] for tier in TIERS}

    # ── Gather ──────────────────────────────────────────────────────────

    def gather(
        self,
        session_id: str,
        *,
        transcript_path: Optional[str] = None,
        json_input: Optional[Dict[str, Any]] = None,
        project_path: Optional[str] = None,
        config_dir: Optional[str] = None,
        keychain_service: Optional[str] = None,
        auth_email: Optional[str] = None,
        existing_health: Optional[SessionHealth] = None,
    ) -> SessionHealth:
        start = self._clock()
        if not project_path and isinstance(json_input, dict):
            project_path = json_input.get("start_directory") or json_input.get("cwd")

        ctx = GatherContext(
            session_id=session_id,
            deadline=start + self.deadline_ms,
            transcript_path=transcript_path,
            json_input=json_input,
            config_dir=config_dir,
            keychain_service=keychain_service,
            auth_email=auth_email,
            project_path=project_path,
            existing_health=existing_health,
        )

        health = SessionHealth(
            session_id=session_id,
            project_path=project_path or "",
            transcript_path=transcript_path or "",
            gathered_at=start,
        )
        if existing_health is not None and existing_health.first_seen:
            health.first_seen = existing_health.first_seen
        else:
            health.first_seen = start

        outcomes: Dict[str, str] = {}
        for tier in TIERS:
            sources = self.registry.get_by_tier(tier)
            if not sources:
                continue
            try:
                results = self._run_tier(tier, sources, ctx)
            except Exception as e:
                logger.error(f"Tier {tier} failed: {e}")
                results = {s.id: (ERROR, None) for s in sources}
            self._apply(health, sources, results, existing_health)
            outcomes.update({sid: outcome for sid, (outcome, _) in results.items()})

        self._post_process(health, ctx, outcomes, start)
        return health

    def _run_tier(
        self,
        tier: int,
        sources: List[DataSourceDescriptor],
        ctx: GatherContext,
    ) -> Dict[str, Tuple[str, Any]]:
        results: Dict[str, Tuple[str, Any]] = {}
        to_fetch: List[DataSourceDescriptor] = []
        acquired: List[str] = []

        for source in sources:
            if not source.shared or self.data_cache is None:
                to_fetch.append(source)
                continue
            entry = self.data_cache.get_entry(source.id)
            if entry is not None and self.freshness.is_fresh(entry.get("fetched_at"), source.freshness_category):
                results[source.id] = (CACHED, entry.get("data"))
            elif self._claim(source):
                to_fetch.append(source)
                acquired.append(source.id)
            else:
                results[source.id] = (SKIPPED, None)

        fetched = self._fetch_all(tier, to_fetch, ctx)
        results.update(fetched)

        if acquired:
            self._store_shared(acquired, fetched)

        # Stale-but-present cache entries beat nothing at all
        shared = {s.id for s in sources if s.shared}
        pending = [
            sid for sid, (outcome, _) in results.items()
            if sid in shared and outcome in _FAILED
        ]
        if pending and self.data_cache is not None:
            self.data_cache.clear_cache()
            for sid in pending:
                entry = self.data_cache.get_entry(sid)
                if entry is not None:
                    results[sid] = (STALE_CACHE, entry.get("data"))

        return results

    def _claim(self, source: DataSourceDescriptor) -> bool:
        if not self.freshness.should_refetch(source.freshness_category):
            logger.debug(f"{source.id}: in cooldown, not refreshing")
            return False
        if self.intents is None:
            return True
        result = self.intents.try_acquire(source.id)
        if not result.acquired:
            logger.debug(f"{source.id}: refresh not acquired ({result.reason})")
        return result.acquired

    def _store_shared(self, acquired: List[str], fetched: Dict[str, Tuple[str, Any]]) -> None:
        entries = {}
        for sid in acquired:
            outcome, data = fetched.get(sid, (ERROR, None))
            if outcome == OK:
                entries[sid] = {"data": data, "fetched_at": self._clock(), "fetched_by": os.getpid()}
        if entries:
            self.data_cache.put_entries(entries)
        if self.intents is not None:
            for sid in acquired:
                self.intents.release(sid, success=sid in entries)

    def _fetch_all(
        self,
        tier: int,
        sources: List[DataSourceDescriptor],
        ctx: GatherContext,
    ) -> Dict[str, Tuple[str, Any]]:
        results: Dict[str, Tuple[str, Any]] = {}
        if not sources:
            return results

        executor = ThreadPoolExecutor(
            max_workers=min(len(sources), self.max_workers),
            thread_name_prefix=f"shealth-tier{tier}",
        )
        try:
            pending = []
            for source in sources:
                budget = min(source.timeout_ms, ctx.remaining_ms(self._clock()))
                if budget <= 0:
                    results[source.id] = (DEADLINE, None)
                    continue
                future = executor.submit(source.fetch, ctx)
                pending.append((source, future, self._clock() + budget))

            for source, future, until in pending:
                wait_s = max(0, until - self._clock()) / 1000
                try:
                    data = future.result(timeout=wait_s)
                except FuturesTimeout:
                    logger.warning(f"Source {source.id} timed out")
                    results[source.id] = (TIMEOUT, None)
                except Exception as e:
                    logger.warning(f"Source {source.id} failed: {e}")
                    results[source.id] = (ERROR, None)
                else:
                    results[source.id] = (OK, data) if data is not None else (EMPTY, None)
                self.freshness.record_fetch(
                    source.freshness_category, results[source.id][0] == OK
                )
        finally:
            # Late fetches finish on their own; their results are never read
            executor.shutdown(wait=False, cancel_futures=True)
        return results

    def _apply(
        self,
        health: SessionHealth,
        sources: List[DataSourceDescriptor],
        results: Dict[str, Tuple[str, Any]],
        existing: Optional[SessionHealth],
    ) -> None:
        # Carry forward first so a failed source cannot undo a sibling's merge
        for source in sources:
            outcome, _ = results.get(source.id, (SKIPPED, None))
            if outcome in _FAILED and existing is not None:
                _restore(health, source.sections, existing)

        for source in sources:
            outcome, data = results.get(source.id, (SKIPPED, None))
            if outcome in _FAILED:
                continue
            before = {s: copy.deepcopy(getattr(health, s)) for s in source.sections}
            try:
                source.merge(SnapshotView(health, source.sections, source.id), data)
            except Exception as e:
                logger.error(f"Merge for source {source.id} failed: {e}")
                results[source.id] = (ERROR, None)
                # Undo a partial merge
                for section, value in before.items():
                    setattr(health, section, value)

    # ── Post-processing ─────────────────────────────────────────────────

    def _post_process(
        self,
        health: SessionHealth,
        ctx: GatherContext,
        outcomes: Dict[str, str],
        start: int,
    ) -> None:
        now = self._clock()
        health.billing.is_fresh = self.freshness.is_billing_fresh(health.billing.last_fetched)
        health.session_duration = now - health.first_seen

        if ctx.auth_email:
            health.auth_profile = ctx.auth_email
        elif health.quota.email:
            health.auth_profile = health.quota.email
        elif ctx.existing_health is not None:
            health.auth_profile = ctx.existing_health.auth_profile

        status, issues = derive_health(
            health,
            transcript_expected=bool(ctx.transcript_path),
            context_warning_percent=self.context_warning_percent,
        )
        health.health.status = status
        health.health.issues = issues
        health.health.last_update = now

        health.performance.gather_duration_ms = now - start
        health.performance.sources = dict(outcomes)


def derive_health(
    health: SessionHealth,
    *,
    transcript_expected: bool,
    context_warning_percent: int = 70,
) -> Tuple[str, List[str]]:
    """Overall status and issue list from the merged sections."""
    critical: List[str] = []
    warnings: List[str] = []

    if transcript_expected and not health.transcript.exists:
        critical.append("Transcript file not found")
    if health.alerts.secrets_detected:
        types = ", ".join(health.alerts.secret_types)
        critical.append(f"Secrets detected: {types}" if types else "Secrets detected")
    if health.alerts.data_loss_risk:
        warnings.append("Data loss risk: transcript not updating")
    if health.context.percent_used >= context_warning_percent:
        warnings.append(f"Context {health.context.percent_used}% used")
    if health.billing.last_fetched > 0 and not health.billing.is_fresh:
        warnings.append("Billing data stale")

    if critical:
        return "critical", critical + warnings
    if warnings:
        return "warning", warnings
    return "healthy", []
