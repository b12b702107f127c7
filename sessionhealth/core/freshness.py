"""
Freshness classification and post-failure cooldowns.

Each data category has a fresh window, an optional critical threshold
and a cooldown that applies after a failed fetch. Cooldown state lives
in the FreshnessManager instance, so it only throttles the process that
saw the failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Mapping, Optional

from .cache import now_ms

logger = logging.getLogger(__name__)

FRESH = "fresh"
STALE = "stale"
CRITICAL = "critical"
UNKNOWN = "unknown"

INDICATOR_WARN = "⚠"
INDICATOR_CRITICAL = "🔺"

# Refresh intent ages that change the context-aware indicator
INTENT_OVERDUE_MS = 30_000
INTENT_BROKEN_MS = 5 * 60_000


@dataclass(frozen=True)
class FreshnessCategory:
    fresh_ms: int
    stale_ms: Optional[int] = None  # None: never critical
    cooldown_ms: int = 0


DEFAULT_CATEGORIES: Dict[str, FreshnessCategory] = {
    "billing_oauth":       FreshnessCategory(120_000, 600_000, 300_000),
    "billing_ccusage":     FreshnessCategory(120_000, 600_000, 120_000),
    "billing_local":       FreshnessCategory(300_000, 600_000),
    "quota_hotswap":       FreshnessCategory(30_000),
    "quota_subscription":  FreshnessCategory(60_000),
    "git_status":          FreshnessCategory(30_000, 300_000),
    "transcript":          FreshnessCategory(300_000, 600_000),
    "model":               FreshnessCategory(300_000),
    "context":             FreshnessCategory(5_000),
    "weekly_quota":        FreshnessCategory(300_000, 86_400_000),
    "quota_broker":        FreshnessCategory(30_000, 300_000),
    "version_check":       FreshnessCategory(14_400_000),
    "auth_profile":        FreshnessCategory(300_000),
    "secrets_scan":        FreshnessCategory(300_000),
    "notifications":       FreshnessCategory(5_000),
    "slot_recommendation": FreshnessCategory(900_000),
}


def build_categories(
    overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> Dict[str, FreshnessCategory]:
    """Merge config overrides ({category: {fresh_ms, stale_ms, cooldown_ms}}) into the defaults."""
    categories = dict(DEFAULT_CATEGORIES)
    for name, values in (overrides or {}).items():
        if not isinstance(values, Mapping):
            continue
        base = categories.get(name, FreshnessCategory(fresh_ms=0))
        changes = {
            k: (None if v is None else int(v))
            for k, v in values.items()
            if k in ("fresh_ms", "stale_ms", "cooldown_ms")
        }
        if changes.get("fresh_ms") is None:
            changes.pop("fresh_ms", None)
        if changes.get("cooldown_ms") is None:
            changes.pop("cooldown_ms", None)
        categories[name] = replace(base, **changes)
    return categories


class FreshnessManager:
    def __init__(
        self,
        categories: Optional[Dict[str, FreshnessCategory]] = None,
        *,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.categories = dict(categories) if categories is not None else dict(DEFAULT_CATEGORIES)
        self._clock = clock or now_ms
        self._cooldown_until: Dict[str, int] = {}

    # ── Classification ──────────────────────────────────────────────────

    def get_age(self, timestamp: Optional[int]) -> Optional[int]:
        if not timestamp or timestamp <= 0:
            return None
        return max(0, self._clock() - timestamp)

    def get_status(self, timestamp: Optional[int], category: str) -> str:
        if not timestamp or timestamp <= 0:
            return UNKNOWN
        cat = self.categories.get(category)
        if cat is None:
            return UNKNOWN

        age = self._clock() - timestamp
        if age < cat.fresh_ms:
            return FRESH
        if cat.stale_ms is not None and age >= cat.stale_ms:
            return CRITICAL
        return STALE

    def is_fresh(self, timestamp: Optional[int], category: str) -> bool:
        return self.get_status(timestamp, category) == FRESH

    def get_indicator(self, timestamp: Optional[int], category: str) -> str:
        status = self.get_status(timestamp, category)
        if status == FRESH:
            return ""
        if status == CRITICAL:
            return INDICATOR_CRITICAL
        return INDICATOR_WARN

    def get_context_aware_indicator(
        self, timestamp: Optional[int], category: str, intents=None,
    ) -> str:
        """Indicator that stays quiet while a refresh is pending and on time.

        Missing data is silent here. Stale data is only flagged when a
        refresh intent is overdue or the category is cooling down after
        a failure.
        """
        status = self.get_status(timestamp, category)
        if status in (UNKNOWN, FRESH):
            return ""
        if status == CRITICAL:
            return INDICATOR_CRITICAL

        intent_age = intents.get_intent_age(category) if intents is not None else None
        if intent_age is not None:
            if intent_age >= INTENT_BROKEN_MS:
                return INDICATOR_CRITICAL
            if intent_age >= INTENT_OVERDUE_MS:
                return INDICATOR_WARN
            return ""

        if self.get_cooldown_remaining(category) > 0:
            return INDICATOR_WARN
        return ""

    def is_billing_fresh(self, last_fetched: Optional[int]) -> bool:
        return self.is_fresh(last_fetched, "billing_ccusage")

    # ── Cooldowns ───────────────────────────────────────────────────────

    def record_fetch(self, category: str, success: bool) -> None:
        if success:
            self._cooldown_until.pop(category, None)
            return
        cat = self.categories.get(category)
        if cat is not None and cat.cooldown_ms > 0:
            self._cooldown_until[category] = self._clock() + cat.cooldown_ms
            logger.debug(f"{category}: cooling down for {cat.cooldown_ms}ms")

    def get_cooldown_remaining(self, category: str) -> int:
        until = self._cooldown_until.get(category)
        if until is None:
            return 0
        remaining = until - self._clock()
        if remaining <= 0:
            del self._cooldown_until[category]
            return 0
        return remaining

    def should_refetch(self, category: str) -> bool:
        return self.get_cooldown_remaining(category) == 0

    def clear_all_cooldowns(self) -> None:
        self._cooldown_until.clear()

    # ── Diagnostics ─────────────────────────────────────────────────────

    def get_report(self, timestamps: Mapping[str, Optional[int]]) -> Dict[str, Any]:
        report: Dict[str, Any] = {"generated_at": self._clock(), "fields": {}}
        for category, ts in timestamps.items():
            if category not in self.categories:
                continue
            ts = ts or 0
            report["fields"][category] = {
                "category": category,
                "timestamp": ts,
                "age_ms": self.get_age(ts),
                "status": self.get_status(ts, category),
                "indicator": self.get_indicator(ts, category),
            }
        return report
