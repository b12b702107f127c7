"""Tests for the built-in data sources."""

import json
import os
import time

import pytest

from sessionhealth.broker.sources import (
    billing_source,
    build_default_registry,
    calculate_context,
    format_ago,
    format_model_name,
    model_source,
    quota_source,
    read_settings_model,
    resolve_model,
    slot_recommendation_source,
    transcript_source,
)
from sessionhealth.core.cache import BillingCache
from sessionhealth.core.config import Config
from sessionhealth.core.models import GatherContext, QuotaCache, QuotaSlot, SessionHealth, SnapshotView
from sessionhealth.quota.resolver import QuotaCacheStore, QuotaResolver, RefreshGate

NOW = 1_700_000_000_000


def _ctx(**overrides):
    kwargs = dict(session_id="s1", deadline=NOW + 20_000)
    kwargs.update(overrides)
    return GatherContext(**kwargs)


def _usage(input_tokens=0, output_tokens=0, cache_read=0, window=200_000):
    return {
        "context_window": {
            "context_window_size": window,
            "current_usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_read_input_tokens": cache_read,
            },
        },
    }


def _run(source, ctx, health=None):
    health = health or SessionHealth(session_id=ctx.session_id)
    data = source.fetch(ctx)
    source.merge(SnapshotView(health, source.sections, source.id), data)
    return health


class TestContext:
    def test_no_input(self):
        result = calculate_context(None)
        assert result["tokens_used"] == 0
        assert result["percent_used"] == 0
        assert result["window_size"] == 200_000

    def test_percent_of_compaction_threshold(self):
        result = calculate_context(_usage(input_tokens=50_000, output_tokens=8_000, cache_read=20_000))
        assert result["tokens_used"] == 78_000
        assert result["percent_used"] == 50
        assert result["tokens_left"] == 78_000
        assert not result["near_compaction"]

    def test_near_compaction(self):
        result = calculate_context(_usage(input_tokens=110_000))
        assert result["percent_used"] == 70
        assert result["near_compaction"]

    def test_capped_at_100(self):
        result = calculate_context(_usage(input_tokens=190_000))
        assert result["percent_used"] == 100
        assert result["tokens_left"] == 0

    def test_garbage_counters(self):
        result = calculate_context(_usage(input_tokens=10_000_000))
        assert result["tokens_used"] == 200_000

    @pytest.mark.parametrize("window", [0, 5_000, 2_000_000, "big"])
    def test_bad_window_uses_default(self, window):
        assert calculate_context(_usage(window=window))["window_size"] == 200_000

    def test_negative_values_clamped(self):
        assert calculate_context(_usage(input_tokens=-500))["tokens_used"] == 0


class TestModel:
    @pytest.mark.parametrize("raw,expected", [
        ("Claude Opus 4.5", "Opus4.5"),
        ("claude-opus-4-5-20251101", "Opus4.5"),
        ("claude-sonnet-4-20250514", "Sonnet4"),
        ("claude-3-5-sonnet-20241022", "Sonnet3.5"),
        ("claude-3-haiku-20240307", "Haiku3"),
        ("Mystery Model", "Mystery Model"),
        ("", "Claude"),
    ])
    def test_format(self, raw, expected):
        assert format_model_name(raw) == expected

    def test_json_input_wins(self):
        result = resolve_model({"model": {"display_name": "Claude Opus 4.5"}}, "sonnet")
        assert result == {"value": "Opus4.5", "source": "json_input", "confidence": 80}

    def test_settings_fallback(self):
        result = resolve_model({"model": "not a dict"}, "claude-sonnet-4-20250514")
        assert result["source"] == "settings"
        assert result["confidence"] == 30

    def test_default(self):
        assert resolve_model(None, None) == {"value": "Claude", "source": "default", "confidence": 10}

    def test_read_settings(self, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{nope")
        good = tmp_path / "settings.json"
        good.write_text(json.dumps({"model": "opus"}))
        assert read_settings_model([tmp_path / "missing.json", bad, good]) == "opus"

    def test_source_reads_config_dir_settings(self, tmp_path):
        (tmp_path / "settings.json").write_text(json.dumps({"model": "claude-opus-4-1"}))
        health = _run(model_source([]), _ctx(config_dir=str(tmp_path)))
        assert health.model.value == "Opus4.1"
        assert health.model.source == "settings"


class TestTranscript:
    @pytest.mark.parametrize("age_ms,expected", [
        (0, "<1m"),
        (59_999, "<1m"),
        (60_000, "1m"),
        (3_600_000, "1h"),
        (2 * 86_400_000, "2d"),
    ])
    def test_format_ago(self, age_ms, expected):
        assert format_ago(NOW - age_ms, NOW) == expected

    def test_format_ago_unknown(self):
        assert format_ago(0, NOW) == "unknown"

    def test_fresh_transcript(self, tmp_path):
        path = tmp_path / "t.jsonl"
        path.write_text('{"type":"user"}\n')
        health = _run(transcript_source(), _ctx(transcript_path=str(path), json_input={}))
        assert health.transcript.exists
        assert health.transcript.size_bytes == path.stat().st_size
        assert health.transcript.is_synced
        assert not health.alerts.transcript_stale
        assert not health.alerts.data_loss_risk

    def test_stale_transcript_with_live_input(self, tmp_path):
        path = tmp_path / "t.jsonl"
        path.write_text("x\n")
        old = time.time() - 600
        os.utime(path, (old, old))
        health = _run(transcript_source(), _ctx(transcript_path=str(path), json_input={}))
        assert health.alerts.transcript_stale
        assert health.alerts.data_loss_risk
        assert health.transcript.last_modified_ago == "10m"

    def test_stale_transcript_without_input(self, tmp_path):
        path = tmp_path / "t.jsonl"
        path.write_text("x\n")
        old = time.time() - 600
        os.utime(path, (old, old))
        health = _run(transcript_source(), _ctx(transcript_path=str(path)))
        assert health.alerts.transcript_stale
        assert not health.alerts.data_loss_risk

    def test_missing_transcript(self, tmp_path):
        health = _run(transcript_source(), _ctx(transcript_path=str(tmp_path / "gone.jsonl")))
        assert not health.transcript.exists
        assert health.transcript.last_modified_ago == "unknown"


class TestBilling:
    def test_never_fetched_is_empty(self, tmp_path):
        source = billing_source(BillingCache(tmp_path / "billing-cache.json"))
        assert source.fetch(_ctx()) is None

    def test_reads_cache(self, tmp_path):
        cache = BillingCache(tmp_path / "billing-cache.json")
        cache.update({"cost_today": 4.2, "budget_remaining_minutes": 95, "last_fetched": NOW})
        health = _run(billing_source(cache), _ctx())
        assert health.billing.cost_today == 4.2
        assert health.billing.budget_remaining == 95
        assert health.billing.last_fetched == NOW
        assert billing_source(cache).shared

    def test_sees_update_from_another_process(self, tmp_path):
        path = tmp_path / "billing-cache.json"
        cache = BillingCache(path)
        cache.update({"cost_today": 1.0, "last_fetched": NOW})
        source = billing_source(cache)
        assert source.fetch(_ctx())["cost_today"] == 1.0

        BillingCache(path).update({"cost_today": 6.0, "last_fetched": NOW + 1})
        assert source.fetch(_ctx())["cost_today"] == 6.0


class TestQuotaSources:
    @pytest.fixture
    def resolver(self, tmp_path):
        store = QuotaCacheStore(tmp_path / "merged-quota-cache.json", clock=lambda: NOW)
        store.write(QuotaCache(
            ts=NOW,
            active_slot="slot-1",
            recommended_slot="slot-2",
            slots={
                "slot-1": QuotaSlot(email="a@example.com", config_dir="/c1", five_hour_util=42.4,
                                    seven_day_util=80.6, weekly_budget_remaining_hours=12.0,
                                    weekly_reset_day="Mon", last_fetched=NOW - 1000, rank=2),
                "slot-2": QuotaSlot(email="b@example.com", seven_day_util=10,
                                    weekly_budget_remaining_hours=90, last_fetched=NOW, rank=1),
            },
        ))
        return QuotaResolver(store, clock=lambda: NOW)

    def test_quota_merge(self, resolver):
        health = _run(quota_source(resolver), _ctx(config_dir="/c1"))
        assert health.quota.slot_id == "slot-1"
        assert health.quota.strategy == "config_dir"
        assert not health.quota.is_stale
        assert health.quota.urgency == 61
        assert health.billing.weekly_budget_percent_used == 81
        assert health.billing.weekly_reset_day == "Mon"
        assert health.billing.budget_percent_used == 42

    def test_unresolved_spawns_refresher(self, tmp_path):
        empty = QuotaResolver(QuotaCacheStore(tmp_path / "none.json"))
        spawned = []
        gate = RefreshGate(tmp_path / ".lock", ["refresh"], spawner=lambda c: spawned.append(c) or 4242)
        assert quota_source(empty, gate).fetch(_ctx()) is None
        assert spawned == [["refresh"]]

    def test_switch_message(self, resolver):
        health = _run(slot_recommendation_source(resolver), _ctx(config_dir="/c1"))
        assert health.quota.switch_message == "Switch to slot-2 (b@example.com, 10% used, 90h budget)"


class TestDefaultRegistry:
    def test_tiers(self, tmp_path):
        registry = build_default_registry(Config(health_dir=str(tmp_path)))
        assert [s.id for s in registry.get_by_tier(1)] == ["context", "model"]
        assert [s.id for s in registry.get_by_tier(2)] == ["transcript"]
        assert [s.id for s in registry.get_by_tier(3)] == [
            "git_status", "billing", "quota", "slot_recommendation",
        ]
        assert [s.id for s in registry.get_all() if s.shared] == ["billing"]
