"""Tests for sessionhealth.quota — slot resolution, registry, urgency, refresher."""

import json
import os

import pytest
import yaml

from sessionhealth.core.models import QuotaCache, QuotaSlot
from sessionhealth.quota import urgency
from sessionhealth.quota.registry import ACTIVE, INACTIVE, UNKNOWN, SessionRegistry
from sessionhealth.quota.resolver import (
    QUOTA_CACHE_VERSION,
    QuotaCacheStore,
    QuotaResolver,
    RefreshGate,
)

NOW = 1_700_000_000_000
DEAD_PID = 999_999_999


def _make_slot(**overrides):
    kwargs = dict(
        email="a@example.com",
        status="active",
        subscription_type="max",
        five_hour_util=10.0,
        seven_day_util=20.0,
        weekly_budget_remaining_hours=40.0,
        last_fetched=NOW - 60_000,
        is_fresh=True,
        rank=1,
    )
    kwargs.update(overrides)
    return QuotaSlot(**kwargs)


def _write_cache(tmp_path, slots, **extra):
    store = QuotaCacheStore(tmp_path / "merged-quota-cache.json", clock=lambda: NOW)
    store.write(QuotaCache(ts=NOW, slots=slots, **extra))
    store.clear_cache()
    return store


def _write_registry(tmp_path, data):
    path = tmp_path / "claude-sessions.yaml"
    path.write_text(yaml.dump(data))
    return SessionRegistry([tmp_path / "absent.yaml", path], clock=lambda: NOW)


def _resolver(store, registry=None, **kwargs):
    return QuotaResolver(store, registry, clock=lambda: NOW, **kwargs)


@pytest.fixture
def two_slots(tmp_path):
    return _write_cache(tmp_path, {
        "slot-1": _make_slot(email="a@example.com", config_dir="/home/me/.claude-1",
                            keychain_hash="aaaa1111", rank=2),
        "slot-2": _make_slot(email="b@example.com", config_dir="/home/me/.claude-2",
                            keychain_hash="bbbb2222", rank=1),
    }, active_slot="slot-1")


class TestQuotaCacheStore:
    def test_missing_file(self, tmp_path):
        store = QuotaCacheStore(tmp_path / "merged-quota-cache.json")
        cache = store.read()
        assert cache.slots == {}
        assert store.file.read()["version"] == QUOTA_CACHE_VERSION

    def test_wrong_version_ignored(self, tmp_path):
        path = tmp_path / "merged-quota-cache.json"
        path.write_text(json.dumps({"version": 7, "ts": 1, "slots": {"x": {}}}))
        assert QuotaCacheStore(path).read().slots == {}

    def test_round_trip(self, two_slots):
        cache = two_slots.read()
        assert set(cache.slots) == {"slot-1", "slot-2"}
        assert cache.slots["slot-2"].email == "b@example.com"
        assert cache.active_slot == "slot-1"


class TestStrategies:
    def test_config_dir_wins(self, two_slots):
        res = _resolver(two_slots).resolve(
            config_dir="/home/me/.claude-2", email="a@example.com",
        )
        assert res.slot_id == "slot-2"
        assert res.strategy == "config_dir"

    def test_keychain(self, two_slots):
        res = _resolver(two_slots).resolve(keychain_service="Claude Code-credentials-bbbb2222")
        assert res.slot_id == "slot-2"
        assert res.strategy == "keychain"

    def test_email_case_insensitive(self, two_slots):
        res = _resolver(two_slots).resolve(email=" B@Example.com ")
        assert res.slot_id == "slot-2"
        assert res.strategy == "email"

    def test_active_pointer(self, two_slots):
        res = _resolver(two_slots).resolve()
        assert res.slot_id == "slot-1"
        assert res.strategy == "active_pointer"

    def test_unknown_config_dir_falls_through(self, two_slots):
        res = _resolver(two_slots).resolve(config_dir="/nowhere")
        assert res.strategy == "active_pointer"

    def test_single_slot(self, tmp_path):
        store = _write_cache(tmp_path, {"only": _make_slot()})
        res = _resolver(store).resolve()
        assert res.slot_id == "only"
        assert res.strategy == "single_slot"

    def test_best_rank(self, tmp_path):
        store = _write_cache(tmp_path, {
            "a": _make_slot(rank=3),
            "b": _make_slot(rank=1),
            "c": _make_slot(rank=2),
        })
        res = _resolver(store).resolve()
        assert res.slot_id == "b"
        assert res.strategy == "best_rank"

    def test_inactive_lowest_rank_loses(self, tmp_path):
        store = _write_cache(tmp_path, {
            "a": _make_slot(rank=1, status="inactive"),
            "b": _make_slot(rank=2),
        })
        assert _resolver(store).resolve().slot_id == "b"

    def test_registry_status_overrides_cache(self, tmp_path):
        store = _write_cache(tmp_path, {
            "a": _make_slot(rank=1),
            "b": _make_slot(rank=2),
        })
        registry = _write_registry(tmp_path, {"accounts": {"a": {"status": "inactive"}}})
        res = _resolver(store, registry).resolve()
        assert res.slot_id == "b"
        assert res.slot_status == ACTIVE

    def test_registry_active_account_pointer(self, tmp_path):
        store = _write_cache(tmp_path, {
            "a": _make_slot(rank=1),
            "b": _make_slot(rank=2),
        })
        registry = _write_registry(tmp_path, {"active_account": "b", "accounts": {}})
        res = _resolver(store, registry).resolve()
        assert res.slot_id == "b"
        assert res.strategy == "active_pointer"

    def test_empty_cache(self, tmp_path):
        store = QuotaCacheStore(tmp_path / "merged-quota-cache.json")
        assert _resolver(store).resolve(config_dir="/x") is None

    def test_custom_strategy_order(self, two_slots):
        resolver = _resolver(two_slots, strategies=[("nothing", lambda c, h, s: None)])
        assert resolver.resolve(config_dir="/home/me/.claude-1") is None


class TestDeactivatedSlot:
    @pytest.fixture
    def resolver(self, tmp_path):
        store = _write_cache(tmp_path, {
            "slot-1": _make_slot(email="a@example.com", config_dir="/home/me/.claude-1",
                                rank=1, last_fetched=NOW - 3_600_000, is_fresh=True),
            "slot-2": _make_slot(email="b@example.com", config_dir="/home/me/.claude-2", rank=2),
            "slot-3": _make_slot(email="c@example.com", config_dir="/home/me/.claude-3", rank=3),
        }, active_slot="slot-1")
        registry = _write_registry(tmp_path, {
            "active_account": "slot-1",
            "accounts": {
                "slot-1": {"email": "a@example.com", "status": "inactive",
                           "deactivation_reason": "subscription ended"},
                "slot-2": {"email": "b@example.com", "status": "active"},
            },
        })
        return _resolver(registry=registry, store=store)

    def test_direct_lookup_still_returns_data(self, resolver):
        res = resolver.resolve(config_dir="/home/me/.claude-1")
        assert res.slot_id == "slot-1"
        assert res.strategy == "config_dir"
        assert res.slot_status == INACTIVE
        assert res.is_stale
        assert res.slot.seven_day_util == 20.0

    def test_pointer_skips_to_next_ranked(self, resolver):
        res = resolver.resolve()
        assert res.slot_id == "slot-2"
        assert res.strategy == "best_rank"
        assert not res.is_stale


class TestStaleness:
    def test_age_only(self, tmp_path):
        store = QuotaCacheStore(tmp_path / "q.json")
        resolver = _resolver(store, stale_ms=300_000)
        assert not resolver.is_slot_stale(_make_slot(last_fetched=NOW - 300_000, is_fresh=False))
        assert resolver.is_slot_stale(_make_slot(last_fetched=NOW - 300_001, is_fresh=True))
        assert resolver.is_slot_stale(_make_slot(last_fetched=0))


class TestSwitchMessage:
    def test_message(self, tmp_path):
        store = _write_cache(tmp_path, {
            "slot-1": _make_slot(),
            "slot-2": _make_slot(email="b@example.com", subscription_type="pro",
                                seven_day_util=12.5, weekly_budget_remaining_hours=80),
        }, recommended_slot="slot-2")
        msg = _resolver(store).switch_message("slot-1")
        assert msg == "Switch to slot-2 (b@example.com, pro, 12.5% used, 80h budget)"

    def test_no_message_when_on_recommended(self, tmp_path):
        store = _write_cache(tmp_path, {"slot-1": _make_slot()}, recommended_slot="slot-1")
        assert _resolver(store).switch_message("slot-1") is None

    def test_none_recommendation(self, tmp_path):
        store = _write_cache(tmp_path, {"slot-1": _make_slot()}, recommended_slot="none")
        assert _resolver(store).switch_message("slot-9") is None

    def test_old_recommendation_is_ignored(self, tmp_path):
        store = QuotaCacheStore(tmp_path / "merged-quota-cache.json", clock=lambda: NOW)
        slots = {"slot-1": _make_slot(), "slot-2": _make_slot(email="b@example.com")}
        store.write(QuotaCache(ts=NOW - 3_600_000, slots=slots, recommended_slot="slot-2"))
        assert _resolver(store).switch_message("slot-1") is None

        store.write(QuotaCache(ts=NOW - 900_000, slots=slots, recommended_slot="slot-2"))
        assert _resolver(store).switch_message("slot-1") is not None
        assert _resolver(store, recommendation_stale_ms=60_000).switch_message("slot-1") is None

    def test_never_written_cache_has_no_recommendation(self, tmp_path):
        store = QuotaCacheStore(tmp_path / "merged-quota-cache.json", clock=lambda: NOW)
        store.write(QuotaCache(ts=0, slots={"slot-2": _make_slot()}, recommended_slot="slot-2"))
        assert _resolver(store).switch_message("slot-1") is None

    def test_no_current_slot(self, tmp_path):
        store = _write_cache(tmp_path, {"slot-2": _make_slot()}, recommended_slot="slot-2")
        assert _resolver(store).switch_message(None) is None

    def test_get_slot_by_config_dir(self, two_slots):
        slot_id, slot = _resolver(two_slots).get_slot_by_config_dir("/home/me/.claude-2")
        assert slot_id == "slot-2"
        assert slot.email == "b@example.com"
        assert _resolver(two_slots).get_slot_by_config_dir("/nope") is None


class TestSessionRegistry:
    def test_first_parseable_path_wins(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("accounts: [unclosed\n")
        good = tmp_path / "good.yaml"
        good.write_text(yaml.dump({
            "active_account": "s2",
            "accounts": {
                "s1": {"status": "inactive", "config_dir": "/c1"},
                "s2": {"status": "active", "config_dir": "/c2"},
                "s3": {"status": "weird"},
                "s4": "not a mapping",
            },
        }))
        registry = SessionRegistry([bad, good])
        assert registry.active_slot() == "s2"
        assert registry.slot_statuses() == {"s1": INACTIVE, "s2": ACTIVE}
        assert registry.slot_status("s3") == UNKNOWN
        assert registry.slot_for_config_dir("/c1") == "s1"
        assert set(registry.accounts()) == {"s1", "s2", "s3"}

    def test_missing_files(self, tmp_path):
        registry = SessionRegistry([tmp_path / "a.yaml"])
        assert registry.accounts() == {}
        assert registry.active_slot() is None

    def test_memory_cache(self, tmp_path):
        path = tmp_path / "r.yaml"
        path.write_text(yaml.dump({"active_account": "one"}))
        registry = SessionRegistry([path])
        assert registry.active_slot() == "one"
        path.write_text(yaml.dump({"active_account": "two"}))
        assert registry.active_slot() == "one"
        registry.clear_cache()
        assert registry.active_slot() == "two"


class TestUrgency:
    def test_idle(self):
        result = urgency.calculate()
        assert result.score == 0
        assert result.level == "low"
        assert result.recommendation == "none"

    def test_maxed_out(self):
        result = urgency.calculate(
            weekly_percent_used=100, daily_percent_used=100, burn_rate_per_hour=40,
        )
        assert result.score == 100
        assert result.level == "urgent"
        assert result.recommendation == "swap_urgent"

    def test_weights(self):
        result = urgency.calculate(weekly_percent_used=90, daily_percent_used=80)
        assert result.score == 78
        assert result.level == "medium"
        assert result.factors == {"weekly": 54.0, "daily": 24.0, "burn_rate": 0.0}

    def test_low_budget_bonus(self):
        assert urgency.calculate(weekly_percent_used=50, budget_remaining_minutes=15).score == 35
        assert urgency.calculate(weekly_percent_used=50, budget_remaining_minutes=0).score == 40
        assert urgency.calculate(weekly_percent_used=50, budget_remaining_minutes=45).score == 30

    @pytest.mark.parametrize("score,level,rec", [
        (49, "low", "none"),
        (50, "medium", "none"),
        (80, "high", "swap_recommended"),
        (95, "urgent", "swap_urgent"),
    ])
    def test_thresholds(self, score, level, rec):
        assert urgency.score_to_level(score) == level
        assert urgency.score_to_recommendation(score) == rec


class TestRefreshGate:
    def _gate(self, tmp_path, spawned, pid=4242):
        def spawner(command):
            spawned.append(command)
            return pid
        return RefreshGate(tmp_path / ".quota-fetch.lock", ["quota-broker"], spawner=spawner)

    def test_spawns_once_when_stale(self, tmp_path):
        spawned = []
        gate = self._gate(tmp_path, spawned)
        assert gate.maybe_spawn(True)
        assert not gate.maybe_spawn(True)
        assert spawned == [["quota-broker"]]
        assert (tmp_path / ".quota-fetch.lock").read_text() == "4242"

    def test_fresh_data_does_not_spawn(self, tmp_path):
        spawned = []
        assert not self._gate(tmp_path, spawned).maybe_spawn(False)
        assert spawned == []

    def test_live_lock_blocks(self, tmp_path):
        (tmp_path / ".quota-fetch.lock").write_text(str(os.getpid()))
        spawned = []
        assert not self._gate(tmp_path, spawned).maybe_spawn(True)
        assert spawned == []

    def test_dead_lock_is_cleared(self, tmp_path):
        (tmp_path / ".quota-fetch.lock").write_text(str(DEAD_PID))
        spawned = []
        assert self._gate(tmp_path, spawned).maybe_spawn(True)
        assert len(spawned) == 1

    def test_second_gate_sees_live_refresher(self, tmp_path):
        first, second = [], []
        assert self._gate(tmp_path, first, pid=os.getpid()).maybe_spawn(True)
        assert not self._gate(tmp_path, second).maybe_spawn(True)
        assert len(first) == 1
        assert second == []

    def test_no_command(self, tmp_path):
        gate = RefreshGate(tmp_path / ".lock", None, spawner=lambda c: 1)
        assert not gate.maybe_spawn(True)

    def test_spawn_failure(self, tmp_path):
        gate = RefreshGate(tmp_path / ".lock", ["x"], spawner=lambda c: None)
        assert not gate.maybe_spawn(True)
        assert not (tmp_path / ".lock").exists()
