"""Convert SessionHealth to and from the compact durable state."""

from __future__ import annotations

import json
from typing import Any, Dict

from ..core.models import SessionHealth
from .durable import (
    SCHEMA_VERSION,
    decode_alerts,
    decode_status,
    encode_alerts,
    encode_status,
    truncate_issues,
)


def _cents(dollars: float) -> int:
    return int(round((dollars or 0) * 100))


def serialize(health: SessionHealth) -> Dict[str, Any]:
    """Lossy: cents rounding, issue truncation, and no performance or quota detail."""
    billing = health.billing
    transcript = health.transcript

    state: Dict[str, Any] = {
        "v": SCHEMA_VERSION,
        "sid": health.session_id,
        "aid": health.auth_profile or "default",
        "meta": {
            "ca": health.first_seen or health.gathered_at,
            "ua": health.gathered_at,
            "uc": 0,
            "hash": "",
        },
        "hs": {
            "st": encode_status(health.health.status),
            "is": truncate_issues(health.health.issues),
        },
        "bd": {
            "ct": _cents(billing.cost_today),
            "br": _cents(billing.burn_rate_per_hour),
            "bp": billing.budget_percent_used,
            "lf": billing.last_fetched,
        },
        "ac": {
            "ts": transcript.size_bytes,
            "mc": transcript.message_count,
            "lm": transcript.last_message_time or transcript.last_modified,
            "sy": transcript.is_synced,
        },
        "mc": {
            "mv": health.model.value,
            "cf": health.model.confidence,
            "tu": health.context.tokens_used,
            "tl": health.context.tokens_left,
            "cp": health.context.percent_used,
            "nc": health.context.near_compaction,
        },
        "al": encode_alerts(
            secrets_detected=health.alerts.secrets_detected,
            transcript_stale=health.alerts.transcript_stale,
            data_loss_risk=health.alerts.data_loss_risk,
        ),
    }

    if billing.weekly_budget_percent_used is not None:
        state["bw"] = {
            "wp": billing.weekly_budget_percent_used,
            "wh": billing.weekly_budget_remaining or 0,
            "rd": billing.weekly_reset_day or "",
            "lf": billing.weekly_last_modified or 0,
        }

    if health.git.branch:
        state["gt"] = {"br": health.git.branch, "dt": health.git.dirty}

    return state


def deserialize(state: Dict[str, Any]) -> SessionHealth:
    meta = state.get("meta", {})
    health = SessionHealth(session_id=state.get("sid", ""))

    health.gathered_at = meta.get("ua", 0)
    health.first_seen = meta.get("ca", 0)
    health.session_duration = health.gathered_at - health.first_seen
    health.auth_profile = state.get("aid", "default")

    hs = state.get("hs", {})
    health.health.status = decode_status(hs.get("st", "u"))
    health.health.issues = list(hs.get("is", []))
    health.health.last_update = health.gathered_at

    bd = state.get("bd", {})
    health.billing.cost_today = bd.get("ct", 0) / 100
    health.billing.burn_rate_per_hour = bd.get("br", 0) / 100
    health.billing.budget_percent_used = bd.get("bp", 0)
    health.billing.last_fetched = bd.get("lf", 0)

    if bw := state.get("bw"):
        health.billing.weekly_budget_percent_used = bw.get("wp")
        health.billing.weekly_budget_remaining = bw.get("wh")
        health.billing.weekly_reset_day = bw.get("rd")
        health.billing.weekly_last_modified = bw.get("lf")

    ac = state.get("ac", {})
    health.transcript.size_bytes = ac.get("ts", 0)
    health.transcript.message_count = ac.get("mc", 0)
    health.transcript.last_message_time = ac.get("lm", 0)
    health.transcript.last_modified = ac.get("lm", 0)
    health.transcript.is_synced = bool(ac.get("sy", False))
    health.transcript.exists = health.transcript.size_bytes > 0

    mc = state.get("mc", {})
    health.model.value = mc.get("mv", health.model.value)
    health.model.confidence = mc.get("cf", health.model.confidence)
    health.context.tokens_used = mc.get("tu", 0)
    health.context.tokens_left = mc.get("tl", 0)
    health.context.percent_used = mc.get("cp", 0)
    health.context.near_compaction = bool(mc.get("nc", False))

    if gt := state.get("gt"):
        health.git.branch = gt.get("br", "")
        health.git.dirty = gt.get("dt", 0)

    alerts = decode_alerts(state.get("al", 0))
    health.alerts.secrets_detected = alerts["secrets_detected"]
    health.alerts.transcript_stale = alerts["transcript_stale"]
    health.alerts.data_loss_risk = alerts["data_loss_risk"]

    return health


def dumps(state: Dict[str, Any]) -> str:
    return json.dumps(state, ensure_ascii=False, separators=(",", ":"))


def estimate_size(state: Dict[str, Any]) -> int:
    """UTF-8 byte length of the compact JSON form."""
    return len(dumps(state).encode("utf-8"))
