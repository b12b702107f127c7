"""
Compact durable session state.

Field names are two or three characters to keep a session under
MAX_STATE_BYTES:

    v     schema version
    sid   session id
    aid   account id (email or auth profile)
    meta  ca created_at, ua updated_at, uc update count, hash
    hs    st status code, is issues (max 3, truncated)
    bd    ct cost today (cents), br burn rate (cents/h),
          bp budget percent used, lf last fetched
    bw    wp weekly percent used, wh weekly hours remaining,
          rd reset day, lf last modified            (optional)
    ac    ts transcript bytes, mc message count,
          lm last message at, sy synced
    mc    mv model, cf confidence, tu tokens used, tl tokens left,
          cp context percent, nc near compaction
    gt    br branch, dt dirty count                 (optional)
    al    alert bit flags
"""

from __future__ import annotations

from typing import Dict, List, Sequence

SCHEMA_VERSION = 1
MAX_STATE_BYTES = 5120

MAX_ISSUES = 3
MAX_ISSUE_LENGTH = 50
ELLIPSIS = "…"

# ── Alerts ───────────────────────────────────────────────────────────────────

ALERT_SECRETS_DETECTED = 1 << 0
ALERT_TRANSCRIPT_STALE = 1 << 1
ALERT_DATA_LOSS_RISK = 1 << 2


def encode_alerts(*, secrets_detected: bool, transcript_stale: bool, data_loss_risk: bool) -> int:
    flags = 0
    if secrets_detected:
        flags |= ALERT_SECRETS_DETECTED
    if transcript_stale:
        flags |= ALERT_TRANSCRIPT_STALE
    if data_loss_risk:
        flags |= ALERT_DATA_LOSS_RISK
    return flags


def decode_alerts(flags: int) -> Dict[str, bool]:
    return {
        "secrets_detected": bool(flags & ALERT_SECRETS_DETECTED),
        "transcript_stale": bool(flags & ALERT_TRANSCRIPT_STALE),
        "data_loss_risk": bool(flags & ALERT_DATA_LOSS_RISK),
    }


# ── Health status ────────────────────────────────────────────────────────────

_STATUS_CODES = {"healthy": "h", "warning": "w", "critical": "c", "unknown": "u"}
_STATUS_NAMES = {v: k for k, v in _STATUS_CODES.items()}


def encode_status(status: str) -> str:
    return _STATUS_CODES.get(status, "u")


def decode_status(code: str) -> str:
    return _STATUS_NAMES.get(code, "unknown")


def truncate_issues(issues: Sequence[str]) -> List[str]:
    out = []
    for issue in list(issues)[:MAX_ISSUES]:
        if len(issue) > MAX_ISSUE_LENGTH:
            issue = issue[:MAX_ISSUE_LENGTH] + ELLIPSIS
        out.append(issue)
    return out


# ── Delta encoding ───────────────────────────────────────────────────────────

def delta_encode(values: Sequence[int]) -> List[int]:
    """[100, 105, 103, 110] -> [100, 5, -2, 7]"""
    if not values:
        return []
    out = [values[0]]
    for prev, cur in zip(values, values[1:]):
        out.append(cur - prev)
    return out


def delta_decode(deltas: Sequence[int]) -> List[int]:
    """[100, 5, -2, 7] -> [100, 105, 103, 110]"""
    out: List[int] = []
    for d in deltas:
        out.append(d if not out else out[-1] + d)
    return out
