"""Content hash for durable state change detection."""

from __future__ import annotations

from typing import Any, Dict, List

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


def fnv1a32(text: str) -> str:
    h = _FNV_OFFSET
    for byte in text.encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return f"{h:08x}"


def _flag(value: Any) -> str:
    return "1" if value else "0"


def compute_hash(state: Dict[str, Any]) -> str:
    """Hash of the meaningful fields. meta and last-fetched times are left out."""
    hs, bd, ac, mc = state["hs"], state["bd"], state["ac"], state["mc"]
    parts: List[str] = [
        state["sid"],
        state["aid"],
        hs["st"],
        ",".join(hs["is"]),
        str(bd["ct"]),
        str(bd["br"]),
        str(bd["bp"]),
        str(ac["ts"]),
        str(ac["mc"]),
        str(ac["lm"]),
        _flag(ac["sy"]),
        mc["mv"],
        str(mc["cf"]),
        str(mc["tu"]),
        str(mc["tl"]),
        str(mc["cp"]),
        _flag(mc["nc"]),
        str(state["al"]),
    ]
    if bw := state.get("bw"):
        parts += [str(bw["wp"]), str(bw["wh"]), bw["rd"]]
    if gt := state.get("gt"):
        parts += [gt["br"], str(gt["dt"])]
    return fnv1a32("|".join(parts))


def has_changed(state: Dict[str, Any]) -> bool:
    return compute_hash(state) != state["meta"].get("hash")


def stamp(state: Dict[str, Any]) -> bool:
    """Store the new hash; bump the update counter only if it changed."""
    new_hash = compute_hash(state)
    meta = state["meta"]
    changed = new_hash != meta.get("hash")
    meta["hash"] = new_hash
    if changed:
        meta["uc"] = meta.get("uc", 0) + 1
    return changed
