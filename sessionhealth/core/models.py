"""Data models for sessionhealth."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional, Tuple


def _pick(cls, data: Any) -> Dict[str, Any]:
    """Keep only keys that are fields of cls."""
    if not isinstance(data, dict):
        return {}
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


# ── Snapshot sections ────────────────────────────────────────────────────────

@dataclass
class HealthStatus:
    status: str = "unknown"  # healthy | warning | critical | unknown
    last_update: int = 0
    issues: List[str] = field(default_factory=list)


@dataclass
class TranscriptHealth:
    exists: bool = False
    size_bytes: int = 0
    last_modified: int = 0
    last_modified_ago: str = "unknown"
    message_count: int = 0
    last_message_time: int = 0
    is_synced: bool = False


@dataclass
class ModelInfo:
    value: str = "Claude"
    source: str = "default"  # json_input | settings | default
    confidence: int = 10


@dataclass
class ContextInfo:
    tokens_used: int = 0
    tokens_left: int = 0
    percent_used: int = 0
    window_size: int = 200_000
    near_compaction: bool = False


@dataclass
class GitInfo:
    branch: str = ""
    ahead: int = 0
    behind: int = 0
    dirty: int = 0
    last_checked: int = 0


@dataclass
class BillingInfo:
    cost_today: float = 0.0
    burn_rate_per_hour: float = 0.0
    budget_remaining: int = 0  # minutes
    budget_percent_used: int = 0
    reset_time: str = ""
    is_fresh: bool = False
    last_fetched: int = 0
    weekly_budget_percent_used: Optional[int] = None
    weekly_budget_remaining: Optional[float] = None  # hours
    weekly_reset_day: Optional[str] = None
    weekly_last_modified: Optional[int] = None


@dataclass
class Alerts:
    secrets_detected: bool = False
    secret_types: List[str] = field(default_factory=list)
    transcript_stale: bool = False
    data_loss_risk: bool = False


@dataclass
class QuotaInfo:
    slot_id: Optional[str] = None
    email: str = ""
    slot_status: str = "unknown"  # active | inactive | unknown
    strategy: str = ""
    five_hour_util: float = 0.0
    seven_day_util: float = 0.0
    weekly_budget_remaining_hours: float = 0.0
    urgency: int = 0
    last_fetched: int = 0
    is_stale: bool = True
    switch_message: Optional[str] = None


@dataclass
class Performance:
    gather_duration_ms: int = 0
    sources: Dict[str, str] = field(default_factory=dict)  # id -> ok | cached | timeout | error | skipped


_SECTION_TYPES: Dict[str, type] = {
    "health": HealthStatus,
    "transcript": TranscriptHealth,
    "model": ModelInfo,
    "context": ContextInfo,
    "git": GitInfo,
    "billing": BillingInfo,
    "alerts": Alerts,
    "quota": QuotaInfo,
    "performance": Performance,
}

SECTIONS: Tuple[str, ...] = tuple(_SECTION_TYPES)


@dataclass
class SessionHealth:
    session_id: str
    project_path: str = ""
    transcript_path: str = ""
    auth_profile: str = "default"
    first_seen: int = 0
    session_duration: int = 0
    gathered_at: int = 0

    health: HealthStatus = field(default_factory=HealthStatus)
    transcript: TranscriptHealth = field(default_factory=TranscriptHealth)
    model: ModelInfo = field(default_factory=ModelInfo)
    context: ContextInfo = field(default_factory=ContextInfo)
    git: GitInfo = field(default_factory=GitInfo)
    billing: BillingInfo = field(default_factory=BillingInfo)
    alerts: Alerts = field(default_factory=Alerts)
    quota: QuotaInfo = field(default_factory=QuotaInfo)
    performance: Performance = field(default_factory=Performance)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SessionHealth:
        """Build a snapshot from a dict, ignoring unknown keys."""
        data = data if isinstance(data, dict) else {}
        identity = {
            k: v for k, v in _pick(cls, data).items() if k not in _SECTION_TYPES
        }
        identity.setdefault("session_id", "")
        health = cls(**identity)
        for name, section_cls in _SECTION_TYPES.items():
            setattr(health, name, section_cls(**_pick(section_cls, data.get(name))))
        return health


class SectionAccessError(AttributeError):
    """A merge touched a snapshot section it did not declare."""


_IDENTITY_FIELDS = (
    "session_id", "project_path", "transcript_path", "auth_profile",
    "first_seen", "session_duration", "gathered_at",
)


class SnapshotView:
    """Restricted view of a SessionHealth handed to a source's merge.

    Declared sections are readable and writable, identity fields are
    read-only, everything else raises SectionAccessError.
    """

    __slots__ = ("_health", "_sections", "_source_id")

    def __init__(self, health: SessionHealth, sections, source_id: str = ""):
        object.__setattr__(self, "_health", health)
        object.__setattr__(self, "_sections", frozenset(sections))
        object.__setattr__(self, "_source_id", source_id)

    def __getattr__(self, name: str) -> Any:
        if name in self._sections or name in _IDENTITY_FIELDS:
            return getattr(self._health, name)
        raise SectionAccessError(
            f"source {self._source_id!r} did not declare section {name!r}"
        )

    def __setattr__(self, name: str, value: Any) -> None:
        if name not in self._sections:
            raise SectionAccessError(
                f"source {self._source_id!r} cannot write {name!r}"
            )
        expected = _SECTION_TYPES[name]
        if not isinstance(value, expected):
            raise TypeError(f"section {name!r} expects {expected.__name__}")
        setattr(self._health, name, value)


# ── Gather inputs ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GatherContext:
    session_id: str
    deadline: int  # absolute, unix ms
    transcript_path: Optional[str] = None
    json_input: Optional[Dict[str, Any]] = None
    config_dir: Optional[str] = None
    keychain_service: Optional[str] = None
    auth_email: Optional[str] = None
    project_path: Optional[str] = None
    existing_health: Optional[SessionHealth] = None

    def remaining_ms(self, now: int) -> int:
        return max(0, self.deadline - now)


@dataclass
class DataSourceDescriptor:
    id: str
    tier: int  # 1 = pure, 2 = session-local I/O, 3 = global/account/network
    freshness_category: str
    timeout_ms: int
    fetch: Callable[[GatherContext], Any]
    merge: Callable[[SnapshotView, Any], None]
    sections: Tuple[str, ...] = ()
    dependencies: Tuple[str, ...] = ()
    shared: Optional[bool] = None

    def __post_init__(self):
        if self.tier not in (1, 2, 3):
            raise ValueError(f"source {self.id!r}: tier must be 1, 2 or 3")
        unknown = [s for s in self.sections if s not in _SECTION_TYPES]
        if unknown:
            raise ValueError(f"source {self.id!r}: unknown sections {unknown}")
        self.sections = tuple(self.sections)
        self.dependencies = tuple(self.dependencies)
        if self.shared is None:
            self.shared = self.tier == 3


# ── Quota ────────────────────────────────────────────────────────────────────

@dataclass
class QuotaSlot:
    email: str = ""
    status: str = "active"  # active | inactive
    subscription_type: str = ""
    five_hour_util: float = 0.0
    seven_day_util: float = 0.0
    weekly_budget_remaining_hours: float = 0.0
    weekly_reset_day: str = ""
    daily_reset_time: str = ""
    last_fetched: int = 0
    is_fresh: bool = False
    config_dir: str = ""
    keychain_hash: str = ""
    urgency: int = 0
    rank: int = 99
    reason: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> QuotaSlot:
        return cls(**_pick(cls, data))


@dataclass
class QuotaCache:
    ts: int = 0
    active_slot: Optional[str] = None
    recommended_slot: Optional[str] = None
    failover_needed: bool = False
    all_exhausted: bool = False
    slots: Dict[str, QuotaSlot] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> QuotaCache:
        picked = _pick(cls, data)
        raw_slots = picked.pop("slots", None)
        cache = cls(**picked)
        if isinstance(raw_slots, dict):
            cache.slots = {
                str(k): QuotaSlot.from_dict(v)
                for k, v in raw_slots.items() if isinstance(v, dict)
            }
        return cache


@dataclass
class SlotResolution:
    slot_id: str
    slot: QuotaSlot
    strategy: str
    is_stale: bool
    slot_status: str
