"""Typed schemas for observed sessions and derived metrics."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum

from ..ingestion.schemas import ScanCounters, UsageEntry

PRO_TOKEN_LIMIT = 40_000
MAX5_TOKEN_LIMIT = 20_000
MAX20_TOKEN_LIMIT = 100_000
AUTO_PLAN = "auto"


class PlanError(ValueError):
    """Raised when a plan name cannot be parsed."""


@dataclass(frozen=True)
class PlanType:
    """Subscription plan hint and its per-session token limit."""

    name: str
    token_limit: int

    @property
    def label(self) -> str:
        """Return the serialized plan value."""
        if self.name == "custom":
            return f"custom:{self.token_limit}"
        return self.name

    def __str__(self) -> str:
        return self.label


PRO = PlanType("pro", PRO_TOKEN_LIMIT)
MAX5 = PlanType("max5", MAX5_TOKEN_LIMIT)
MAX20 = PlanType("max20", MAX20_TOKEN_LIMIT)
BUILTIN_PLANS: dict[str, PlanType] = {plan.name: plan for plan in (PRO, MAX5, MAX20)}


def parse_plan(value: str) -> PlanType | None:
    """Parse a plan value; `auto` returns None, meaning detect from observed usage.

    Accepts `pro`, `max5`, `max20`, `auto`, a positive integer limit, or the
    serialized `custom:<limit>` form.
    """
    normalized = value.strip().lower()
    if normalized == AUTO_PLAN:
        return None
    if normalized in BUILTIN_PLANS:
        return BUILTIN_PLANS[normalized]

    limit_text = normalized.removeprefix("custom:")
    try:
        limit = int(limit_text)
    except ValueError as exc:
        raise PlanError(
            f"Invalid plan type: {value}. Use 'pro', 'max5', 'max20', 'auto', or a custom limit number."
        ) from exc
    if limit <= 0:
        raise PlanError(f"Custom plan limit must be positive, got {limit}.")
    return PlanType("custom", limit)


class SessionState(Enum):
    """Derivation state of the monitored stream."""

    INACTIVE = "inactive"
    ACTIVE = "active"


@dataclass(frozen=True)
class ObservedSession:
    """A usage period inferred from log timestamps."""

    id: str
    plan_type: PlanType
    start_time: datetime
    reset_time: datetime
    tokens_used: int
    tokens_limit: int
    is_active: bool
    end_time: datetime | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    entry_count: int = 0

    def close(self) -> ObservedSession:
        """Return the superseded form of this session, ended at its reset time."""
        return replace(self, is_active=False, end_time=self.reset_time)

    def with_activity(self, now: datetime) -> ObservedSession:
        """Return a copy whose `is_active` flag reflects `now`."""
        is_active = self.end_time is None and now < self.reset_time
        if is_active == self.is_active:
            return self
        return replace(self, is_active=is_active)


@dataclass(frozen=True)
class UsagePoint:
    """Cumulative token count at one instant, for charting."""

    timestamp: datetime
    cumulative_tokens: int


@dataclass(frozen=True)
class ModelUsage:
    """Token totals for one model."""

    model: str
    total_tokens: int
    entry_count: int


@dataclass(frozen=True)
class TokenTypeBreakdown:
    """Token totals by counter type."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Return the sum across all counters."""
        return self.input_tokens + self.output_tokens + self.cache_creation_tokens + self.cache_read_tokens


@dataclass(frozen=True)
class UsageMetrics:
    """Rates and projections derived from one observed session."""

    usage_rate: float
    session_progress: float
    efficiency_score: float
    projected_depletion: datetime | None
    is_depleted: bool
    cache_hit_rate: float
    cache_creation_rate: float
    input_output_ratio: float
    minutes_elapsed: float
    tokens_remaining: int
    usage_ratio: float
    warning: bool


@dataclass(frozen=True)
class DerivationResult:
    """Output of one pass of the session derivation engine."""

    state: SessionState
    session: ObservedSession | None
    closed_windows: tuple[ObservedSession, ...] = ()
    usage_points: tuple[UsagePoint, ...] = ()
    window_entry_count: int = 0
    future_entries: tuple[UsageEntry, ...] = ()

    @property
    def future_entry_count(self) -> int:
        """Return how many entries were excluded for being ahead of the clock."""
        return len(self.future_entries)


@dataclass(frozen=True)
class MonitorSnapshot:
    """Complete, internally consistent view published to the display layer."""

    state: SessionState
    session: ObservedSession | None
    metrics: UsageMetrics | None
    usage_points: tuple[UsagePoint, ...]
    model_usage: tuple[ModelUsage, ...]
    token_breakdown: TokenTypeBreakdown
    counters: ScanCounters
    entry_time_range: tuple[datetime, datetime] | None
    generated_at: datetime
