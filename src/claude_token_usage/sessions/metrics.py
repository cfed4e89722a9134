"""Rate, efficiency, cache, and depletion metrics for an observed session."""

from __future__ import annotations

from datetime import datetime, timedelta

from ..config import MonitorConfig
from .schemas import ObservedSession, UsageMetrics

RATE_EPSILON = 1e-9


def calculate_metrics(session: ObservedSession, now: datetime, config: MonitorConfig) -> UsageMetrics:
    """Compute all metrics from scratch for `session` at wall-clock `now`."""
    minutes_elapsed = (now - session.start_time).total_seconds() / 60.0
    rate_minutes = max(1.0, minutes_elapsed)
    usage_rate = session.tokens_used / rate_minutes
    tokens_remaining = max(session.tokens_limit - session.tokens_used, 0)
    is_depleted = session.tokens_used >= session.tokens_limit
    usage_ratio = session.tokens_used / session.tokens_limit if session.tokens_limit > 0 else 1.0

    return UsageMetrics(
        usage_rate=usage_rate,
        session_progress=_clamp(minutes_elapsed / config.session_minutes),
        efficiency_score=efficiency_score(usage_rate, session.tokens_limit, config.session_minutes),
        projected_depletion=project_depletion(session, usage_rate, now),
        is_depleted=is_depleted,
        cache_hit_rate=session.cache_read_tokens / max(1, session.input_tokens + session.cache_read_tokens),
        cache_creation_rate=session.cache_creation_tokens / rate_minutes,
        input_output_ratio=_input_output_ratio(session),
        minutes_elapsed=minutes_elapsed,
        tokens_remaining=tokens_remaining,
        usage_ratio=usage_ratio,
        warning=usage_ratio >= config.warning_threshold,
    )


def efficiency_score(usage_rate: float, tokens_limit: int, session_minutes: float) -> float:
    """Return how far under the even-spend budget rate usage is, in [0, 1].

    A zero usage rate is perfectly under budget and scores 1.0.
    """
    if usage_rate <= 0:
        return 1.0
    expected_rate = tokens_limit / session_minutes
    return _clamp(expected_rate / usage_rate)


def project_depletion(session: ObservedSession, usage_rate: float, now: datetime) -> datetime | None:
    """Return when the limit will be reached; `now` if already reached, None if unbounded."""
    if session.tokens_used >= session.tokens_limit:
        return now
    if usage_rate <= RATE_EPSILON:
        return None
    minutes_remaining = (session.tokens_limit - session.tokens_used) / usage_rate
    return now + timedelta(minutes=minutes_remaining)


def _input_output_ratio(session: ObservedSession) -> float:
    if session.output_tokens <= 0:
        return 0.0
    return (session.input_tokens + session.cache_creation_tokens) / session.output_tokens


def _clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return min(max(value, lower), upper)
