"""Derive the current observed session from an ordered usage stream."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from ..config import MonitorConfig
from ..ingestion.schemas import UsageEntry
from .schemas import (
    MAX5,
    MAX20,
    PRO,
    DerivationResult,
    ObservedSession,
    PlanType,
    SessionState,
    UsagePoint,
)

LOGGER = logging.getLogger(__name__)

MAX20_DETECTION_TOKENS = 20_000
PRO_DETECTION_TOKENS = 10_000
PRO_DETECTION_ENTRIES = 20
MAX_USAGE_POINTS = 100
SAMPLED_USAGE_POINTS = 50


def derive_session(entries: Sequence[UsageEntry], now: datetime, config: MonitorConfig) -> DerivationResult:
    """Derive the current session from entries sorted by ascending timestamp.

    The window is anchored on the latest entry: every entry less than one
    session length older than it is included, and the earliest included entry
    becomes `start_time`. Entries after `now` plus the clock-skew tolerance are
    left out of the window math and returned in `future_entries`.
    """
    skew_limit = now + config.clock_skew_tolerance
    eligible = [entry for entry in entries if entry.timestamp <= skew_limit]
    future_entries = tuple(entry for entry in entries if entry.timestamp > skew_limit)
    if future_entries:
        LOGGER.warning(
            "Excluding %d entries timestamped after %s from session derivation.",
            len(future_entries),
            skew_limit.isoformat(),
        )

    if not eligible:
        LOGGER.info("No usage entries found; no active session.")
        return DerivationResult(
            state=SessionState.INACTIVE,
            session=None,
            future_entries=future_entries,
        )

    window = config.session_duration
    latest = eligible[-1].timestamp
    first_index = len(eligible) - 1
    while first_index > 0 and latest - eligible[first_index - 1].timestamp < window:
        first_index -= 1

    included = eligible[first_index:]
    start_time = included[0].timestamp
    session = build_session(included, start_time, now, config)
    return DerivationResult(
        state=SessionState.ACTIVE if session.is_active else SessionState.INACTIVE,
        session=session,
        closed_windows=tuple(partition_windows(eligible[:first_index], now, config)),
        usage_points=tuple(build_usage_points(included, start_time)),
        window_entry_count=len(included),
        future_entries=future_entries,
    )


def build_session(
    entries: Sequence[UsageEntry],
    start_time: datetime,
    now: datetime,
    config: MonitorConfig,
) -> ObservedSession:
    """Aggregate `entries` into a session that starts at `start_time`."""
    input_tokens = sum(entry.input_tokens for entry in entries)
    output_tokens = sum(entry.output_tokens for entry in entries)
    cache_creation_tokens = sum(entry.cache_creation_tokens for entry in entries)
    cache_read_tokens = sum(entry.cache_read_tokens for entry in entries)
    tokens_used = input_tokens + output_tokens + cache_creation_tokens + cache_read_tokens

    plan_type = config.plan_type or detect_plan(tokens_used, len(entries))
    reset_time = start_time + config.session_duration
    return ObservedSession(
        id=session_id_for(start_time),
        plan_type=plan_type,
        start_time=start_time,
        reset_time=reset_time,
        tokens_used=tokens_used,
        tokens_limit=plan_type.token_limit,
        is_active=now < reset_time,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_creation_tokens=cache_creation_tokens,
        cache_read_tokens=cache_read_tokens,
        entry_count=len(entries),
    )


def partition_windows(entries: Sequence[UsageEntry], now: datetime, config: MonitorConfig) -> list[ObservedSession]:
    """Split older entries into consecutive closed windows, oldest first."""
    window = config.session_duration
    sessions: list[ObservedSession] = []
    index = 0
    while index < len(entries):
        start_time = entries[index].timestamp
        end_index = index
        while end_index < len(entries) and entries[end_index].timestamp < start_time + window:
            end_index += 1
        sessions.append(build_session(entries[index:end_index], start_time, now, config).close())
        index = end_index
    return sessions


def build_usage_points(entries: Sequence[UsageEntry], start_time: datetime) -> list[UsagePoint]:
    """Build a cumulative series, sampled down when it grows past `MAX_USAGE_POINTS`."""
    points = [UsagePoint(timestamp=start_time, cumulative_tokens=0)]
    cumulative = 0
    for entry in entries:
        cumulative += entry.total_tokens
        points.append(UsagePoint(timestamp=entry.timestamp, cumulative_tokens=cumulative))

    if len(points) <= MAX_USAGE_POINTS:
        return points
    step = len(points) // SAMPLED_USAGE_POINTS
    sampled = points[::step]
    if sampled[-1] != points[-1]:
        sampled.append(points[-1])
    return sampled


def detect_plan(tokens_used: int, entry_count: int) -> PlanType:
    """Guess the plan from observed usage when no explicit plan is configured."""
    if tokens_used > MAX20_DETECTION_TOKENS:
        return MAX20
    if tokens_used > PRO_DETECTION_TOKENS or entry_count > PRO_DETECTION_ENTRIES:
        return PRO
    return MAX5


def session_id_for(start_time: datetime) -> str:
    """Return the deterministic session id for a window start."""
    return f"observed-{int(start_time.timestamp())}"
