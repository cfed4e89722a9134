"""Tests for rolling-window session derivation."""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from claude_token_usage.config import MonitorConfig
from claude_token_usage.ingestion.dedupe import sort_and_dedupe
from claude_token_usage.ingestion.schemas import UsageEntry
from claude_token_usage.sessions.derivation import (
    MAX_USAGE_POINTS,
    build_usage_points,
    derive_session,
    detect_plan,
    session_id_for,
)
from claude_token_usage.sessions.schemas import MAX5, MAX20, PRO, PlanType, SessionState

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
WINDOW = timedelta(hours=5)


def test_duplicate_entries_across_files_are_counted_once() -> None:
    """Two copies of A plus B yield 150 tokens, not 250."""
    entries = [
        _entry(T0, 100, "A", source="first.jsonl"),
        _entry(T0, 100, "A", source="second.jsonl"),
        _entry(T0 + timedelta(minutes=1), 50, "B", source="second.jsonl"),
    ]
    deduped = sort_and_dedupe(entries).entries

    result = derive_session(deduped, T0 + timedelta(minutes=2), MonitorConfig())

    assert result.session is not None
    assert result.session.tokens_used == 150
    assert result.state is SessionState.ACTIVE


def test_window_anchors_on_latest_entry_and_moves_older_entry_to_closed_window() -> None:
    """Entries at t=0 and t=5h+1m give a window at 5h+1m; t=0 lands in a closed window."""
    late = T0 + WINDOW + timedelta(minutes=1)
    entries = [_entry(T0, 100, "early"), _entry(late, 40, "late")]

    result = derive_session(entries, late + timedelta(minutes=1), MonitorConfig())

    assert result.session is not None
    assert result.session.start_time == late
    assert result.session.reset_time == late + WINDOW
    assert result.session.tokens_used == 40
    assert result.window_entry_count == 1
    assert len(result.closed_windows) == 1
    closed = result.closed_windows[0]
    assert closed.start_time == T0
    assert closed.tokens_used == 100
    assert closed.is_active is False
    assert closed.end_time == T0 + WINDOW


def test_entry_exactly_one_window_before_latest_is_excluded() -> None:
    """The window is half-open: an entry exactly 5h older than the latest is outside it."""
    latest = T0 + WINDOW
    entries = [_entry(T0, 10, "edge"), _entry(T0 + timedelta(seconds=1), 20, "inside"), _entry(latest, 30, "latest")]

    result = derive_session(entries, latest, MonitorConfig())

    assert result.session is not None
    assert result.session.start_time == T0 + timedelta(seconds=1)
    assert result.session.tokens_used == 50


@pytest.mark.parametrize("seed", range(25))
def test_window_contains_exactly_the_entries_in_start_plus_five_hours(seed: int) -> None:
    """For random streams the session sums exactly the entries in [start, start + 5h)."""
    rng = random.Random(seed)
    timestamps = sorted(T0 + timedelta(minutes=rng.randint(0, 20 * 60)) for _ in range(rng.randint(1, 80)))
    entries = [_entry(timestamp, rng.randint(1, 5000), f"msg-{index}") for index, timestamp in enumerate(timestamps)]
    now = timestamps[-1] + timedelta(minutes=rng.randint(0, 400))

    result = derive_session(entries, now, MonitorConfig())

    session = result.session
    assert session is not None
    inside = [entry for entry in entries if session.start_time <= entry.timestamp < session.start_time + WINDOW]
    assert session.tokens_used == sum(entry.total_tokens for entry in inside)
    assert session.reset_time == session.start_time + WINDOW
    assert session.is_active == (now < session.reset_time)
    assert entries[-1].timestamp - session.start_time < WINDOW
    earlier = [entry for entry in entries if entry.timestamp < session.start_time]
    if earlier:
        assert entries[-1].timestamp - earlier[-1].timestamp >= WINDOW
    assert sum(window.tokens_used for window in result.closed_windows) == sum(entry.total_tokens for entry in earlier)


def test_derive_session_is_idempotent() -> None:
    """Re-running derivation on the same stream yields an equal result."""
    entries = [_entry(T0 + timedelta(minutes=minute * 7), 100 + minute, f"msg-{minute}") for minute in range(60)]
    now = T0 + timedelta(hours=8)

    assert derive_session(entries, now, MonitorConfig()) == derive_session(entries, now, MonitorConfig())


def test_empty_stream_is_inactive() -> None:
    """No entries means no session."""
    result = derive_session([], T0, MonitorConfig())

    assert result.state is SessionState.INACTIVE
    assert result.session is None
    assert result.closed_windows == ()


def test_expired_window_is_inactive() -> None:
    """A window whose reset time has passed is reported but not active."""
    result = derive_session([_entry(T0, 100, "old")], T0 + WINDOW, MonitorConfig())

    assert result.state is SessionState.INACTIVE
    assert result.session is not None
    assert result.session.is_active is False


def test_future_entries_beyond_skew_tolerance_are_excluded() -> None:
    """Entries stamped after now plus the tolerance do not move the window."""
    now = T0 + timedelta(hours=1)
    entries = [
        _entry(T0, 100, "past"),
        _entry(now + timedelta(seconds=30), 10, "skewed"),
        _entry(now + timedelta(hours=3), 999, "future"),
    ]

    result = derive_session(entries, now, MonitorConfig())

    assert result.future_entry_count == 1
    assert [entry.message_id for entry in result.future_entries] == ["future"]
    assert result.session is not None
    assert result.session.tokens_used == 110


def test_explicit_plan_sets_limit_and_auto_detects_from_usage() -> None:
    """Explicit plans win; `auto` chooses from the observed totals."""
    entries = [_entry(T0, 25_000, "big")]

    custom = derive_session(entries, T0, MonitorConfig(plan="55000")).session
    detected = derive_session(entries, T0, MonitorConfig(plan="auto")).session

    assert custom is not None and custom.plan_type == PlanType("custom", 55_000)
    assert custom.tokens_limit == 55_000
    assert detected is not None and detected.plan_type == MAX20


@pytest.mark.parametrize(
    ("tokens", "entry_count", "expected"),
    [
        (20_001, 1, MAX20),
        (20_000, 1, PRO),
        (10_001, 1, PRO),
        (500, 21, PRO),
        (10_000, 20, MAX5),
    ],
)
def test_detect_plan_thresholds(tokens: int, entry_count: int, expected: PlanType) -> None:
    """Detection follows the token and entry-count thresholds."""
    assert detect_plan(tokens, entry_count) == expected


def test_session_id_is_derived_from_start_seconds() -> None:
    """Ids are stable for a given start time."""
    assert session_id_for(T0 + timedelta(microseconds=500)) == f"observed-{int(T0.timestamp())}"


def test_build_usage_points_samples_long_series() -> None:
    """Long series are sampled but keep the final cumulative total."""
    entries = [_entry(T0 + timedelta(seconds=index), 10, f"msg-{index}") for index in range(250)]

    points = build_usage_points(entries, T0)

    assert len(points) < MAX_USAGE_POINTS
    assert points[0].cumulative_tokens == 0
    assert points[-1].cumulative_tokens == 2_500
    assert [point.timestamp for point in points] == sorted(point.timestamp for point in points)


def _entry(timestamp: datetime, tokens: int, message_id: str, source: str = "session.jsonl") -> UsageEntry:
    return UsageEntry(
        timestamp=timestamp,
        model="claude-sonnet-4-5",
        input_tokens=tokens,
        output_tokens=0,
        cache_creation_tokens=0,
        cache_read_tokens=0,
        message_id=message_id,
        request_id=f"req-{message_id}",
        source_file=Path(source),
    )
