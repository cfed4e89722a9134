"""Tests for session tracking across derivation passes."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

from claude_token_usage.config import MonitorConfig
from claude_token_usage.ingestion.schemas import UsageEntry
from claude_token_usage.sessions.derivation import derive_session
from claude_token_usage.sessions.schemas import PRO, ObservedSession
from claude_token_usage.sessions.tracker import SessionTracker

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
WINDOW = timedelta(hours=5)


def test_new_window_closes_previous_session_into_history() -> None:
    """When the anchor moves past the window, the old session becomes history."""
    config = MonitorConfig()
    tracker = SessionTracker()
    first_entries = [_entry(T0, 100, "a")]
    tracker.apply(derive_session(first_entries, T0 + timedelta(minutes=1), config))

    late = T0 + WINDOW + timedelta(minutes=1)
    second_entries = [*first_entries, _entry(late, 40, "b")]
    current = tracker.apply(derive_session(second_entries, late, config))

    assert current is not None
    assert current.start_time == late
    history = tracker.history()
    assert len(history) == 1
    assert history[0].start_time == T0
    assert history[0].is_active is False
    assert history[0].end_time == T0 + WINDOW


def test_cold_start_reconstructs_closed_windows_once() -> None:
    """Older windows appear in history on the first pass and are not duplicated later."""
    config = MonitorConfig()
    late = T0 + WINDOW + timedelta(minutes=1)
    entries = [_entry(T0, 100, "a"), _entry(late, 40, "b")]
    tracker = SessionTracker()

    result = derive_session(entries, late, config)
    tracker.apply(result)
    tracker.apply(result)

    assert [session.tokens_used for session in tracker.history()] == [100]
    assert tracker.current is not None
    assert tracker.current.tokens_used == 40


def test_empty_result_leaves_state_unchanged() -> None:
    """A pass without data keeps the current session and history."""
    tracker = SessionTracker()
    tracker.apply(derive_session([_entry(T0, 100, "a")], T0, MonitorConfig()))

    assert tracker.apply(derive_session([], T0, MonitorConfig())) is None
    assert tracker.current is not None
    assert tracker.history() == []


def test_refresh_marks_session_inactive_after_reset() -> None:
    """Refreshing past the reset time flips `is_active` without new data."""
    tracker = SessionTracker()
    tracker.apply(derive_session([_entry(T0, 100, "a")], T0, MonitorConfig()))

    refreshed = tracker.refresh(T0 + WINDOW + timedelta(seconds=1))

    assert refreshed is not None
    assert refreshed.is_active is False


def test_from_records_restores_current_and_closes_stale_open_sessions() -> None:
    """Only the newest open record stays current; older open records are closed."""
    old_closed = _session(T0 - timedelta(days=1), end_time=T0 - timedelta(days=1) + WINDOW)
    stale_open = _session(T0 - timedelta(hours=10))
    newest_open = _session(T0)

    tracker = SessionTracker.from_records([newest_open, stale_open, old_closed])

    assert tracker.current == newest_open
    assert [session.id for session in tracker.history()] == [old_closed.id, stale_open.id]
    assert all(session.end_time is not None for session in tracker.history())
    assert [session.id for session in tracker.all_sessions()] == [old_closed.id, stale_open.id, newest_open.id]


def _session(start_time: datetime, end_time: datetime | None = None) -> ObservedSession:
    return ObservedSession(
        id=f"observed-{int(start_time.timestamp())}",
        plan_type=PRO,
        start_time=start_time,
        reset_time=start_time + WINDOW,
        tokens_used=1_000,
        tokens_limit=PRO.token_limit,
        is_active=end_time is None,
        end_time=end_time,
    )


def _entry(timestamp: datetime, tokens: int, message_id: str) -> UsageEntry:
    return UsageEntry(
        timestamp=timestamp,
        model="claude-sonnet-4-5",
        input_tokens=tokens,
        output_tokens=0,
        cache_creation_tokens=0,
        cache_read_tokens=0,
        message_id=message_id,
        request_id=f"req-{message_id}",
        source_file=Path("session.jsonl"),
    )
