"""Tests for the monitoring loop and snapshot publication."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from claude_token_usage.config import MonitorConfig
from claude_token_usage.ingestion.dedupe import sort_and_dedupe
from claude_token_usage.ingestion.schemas import ScanCounters, ScanResult, UsageEntry
from claude_token_usage.monitor.errors import WatchInitError
from claude_token_usage.monitor.service import UsageMonitor
from claude_token_usage.sessions.schemas import PRO, ObservedSession, SessionState
from claude_token_usage.sessions.tracker import SessionTracker

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)


class StaticSource:
    """In-memory usage source that counts loads."""

    def __init__(self, entries: list[UsageEntry], roots: list[Path] | None = None) -> None:
        self.entries = entries
        self.roots = roots or []
        self.load_count = 0
        self.loaded = threading.Event()

    def load(self) -> ScanResult:
        self.load_count += 1
        self.loaded.set()
        deduped = sort_and_dedupe(list(self.entries))
        return ScanResult(entries=deduped.entries, counters=ScanCounters(entries_deduped=len(deduped.entries)))

    def watch_roots(self) -> list[Path]:
        return list(self.roots)


class FakeWatcher:
    """Stands in for UsageFileWatcher; records lifecycle calls."""

    def __init__(self, on_change: Callable[[], None], fail: bool = False) -> None:
        self.on_change = on_change
        self.fail = fail
        self.running = False
        self.stop_calls = 0

    @property
    def is_running(self) -> bool:
        return self.running

    def start(self) -> None:
        if self.fail:
            raise WatchInitError("Failed to start filesystem watcher: no inotify")
        self.running = True

    def stop(self) -> None:
        self.stop_calls += 1
        self.running = False


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_rescan_publishes_snapshot_with_session_and_metrics() -> None:
    """A manual rescan runs the whole pipeline."""
    source = StaticSource([_entry(T0, 1_000, "a"), _entry(T0 + timedelta(minutes=5), 500, "b")])
    monitor = UsageMonitor(source, MonitorConfig(), clock=Clock(T0 + timedelta(minutes=10)))

    assert monitor.snapshot() is None
    snapshot = monitor.rescan()

    assert monitor.snapshot() is snapshot
    assert snapshot.state is SessionState.ACTIVE
    assert snapshot.session is not None
    assert snapshot.session.tokens_used == 1_500
    assert snapshot.metrics is not None
    assert snapshot.metrics.usage_rate == 150.0
    assert [usage.model for usage in snapshot.model_usage] == ["claude-sonnet-4-5"]
    assert snapshot.token_breakdown.input_tokens == 1_500
    assert snapshot.entry_time_range == (T0, T0 + timedelta(minutes=5))


def test_rescan_without_data_is_inactive() -> None:
    """An empty stream publishes an inactive snapshot without a session."""
    snapshot = UsageMonitor(StaticSource([]), MonitorConfig(), clock=Clock(T0)).rescan()

    assert snapshot.state is SessionState.INACTIVE
    assert snapshot.session is None
    assert snapshot.metrics is None


def test_rescan_without_data_expires_restored_session() -> None:
    """A session restored from disk is marked inactive once its reset time has passed."""
    restored = ObservedSession(
        id="observed-1",
        plan_type=PRO,
        start_time=T0,
        reset_time=T0 + timedelta(hours=5),
        tokens_used=1_000,
        tokens_limit=PRO.token_limit,
        is_active=True,
    )
    monitor = UsageMonitor(
        StaticSource([]),
        MonitorConfig(),
        tracker=SessionTracker.from_records([restored]),
        clock=Clock(T0 + timedelta(days=2)),
    )

    monitor.rescan()

    assert [session.is_active for session in monitor.sessions()] == [False]


def test_refresh_metrics_does_not_reload_files() -> None:
    """Metrics-only refresh recomputes time-based values from the last snapshot."""
    source = StaticSource([_entry(T0, 1_000, "a")])
    clock = Clock(T0 + timedelta(minutes=10))
    monitor = UsageMonitor(source, MonitorConfig(), clock=clock)
    monitor.rescan()

    clock.now = T0 + timedelta(hours=6)
    refreshed = monitor.refresh_metrics()

    assert source.load_count == 1
    assert refreshed.state is SessionState.INACTIVE
    assert refreshed.session is not None
    assert refreshed.session.is_active is False
    assert refreshed.metrics is not None
    assert refreshed.metrics.session_progress == 1.0
    assert refreshed.generated_at == clock.now


def test_new_window_moves_previous_session_to_history() -> None:
    """History accumulates as the anchor moves forward."""
    source = StaticSource([_entry(T0, 1_000, "a")])
    clock = Clock(T0)
    monitor = UsageMonitor(source, MonitorConfig(), clock=clock)
    monitor.rescan()

    clock.now = T0 + timedelta(hours=6)
    source.entries = [*source.entries, _entry(clock.now, 200, "b")]
    monitor.rescan()

    assert [session.tokens_used for session in monitor.history()] == [1_000]
    assert [session.tokens_used for session in monitor.sessions()] == [1_000, 200]


def test_watcher_failure_falls_back_to_polling() -> None:
    """A watcher that cannot start leaves the monitor polling on every tick."""
    source = StaticSource([_entry(T0, 100, "a")], roots=[Path("/data")])
    watchers: list[FakeWatcher] = []

    def factory(roots: list[Path], on_change: Callable[[], None], debounce_seconds: float) -> FakeWatcher:
        watcher = FakeWatcher(on_change, fail=True)
        watchers.append(watcher)
        return watcher

    monitor = UsageMonitor(
        source,
        MonitorConfig(update_interval_seconds=0.05),
        clock=Clock(T0),
        watcher_factory=factory,
    )
    monitor.start()
    try:
        assert monitor.is_running
        assert monitor.is_watching is False
        _wait_until(lambda: source.load_count >= 3)
    finally:
        monitor.stop()

    assert len(watchers) == 1
    assert monitor.is_running is False


def test_live_watcher_ticks_refresh_and_change_events_rescan() -> None:
    """With a live watcher, ticks only refresh metrics and change events trigger rescans."""
    source = StaticSource([_entry(T0, 100, "a")], roots=[Path("/data")])
    watchers: list[FakeWatcher] = []

    def factory(roots: list[Path], on_change: Callable[[], None], debounce_seconds: float) -> FakeWatcher:
        watcher = FakeWatcher(on_change)
        watchers.append(watcher)
        return watcher

    monitor = UsageMonitor(
        source,
        MonitorConfig(update_interval_seconds=0.05),
        clock=Clock(T0),
        watcher_factory=factory,
    )
    with monitor:
        assert monitor.is_watching
        time.sleep(0.3)
        assert source.load_count == 1

        source.entries = [*source.entries, _entry(T0 + timedelta(minutes=1), 50, "b")]
        watchers[0].on_change()
        _wait_until(lambda: source.load_count == 2)
        _wait_until(
            lambda: (snapshot := monitor.snapshot()) is not None
            and snapshot.session is not None
            and snapshot.session.tokens_used == 150
        )

    assert watchers[0].stop_calls == 1
    assert monitor.is_watching is False
    monitor.stop()
    assert watchers[0].stop_calls == 1


def test_pending_rescan_requests_are_coalesced() -> None:
    """Requests made while one is pending are absorbed."""
    monitor = UsageMonitor(StaticSource([]), MonitorConfig(), clock=Clock(T0))

    for _ in range(5):
        monitor.request_rescan()

    assert monitor._rescan_requests.qsize() == 1


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("Condition not met before timeout.")


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
