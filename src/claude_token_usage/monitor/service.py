"""Monitoring loop that keeps the latest usage snapshot up to date."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from ..config import MonitorConfig
from ..ingestion.service import UsageSource
from ..sessions.analytics import entry_time_range, summarize_models, summarize_token_types
from ..sessions.derivation import derive_session
from ..sessions.metrics import calculate_metrics
from ..sessions.schemas import MonitorSnapshot, ObservedSession, SessionState
from ..sessions.tracker import SessionTracker
from .errors import WatchInitError
from .watcher import UsageFileWatcher

LOGGER = logging.getLogger(__name__)

WatcherFactory = Callable[[list[Path], Callable[[], None], float], UsageFileWatcher]


def _default_watcher_factory(roots: list[Path], on_change: Callable[[], None], debounce_seconds: float) -> UsageFileWatcher:
    return UsageFileWatcher(roots, on_change, debounce_seconds)


class UsageMonitor:
    """Runs the derivation pipeline on file events or timer ticks and publishes snapshots.

    The monitor owns the filesystem watcher for its whole lifetime and releases
    it in `stop()`. Readers call `snapshot()` and `history()`, which never wait
    on file I/O.
    """

    def __init__(
        self,
        source: UsageSource,
        config: MonitorConfig,
        tracker: SessionTracker | None = None,
        clock: Callable[[], datetime] | None = None,
        watcher_factory: WatcherFactory | None = None,
    ) -> None:
        self._source = source
        self._config = config
        self._tracker = tracker or SessionTracker()
        self._clock = clock or _utc_now
        self._watcher_factory = watcher_factory or _default_watcher_factory

        self._rescan_requests: queue.Queue[None] = queue.Queue(maxsize=1)
        self._stop_event = threading.Event()
        self._pass_lock = threading.Lock()
        self._tracker_lock = threading.Lock()
        self._snapshot_lock = threading.Lock()
        self._watcher_lock = threading.Lock()
        self._snapshot: MonitorSnapshot | None = None
        self._watcher: UsageFileWatcher | None = None
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        """Return True while the monitoring thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_watching(self) -> bool:
        """Return True when file events drive rescans; False means polling."""
        with self._watcher_lock:
            return self._watcher is not None and self._watcher.is_running

    def snapshot(self) -> MonitorSnapshot | None:
        """Return the latest published snapshot, or None before the first pass."""
        with self._snapshot_lock:
            return self._snapshot

    def history(self) -> list[ObservedSession]:
        """Return closed sessions, oldest first."""
        with self._tracker_lock:
            return self._tracker.history()

    def sessions(self) -> list[ObservedSession]:
        """Return history plus the current session, for persistence."""
        with self._tracker_lock:
            return self._tracker.all_sessions()

    def request_rescan(self) -> None:
        """Ask the monitoring loop for a full pass; pending requests absorb new ones."""
        try:
            self._rescan_requests.put_nowait(None)
        except queue.Full:
            LOGGER.debug("Rescan already pending.")

    def rescan(self) -> MonitorSnapshot:
        """Run the full pipeline synchronously and publish the result."""
        with self._pass_lock:
            now = self._clock()
            scan = self._source.load()
            result = derive_session(scan.entries, now, self._config)
            with self._tracker_lock:
                session = self._tracker.apply(result)
                # A restored session must expire even when no entries were found.
                self._tracker.refresh(now)

            snapshot = MonitorSnapshot(
                state=result.state,
                session=session,
                metrics=calculate_metrics(session, now, self._config) if session is not None else None,
                usage_points=result.usage_points,
                model_usage=tuple(summarize_models(scan.entries)),
                token_breakdown=summarize_token_types(scan.entries),
                counters=scan.counters,
                entry_time_range=entry_time_range(scan.entries),
                generated_at=now,
            )
            self._publish(snapshot)
        return snapshot

    def refresh_metrics(self) -> MonitorSnapshot:
        """Recompute time-dependent values of the current snapshot without reading files."""
        previous = self.snapshot()
        if previous is None:
            return self.rescan()

        with self._pass_lock:
            now = self._clock()
            with self._tracker_lock:
                self._tracker.refresh(now)
            session = previous.session.with_activity(now) if previous.session is not None else None
            snapshot = replace(
                previous,
                state=SessionState.ACTIVE if session is not None and session.is_active else SessionState.INACTIVE,
                session=session,
                metrics=calculate_metrics(session, now, self._config) if session is not None else None,
                generated_at=now,
            )
            self._publish(snapshot)
        return snapshot

    def start(self) -> None:
        """Run an initial pass, start the watcher (or fall back to polling) and the loop thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self.rescan()
        self._start_watcher()
        self._thread = threading.Thread(target=self._run, name="usage-monitor", daemon=True)
        self._thread.start()
        LOGGER.info(
            "Started usage monitoring every %.1fs (%s).",
            self._config.update_interval_seconds,
            "file events" if self.is_watching else "polling",
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop and release the watcher. Safe to call twice."""
        self._stop_event.set()
        self.request_rescan()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                LOGGER.warning("Monitoring thread did not stop within %.1fs.", timeout)
        self._thread = None

        with self._watcher_lock:
            watcher = self._watcher
            self._watcher = None
        if watcher is not None:
            watcher.stop()
        LOGGER.info("Stopped usage monitoring.")

    def __enter__(self) -> UsageMonitor:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.stop()

    def _start_watcher(self) -> None:
        roots = self._source.watch_roots()
        if not roots:
            LOGGER.info("No data directories to watch; polling for changes.")
            return
        watcher = self._watcher_factory(roots, self.request_rescan, self._config.debounce_seconds)
        try:
            watcher.start()
        except WatchInitError as exc:
            LOGGER.warning(
                "%s Falling back to polling every %.1fs.",
                exc,
                self._config.update_interval_seconds,
            )
            return
        with self._watcher_lock:
            self._watcher = watcher

    def _run(self) -> None:
        interval = self._config.update_interval_seconds
        while not self._stop_event.is_set():
            try:
                self._rescan_requests.get(timeout=interval)
                requested = True
            except queue.Empty:
                requested = False
            if self._stop_event.is_set():
                break

            try:
                if requested or not self.is_watching:
                    self.rescan()
                else:
                    self.refresh_metrics()
            except Exception:
                LOGGER.exception("Error updating usage; waiting for the next tick.")

    def _publish(self, snapshot: MonitorSnapshot) -> None:
        with self._snapshot_lock:
            self._snapshot = snapshot


def _utc_now() -> datetime:
    return datetime.now(UTC)
