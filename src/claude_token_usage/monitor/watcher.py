"""Filesystem watching with per-path debouncing."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from types import TracebackType

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from .errors import WatchInitError

LOGGER = logging.getLogger(__name__)

WATCHED_SUFFIX = ".jsonl"
_RELEVANT_EVENT_TYPES = frozenset({EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED})


class Debouncer:
    """Coalesce bursts of events per key into one callback after `delay_seconds`."""

    def __init__(self, delay_seconds: float, callback: Callable[[str], None]) -> None:
        self._delay_seconds = delay_seconds
        self._callback = callback
        self._lock = threading.Lock()
        self._pending: dict[str, threading.Timer] = {}
        self._closed = False

    @property
    def pending_count(self) -> int:
        """Return the number of keys waiting to fire."""
        with self._lock:
            return len(self._pending)

    def trigger(self, key: str) -> None:
        """Register an event for `key`; events arriving while one is pending are absorbed."""
        with self._lock:
            if self._closed or key in self._pending:
                return
            if self._delay_seconds <= 0:
                fire_now = True
            else:
                fire_now = False
                timer = threading.Timer(self._delay_seconds, self._fire, args=(key,))
                timer.daemon = True
                self._pending[key] = timer
                timer.start()
        if fire_now:
            self._callback(key)

    def cancel_all(self) -> None:
        """Cancel pending timers and ignore further events."""
        with self._lock:
            self._closed = True
            timers = list(self._pending.values())
            self._pending.clear()
        for timer in timers:
            timer.cancel()

    def _fire(self, key: str) -> None:
        with self._lock:
            if self._pending.pop(key, None) is None or self._closed:
                return
        self._callback(key)


class _UsageFileEventHandler(FileSystemEventHandler):
    """Forwards create/modify/move events for JSONL files to a debouncer."""

    def __init__(self, debouncer: Debouncer) -> None:
        super().__init__()
        self._debouncer = debouncer

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _RELEVANT_EVENT_TYPES:
            return
        raw_path = event.dest_path if event.event_type == EVENT_TYPE_MOVED else event.src_path
        path = os.fsdecode(raw_path)
        if not path.endswith(WATCHED_SUFFIX):
            return
        self._debouncer.trigger(path)


class UsageFileWatcher:
    """Owns a watchdog observer for the data roots; released by `stop()`."""

    def __init__(
        self,
        roots: list[Path],
        on_change: Callable[[], None],
        debounce_seconds: float = 0.5,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        self._roots = list(roots)
        self._on_change = on_change
        self._debouncer = Debouncer(debounce_seconds, self._handle_change)
        self._observer_factory = observer_factory
        self._lock = threading.Lock()
        self._observer: BaseObserver | None = None

    @property
    def is_running(self) -> bool:
        """Return True while the observer is registered with the OS."""
        with self._lock:
            return self._observer is not None

    def start(self) -> None:
        """Schedule every root recursively and start the observer.

        Raises:
            WatchInitError: If there is nothing to watch or the platform watcher fails.
        """
        if not self._roots:
            raise WatchInitError("No data directories to watch.")

        with self._lock:
            if self._observer is not None:
                return
            observer = self._observer_factory()
            handler = _UsageFileEventHandler(self._debouncer)
            try:
                for root in self._roots:
                    observer.schedule(handler, str(root), recursive=True)
                observer.start()
            except (OSError, RuntimeError) as exc:
                self._debouncer.cancel_all()
                _release_observer(observer)
                raise WatchInitError(f"Failed to start filesystem watcher: {exc}") from exc
            self._observer = observer

        for root in self._roots:
            LOGGER.info("Watching directory for changes: %s", root)

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the observer and cancel pending debounce timers. Safe to call twice."""
        with self._lock:
            observer = self._observer
            self._observer = None
        self._debouncer.cancel_all()
        if observer is None:
            return
        observer.stop()
        observer.join(timeout)
        LOGGER.info("Filesystem watcher stopped.")

    def __enter__(self) -> UsageFileWatcher:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.stop()

    def _handle_change(self, path: str) -> None:
        LOGGER.debug("Change detected in %s", path)
        self._on_change()


def _release_observer(observer: BaseObserver, timeout: float = 2.0) -> None:
    """Stop emitters that started before a failure; the observer thread may never have run."""
    observer.stop()
    try:
        observer.join(timeout)
    except RuntimeError:
        LOGGER.debug("Observer thread was never started.")
