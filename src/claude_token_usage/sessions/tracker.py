"""Stateful tracking of the current observed session and its history."""

from __future__ import annotations

import logging
from datetime import datetime

from .schemas import DerivationResult, ObservedSession

LOGGER = logging.getLogger(__name__)


class SessionTracker:
    """Holds the current session and an append-only history of closed sessions."""

    def __init__(
        self,
        history: list[ObservedSession] | None = None,
        current: ObservedSession | None = None,
    ) -> None:
        self._history: list[ObservedSession] = []
        self._history_ids: set[str] = set()
        self._current = current
        for session in history or []:
            self._append_history(session)

    @classmethod
    def from_records(cls, sessions: list[ObservedSession]) -> SessionTracker:
        """Seed a tracker from persisted sessions; the newest open one becomes current."""
        ordered = sorted(sessions, key=lambda session: session.start_time)
        closed = [session for session in ordered if session.end_time is not None]
        open_sessions = [session for session in ordered if session.end_time is None]
        current = open_sessions[-1] if open_sessions else None
        for stale in open_sessions[:-1]:
            closed.append(stale.close())
        closed.sort(key=lambda session: session.start_time)
        return cls(history=closed, current=current)

    @property
    def current(self) -> ObservedSession | None:
        """Return the current session, if any."""
        return self._current

    def history(self) -> list[ObservedSession]:
        """Return closed sessions, oldest first."""
        return list(self._history)

    def all_sessions(self) -> list[ObservedSession]:
        """Return history followed by the current session, for persistence."""
        sessions = self.history()
        if self._current is not None:
            sessions.append(self._current)
        return sessions

    def apply(self, result: DerivationResult) -> ObservedSession | None:
        """Fold one derivation result into the tracked state.

        A changed window anchor closes the stored session into history. Closed
        windows reconstructed from older entries are appended when they start
        at or after the end of the newest history entry.
        """
        session = result.session
        if session is None:
            return None

        if self._current is not None and self._current.id != session.id:
            LOGGER.info("Session %s superseded by %s.", self._current.id, session.id)
            self._append_history(self._current.close())

        for window in result.closed_windows:
            if window.id == session.id or window.id in self._history_ids:
                continue
            if self._history and window.start_time < self._history_horizon():
                continue
            self._append_history(window)

        self._current = session
        return session

    def refresh(self, now: datetime) -> ObservedSession | None:
        """Update the current session's active flag without re-reading files."""
        if self._current is not None:
            self._current = self._current.with_activity(now)
        return self._current

    def _history_horizon(self) -> datetime:
        last = self._history[-1]
        return last.end_time or last.reset_time

    def _append_history(self, session: ObservedSession) -> None:
        if session.id in self._history_ids:
            return
        if session.end_time is None:
            session = session.close()
        self._history.append(session)
        self._history_ids.add(session.id)
