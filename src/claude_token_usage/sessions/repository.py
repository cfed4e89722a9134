"""JSON file persistence for observed session history."""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import orjson

from .schemas import PRO, ObservedSession, PlanError, PlanType, parse_plan

LOGGER = logging.getLogger(__name__)


class SessionStoreError(RuntimeError):
    """Raised when the session history file cannot be read or written."""


class SessionStore:
    """Reads and writes the observed-session JSON array."""

    def __init__(self, sessions_path: Path) -> None:
        self._sessions_path = sessions_path

    @property
    def path(self) -> Path:
        """Return the backing file path."""
        return self._sessions_path

    def load(self, now: datetime | None = None, retention_days: int | None = None) -> list[ObservedSession]:
        """Load sessions sorted by start time, dropping closed ones past the retention."""
        if not self._sessions_path.exists():
            return []
        try:
            payload = orjson.loads(self._sessions_path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            raise SessionStoreError(f"Failed to read session history {self._sessions_path}: {exc}") from exc
        if not isinstance(payload, list):
            raise SessionStoreError(f"Session history {self._sessions_path} must contain a JSON array.")

        sessions = [_record_to_session(record, self._sessions_path, index) for index, record in enumerate(payload)]
        if retention_days is not None:
            cutoff = (now or datetime.now(UTC)) - timedelta(days=retention_days)
            kept = [session for session in sessions if session.end_time is None or session.end_time >= cutoff]
            if len(kept) < len(sessions):
                LOGGER.info("Dropped %d sessions older than %d days.", len(sessions) - len(kept), retention_days)
            sessions = kept
        return sorted(sessions, key=lambda session: session.start_time)

    def save(self, sessions: list[ObservedSession]) -> None:
        """Replace the history file atomically."""
        records = [session_to_record(session) for session in sessions]
        temp_path = self._sessions_path.with_name(f"{self._sessions_path.name}.tmp")
        try:
            self._sessions_path.parent.mkdir(parents=True, exist_ok=True)
            with temp_path.open("wb") as handle:
                handle.write(orjson.dumps(records, option=orjson.OPT_INDENT_2))
            os.replace(temp_path, self._sessions_path)
        except OSError as exc:
            raise SessionStoreError(f"Failed to write session history {self._sessions_path}: {exc}") from exc
        LOGGER.debug("Saved %d sessions to %s", len(records), self._sessions_path)


def session_to_record(session: ObservedSession) -> dict[str, Any]:
    """Serialize one session to its persisted JSON shape."""
    return {
        "id": session.id,
        "plan_type": session.plan_type.label,
        "tokens_used": session.tokens_used,
        "tokens_limit": session.tokens_limit,
        "start_time": session.start_time.isoformat(),
        "reset_time": session.reset_time.isoformat(),
        "is_active": session.is_active,
        "end_time": session.end_time.isoformat() if session.end_time is not None else None,
    }


def _record_to_session(record: Any, sessions_path: Path, index: int) -> ObservedSession:
    if not isinstance(record, dict):
        raise SessionStoreError(f"Invalid session record {index} in {sessions_path}: expected object.")
    try:
        return ObservedSession(
            id=_required(record, "id", str),
            plan_type=_parse_plan_type(record.get("plan_type")),
            start_time=_parse_timestamp(_required(record, "start_time", str)),
            reset_time=_parse_timestamp(_required(record, "reset_time", str)),
            tokens_used=_required(record, "tokens_used", int),
            tokens_limit=_required(record, "tokens_limit", int),
            is_active=bool(record.get("is_active", False)),
            end_time=_parse_timestamp(record["end_time"]) if record.get("end_time") else None,
        )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise SessionStoreError(f"Invalid session record {index} in {sessions_path}: {exc}") from exc


def _required(record: dict[str, Any], key: str, expected_type: type) -> Any:
    value = record[key]
    if not isinstance(value, expected_type) or isinstance(value, bool):
        raise TypeError(f"{key} must be {expected_type.__name__}, got {type(value).__name__}")
    return value


def _parse_plan_type(value: Any) -> PlanType:
    if not isinstance(value, str):
        return PRO
    try:
        return parse_plan(value) or PRO
    except PlanError:
        LOGGER.warning("Unknown plan type %r in session history; assuming pro.", value)
        return PRO


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
