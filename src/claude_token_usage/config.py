"""Monitor configuration loading and validation."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any

import orjson

from .sessions.schemas import PlanError, PlanType, parse_plan

LOGGER = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the configuration file or a configuration value is invalid."""


@dataclass(frozen=True)
class MonitorConfig:
    """Explicit configuration passed into derivation, metrics, and the monitor loop.

    Attributes:
        plan: Plan hint (`pro`, `max5`, `max20`, `auto`, or a custom token limit).
        update_interval_seconds: Tick interval of the monitoring loop.
        warning_threshold: Fraction of the token limit that flags a warning.
        debounce_seconds: Window for coalescing file change events per path.
        clock_skew_tolerance_seconds: How far in the future an entry may be
            before it is excluded from window math.
        session_hours: Length of the rolling session window.
        history_retention_days: Age after which closed sessions are dropped on load.
        extra_allowed_roots: Directories outside the home directory that data
            paths may resolve into.
    """

    plan: str = "pro"
    update_interval_seconds: float = 3.0
    warning_threshold: float = 0.85
    debounce_seconds: float = 0.5
    clock_skew_tolerance_seconds: float = 60.0
    session_hours: int = 5
    history_retention_days: int = 7
    extra_allowed_roots: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _validate(self)

    @property
    def session_duration(self) -> timedelta:
        """Return the rolling window length."""
        return timedelta(hours=self.session_hours)

    @property
    def session_minutes(self) -> float:
        """Return the rolling window length in minutes."""
        return self.session_hours * 60.0

    @property
    def clock_skew_tolerance(self) -> timedelta:
        """Return the future-timestamp tolerance."""
        return timedelta(seconds=self.clock_skew_tolerance_seconds)

    @property
    def plan_type(self) -> PlanType | None:
        """Return the parsed plan, or None for auto-detection."""
        return parse_plan(self.plan)

    def with_updates(self, **changes: Any) -> MonitorConfig:
        """Return a validated copy with `changes` applied."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable mapping."""
        payload = asdict(self)
        payload["extra_allowed_roots"] = list(self.extra_allowed_roots)
        return payload


def load_config(config_path: Path) -> MonitorConfig:
    """Load configuration from JSON; a missing file yields defaults."""
    if not config_path.exists():
        LOGGER.info("No config file at %s; using defaults.", config_path)
        return MonitorConfig()

    try:
        payload = orjson.loads(config_path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to read config file {config_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Config file {config_path} must contain a JSON object.")

    known_fields = {field.name for field in fields(MonitorConfig)}
    unknown_keys = sorted(set(payload) - known_fields)
    if unknown_keys:
        LOGGER.warning("Ignoring unknown config keys in %s: %s", config_path, ", ".join(unknown_keys))

    values = {key: value for key, value in payload.items() if key in known_fields}
    if "extra_allowed_roots" in values:
        roots = values["extra_allowed_roots"]
        if not isinstance(roots, list) or not all(isinstance(root, str) for root in roots):
            raise ConfigError("extra_allowed_roots must be a list of strings.")
        values["extra_allowed_roots"] = tuple(roots)
    try:
        return MonitorConfig(**values)
    except TypeError as exc:
        raise ConfigError(f"Invalid config file {config_path}: {exc}") from exc


def save_config(config: MonitorConfig, config_path: Path) -> None:
    """Write configuration as pretty-printed JSON."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_bytes(orjson.dumps(config.to_dict(), option=orjson.OPT_INDENT_2))


def _validate(config: MonitorConfig) -> None:
    if not isinstance(config.plan, str):
        raise ConfigError(f"plan must be a string, got {type(config.plan).__name__}.")
    try:
        parse_plan(config.plan)
    except PlanError as exc:
        raise ConfigError(str(exc)) from exc

    for name in ("update_interval_seconds", "debounce_seconds", "clock_skew_tolerance_seconds"):
        value = getattr(config, name)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
            raise ConfigError(f"{name} must be a non-negative number, got {value!r}.")
    if config.update_interval_seconds <= 0:
        raise ConfigError("update_interval_seconds must be greater than zero.")

    threshold = config.warning_threshold
    if not isinstance(threshold, (int, float)) or isinstance(threshold, bool) or not 0.0 <= threshold <= 1.0:
        raise ConfigError(f"warning_threshold must be between 0.0 and 1.0, got {threshold!r}.")

    for name in ("session_hours", "history_retention_days"):
        value = getattr(config, name)
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ConfigError(f"{name} must be a positive integer, got {value!r}.")
