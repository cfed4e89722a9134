"""Settings directory helpers for claude-token-monitor."""

from __future__ import annotations

import os
from pathlib import Path

SETTINGS_HOME_ENV = "CLAUDE_TOKEN_MONITOR_HOME"


def get_settings_dir() -> Path:
    """Return the settings directory following XDG data directory conventions."""
    explicit_home = os.environ.get(SETTINGS_HOME_ENV)
    if explicit_home:
        return Path(explicit_home).expanduser()
    xdg_data_home = os.environ.get("XDG_DATA_HOME")
    if xdg_data_home:
        base_data_dir = Path(xdg_data_home).expanduser()
    else:
        base_data_dir = Path("~/.local/share").expanduser()
    return base_data_dir / "claude-token-monitor"


def get_default_config_path() -> Path:
    """Return the default JSON config file path."""
    return get_settings_dir() / "config.json"


def get_default_sessions_path() -> Path:
    """Return the default observed-session history file path."""
    return get_settings_dir() / "observed_sessions.json"


def get_default_log_path() -> Path:
    """Return the log file used while the live monitor owns the terminal."""
    return get_settings_dir() / "monitor.log"
