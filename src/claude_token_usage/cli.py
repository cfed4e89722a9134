"""CLI entrypoints for the Claude Code token usage monitor."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

import typer
from rich.console import Console, RenderableType
from rich.live import Live
from rich.text import Text

from .config import ConfigError, MonitorConfig, load_config, save_config
from .ingestion.paths import DATA_PATH_ENV, DATA_PATHS_ENV, default_data_dirs
from .ingestion.schemas import ScanCounters
from .ingestion.service import FileUsageSource, SimulatedUsageSource, UsageSource
from .monitor.render import build_status_view, render_history, render_status
from .monitor.service import UsageMonitor
from .paths import get_default_config_path, get_default_log_path, get_default_sessions_path, get_settings_dir
from .sessions.repository import SessionStore, SessionStoreError
from .sessions.tracker import SessionTracker

LOGGER = logging.getLogger(__name__)
LIVE_REFRESH_SECONDS = 0.5

TYPER_APP = typer.Typer(help="Claude Code token usage monitor.")


@TYPER_APP.callback()
def main() -> None:
    """Root CLI callback."""


def _data_path_option() -> Any:
    return typer.Option(
        None,
        "--data-path",
        "-p",
        help="Claude Code data directory to read (repeatable). Defaults to CLAUDE_DATA_PATHS or ~/.claude/projects.",
    )


def _config_path_option() -> Any:
    return typer.Option(
        None,
        "--config-path",
        "-c",
        help="JSON config file. Defaults to config.json in the settings directory.",
    )


def _sessions_path_option() -> Any:
    return typer.Option(
        None,
        "--sessions-path",
        help="Observed session history file. Defaults to observed_sessions.json in the settings directory.",
    )


def _verbose_option() -> Any:
    return typer.Option(False, "--verbose", "-v", help="Enable info-level logging.")


@TYPER_APP.command("scan")
def scan_command(
    data_paths: list[Path] | None = _data_path_option(),
    config_path: Path | None = _config_path_option(),
    verbose: bool = _verbose_option(),
) -> None:
    """Run one ingestion pass and print counters."""
    _configure_logging(verbose)
    config = _load_config(config_path)
    source = FileUsageSource(data_roots=data_paths or None, extra_allowed_roots=config.extra_allowed_roots)
    scan = source.load()
    _emit_summary(scan.counters)
    if scan.counters.failed_files:
        raise typer.Exit(code=1)


@TYPER_APP.command("status")
def status_command(
    data_paths: list[Path] | None = _data_path_option(),
    config_path: Path | None = _config_path_option(),
    sessions_path: Path | None = _sessions_path_option(),
    plan: str | None = typer.Option(None, "--plan", help="Plan hint: pro, max5, max20, auto, or a token limit."),
    force_mock: bool = typer.Option(False, "--force-mock", help="Use simulated usage data."),
    verbose: bool = _verbose_option(),
) -> None:
    """Print the current session, metrics, and usage breakdowns."""
    _configure_logging(verbose)
    config = _apply_overrides(_load_config(config_path), plan=plan)
    store = SessionStore(sessions_path or get_default_sessions_path())
    monitor = UsageMonitor(
        source=_build_source(config, data_paths, force_mock),
        config=config,
        tracker=SessionTracker() if force_mock else _load_tracker(store, config),
    )
    snapshot = monitor.rescan()
    if not force_mock:
        _persist(store, monitor)
    render_status(snapshot, Console())


@TYPER_APP.command("history")
def history_command(
    data_paths: list[Path] | None = _data_path_option(),
    config_path: Path | None = _config_path_option(),
    sessions_path: Path | None = _sessions_path_option(),
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Maximum number of sessions to show."),
    verbose: bool = _verbose_option(),
) -> None:
    """Print stored and newly derived sessions, newest first."""
    _configure_logging(verbose)
    config = _load_config(config_path)
    store = SessionStore(sessions_path or get_default_sessions_path())
    monitor = UsageMonitor(
        source=_build_source(config, data_paths, force_mock=False),
        config=config,
        tracker=_load_tracker(store, config),
    )
    monitor.rescan()
    _persist(store, monitor)

    sessions = sorted(monitor.sessions(), key=lambda session: session.start_time, reverse=True)
    render_history(sessions[:limit], Console())


@TYPER_APP.command("monitor")
def monitor_command(
    data_paths: list[Path] | None = _data_path_option(),
    config_path: Path | None = _config_path_option(),
    sessions_path: Path | None = _sessions_path_option(),
    plan: str | None = typer.Option(None, "--plan", help="Plan hint: pro, max5, max20, auto, or a token limit."),
    interval: float | None = typer.Option(None, "--interval", "-i", help="Update interval in seconds."),
    force_mock: bool = typer.Option(False, "--force-mock", help="Use simulated usage data."),
    duration: float = typer.Option(
        0.0,
        "--duration",
        min=0.0,
        help="Stop after this many seconds; 0 runs until interrupted.",
    ),
    log_file: Path | None = typer.Option(
        None,
        "--log-file",
        help="Log destination while the live display is running. Defaults to monitor.log in the settings directory.",
    ),
    verbose: bool = _verbose_option(),
) -> None:
    """Show a live view of the current session until Ctrl-C."""
    _configure_logging(verbose, log_file or get_default_log_path())
    config = _apply_overrides(_load_config(config_path), plan=plan, interval=interval)
    store = SessionStore(sessions_path or get_default_sessions_path())
    monitor = UsageMonitor(
        source=_build_source(config, data_paths, force_mock),
        config=config,
        tracker=SessionTracker() if force_mock else _load_tracker(store, config),
    )

    console = Console()
    deadline = time.monotonic() + duration if duration > 0 else None
    monitor.start()
    try:
        with Live(_live_view(monitor), console=console, refresh_per_second=4) as live:
            while deadline is None or time.monotonic() < deadline:
                remaining = LIVE_REFRESH_SECONDS if deadline is None else deadline - time.monotonic()
                time.sleep(max(0.0, min(LIVE_REFRESH_SECONDS, remaining)))
                live.update(_live_view(monitor))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted; shutting down monitor.")
    finally:
        monitor.stop()
        if not force_mock:
            _persist(store, monitor)


@TYPER_APP.command("config")
def config_command(
    config_path: Path | None = _config_path_option(),
    plan: str | None = typer.Option(None, "--plan", help="Plan hint: pro, max5, max20, auto, or a token limit."),
    interval: float | None = typer.Option(None, "--interval", "-i", help="Update interval in seconds."),
    threshold: float | None = typer.Option(None, "--threshold", "-t", help="Warning threshold between 0.0 and 1.0."),
    verbose: bool = _verbose_option(),
) -> None:
    """Update the saved configuration and print the effective values."""
    _configure_logging(verbose)
    resolved_path = config_path or get_default_config_path()
    config = _load_config(resolved_path)
    updated = _apply_overrides(config, plan=plan, interval=interval, threshold=threshold)
    if updated != config or not resolved_path.exists():
        save_config(updated, resolved_path)
        LOGGER.info("Saved config to %s", resolved_path)

    typer.echo(f"config_path={resolved_path}")
    for key, value in updated.to_dict().items():
        if isinstance(value, list):
            value = ",".join(value)
        typer.echo(f"{key}={value}")


@TYPER_APP.command("paths")
def paths_command(
    data_paths: list[Path] | None = _data_path_option(),
    config_path: Path | None = _config_path_option(),
    verbose: bool = _verbose_option(),
) -> None:
    """List validated data roots and rejected candidates."""
    _configure_logging(verbose)
    config = _load_config(config_path)
    source = FileUsageSource(data_roots=data_paths or None, extra_allowed_roots=config.extra_allowed_roots)
    for root in source.watch_roots():
        typer.echo(f"data_root={root}")
    for rejected in source.rejected_roots:
        typer.echo(f"rejected={rejected}")
    for allowed in source.allowed_roots:
        typer.echo(f"allowed_root={allowed}")


@TYPER_APP.command("explain")
def explain_command() -> None:
    """Describe what the monitor reads and how it derives sessions."""
    lines = [
        "This tool reads the JSONL logs Claude Code writes locally. It makes no network calls",
        "and needs no credentials.",
        "",
        "Monitored locations:",
        *(f"  {path}/**/*.jsonl" for path in default_data_dirs()),
        f"  directories listed in {DATA_PATHS_ENV} (colon-separated) or {DATA_PATH_ENV}",
        "",
        "Only token counts, timestamps, model names, and message/request ids are read.",
        "Duplicate records (same message and request id) are counted once.",
        "",
        "Sessions:",
        "  The current session is the 5-hour window ending at the latest usage entry.",
        "  Older entries are grouped into closed 5-hour windows for history.",
        "",
        "Metrics:",
        "  usage rate = tokens used / minutes elapsed",
        "  session progress = minutes elapsed / session length (300 minutes)",
        "  efficiency = expected rate / actual rate, clamped to 0.0-1.0",
        "  projected depletion = now + tokens remaining / usage rate",
        "",
        "Updates come from filesystem events, or from polling when the watcher is unavailable.",
        f"Config and session history are kept in {get_settings_dir()}.",
    ]
    for line in lines:
        typer.echo(line)


def _configure_logging(verbose: bool, log_file: Path | None = None) -> None:
    """Initialize default logging for CLI usage."""
    level = logging.INFO if verbose else logging.WARNING
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format="[%(asctime)s][%(levelname)s][%(name)s] %(message)s",
        filename=log_file,
    )


def _emit_summary(counters: ScanCounters) -> None:
    """Print ingestion counters to stdout."""
    summary_lines = [
        f"roots_scanned={counters.roots_scanned}",
        f"roots_rejected={counters.roots_rejected}",
        f"files_scanned={counters.files_scanned}",
        f"files_parsed={counters.files_parsed}",
        f"files_skipped_too_large={counters.files_skipped_too_large}",
        f"lines_read={counters.lines_read}",
        f"lines_skipped_not_usage={counters.lines_skipped_not_usage}",
        f"lines_skipped_malformed={counters.lines_skipped_malformed}",
        f"entries_parsed={counters.entries_parsed}",
        f"duplicates_skipped={counters.duplicates_skipped}",
        f"entries_deduped={counters.entries_deduped}",
    ]
    for line in summary_lines:
        typer.echo(line)

    for failed_file in counters.failed_files:
        typer.echo(f"failed_file={failed_file}")


def _load_config(config_path: Path | None) -> MonitorConfig:
    """Load config, reporting problems as CLI parameter errors."""
    try:
        return load_config(config_path or get_default_config_path())
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _apply_overrides(
    config: MonitorConfig,
    plan: str | None = None,
    interval: float | None = None,
    threshold: float | None = None,
) -> MonitorConfig:
    """Apply command-line overrides on top of the loaded config."""
    changes: dict[str, object] = {}
    if plan is not None:
        changes["plan"] = plan
    if interval is not None:
        changes["update_interval_seconds"] = interval
    if threshold is not None:
        changes["warning_threshold"] = threshold
    if not changes:
        return config
    try:
        return config.with_updates(**changes)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _build_source(config: MonitorConfig, data_paths: list[Path] | None, force_mock: bool) -> UsageSource:
    if force_mock:
        LOGGER.info("Using simulated usage data.")
        return SimulatedUsageSource()
    return FileUsageSource(data_roots=data_paths or None, extra_allowed_roots=config.extra_allowed_roots)


def _load_tracker(store: SessionStore, config: MonitorConfig) -> SessionTracker:
    try:
        sessions = store.load(retention_days=config.history_retention_days)
    except SessionStoreError as exc:
        LOGGER.warning("%s Starting with empty session history.", exc)
        sessions = []
    return SessionTracker.from_records(sessions)


def _persist(store: SessionStore, monitor: UsageMonitor) -> None:
    try:
        store.save(monitor.sessions())
    except SessionStoreError as exc:
        LOGGER.error("%s", exc)


def _live_view(monitor: UsageMonitor) -> RenderableType:
    snapshot = monitor.snapshot()
    if snapshot is None:
        return Text("Waiting for usage data...")
    return build_status_view(snapshot, watching=monitor.is_watching)


def module_cli_entry_point():
    TYPER_APP()
