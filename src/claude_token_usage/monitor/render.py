"""Rich rendering helpers for session status, metrics, and history."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from rich.console import Console, Group, RenderableType
from rich.table import Table
from rich.text import Text

from ..sessions.schemas import (
    ModelUsage,
    MonitorSnapshot,
    ObservedSession,
    TokenTypeBreakdown,
    UsageMetrics,
    UsagePoint,
)

TABLE_ROW_STYLES = ["white", "yellow"]
PROGRESS_BAR_WIDTH = 30
SPARKLINE_WIDTH = 40
SPARKLINE_CHARS = "░▁▂▃▄▅▆▇█"
NO_DATA_MESSAGE = "No usage data found."


def render_status(snapshot: MonitorSnapshot, console: Console) -> None:
    """Print the current session, its metrics, and usage breakdowns."""
    console.print(build_status_view(snapshot))


def build_status_view(snapshot: MonitorSnapshot, watching: bool | None = None) -> RenderableType:
    """Return a renderable for one snapshot; also used as the live display body."""
    if snapshot.session is None:
        return Text(NO_DATA_MESSAGE)

    parts: list[RenderableType] = [_session_table(snapshot.session, snapshot.metrics)]
    if snapshot.metrics is not None:
        parts.append(_metrics_table(snapshot.metrics))
    if snapshot.usage_points:
        parts.append(_usage_trend_table(snapshot.usage_points))
    if snapshot.model_usage:
        parts.append(_model_usage_table(snapshot.model_usage))
    parts.append(_token_breakdown_table(snapshot.token_breakdown))

    footer = f"Updated {_format_time(snapshot.generated_at)}"
    if snapshot.entry_time_range is not None:
        first, last = snapshot.entry_time_range
        footer += f" | entries {_format_time(first)} to {_format_time(last)}"
    if watching is not None:
        footer += " | watching files" if watching else " | polling"
    parts.append(Text(footer, style="dim"))
    return Group(*parts)


def render_history(sessions: Sequence[ObservedSession], console: Console) -> None:
    """Print sessions newest first."""
    if not sessions:
        console.print("No session history found.")
        return

    table = Table(title="Session History", title_justify="left")
    table.add_column("Session", justify="left")
    table.add_column("Plan", justify="left")
    table.add_column("Start", justify="left")
    table.add_column("Reset", justify="left")
    table.add_column("Tokens Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Usage", justify="right")
    table.add_column("Status", justify="left")

    ordered = sorted(sessions, key=lambda session: session.start_time, reverse=True)
    for index, session in enumerate(ordered):
        ratio = session.tokens_used / session.tokens_limit if session.tokens_limit > 0 else 0.0
        table.add_row(
            session.id,
            session.plan_type.label,
            _format_time(session.start_time),
            _format_time(session.reset_time),
            f"{session.tokens_used:,}",
            f"{session.tokens_limit:,}",
            f"{ratio:.1%}",
            "active" if session.is_active else "closed",
            style=TABLE_ROW_STYLES[index % len(TABLE_ROW_STYLES)],
        )
    console.print(table)


def progress_bar(ratio: float, width: int = PROGRESS_BAR_WIDTH) -> str:
    """Return a fixed-width text bar for a ratio clamped to [0, 1]."""
    clamped = min(max(ratio, 0.0), 1.0)
    filled = round(clamped * width)
    return "#" * filled + "-" * (width - filled)


def usage_sparkline(points: Sequence[UsagePoint], width: int = SPARKLINE_WIDTH) -> str:
    """Return cumulative tokens over time as `width` block characters.

    Each column shows the cumulative total reached by the end of its slice of
    the time span, scaled against the final total.
    """
    if not points or width <= 0:
        return ""
    first = points[0].timestamp
    span = (points[-1].timestamp - first).total_seconds()
    peak = max(point.cumulative_tokens for point in points)
    top = len(SPARKLINE_CHARS) - 1

    cells: list[str] = []
    index = 0
    for column in range(width):
        cutoff = span * (column + 1) / width
        while index + 1 < len(points) and (points[index + 1].timestamp - first).total_seconds() <= cutoff:
            index += 1
        level = min(int(points[index].cumulative_tokens / peak * top), top) if peak else 0
        cells.append(SPARKLINE_CHARS[level])
    return "".join(cells)


def _usage_trend_table(points: Sequence[UsagePoint]) -> Table:
    table = Table(title="Cumulative Usage", title_justify="left", show_header=False)
    table.add_column("From", justify="left", style="dim")
    table.add_column("Trend", justify="left", style="cyan")
    table.add_column("To", justify="left", style="dim")
    table.add_column("Tokens", justify="right")
    table.add_row(
        _format_time(points[0].timestamp),
        usage_sparkline(points),
        _format_time(points[-1].timestamp),
        f"{points[-1].cumulative_tokens:,}",
    )
    return table


def _session_table(session: ObservedSession, metrics: UsageMetrics | None) -> Table:
    table = Table(title="Current Session", title_justify="left", show_header=False)
    table.add_column("Field", justify="left", style="bold")
    table.add_column("Value", justify="left")

    usage_ratio = metrics.usage_ratio if metrics is not None else session.tokens_used / max(1, session.tokens_limit)
    usage_style = "red" if metrics is not None and metrics.warning else None
    table.add_row("Session", session.id)
    table.add_row("Plan", session.plan_type.label)
    table.add_row("Status", "active" if session.is_active else "expired")
    table.add_row("Started", _format_time(session.start_time))
    table.add_row("Resets", _format_time(session.reset_time))
    table.add_row(
        "Tokens",
        Text(f"{session.tokens_used:,} / {session.tokens_limit:,} ({usage_ratio:.1%})", style=usage_style or ""),
    )
    table.add_row("Usage", progress_bar(usage_ratio))
    if metrics is not None:
        table.add_row("Time", progress_bar(metrics.session_progress))
    return table


def _metrics_table(metrics: UsageMetrics) -> Table:
    table = Table(title="Metrics", title_justify="left", show_header=False)
    table.add_column("Metric", justify="left", style="bold")
    table.add_column("Value", justify="right")

    if metrics.is_depleted:
        depletion = "depleted"
    elif metrics.projected_depletion is None:
        depletion = "-"
    else:
        depletion = _format_time(metrics.projected_depletion)

    table.add_row("Usage rate", f"{metrics.usage_rate:,.1f} tokens/min")
    table.add_row("Tokens remaining", f"{metrics.tokens_remaining:,}")
    table.add_row("Session progress", f"{metrics.session_progress:.1%}")
    table.add_row("Efficiency", f"{metrics.efficiency_score:.2f}")
    table.add_row("Projected depletion", depletion)
    table.add_row("Cache hit rate", f"{metrics.cache_hit_rate:.1%}")
    table.add_row("Cache creation rate", f"{metrics.cache_creation_rate:,.1f} tokens/min")
    table.add_row("Input/output ratio", f"{metrics.input_output_ratio:.2f}")
    if metrics.warning:
        table.add_row(Text("Warning", style="bold red"), Text("usage above threshold", style="red"))
    return table


def _model_usage_table(model_usage: Sequence[ModelUsage]) -> Table:
    table = Table(title="Usage by Model", show_footer=True, footer_style="bold", title_justify="left")
    table.add_column("Model", footer="Total", justify="left")
    table.add_column("Requests", justify="right")
    table.add_column("Total Tokens", justify="right")

    for index, usage in enumerate(model_usage):
        table.add_row(
            usage.model,
            str(usage.entry_count),
            f"{usage.total_tokens:,}",
            style=TABLE_ROW_STYLES[index % len(TABLE_ROW_STYLES)],
        )
    table.columns[1].footer = str(sum(usage.entry_count for usage in model_usage))
    table.columns[2].footer = f"{sum(usage.total_tokens for usage in model_usage):,}"
    return table


def _token_breakdown_table(breakdown: TokenTypeBreakdown) -> Table:
    table = Table(title="Token Types", title_justify="left")
    table.add_column("Input Tokens", justify="right")
    table.add_column("Output Tokens", justify="right")
    table.add_column("Cache Write Tokens", justify="right")
    table.add_column("Cache Read Tokens", justify="right")
    table.add_column("Total Tokens", justify="right")
    table.add_row(
        f"{breakdown.input_tokens:,}",
        f"{breakdown.output_tokens:,}",
        f"{breakdown.cache_creation_tokens:,}",
        f"{breakdown.cache_read_tokens:,}",
        f"{breakdown.total_tokens:,}",
    )
    return table


def _format_time(value: datetime) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")
