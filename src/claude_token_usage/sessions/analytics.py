"""Breakdowns of the deduplicated usage stream by model and token type."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime

from ..ingestion.schemas import UsageEntry
from .schemas import ModelUsage, TokenTypeBreakdown


def summarize_models(entries: Sequence[UsageEntry]) -> list[ModelUsage]:
    """Aggregate tokens and entry counts per model, largest consumer first."""
    totals: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    for entry in entries:
        model_totals = totals[entry.model]
        model_totals[0] += entry.total_tokens
        model_totals[1] += 1

    usage = [ModelUsage(model=model, total_tokens=tokens, entry_count=count) for model, (tokens, count) in totals.items()]
    return sorted(usage, key=lambda item: (-item.total_tokens, item.model))


def summarize_token_types(entries: Sequence[UsageEntry]) -> TokenTypeBreakdown:
    """Sum each token counter across entries."""
    return TokenTypeBreakdown(
        input_tokens=sum(entry.input_tokens for entry in entries),
        output_tokens=sum(entry.output_tokens for entry in entries),
        cache_creation_tokens=sum(entry.cache_creation_tokens for entry in entries),
        cache_read_tokens=sum(entry.cache_read_tokens for entry in entries),
    )


def entry_time_range(entries: Sequence[UsageEntry]) -> tuple[datetime, datetime] | None:
    """Return the first and last timestamps of a sorted stream."""
    if not entries:
        return None
    return entries[0].timestamp, entries[-1].timestamp
