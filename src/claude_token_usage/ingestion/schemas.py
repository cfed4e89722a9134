"""Typed schemas used by the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path


TOKEN_FIELDS: tuple[str, ...] = (
    "input_tokens",
    "output_tokens",
    "cache_creation_tokens",
    "cache_read_tokens",
)


@dataclass(frozen=True)
class UsageEntry:
    """One usage record parsed from a JSONL line."""

    timestamp: datetime
    model: str
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    message_id: str | None
    request_id: str | None
    source_file: Path
    line_number: int = 0

    @property
    def total_tokens(self) -> int:
        """Return the sum of all four token counters."""
        return self.input_tokens + self.output_tokens + self.cache_creation_tokens + self.cache_read_tokens

    @property
    def dedupe_key(self) -> tuple[str, str] | None:
        """Return the `(message_id, request_id)` key, or None when both are empty."""
        message_id = self.message_id or ""
        request_id = self.request_id or ""
        if not message_id and not request_id:
            return None
        return (message_id, request_id)


@dataclass(frozen=True)
class ParsedUsageFile:
    """Parser output for one usage file."""

    source_file: Path
    entries: list[UsageEntry]
    lines_read: int
    lines_skipped_not_usage: int
    lines_skipped_malformed: int


@dataclass(frozen=True)
class DedupeResult:
    """Deduplication output and counters."""

    entries: list[UsageEntry]
    duplicates_skipped: int


@dataclass(frozen=True)
class DataRootSelection:
    """Validated data roots and the candidates that were rejected."""

    roots: list[Path]
    rejected: list[str]


@dataclass
class ScanCounters:
    """Counters emitted by one ingestion pass."""

    roots_scanned: int = 0
    roots_rejected: int = 0
    files_scanned: int = 0
    files_parsed: int = 0
    files_skipped_too_large: int = 0
    lines_read: int = 0
    lines_skipped_not_usage: int = 0
    lines_skipped_malformed: int = 0
    entries_parsed: int = 0
    duplicates_skipped: int = 0
    entries_deduped: int = 0
    failed_files: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ScanResult:
    """Chronologically ordered, duplicate-free entries plus pass counters."""

    entries: list[UsageEntry]
    counters: ScanCounters
