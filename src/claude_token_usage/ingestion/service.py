"""Usage sources: discovery, parsing, and dedupe orchestration."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Protocol

from .dedupe import sort_and_dedupe
from .errors import FileTooLargeError, InvalidPathError
from .parser import parse_usage_file
from .paths import default_allowed_roots, discover_data_roots, discover_usage_files, validate_data_path
from .schemas import ScanCounters, ScanResult, UsageEntry

LOGGER = logging.getLogger(__name__)


class UsageSource(Protocol):
    """Capability interface for anything that produces an ordered usage stream."""

    def load(self) -> ScanResult:
        """Return chronologically ordered, duplicate-free entries."""
        ...

    def watch_roots(self) -> list[Path]:
        """Return directories whose changes should trigger a rescan."""
        ...


class FileUsageSource:
    """Reads usage entries from Claude Code JSONL files on the local filesystem."""

    def __init__(
        self,
        data_roots: list[Path] | None = None,
        extra_allowed_roots: tuple[str, ...] = (),
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._explicit_roots = data_roots
        self._allowed_roots = default_allowed_roots(extra_allowed_roots)
        self._environ = environ
        self._rejected_roots: list[str] = []

    @property
    def allowed_roots(self) -> list[Path]:
        """Return the directory allow-list used for validation."""
        return list(self._allowed_roots)

    @property
    def rejected_roots(self) -> list[str]:
        """Return the root candidates rejected by the last resolution."""
        return list(self._rejected_roots)

    def watch_roots(self) -> list[Path]:
        """Resolve the validated data roots."""
        if self._explicit_roots is None:
            selection = discover_data_roots(self._environ, self._allowed_roots)
            self._rejected_roots = selection.rejected
            return selection.roots

        roots: list[Path] = []
        rejected: list[str] = []
        for candidate in self._explicit_roots:
            try:
                validated = validate_data_path(candidate, self._allowed_roots)
            except InvalidPathError as exc:
                LOGGER.warning("Skipping data root %s: %s", candidate, exc)
                rejected.append(str(candidate))
                continue
            if validated.is_dir() and validated not in roots:
                roots.append(validated)
        self._rejected_roots = rejected
        return roots

    def load(self) -> ScanResult:
        """Run one full ingestion pass over every discovered usage file."""
        counters = ScanCounters()
        roots = self.watch_roots()
        counters.roots_scanned = len(roots)
        counters.roots_rejected = len(self._rejected_roots)

        collected: list[UsageEntry] = []
        for usage_file in discover_usage_files(roots, self._allowed_roots):
            counters.files_scanned += 1
            try:
                parsed = parse_usage_file(usage_file)
            except FileTooLargeError as exc:
                counters.files_skipped_too_large += 1
                LOGGER.warning("Skipping usage file: %s", exc)
                continue
            except OSError as exc:
                counters.failed_files.append(str(usage_file))
                LOGGER.error("Failed to read %s: %s", usage_file, exc)
                continue

            counters.files_parsed += 1
            counters.lines_read += parsed.lines_read
            counters.lines_skipped_not_usage += parsed.lines_skipped_not_usage
            counters.lines_skipped_malformed += parsed.lines_skipped_malformed
            counters.entries_parsed += len(parsed.entries)
            collected.extend(parsed.entries)

        dedupe_result = sort_and_dedupe(collected)
        counters.duplicates_skipped = dedupe_result.duplicates_skipped
        counters.entries_deduped = len(dedupe_result.entries)

        if not dedupe_result.entries:
            LOGGER.info("No usage entries found across %d data roots.", len(roots))
        else:
            LOGGER.info("Loaded %d usage entries from JSONL files", len(dedupe_result.entries))
        return ScanResult(entries=dedupe_result.entries, counters=counters)


class SimulatedUsageSource:
    """Produces a deterministic synthetic usage stream for offline runs."""

    def __init__(
        self,
        seed: int = 0,
        entry_count: int = 40,
        span: timedelta = timedelta(hours=2),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        anchor = (clock or _utc_now)()
        self._entries = _generate_entries(random.Random(seed), entry_count, anchor - span, span)

    def watch_roots(self) -> list[Path]:
        """Simulated data has no backing directories."""
        return []

    def load(self) -> ScanResult:
        """Return the pre-generated stream."""
        dedupe_result = sort_and_dedupe(list(self._entries))
        counters = ScanCounters(
            entries_parsed=len(self._entries),
            duplicates_skipped=dedupe_result.duplicates_skipped,
            entries_deduped=len(dedupe_result.entries),
        )
        return ScanResult(entries=dedupe_result.entries, counters=counters)


def _generate_entries(rng: random.Random, entry_count: int, start: datetime, span: timedelta) -> list[UsageEntry]:
    models = ("claude-sonnet-4-5", "claude-opus-4-1", "claude-haiku-4-5")
    step = span / max(entry_count, 1)
    source_file = Path("simulated.jsonl")
    entries: list[UsageEntry] = []
    for index in range(entry_count):
        entries.append(
            UsageEntry(
                timestamp=start + step * index + timedelta(seconds=rng.randint(0, 30)),
                model=rng.choice(models),
                input_tokens=rng.randint(10, 400),
                output_tokens=rng.randint(50, 1200),
                cache_creation_tokens=rng.randint(0, 2000),
                cache_read_tokens=rng.randint(0, 8000),
                message_id=f"msg_sim_{index:04d}",
                request_id=f"req_sim_{index:04d}",
                source_file=source_file,
                line_number=index + 1,
            )
        )
    return entries


def _utc_now() -> datetime:
    return datetime.now(UTC)
