"""Chronological ordering and identifier-based deduplication of usage entries."""

from __future__ import annotations

from .schemas import DedupeResult, UsageEntry


def sort_and_dedupe(entries: list[UsageEntry]) -> DedupeResult:
    """Sort entries by timestamp and keep the first entry per `(message_id, request_id)`.

    The sort is stable, so ties keep the input order (file discovery order, then
    line order). Entries without any identifier are never treated as duplicates.
    """
    ordered = sorted(entries, key=lambda entry: entry.timestamp)
    seen_keys: set[tuple[str, str]] = set()
    deduped: list[UsageEntry] = []
    duplicates_skipped = 0

    for entry in ordered:
        key = entry.dedupe_key
        if key is not None:
            if key in seen_keys:
                duplicates_skipped += 1
                continue
            seen_keys.add(key)
        deduped.append(entry)

    return DedupeResult(entries=deduped, duplicates_skipped=duplicates_skipped)
