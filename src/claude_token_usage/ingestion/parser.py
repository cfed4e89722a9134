"""Parsing helpers for Claude Code usage JSONL files."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any

import orjson

from .errors import FileTooLargeError, MalformedRecordError
from .schemas import ParsedUsageFile, UsageEntry

LOGGER = logging.getLogger(__name__)

MAX_LINE_BYTES = 1024 * 1024
MAX_NESTING_DEPTH = 32
MAX_FILE_BYTES = 50 * 1024 * 1024

_OPEN_BRACKETS = frozenset(b"{[")
_CLOSE_BRACKETS = frozenset(b"}]")
_QUOTE = ord('"')
_BACKSLASH = ord("\\")


def parse_usage_file(source_file: Path) -> ParsedUsageFile:
    """Parse one JSONL file into usage entries, skipping lines that fail to parse.

    Raises:
        FileTooLargeError: If the file is larger than `MAX_FILE_BYTES`. The check
            happens before the file is opened.
    """
    file_size = source_file.stat().st_size
    if file_size > MAX_FILE_BYTES:
        raise FileTooLargeError(f"File too large: {source_file} is {file_size} bytes (max {MAX_FILE_BYTES} bytes).")

    entries: list[UsageEntry] = []
    lines_read = 0
    lines_skipped_not_usage = 0
    lines_skipped_malformed = 0

    with source_file.open("rb") as handle:
        for line_number, raw_line, oversized_bytes in _iter_bounded_lines(handle):
            if oversized_bytes:
                lines_read += 1
                lines_skipped_malformed += 1
                LOGGER.debug(
                    "Skipping oversized line %d in %s: %d bytes (max %d bytes)",
                    line_number,
                    source_file,
                    oversized_bytes,
                    MAX_LINE_BYTES,
                )
                continue
            if not raw_line.strip():
                continue

            lines_read += 1
            try:
                entry = parse_usage_line(raw_line, source_file, line_number)
            except MalformedRecordError as exc:
                lines_skipped_malformed += 1
                LOGGER.debug("Skipping line %d in %s: %s", line_number, source_file, exc)
                continue

            if entry is None:
                lines_skipped_not_usage += 1
                continue
            entries.append(entry)

    LOGGER.debug(
        "Parsed %s: %d entries, %d non-usage lines, %d malformed lines",
        source_file,
        len(entries),
        lines_skipped_not_usage,
        lines_skipped_malformed,
    )
    return ParsedUsageFile(
        source_file=source_file,
        entries=entries,
        lines_read=lines_read,
        lines_skipped_not_usage=lines_skipped_not_usage,
        lines_skipped_malformed=lines_skipped_malformed,
    )


def parse_usage_line(raw_line: bytes, source_file: Path, line_number: int) -> UsageEntry | None:
    """Parse one raw JSONL line.

    Returns None when the line is valid JSON but not a usage event (summary
    records, user messages, lines without a timestamp or usage object).

    Raises:
        MalformedRecordError: If the line exceeds the size or nesting limits, is
            not a JSON object, or carries invalid usage values.
    """
    line = raw_line.rstrip(b"\r\n")
    if len(line) > MAX_LINE_BYTES:
        raise MalformedRecordError(f"Line too large: {len(line)} bytes (max {MAX_LINE_BYTES} bytes).")
    check_nesting_depth(line, MAX_NESTING_DEPTH)

    try:
        payload = orjson.loads(line)
    except orjson.JSONDecodeError as exc:
        raise MalformedRecordError(f"Malformed JSON: {exc}.") from exc
    if not isinstance(payload, dict):
        raise MalformedRecordError(f"Expected JSON object, got {type(payload).__name__}.")

    if payload.get("type") == "summary":
        return None

    raw_timestamp = payload.get("timestamp")
    if raw_timestamp is None:
        return None

    message = payload.get("message")
    if not isinstance(message, dict):
        message = {}
    usage = message.get("usage")
    if usage is None:
        usage = payload.get("usage")
    if not isinstance(usage, dict):
        return None
    if "input_tokens" not in usage and "output_tokens" not in usage:
        return None

    model = _optional_str(message.get("model"), "message.model")
    if model is None:
        model = _optional_str(payload.get("model"), "model")
    message_id = _optional_str(message.get("id"), "message.id")
    if message_id is None:
        message_id = _optional_str(payload.get("message_id"), "message_id")
    request_id = _optional_str(payload.get("requestId"), "requestId")
    if request_id is None:
        request_id = _optional_str(payload.get("request_id"), "request_id")

    return UsageEntry(
        timestamp=_parse_timestamp(raw_timestamp),
        model=model or "unknown",
        input_tokens=_parse_token_count(usage, "input_tokens"),
        output_tokens=_parse_token_count(usage, "output_tokens"),
        cache_creation_tokens=_parse_token_count(usage, "cache_creation_input_tokens"),
        cache_read_tokens=_parse_token_count(usage, "cache_read_input_tokens"),
        message_id=message_id,
        request_id=request_id,
        source_file=source_file,
        line_number=line_number,
    )


def check_nesting_depth(raw_line: bytes, max_depth: int = MAX_NESTING_DEPTH) -> None:
    """Fail as soon as object/array nesting exceeds `max_depth`.

    Brackets inside JSON strings are ignored. The scan is iterative so a
    hostile document cannot exhaust the call stack.
    """
    if raw_line.count(b"{") + raw_line.count(b"[") <= max_depth:
        return

    depth = 0
    in_string = False
    escaped = False
    for position, byte in enumerate(raw_line):
        if in_string:
            if escaped:
                escaped = False
            elif byte == _BACKSLASH:
                escaped = True
            elif byte == _QUOTE:
                in_string = False
            continue

        if byte == _QUOTE:
            in_string = True
        elif byte in _OPEN_BRACKETS:
            depth += 1
            if depth > max_depth:
                raise MalformedRecordError(
                    f"JSON nesting too deep at byte {position}: more than {max_depth} levels."
                )
        elif byte in _CLOSE_BRACKETS and depth > 0:
            depth -= 1


def _iter_bounded_lines(handle: IO[bytes]) -> Iterator[tuple[int, bytes, int]]:
    """Yield `(line_number, raw_line, oversized_bytes)` without buffering oversized lines.

    `oversized_bytes` is 0 for normal lines; for a line longer than the limit the
    raw line is empty and the remainder is drained in bounded chunks.
    """
    read_limit = MAX_LINE_BYTES + 2
    line_number = 0
    while True:
        chunk = handle.readline(read_limit)
        if not chunk:
            return
        line_number += 1
        if chunk.endswith(b"\n") or len(chunk) <= MAX_LINE_BYTES:
            yield line_number, chunk, 0
            continue

        total_bytes = len(chunk)
        while not chunk.endswith(b"\n"):
            chunk = handle.readline(read_limit)
            if not chunk:
                break
            total_bytes += len(chunk)
        yield line_number, b"", total_bytes


def _parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str) or not value:
        raise MalformedRecordError("Invalid timestamp: expected non-empty string.")
    normalized = value.replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise MalformedRecordError(f"Invalid timestamp {value!r}.") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_token_count(usage: dict[str, Any], field_name: str) -> int:
    value = usage.get(field_name)
    if value is None:
        return 0
    if not isinstance(value, int) or isinstance(value, bool):
        raise MalformedRecordError(f"Invalid usage.{field_name}: expected int, got {type(value).__name__}.")
    if value < 0:
        raise MalformedRecordError(f"Invalid usage.{field_name}: negative value {value}.")
    return value


def _optional_str(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedRecordError(f"Invalid {field_name}: expected str or null, got {type(value).__name__}.")
    return value or None
