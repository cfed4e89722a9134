"""Validation and discovery of Claude Code data paths."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path, PurePath

from .errors import InvalidPathError
from .schemas import DataRootSelection

LOGGER = logging.getLogger(__name__)

MAX_PATH_LENGTH = 4096
DATA_PATHS_ENV = "CLAUDE_DATA_PATHS"
DATA_PATH_ENV = "CLAUDE_DATA_PATH"
SYSTEM_DATA_ROOTS: tuple[str, ...] = (
    "/opt/claude",
    "/usr/local/share/claude",
    "/var/lib/claude",
)


def default_allowed_roots(extra_roots: Iterable[str | Path] = ()) -> list[Path]:
    """Return the allow-list: home directory, known system locations, and configured extras."""
    candidates = [Path.home(), *(Path(root) for root in SYSTEM_DATA_ROOTS)]
    candidates.extend(Path(root).expanduser() for root in extra_roots)
    return [_canonical_root(path) for path in candidates]


def default_data_dirs() -> list[Path]:
    """Return the standard Claude Code project directories under the home directory."""
    home = Path.home()
    return [
        home / ".claude" / "projects",
        home / ".config" / "claude" / "projects",
    ]


def validate_data_path(candidate: str | Path, allowed_roots: list[Path] | None = None) -> Path:
    """Return the canonical form of `candidate`, or raise `InvalidPathError`.

    The raw value is rejected before touching the filesystem when it is empty,
    contains a null byte, is longer than `MAX_PATH_LENGTH`, or contains a `..`
    segment. The canonical (symlink-resolved) path must exist and live under
    one of `allowed_roots`.
    """
    raw = os.fspath(candidate)
    if not raw.strip():
        raise InvalidPathError("Empty path not allowed.")
    if "\0" in raw:
        raise InvalidPathError("Path contains a null byte.")
    if len(raw) > MAX_PATH_LENGTH:
        raise InvalidPathError(f"Path too long: {len(raw)} characters (max {MAX_PATH_LENGTH}).")
    if ".." in PurePath(raw).parts or ".." in raw.replace("\\", "/").split("/"):
        raise InvalidPathError(f"Path traversal segment in {raw!r}.")

    try:
        canonical = Path(raw).expanduser().resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise InvalidPathError(f"Failed to canonicalize {raw!r}: {exc}") from exc

    roots = allowed_roots if allowed_roots is not None else default_allowed_roots()
    if not any(canonical == root or canonical.is_relative_to(root) for root in roots):
        raise InvalidPathError(f"Path outside of allowed directories: {canonical}")
    return canonical


def discover_data_roots(
    environ: Mapping[str, str] | None = None,
    allowed_roots: list[Path] | None = None,
) -> DataRootSelection:
    """Collect validated data directories from the environment and default locations."""
    env = os.environ if environ is None else environ
    roots = allowed_roots if allowed_roots is not None else default_allowed_roots()

    candidates: list[tuple[str, str]] = []
    for path_str in env.get(DATA_PATHS_ENV, "").split(":"):
        if path_str:
            candidates.append((DATA_PATHS_ENV, path_str))
    single_path = env.get(DATA_PATH_ENV)
    if single_path:
        candidates.append((DATA_PATH_ENV, single_path))
    candidates.extend(("default", str(path)) for path in default_data_dirs())

    selected: dict[Path, None] = {}
    rejected: list[str] = []
    for origin, path_str in candidates:
        if origin == "default" and not Path(path_str).is_dir():
            continue
        try:
            validated = validate_data_path(path_str, roots)
        except InvalidPathError as exc:
            LOGGER.warning("Invalid path in %s: %s", origin, exc)
            rejected.append(path_str)
            continue
        if not validated.is_dir():
            LOGGER.warning("Skipping %s entry that is not a directory: %s", origin, validated)
            continue
        selected.setdefault(validated, None)

    if selected:
        LOGGER.info("Found Claude data paths: %s", [str(path) for path in selected])
    else:
        LOGGER.warning("No Claude data directories found.")
    return DataRootSelection(roots=list(selected), rejected=rejected)


def discover_usage_files(data_roots: list[Path], allowed_roots: list[Path] | None = None) -> list[Path]:
    """Discover JSONL files under each root, in root order then sorted path order."""
    roots = allowed_roots if allowed_roots is not None else default_allowed_roots()
    discovered: dict[Path, None] = {}
    for data_root in data_roots:
        if not data_root.is_dir():
            continue
        for path in sorted(data_root.rglob("*.jsonl")):
            if not path.is_file():
                continue
            try:
                validated = validate_data_path(path, roots)
            except InvalidPathError as exc:
                LOGGER.warning("Skipping usage file %s: %s", path, exc)
                continue
            discovered.setdefault(validated, None)
    return list(discovered)


def _canonical_root(path: Path) -> Path:
    try:
        return path.resolve()
    except OSError:
        return path.absolute()
