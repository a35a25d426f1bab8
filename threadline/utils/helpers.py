"""Filesystem and text helpers shared across modules."""

import os
from pathlib import Path

PRIMARY_DATA_DIR = ".threadline"
DATA_DIR_ENV = "THREADLINE_DATA_DIR"


def ensure_dir(path: Path) -> Path:
    """Create a directory (and parents) if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """
    Resolve the active data directory.

    ``THREADLINE_DATA_DIR`` overrides the default ``~/.threadline``. Relative
    overrides are resolved against the user's home directory so that profiles
    like ``.threadline-staging`` work from any cwd.
    """
    override = os.environ.get(DATA_DIR_ENV, "").strip()
    if override:
        candidate = Path(override).expanduser()
        if not candidate.is_absolute():
            candidate = Path.home() / candidate
        return ensure_dir(candidate)
    return ensure_dir(Path.home() / PRIMARY_DATA_DIR)


def compact_preview(text: str, limit: int = 120) -> str:
    """Collapse whitespace and truncate for log lines."""
    compact = " ".join((text or "").split())
    if len(compact) <= limit:
        return compact
    return compact[:limit] + "..."
