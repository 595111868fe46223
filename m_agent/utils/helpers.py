"""Small filesystem and formatting helpers shared across modules."""

from __future__ import annotations

import os
import re
from datetime import datetime, timezone
from pathlib import Path

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._:-]")


def ensure_dir(path: Path) -> Path:
    """Create a directory (and parents) if needed and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Active data directory: M_AGENT_DATA_DIR or ~/.m-agent."""
    override = os.environ.get("M_AGENT_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".m-agent"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def compact_preview(text: str, limit: int = 1200) -> str:
    compact = " ".join((text or "").split())
    if len(compact) <= limit:
        return compact
    return compact[:limit] + "..."


def safe_filename(value: str) -> str:
    """Replace characters outside [A-Za-z0-9._:-] with underscores."""
    return _UNSAFE_FILENAME.sub("_", value or "")
