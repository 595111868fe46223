"""File system tools: read, write, list, delete."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from m_agent.agent.tools.base import Tool, ToolContext

MAX_READ_CHARS = 200_000


def _resolve_path(path: str, allowed_dir: Path | None = None) -> Path:
    """Resolve a path and enforce the optional directory restriction."""
    resolved = Path(path).expanduser()
    if not resolved.is_absolute() and allowed_dir is not None:
        resolved = allowed_dir / resolved
    resolved = resolved.resolve()
    if allowed_dir is not None:
        root = allowed_dir.expanduser().resolve()
        if resolved != root and root not in resolved.parents:
            raise PermissionError(f"Path {path} is outside allowed directory {root}")
    return resolved


class ReadFileTool(Tool):
    """Read a text file."""

    def __init__(self, allowed_dir: Path | None = None):
        self._allowed_dir = allowed_dir

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read the contents of a text file at the given path."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {"path": {"type": "string", "description": "The file path to read"}},
            "required": ["path"],
        }

    async def execute(self, context: ToolContext, path: str, **kwargs: Any) -> str:
        try:
            file_path = _resolve_path(path, self._allowed_dir)
            if not file_path.exists():
                return f"Error: File not found: {path}"
            if not file_path.is_file():
                return f"Error: Not a file: {path}"
            content = file_path.read_text(encoding="utf-8", errors="replace")
            if len(content) > MAX_READ_CHARS:
                return content[:MAX_READ_CHARS] + f"\n... (truncated, {len(content) - MAX_READ_CHARS} more chars)"
            return content
        except PermissionError as exc:
            return f"Error: {exc}"
        except OSError as exc:
            return f"Error reading file: {exc}"


class WriteFileTool(Tool):
    """Write a text file, creating parent directories."""

    def __init__(self, allowed_dir: Path | None = None):
        self._allowed_dir = allowed_dir

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Write content to a file at the given path. Creates parent directories if needed."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to write to"},
                "content": {"type": "string", "description": "The content to write"},
            },
            "required": ["path", "content"],
        }

    async def execute(self, context: ToolContext, path: str, content: str, **kwargs: Any) -> str:
        try:
            file_path = _resolve_path(path, self._allowed_dir)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")
            return f"Successfully wrote {len(content)} bytes to {path}"
        except PermissionError as exc:
            return f"Error: {exc}"
        except OSError as exc:
            return f"Error writing file: {exc}"


class ListDirTool(Tool):
    """List directory entries."""

    def __init__(self, allowed_dir: Path | None = None):
        self._allowed_dir = allowed_dir

    @property
    def name(self) -> str:
        return "list_dir"

    @property
    def description(self) -> str:
        return "List the contents of a directory."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {"path": {"type": "string", "description": "The directory path to list"}},
            "required": ["path"],
        }

    async def execute(self, context: ToolContext, path: str, **kwargs: Any) -> str:
        try:
            dir_path = _resolve_path(path, self._allowed_dir)
            if not dir_path.exists():
                return f"Error: Directory not found: {path}"
            if not dir_path.is_dir():
                return f"Error: Not a directory: {path}"
            items = []
            for item in sorted(dir_path.iterdir()):
                prefix = "[dir] " if item.is_dir() else "[file] "
                items.append(f"{prefix}{item.name}")
            return "\n".join(items) if items else f"Directory {path} is empty"
        except PermissionError as exc:
            return f"Error: {exc}"
        except OSError as exc:
            return f"Error listing directory: {exc}"


class DeleteFileTool(Tool):
    """Delete a single file. Always approval-gated."""

    requires_approval = True

    def __init__(self, allowed_dir: Path | None = None):
        self._allowed_dir = allowed_dir

    @property
    def name(self) -> str:
        return "delete_file"

    @property
    def description(self) -> str:
        return "Permanently delete a file. Requires user approval."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {"path": {"type": "string", "description": "The file path to delete"}},
            "required": ["path"],
        }

    async def execute(self, context: ToolContext, path: str, **kwargs: Any) -> str:
        try:
            file_path = _resolve_path(path, self._allowed_dir)
            if not file_path.is_file():
                return f"Error: File not found: {path}"
            file_path.unlink()
            return f"Deleted {path}"
        except PermissionError as exc:
            return f"Error: {exc}"
        except OSError as exc:
            return f"Error deleting file: {exc}"
