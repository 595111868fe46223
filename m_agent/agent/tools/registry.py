"""Name-keyed tool set, rebuilt for every turn."""

from __future__ import annotations

from typing import Any, Iterable

from loguru import logger

from m_agent.agent.tools.base import Tool


class ToolRegistry:
    """Registry of the tools available to one turn."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def get_definitions(self) -> list[dict[str, Any]]:
        return [tool.to_schema() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def build_tool_set(builtins: Iterable[Tool], external: Iterable[Tool] = ()) -> ToolRegistry:
    """Merge built-in and external tools; a built-in name always wins."""
    registry = ToolRegistry()
    for tool in builtins:
        registry.register(tool)
    for tool in external:
        if registry.has(tool.name):
            logger.warning(f"External tool '{tool.name}' collides with a built-in tool; ignoring it")
            continue
        registry.register(tool)
    return registry
