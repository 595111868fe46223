"""Plugin SDK base classes for m-agent extensions."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from m_agent.agent.tools.external import ToolProvider
    from m_agent.agent.tools.registry import ToolRegistry
    from m_agent.config.schema import Config
    from m_agent.providers.base import LLMProvider


@dataclass(slots=True)
class PluginContext:
    """Runtime context passed to plugins during registration."""

    workspace: Path
    config: Config | None = None
    provider: LLMProvider | None = None
    extras: dict[str, Any] = field(default_factory=dict)


class PluginBase:
    """Base class for m-agent plugins."""

    name: str = "unnamed-plugin"

    def register_tools(self, registry: "ToolRegistry", context: PluginContext) -> None:
        """Register extra built-in tools for every turn."""
        return

    def register_tool_providers(
        self,
        providers: dict[str, "ToolProvider"],
        context: PluginContext,
    ) -> None:
        """Register external tool providers (discovered through list_tools)."""
        return

    def register_providers(self, providers: dict[str, Any], context: PluginContext) -> None:
        """Register generation provider factories (key 'default' replaces LiteLLM)."""
        return
