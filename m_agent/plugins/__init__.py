"""Plugin SDK and loader exports."""

from m_agent.plugins.base import PluginBase, PluginContext
from m_agent.plugins.loader import (
    filter_plugins,
    load_installed_plugins,
    plugin_label,
    register_provider_plugins,
    register_tool_plugins,
    register_tool_provider_plugins,
)

__all__ = [
    "PluginBase",
    "PluginContext",
    "filter_plugins",
    "load_installed_plugins",
    "plugin_label",
    "register_provider_plugins",
    "register_tool_plugins",
    "register_tool_provider_plugins",
]
