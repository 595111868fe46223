"""Agent tools module."""

from m_agent.agent.tools.base import Tool, ToolContext
from m_agent.agent.tools.registry import ToolRegistry

__all__ = ["Tool", "ToolContext", "ToolRegistry"]
