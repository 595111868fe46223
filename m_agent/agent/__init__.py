"""Agent core module."""

from m_agent.agent.context import ContextBuilder
from m_agent.agent.loop import AgentLoop, TurnRequest, TurnResult

__all__ = ["AgentLoop", "ContextBuilder", "TurnRequest", "TurnResult"]
