"""Typed output channel for streamed turn events."""

from m_agent.bus.events import StreamEvent
from m_agent.bus.queue import EventStream

__all__ = ["EventStream", "StreamEvent"]
