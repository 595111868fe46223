"""Base LLM provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Literal

if TYPE_CHECKING:
    from m_agent.agent.cancellation import CancellationToken
    from m_agent.agent.messages import Message
    from m_agent.providers.credentials import Credential


@dataclass
class ToolCallRequest:
    """A tool call announced by the LLM."""
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class StreamDelta:
    """One increment of a streamed generation step."""
    kind: Literal["text", "reasoning", "tool-call", "finish"]
    text: str = ""
    tool_call: ToolCallRequest | None = None
    finish_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)

    @classmethod
    def text_delta(cls, text: str) -> StreamDelta:
        return cls(kind="text", text=text)

    @classmethod
    def reasoning_delta(cls, text: str) -> StreamDelta:
        return cls(kind="reasoning", text=text)

    @classmethod
    def call(cls, call_id: str, name: str, arguments: dict[str, Any]) -> StreamDelta:
        return cls(kind="tool-call", tool_call=ToolCallRequest(id=call_id, name=name, arguments=arguments))

    @classmethod
    def finish(cls, reason: str = "stop", usage: dict[str, int] | None = None) -> StreamDelta:
        return cls(kind="finish", finish_reason=reason, usage=usage or {})


class LLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    One ``stream()`` call is one generation step: it yields text and
    reasoning deltas as they arrive, complete tool calls, and a final
    ``finish`` delta. Errors are raised, not yielded.
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    def stream(
        self,
        *,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        reasoning_effort: str | None = None,
        credential: Credential | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream one generation step."""

    @abstractmethod
    def get_default_model(self) -> str:
        """Get the default model for this provider."""
