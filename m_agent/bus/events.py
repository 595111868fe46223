"""Event types written to a turn's output channel."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class StreamEvent:
    """Base event; ``kind`` is the wire type."""

    kind: str = field(init=False, default="event")

    def to_dict(self) -> dict[str, Any]:
        payload = {"type": self.kind}
        for name, value in self.__dict__.items():
            if name == "kind":
                continue
            payload[_camel(name)] = value
        return payload


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(word.title() for word in rest)


@dataclass
class TextDelta(StreamEvent):
    message_id: str
    delta: str

    def __post_init__(self) -> None:
        self.kind = "text-delta"


@dataclass
class ReasoningDelta(StreamEvent):
    message_id: str
    delta: str

    def __post_init__(self) -> None:
        self.kind = "reasoning-delta"


@dataclass
class ToolCallEvent(StreamEvent):
    call_id: str
    tool_name: str
    input: Any

    def __post_init__(self) -> None:
        self.kind = "tool-call"


@dataclass
class ToolResultEvent(StreamEvent):
    call_id: str
    tool_name: str
    output: Any
    is_error: bool = False

    def __post_init__(self) -> None:
        self.kind = "tool-result"


@dataclass
class ToolApprovalRequestEvent(StreamEvent):
    approval_id: str
    call_id: str
    tool_name: str
    input: Any

    def __post_init__(self) -> None:
        self.kind = "tool-approval-request"


@dataclass
class ToolProgressEvent(StreamEvent):
    """Incremental output from a running tool (for example shell stdout)."""

    call_id: str
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.kind = "tool-progress"


@dataclass
class FinishEvent(StreamEvent):
    status: str
    session_id: str | None = None

    def __post_init__(self) -> None:
        self.kind = "finish"


@dataclass
class ErrorEvent(StreamEvent):
    category: str
    message: str

    def __post_init__(self) -> None:
        self.kind = "error"
