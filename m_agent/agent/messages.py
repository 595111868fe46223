"""Conversation message model: role-tagged messages made of typed parts."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, model_validator
from pydantic.alias_generators import to_camel

Role = Literal["user", "assistant", "system", "tool"]


class WireModel(BaseModel):
    """Base for models serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TextPart(WireModel):
    type: Literal["text"] = "text"
    text: str = ""


class ReasoningPart(WireModel):
    type: Literal["reasoning"] = "reasoning"
    text: str = ""


class ToolCallPart(WireModel):
    type: Literal["tool-call"] = "tool-call"
    call_id: str
    tool_name: str
    input: Any = Field(default_factory=dict)


class ToolResultPart(WireModel):
    type: Literal["tool-result"] = "tool-result"
    call_id: str
    tool_name: str
    output: Any = None
    is_error: bool = False


class ToolApprovalRequestPart(WireModel):
    type: Literal["tool-approval-request"] = "tool-approval-request"
    approval_id: str
    call_id: str


class ToolApprovalResponsePart(WireModel):
    type: Literal["tool-approval-response"] = "tool-approval-response"
    approval_id: str
    approved: bool
    reason: str | None = None


class FilePart(WireModel):
    type: Literal["file"] = "file"
    media_type: str
    data: str


class OpaquePart(WireModel):
    """Part of a type this backend does not interpret; kept verbatim."""

    model_config = ConfigDict(extra="allow")

    type: str


KNOWN_PART_TYPES = {
    "text",
    "reasoning",
    "tool-call",
    "tool-result",
    "tool-approval-request",
    "tool-approval-response",
    "file",
}


def _part_tag(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return kind if kind in KNOWN_PART_TYPES else "opaque"


Part = Annotated[
    Union[
        Annotated[TextPart, Tag("text")],
        Annotated[ReasoningPart, Tag("reasoning")],
        Annotated[ToolCallPart, Tag("tool-call")],
        Annotated[ToolResultPart, Tag("tool-result")],
        Annotated[ToolApprovalRequestPart, Tag("tool-approval-request")],
        Annotated[ToolApprovalResponsePart, Tag("tool-approval-response")],
        Annotated[FilePart, Tag("file")],
        Annotated[OpaquePart, Tag("opaque")],
    ],
    Discriminator(_part_tag),
]

_ASSISTANT_ONLY = (ToolCallPart, ToolApprovalRequestPart)
_TOOL_ONLY = (ToolResultPart, ToolApprovalResponsePart)


class Message(WireModel):
    """One conversation message."""

    id: str
    role: Role
    parts: list[Part] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str | None = None

    @model_validator(mode="after")
    def _check_part_roles(self) -> Message:
        for part in self.parts:
            if isinstance(part, _ASSISTANT_ONLY) and self.role != "assistant":
                raise ValueError(f"'{part.type}' parts are only allowed in assistant messages")
            if isinstance(part, _TOOL_ONLY) and self.role != "tool":
                raise ValueError(f"'{part.type}' parts are only allowed in tool messages")
        return self

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def has_text(self) -> bool:
        return any(isinstance(part, TextPart) and part.text.strip() for part in self.parts)

    def tool_calls(self) -> list[ToolCallPart]:
        return [part for part in self.parts if isinstance(part, ToolCallPart)]

    def images(self) -> list[FilePart]:
        return [
            part
            for part in self.parts
            if isinstance(part, FilePart) and part.media_type.startswith("image/")
        ]


def user_message(message_id: str, text: str) -> Message:
    return Message(id=message_id, role="user", parts=[TextPart(text=text)])


def dump_messages(messages: list[Message]) -> list[dict[str, Any]]:
    return [message.to_wire() for message in messages]
