"""Session records as stored on disk."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from m_agent.agent.messages import Message, WireModel
from m_agent.utils.helpers import now_iso

TITLE_LIMIT = 50
DEFAULT_TITLE = "New conversation"
GATEWAY_DEFAULT_TITLE = "Gateway session"
IMAGE_TITLE = "Image message"


class SessionMeta(WireModel):
    """Listing view of a session (no messages)."""

    id: str
    title: str = DEFAULT_TITLE
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    message_count: int = 0
    channel: str | None = None
    peer_id: str | None = None
    display_name: str | None = None
    is_group: bool | None = None
    agent_id: str | None = None
    session_key: str | None = None
    workspace_id: str | None = None


class Session(SessionMeta):
    """A persisted conversation."""

    messages: list[Message] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def meta(self) -> SessionMeta:
        return SessionMeta.model_validate(self.model_dump(exclude={"messages", "metadata"}))

    def replace_messages(self, messages: list[Message]) -> None:
        """Set the full history, refreshing count and timestamp."""
        self.messages = list(messages)
        self.message_count = len(self.messages)
        self.updated_at = now_iso()


def build_session_title(messages: list[Message], fallback: str = DEFAULT_TITLE) -> str:
    """Title from the first user message: up to 50 chars, else 47 + '...'."""
    first_user = next(
        (
            message
            for message in messages
            if message.role == "user" and (message.has_text() or message.images())
        ),
        None,
    )
    if first_user is None:
        return fallback
    text = " ".join(first_user.text.split())
    if not text:
        return IMAGE_TITLE if first_user.images() else fallback
    if len(text) <= TITLE_LIMIT:
        return text
    return text[: TITLE_LIMIT - 3] + "..."
