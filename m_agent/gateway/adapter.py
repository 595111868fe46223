"""Translate externally sourced messages (chat bots, bridges) into conversation messages."""

from __future__ import annotations

import secrets
import string
from typing import Any, Literal

from pydantic import Field

from m_agent.agent.messages import Message, TextPart, WireModel
from m_agent.gateway.media import GatewayImage, normalize_images
from m_agent.utils.helpers import now_ms

DEFAULT_AGENT_ID = "main"


class GatewayMetadata(WireModel):
    """Identity of the external conversation a request comes from."""

    channel: str | None = None
    peer_id: str | None = None
    chat_id: str | None = None
    display_name: str | None = None
    is_group: bool | None = None
    agent_id: str | None = None
    session_key: str | None = None
    lane: str | None = None


class GatewayInputMessage(WireModel):
    role: Literal["user", "assistant", "system"] = "user"
    text: str = ""
    timestamp: int | str | None = None
    images: list[GatewayImage | str] = Field(default_factory=list)


def normalize_gateway_messages(
    inputs: list[GatewayInputMessage | dict[str, Any]],
    metadata: GatewayMetadata | None = None,
) -> list[Message]:
    """
    Convert gateway messages into conversation messages.

    Text becomes a text part and every image a file part with a resolved
    media type. The message id is ``<stamp>-<index>-<rand6>`` where the
    stamp is the sender timestamp when present, otherwise the current time
    in milliseconds. The suffix keeps ids unique when
    senders stamp in whole seconds.
    """
    base = now_ms()
    converted: list[Message] = []
    for index, raw in enumerate(inputs):
        item = raw if isinstance(raw, GatewayInputMessage) else GatewayInputMessage.model_validate(raw)
        parts: list[Any] = []
        if item.text:
            parts.append(TextPart(text=item.text))
        if item.images and item.role == "user":
            parts.extend(normalize_images(item.images))
        if not parts:
            parts.append(TextPart(text=""))
        stamp = item.timestamp if item.timestamp not in (None, "", 0) else base
        message_id = f"{stamp}-{index}-{_random_suffix()}"
        message_meta: dict[str, Any] = {"source": "gateway"}
        if metadata and metadata.channel:
            message_meta["channel"] = metadata.channel
        converted.append(
            Message(id=message_id, role=item.role, parts=parts, metadata=message_meta)
        )
    return converted


def _clean(value: str | None) -> str:
    return " ".join(str(value or "").split())


def derive_session_key(metadata: GatewayMetadata) -> str | None:
    """
    Stable session key for an external identity.

    ``agent:<agent>:<channel>:dm:<peer>`` for direct messages and
    ``agent:<agent>:<channel>:group:<chat>`` for group chats. Returns None
    when the channel or the peer cannot be determined.
    """
    channel = _clean(metadata.channel).lower()
    agent = _clean(metadata.agent_id) or DEFAULT_AGENT_ID
    if metadata.is_group:
        peer = _clean(metadata.chat_id) or _clean(metadata.peer_id)
        kind = "group"
    else:
        peer = _clean(metadata.peer_id) or _clean(metadata.chat_id)
        kind = "dm"
    if not channel or not peer:
        return None
    return f"agent:{agent}:{channel}:{kind}:{peer}"


def _random_suffix(length: int = 6) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def resolve_gateway_session_id(
    session_id: str | None,
    metadata: GatewayMetadata | None,
) -> str:
    """Explicit session id, then the session key (given or derived), then a fresh id."""
    if session_id and session_id.strip():
        return session_id.strip()
    if metadata is not None:
        if metadata.session_key and metadata.session_key.strip():
            return metadata.session_key.strip()
        derived = derive_session_key(metadata)
        if derived:
            return derived
    return f"gateway-{now_ms()}-{_random_suffix()}"


def build_gateway_context(metadata: GatewayMetadata | None) -> str | None:
    """System-prompt block describing where a gateway message came from."""
    if metadata is None:
        return None
    lines = ["Gateway context:"]
    if metadata.channel:
        lines.append(f"Channel: {metadata.channel}")
    if metadata.display_name:
        lines.append(f"Sender: {metadata.display_name}")
    if metadata.peer_id:
        lines.append(f"Peer ID: {metadata.peer_id}")
    if metadata.chat_id:
        lines.append(f"Chat ID: {metadata.chat_id}")
    if metadata.is_group is not None:
        lines.append(f"Group message: {'yes' if metadata.is_group else 'no'}")
    if metadata.agent_id:
        lines.append(f"Agent: {metadata.agent_id}")
    if metadata.session_key:
        lines.append(f"Session key: {metadata.session_key}")
    if metadata.lane:
        lines.append(f"Lane: {metadata.lane}")
    return "\n".join(lines) if len(lines) > 1 else None
