"""Gateway adapter: external messaging identities and inbound media."""

from m_agent.gateway.adapter import (
    GatewayInputMessage,
    GatewayMetadata,
    build_gateway_context,
    derive_session_key,
    normalize_gateway_messages,
    resolve_gateway_session_id,
)
from m_agent.gateway.media import GatewayImage, normalize_image, resolve_media_type

__all__ = [
    "GatewayImage",
    "GatewayInputMessage",
    "GatewayMetadata",
    "build_gateway_context",
    "derive_session_key",
    "normalize_gateway_messages",
    "normalize_image",
    "resolve_gateway_session_id",
    "resolve_media_type",
]
