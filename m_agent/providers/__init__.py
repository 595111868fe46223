"""LLM provider abstraction module."""

from m_agent.providers.base import LLMProvider, StreamDelta, ToolCallRequest
from m_agent.providers.credentials import Credential, CredentialResolver, EnvCredentialResolver

__all__ = [
    "Credential",
    "CredentialResolver",
    "EnvCredentialResolver",
    "LLMProvider",
    "StreamDelta",
    "ToolCallRequest",
]
