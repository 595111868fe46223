"""Credential lookup for generation models."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from m_agent.config.schema import Config

_ENV_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}
OPENROUTER_BASE = "https://openrouter.ai/api/v1"


@dataclass(frozen=True)
class Credential:
    provider: str
    api_key: str
    api_base: str | None = None


class CredentialResolver(Protocol):
    def resolve(self, model: str) -> Credential | None:
        """Return a credential usable for ``model`` or None."""


class EnvCredentialResolver:
    """
    Resolve keys from config first, then environment variables.

    ``anthropic/*`` accepts an Anthropic or OpenRouter key, ``openai/*`` an
    OpenAI or OpenRouter key, ``openrouter/*`` only an OpenRouter key. Other
    models use the provider hinted by the model name, else any configured key.
    """

    def __init__(self, config: Config | None = None, environ: dict[str, str] | None = None):
        self.config = config
        self.environ = environ if environ is not None else os.environ

    def _key(self, provider: str) -> str | None:
        if self.config is not None:
            provider_cfg = getattr(self.config.providers, provider, None)
            if provider_cfg is not None and provider_cfg.api_key:
                return provider_cfg.api_key
        value = (self.environ.get(_ENV_KEYS[provider]) or "").strip()
        return value or None

    def _base(self, provider: str) -> str | None:
        base = None
        if self.config is not None:
            provider_cfg = getattr(self.config.providers, provider, None)
            base = provider_cfg.api_base if provider_cfg is not None else None
        if provider == "openrouter":
            return base or OPENROUTER_BASE
        return base

    def _credential(self, provider: str) -> Credential | None:
        key = self._key(provider)
        if not key:
            return None
        return Credential(provider=provider, api_key=key, api_base=self._base(provider))

    def _candidates(self, model: str) -> tuple[str, ...]:
        lowered = (model or "").strip().lower()
        if lowered.startswith(("anthropic/", "claude/")):
            return ("anthropic", "openrouter")
        if lowered.startswith("openrouter/"):
            return ("openrouter",)
        if lowered.startswith("openai/"):
            return ("openai", "openrouter")
        if "claude" in lowered:
            return ("anthropic", "openrouter")
        if "gpt" in lowered or lowered.startswith(("o1", "o3", "o4")):
            return ("openai", "openrouter")
        return ("openrouter", "anthropic", "openai")

    def resolve(self, model: str) -> Credential | None:
        for provider in self._candidates(model):
            credential = self._credential(provider)
            if credential is not None:
                return credential
        return None
