"""Provider factory helpers with plugin override support."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from m_agent.config.schema import Config
from m_agent.plugins.base import PluginContext
from m_agent.plugins.loader import register_provider_plugins
from m_agent.providers.base import LLMProvider
from m_agent.providers.litellm_provider import LiteLLMProvider

ProviderFactory = Callable[[Config], LLMProvider]


def collect_provider_factories(config: Config, plugins: list[Any] | None = None) -> dict[str, ProviderFactory]:
    """Collect provider factories registered by plugins."""
    provider_factories: dict[str, ProviderFactory] = {}
    if not plugins:
        return provider_factories

    context = PluginContext(
        workspace=config.workspace_path,
        config=config,
    )
    register_provider_plugins(plugins, context, providers=provider_factories)
    return provider_factories


def build_provider(
    config: Config,
    *,
    provider_factories: dict[str, ProviderFactory] | None = None,
) -> LLMProvider:
    """Build the generation provider; a plugin 'default' factory takes precedence."""
    if provider_factories:
        builder = provider_factories.get("default")
        if builder is not None:
            return builder(config)

    defaults = config.agents.defaults
    return LiteLLMProvider(
        default_model=defaults.model,
        max_tokens=defaults.max_tokens,
        temperature=defaults.temperature,
    )
