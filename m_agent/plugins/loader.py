"""Plugin discovery and registration helpers."""

from __future__ import annotations

from importlib import metadata as importlib_metadata
from typing import Any, Callable, Iterable

from loguru import logger

from m_agent.plugins.base import PluginBase, PluginContext

EntryPointProvider = Callable[[str], Iterable[Any]]
PLUGIN_GROUP = "m_agent.plugins"
_HOOKS = ("register_tools", "register_tool_providers", "register_providers")


def _default_entry_points(group: str) -> list[Any]:
    return list(importlib_metadata.entry_points().select(group=group))


def _is_plugin_instance(value: Any) -> bool:
    """Return True when value looks like a plugin instance."""
    if isinstance(value, PluginBase):
        return True
    return any(callable(getattr(value, hook, None)) for hook in _HOOKS)


def _is_tool_provider_like(value: Any) -> bool:
    return (
        bool(getattr(value, "name", ""))
        and callable(getattr(value, "list_tools", None))
        and callable(getattr(value, "invoke", None))
        and callable(getattr(value, "close", None))
    )


def _coerce_plugin(entry_name: str, loaded: Any) -> Any:
    """Convert a loaded entry point object into a plugin instance."""
    candidate = loaded
    if isinstance(candidate, type):
        candidate = candidate()
    elif callable(candidate) and not _is_plugin_instance(candidate):
        candidate = candidate()

    if not _is_plugin_instance(candidate):
        raise TypeError(
            f"Entry point '{entry_name}' did not resolve to a plugin instance "
            f"(missing {'/'.join(_HOOKS)})."
        )

    if not getattr(candidate, "name", ""):
        setattr(candidate, "name", entry_name)
    return candidate


def plugin_label(plugin: Any) -> str:
    """Stable plugin display label."""
    label = str(getattr(plugin, "name", "")).strip()
    return label or plugin.__class__.__name__


def load_installed_plugins(
    group: str = PLUGIN_GROUP,
    entry_points_provider: EntryPointProvider | None = None,
) -> list[Any]:
    """Load plugins from Python entry points; a broken plugin never blocks the others."""
    provider = entry_points_provider or _default_entry_points
    loaded_plugins: list[Any] = []
    seen_labels: set[str] = set()

    for entry_point in sorted(provider(group), key=lambda item: getattr(item, "name", "")):
        entry_name = getattr(entry_point, "name", "<unknown>")
        try:
            plugin = _coerce_plugin(entry_name, entry_point.load())
        except Exception as exc:
            logger.warning(f"Failed to load plugin entry point '{entry_name}': {exc}")
            continue
        label = plugin_label(plugin)
        if label in seen_labels:
            logger.warning(f"Skipping duplicate plugin '{label}' from entry point '{entry_name}'")
            continue
        seen_labels.add(label)
        loaded_plugins.append(plugin)
        logger.info(f"Loaded plugin '{label}' from entry point '{entry_name}'")
    return loaded_plugins


def filter_plugins(
    plugins: list[Any],
    *,
    enabled: bool = True,
    allow: list[str] | None = None,
    deny: list[str] | None = None,
) -> list[Any]:
    """Filter loaded plugins using enabled/allow/deny policy."""
    if not enabled:
        return []

    allow_set = {item.strip().lower() for item in (allow or []) if item and item.strip()}
    deny_set = {item.strip().lower() for item in (deny or []) if item and item.strip()}
    selected: list[Any] = []
    for plugin in plugins:
        label = plugin_label(plugin)
        key = label.lower()
        if allow_set and key not in allow_set:
            logger.debug(f"Skipping plugin '{label}' (not in allow list)")
            continue
        if key in deny_set:
            logger.debug(f"Skipping plugin '{label}' (deny list)")
            continue
        selected.append(plugin)
    return selected


def register_tool_plugins(
    plugins: list[Any],
    context: PluginContext,
    *,
    registry: Any,
) -> None:
    """Call register_tools() on loaded plugins."""
    for plugin in plugins:
        hook = getattr(plugin, "register_tools", None)
        if not callable(hook):
            continue
        try:
            hook(registry, context)
        except Exception as exc:
            logger.warning(f"Plugin '{plugin_label(plugin)}' tool registration failed: {exc}")


def register_tool_provider_plugins(
    plugins: list[Any],
    context: PluginContext,
    *,
    providers: dict[str, Any],
) -> None:
    """Call register_tool_providers() and keep only provider-shaped entries."""
    for plugin in plugins:
        hook = getattr(plugin, "register_tool_providers", None)
        if not callable(hook):
            continue
        before = set(providers.keys())
        try:
            hook(providers, context)
        except Exception as exc:
            logger.warning(f"Plugin '{plugin_label(plugin)}' tool provider registration failed: {exc}")
            continue

        for name in sorted(set(providers.keys()) - before):
            if _is_tool_provider_like(providers.get(name)):
                logger.info(f"Plugin '{plugin_label(plugin)}' registered tool provider '{name}'")
                continue
            providers.pop(name, None)
            logger.warning(
                f"Plugin '{plugin_label(plugin)}' attempted to register invalid tool provider '{name}'"
            )


def register_provider_plugins(
    plugins: list[Any],
    context: PluginContext,
    *,
    providers: dict[str, Any],
) -> None:
    """Call register_providers() on loaded plugins and validate provider factories."""
    for plugin in plugins:
        hook = getattr(plugin, "register_providers", None)
        if not callable(hook):
            continue
        before = set(providers.keys())
        try:
            hook(providers, context)
        except Exception as exc:
            logger.warning(f"Plugin '{plugin_label(plugin)}' provider registration failed: {exc}")
            continue

        for name in list(providers.keys()):
            if callable(providers.get(name)):
                continue
            providers.pop(name, None)
            logger.warning(
                f"Plugin '{plugin_label(plugin)}' attempted to register invalid provider '{name}'"
            )

        for name in sorted(set(providers.keys()) - before):
            logger.info(f"Plugin '{plugin_label(plugin)}' registered provider '{name}'")
