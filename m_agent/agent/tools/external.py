"""Externally discovered tools: providers, adapters and the reloadable pool."""

from __future__ import annotations

import asyncio
import itertools
import json
import re
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Protocol, runtime_checkable

import httpx
from loguru import logger

from m_agent.agent.tools.base import Tool, ToolContext
from m_agent.errors import ToolExecutionError

if TYPE_CHECKING:
    from m_agent.config.schema import ToolServerConfig

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_-]")


def external_tool_name(provider: str, tool: str) -> str:
    """Model-facing name of a provider tool: ``<provider>_<tool>``."""
    return _UNSAFE_NAME.sub("_", f"{provider}_{tool}")


def extract_result_content(result: Any) -> Any:
    """Join text content items of a tool result; fall back to the raw payload."""
    if isinstance(result, dict):
        content = result.get("content")
        if isinstance(content, list):
            texts = [
                str(item.get("text", ""))
                for item in content
                if isinstance(item, dict) and item.get("type") == "text"
            ]
            if texts:
                return "\n".join(texts)
            return json.dumps(content, ensure_ascii=False)
        if "structuredContent" in result:
            return result["structuredContent"]
    return result


@runtime_checkable
class ToolProvider(Protocol):
    """A source of tools discovered at runtime."""

    name: str

    async def list_tools(self) -> list[dict[str, Any]]:
        """Return ``[{name, description, inputSchema}]``."""

    async def invoke(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        """Call a tool; raise on failure."""

    async def close(self) -> None:
        """Release connections."""


class HttpToolProvider:
    """Tool server speaking JSON-RPC over HTTP (``tools/list`` and ``tools/call``)."""

    def __init__(
        self,
        name: str,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.name = name
        self.url = url
        self.headers = dict(headers or {})
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)
        self._session_id: str | None = None
        self._initialized = False

    async def _rpc(self, method: str, params: dict[str, Any] | None = None) -> Any:
        headers = {
            "content-type": "application/json",
            "accept": "application/json",
            **self.headers,
        }
        if self._session_id:
            headers["mcp-session-id"] = self._session_id
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or {}}
        response = await self._client.post(self.url, json=payload, headers=headers)
        response.raise_for_status()
        session_id = response.headers.get("mcp-session-id")
        if session_id:
            self._session_id = session_id
        if not response.content:
            return {}
        body = response.json()
        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ToolExecutionError(method, str(message))
        return body.get("result", {}) if isinstance(body, dict) else body

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        await self._rpc(
            "initialize",
            {
                "protocolVersion": "2025-03-26",
                "capabilities": {},
                "clientInfo": {"name": "m-agent", "version": "0.1"},
            },
        )
        self._initialized = True

    async def list_tools(self) -> list[dict[str, Any]]:
        await self._ensure_initialized()
        result = await self._rpc("tools/list")
        tools = result.get("tools", []) if isinstance(result, dict) else []
        return [item for item in tools if isinstance(item, dict) and item.get("name")]

    async def invoke(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        await self._ensure_initialized()
        result = await self._rpc("tools/call", {"name": tool_name, "arguments": arguments})
        content = extract_result_content(result)
        if isinstance(result, dict) and result.get("isError"):
            raise ToolExecutionError(tool_name, str(content))
        return content

    async def close(self) -> None:
        await self._client.aclose()


class ExternalTool(Tool):
    """Adapter exposing one provider tool through the common Tool interface."""

    def __init__(self, pool: ToolProviderPool, provider: ToolProvider, spec: dict[str, Any]):
        self._pool = pool
        self._provider = provider
        self._remote_name = str(spec["name"])
        self._name = external_tool_name(provider.name, self._remote_name)
        self._description = str(spec.get("description") or f"{self._remote_name} ({provider.name})")
        schema = spec.get("inputSchema") or spec.get("input_schema") or {}
        self._parameters = schema if isinstance(schema, dict) and schema else {"type": "object", "properties": {}}

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict[str, Any]:
        return self._parameters

    async def execute(self, context: ToolContext, **kwargs: Any) -> Any:
        async with self._pool.lease(self._provider):
            try:
                return await self._provider.invoke(self._remote_name, kwargs)
            except ToolExecutionError as exc:
                raise ToolExecutionError(self._name, f'Error calling tool "{self._name}": {exc}') from exc
            except (httpx.HTTPError, OSError, ValueError) as exc:
                raise ToolExecutionError(self._name, f'Error calling tool "{self._name}": {exc}') from exc


ProviderFactory = Callable[[str, "ToolServerConfig"], ToolProvider]


def http_provider_factory(name: str, config: ToolServerConfig) -> ToolProvider:
    return HttpToolProvider(name=name, url=config.url, headers=config.headers, timeout=config.timeout)


class ToolProviderPool:
    """
    Lifecycle owner for external tool providers.

    ``reload`` swaps in a fresh provider set; providers that are replaced
    while calls are in flight are closed only when their last call ends.
    """

    def __init__(self, factory: ProviderFactory | None = None):
        self._factory = factory or http_provider_factory
        self._providers: dict[str, ToolProvider] = {}
        self._tools: list[ExternalTool] = []
        self._inflight: dict[int, int] = {}
        self._retired: dict[int, ToolProvider] = {}
        self._lock = asyncio.Lock()

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers.keys())

    def list_tools(self) -> list[Tool]:
        """Snapshot of currently available external tools."""
        return list(self._tools)

    async def _discover(self, providers: dict[str, ToolProvider]) -> list[ExternalTool]:
        tools: list[ExternalTool] = []
        for name, provider in providers.items():
            try:
                specs = await provider.list_tools()
            except Exception as exc:
                logger.warning(f"Failed to list tools from provider '{name}': {exc}")
                continue
            for spec in specs:
                tools.append(ExternalTool(self, provider, spec))
            logger.info(f"Tool provider '{name}' connected with {len(specs)} tools")
        return tools

    def _build(self, configs: dict[str, ToolServerConfig]) -> dict[str, ToolProvider]:
        providers: dict[str, ToolProvider] = {}
        for name, config in (configs or {}).items():
            if getattr(config, "disabled", False):
                continue
            try:
                providers[name] = self._factory(name, config)
            except Exception as exc:
                logger.warning(f"Failed to create tool provider '{name}': {exc}")
        return providers

    async def connect_all(
        self,
        configs: dict[str, ToolServerConfig] | None = None,
        extra: dict[str, ToolProvider] | None = None,
    ) -> None:
        """Connect configured providers plus already-built ones (for example from plugins)."""
        providers = self._build(configs or {})
        providers.update(extra or {})
        tools = await self._discover(providers)
        async with self._lock:
            previous = self._providers
            self._providers = providers
            self._tools = tools
        active = {id(provider) for provider in providers.values()}
        await self._retire(p for p in previous.values() if id(p) not in active)

    async def reload(
        self,
        configs: dict[str, ToolServerConfig] | None = None,
        extra: dict[str, ToolProvider] | None = None,
    ) -> None:
        logger.info("Reloading tool providers")
        await self.connect_all(configs, extra)

    async def disconnect_all(self) -> None:
        async with self._lock:
            previous = self._providers
            self._providers = {}
            self._tools = []
        await self._retire(previous.values())

    async def _retire(self, providers: Any) -> None:
        for provider in list(providers):
            key = id(provider)
            if self._inflight.get(key, 0) > 0:
                self._retired[key] = provider
                continue
            await self._close(provider)

    async def _close(self, provider: ToolProvider) -> None:
        try:
            await provider.close()
        except Exception as exc:
            logger.warning(f"Failed to close tool provider '{provider.name}': {exc}")

    @asynccontextmanager
    async def lease(self, provider: ToolProvider) -> AsyncIterator[ToolProvider]:
        """Track an in-flight call so a retired provider outlives it."""
        key = id(provider)
        self._inflight[key] = self._inflight.get(key, 0) + 1
        try:
            yield provider
        finally:
            remaining = self._inflight.get(key, 1) - 1
            if remaining <= 0:
                self._inflight.pop(key, None)
                retired = self._retired.pop(key, None)
                if retired is not None:
                    await self._close(retired)
            else:
                self._inflight[key] = remaining

    def inflight(self, provider: ToolProvider) -> int:
        return self._inflight.get(id(provider), 0)
