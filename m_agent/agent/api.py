"""Service API: chat turns, gateway turns and session operations."""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import Field

from m_agent.agent.cancellation import CancellationToken
from m_agent.agent.loop import AgentLoop, TurnRequest, TurnResult
from m_agent.agent.messages import Message, WireModel
from m_agent.agent.tools.approval import ApprovalSettings
from m_agent.agent.tools.external import ToolProviderPool
from m_agent.bus.queue import EventStream
from m_agent.config.loader import load_config
from m_agent.config.schema import Config
from m_agent.gateway.adapter import (
    GatewayInputMessage,
    GatewayMetadata,
    build_gateway_context,
    derive_session_key,
    normalize_gateway_messages,
    resolve_gateway_session_id,
)
from m_agent.plugins.base import PluginContext
from m_agent.plugins.loader import filter_plugins, load_installed_plugins, register_tool_provider_plugins
from m_agent.providers.base import LLMProvider
from m_agent.providers.credentials import CredentialResolver, EnvCredentialResolver
from m_agent.providers.factory import build_provider, collect_provider_factories
from m_agent.session.models import GATEWAY_DEFAULT_TITLE, Session, SessionMeta, build_session_title
from m_agent.session.store import SessionScope, SessionStore


class _ApprovalFlags(WireModel):
    require_unsandboxed_approval: bool = True
    require_dangerous_command_approval: bool = True
    dangerous_patterns: list[str] | None = None
    model: str | None = None
    reasoning_effort: str | None = None
    active_workspace_id: str | None = None


class ChatRequest(_ApprovalFlags):
    """Streaming chat turn from the UI; ``messages`` is the full history."""

    session_id: str | None = None
    messages: list[Message] | None = None
    base_path: str | None = None


class GatewayChatRequest(_ApprovalFlags):
    """Non-streaming turn from an external channel; new messages are appended to the stored session."""

    session_id: str | None = None
    messages: list[GatewayInputMessage] = Field(default_factory=list)
    gateway: GatewayMetadata | None = None


class ChatService:
    """Embeddable entry point tying the loop, tool providers and session store together."""

    def __init__(
        self,
        config: Config | None = None,
        *,
        provider: LLMProvider | None = None,
        credentials: CredentialResolver | None = None,
        plugins: list[Any] | None = None,
        tool_pool: ToolProviderPool | None = None,
    ):
        self.config = config or load_config()
        resolved_plugins = plugins
        if resolved_plugins is None:
            resolved_plugins = filter_plugins(
                load_installed_plugins(),
                enabled=self.config.tools.plugins.enabled,
                allow=self.config.tools.plugins.allow,
                deny=self.config.tools.plugins.deny,
            )
        self.plugins = resolved_plugins
        provider_factories = collect_provider_factories(self.config, resolved_plugins)
        self.provider = provider or build_provider(self.config, provider_factories=provider_factories)
        self.credentials = credentials or EnvCredentialResolver(self.config)
        self.tool_pool = tool_pool or ToolProviderPool()
        self.store = SessionStore(self.config.home_path)

        defaults = self.config.agents.defaults
        self.loop = AgentLoop(
            provider=self.provider,
            workspace=self.config.workspace_path,
            home=self.config.home_path,
            credentials=self.credentials,
            model=defaults.model,
            max_steps=defaults.max_steps,
            fallback_models=self.config.model_chain()[1:],
            exec_config=self.config.tools.exec,
            restrict_to_workspace=self.config.tools.restrict_to_workspace,
            tool_pool=self.tool_pool,
            tool_policy=self.config.tools.policy,
            risky_tools=self.config.tools.risky_tools,
            approval_mode=self.config.tools.approval_mode,
            plugins=resolved_plugins,
        )
        self._started = False

    # ── lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Connect configured tool servers and plugin tool providers."""
        if self._started:
            return
        extra: dict[str, Any] = {}
        if self.plugins:
            context = PluginContext(
                workspace=self.config.workspace_path,
                config=self.config,
                provider=self.provider,
            )
            register_tool_provider_plugins(self.plugins, context, providers=extra)
        await self.tool_pool.connect_all(self.config.tools.servers, extra)
        self._started = True

    async def reload_tools(self) -> None:
        """Re-read tool server config; calls in flight finish on the old providers."""
        extra: dict[str, Any] = {}
        if self.plugins:
            context = PluginContext(workspace=self.config.workspace_path, config=self.config)
            register_tool_provider_plugins(self.plugins, context, providers=extra)
        await self.tool_pool.reload(self.config.tools.servers, extra)

    async def aclose(self) -> None:
        await self.tool_pool.disconnect_all()
        self._started = False

    async def __aenter__(self) -> ChatService:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    # ── turns ────────────────────────────────────────────────────────────

    def _approval(self, request: _ApprovalFlags) -> ApprovalSettings:
        patterns = request.dangerous_patterns
        if patterns is None:
            patterns = list(self.config.tools.approval.dangerous_patterns)
        return ApprovalSettings(
            require_unsandboxed_approval=request.require_unsandboxed_approval,
            require_dangerous_command_approval=request.require_dangerous_command_approval,
            dangerous_patterns=patterns,
        )

    def _workspace_id(self, request: _ApprovalFlags) -> str | None:
        return request.active_workspace_id or self.config.agents.defaults.workspace_id

    async def handle_chat(
        self,
        request: ChatRequest | dict[str, Any],
        sink: EventStream | None = None,
        cancel: CancellationToken | None = None,
    ) -> TurnResult:
        """
        Run one streamed turn and persist the resulting history.

        Validation and credential errors propagate and nothing is stored.
        Completed, aborted and failed turns are all saved.
        """
        if not isinstance(request, ChatRequest):
            request = ChatRequest.model_validate(request)
        session_id = (request.session_id or "").strip() or f"chat-{uuid.uuid4().hex[:12]}"
        scope = SessionScope.conversation(self._workspace_id(request))

        turn = TurnRequest(
            session_id=session_id,
            messages=request.messages,
            model=request.model,
            reasoning_effort=self.config.reasoning_effort(request.reasoning_effort),
            approval=self._approval(request),
            scope="conversation",
            workspace=Path(request.base_path).expanduser() if request.base_path else None,
        )
        result = await self.loop.run_turn(turn, sink, cancel)

        session = self.store.load(session_id, scope) or Session(id=session_id, workspace_id=scope.workspace_id)
        session.replace_messages(result.messages)
        session.title = build_session_title(result.messages)
        self.store.save(session, scope)
        logger.info(f"Chat turn for {session_id} finished as {result.status}")
        return result

    async def handle_gateway_chat(
        self,
        request: GatewayChatRequest | dict[str, Any],
        cancel: CancellationToken | None = None,
    ) -> dict[str, str]:
        """
        Run a gateway turn to completion and return ``{"text", "sessionId"}``.

        The session is persisted before a generation failure is re-raised.
        """
        if not isinstance(request, GatewayChatRequest):
            request = GatewayChatRequest.model_validate(request)
        metadata = request.gateway
        session_id = resolve_gateway_session_id(request.session_id, metadata)
        scope = SessionScope.gateway(request.active_workspace_id)

        existing = self.store.load(session_id, scope)
        history = list(existing.messages) if existing else []
        incoming = normalize_gateway_messages(request.messages, metadata)

        turn = TurnRequest(
            session_id=session_id,
            messages=history + incoming,
            model=request.model,
            reasoning_effort=self.config.reasoning_effort(request.reasoning_effort),
            approval=self._approval(request),
            gateway_context=build_gateway_context(metadata),
            channel=(metadata.channel or "") if metadata else "",
            sender_id=(metadata.peer_id or "") if metadata else "",
            scope="gateway",
        )
        result = await self.loop.run_turn(turn)

        session = existing or Session(id=session_id, workspace_id=scope.workspace_id)
        if metadata is not None:
            session.channel = metadata.channel or session.channel
            session.peer_id = metadata.peer_id or session.peer_id
            session.display_name = metadata.display_name or session.display_name
            if metadata.is_group is not None:
                session.is_group = metadata.is_group
            session.agent_id = metadata.agent_id or session.agent_id
            session.session_key = metadata.session_key or derive_session_key(metadata) or session.session_key
        session.replace_messages(result.messages)
        session.title = build_session_title(result.messages, fallback=GATEWAY_DEFAULT_TITLE)
        self.store.save(session, scope)

        if result.status == "failed" and result.error is not None:
            raise result.error
        logger.info(f"Gateway turn for {session_id} finished as {result.status}")
        return {"text": result.text, "sessionId": session_id}

    # ── sessions ─────────────────────────────────────────────────────────

    def _scope(self, gateway: bool, workspace_id: str | None) -> SessionScope:
        if gateway:
            return SessionScope.gateway(workspace_id)
        return SessionScope.conversation(workspace_id or self.config.agents.defaults.workspace_id)

    def list_sessions(self, *, gateway: bool = False, workspace_id: str | None = None) -> list[SessionMeta]:
        return self.store.list(self._scope(gateway, workspace_id))

    def get_session(
        self,
        session_id: str,
        *,
        gateway: bool = False,
        workspace_id: str | None = None,
    ) -> Session | None:
        return self.store.load(session_id, self._scope(gateway, workspace_id))

    def delete_session(
        self,
        session_id: str,
        *,
        gateway: bool = False,
        workspace_id: str | None = None,
    ) -> dict[str, bool]:
        removed = self.store.delete(session_id, self._scope(gateway, workspace_id))
        return {"ok": True, "removed": removed}
