"""Agent loop: drives one streamed, tool-augmented turn."""

from __future__ import annotations

import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from loguru import logger

from m_agent.agent.cancellation import CancellationToken
from m_agent.agent.context import ContextBuilder
from m_agent.agent.messages import (
    Message,
    ReasoningPart,
    TextPart,
    ToolApprovalRequestPart,
    ToolCallPart,
    ToolResultPart,
)
from m_agent.agent.repair import prepare_history
from m_agent.agent.runtime import TurnCheckpointStore
from m_agent.agent.tools.approval import ApprovalSettings, ToolPolicy
from m_agent.agent.tools.base import Tool
from m_agent.agent.tools.executor import ToolExecutor
from m_agent.agent.tools.filesystem import DeleteFileTool, ListDirTool, ReadFileTool, WriteFileTool
from m_agent.agent.tools.registry import ToolRegistry, build_tool_set
from m_agent.agent.tools.shell import ExecTool
from m_agent.bus.events import (
    ErrorEvent,
    FinishEvent,
    ReasoningDelta,
    StreamEvent,
    TextDelta,
    ToolApprovalRequestEvent,
    ToolCallEvent,
    ToolProgressEvent,
    ToolResultEvent,
)
from m_agent.bus.queue import EventStream
from m_agent.errors import (
    AgentError,
    CredentialError,
    GenerationError,
    TurnCancelled,
    ValidationError,
    classify_generation_error,
    should_failover_model,
)
from m_agent.plugins.base import PluginContext
from m_agent.plugins.loader import register_tool_plugins
from m_agent.providers.base import LLMProvider

if TYPE_CHECKING:
    from m_agent.agent.tools.external import ToolProviderPool
    from m_agent.config.schema import ExecToolConfig
    from m_agent.providers.credentials import Credential, CredentialResolver

TurnStatus = Literal["completed", "aborted", "failed"]
DEFAULT_MAX_STEPS = 1000


def new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex[:16]}"


@dataclass
class TurnRequest:
    """Everything one turn needs besides the loop's own configuration."""

    session_id: str
    messages: list[Message] | None
    model: str | None = None
    reasoning_effort: str | None = None
    approval: ApprovalSettings = field(default_factory=ApprovalSettings)
    gateway_context: str | None = None
    channel: str = ""
    sender_id: str = ""
    scope: str = "conversation"
    workspace: Path | None = None


@dataclass
class TurnResult:
    status: TurnStatus
    session_id: str
    messages: list[Message]
    new_messages: list[Message]
    text: str = ""
    pending_approvals: list[ToolApprovalRequestPart] = field(default_factory=list)
    error: GenerationError | None = None
    turn_id: str | None = None


class _StepBuffer:
    """Accumulates one generation step until it becomes an assistant message."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        self.reasoning: list[str] = []
        self.text: list[str] = []
        self.calls: list[ToolCallPart] = []
        self.approvals: list[ToolApprovalRequestPart] = []
        self.results: list[ToolResultPart] = []
        self.produced_output = False

    def assistant_message(self, *, settled_only: bool = False) -> Message | None:
        parts: list[Any] = []
        reasoning = "".join(self.reasoning)
        if reasoning.strip():
            parts.append(ReasoningPart(text=reasoning))
        text = "".join(self.text)
        if text:
            parts.append(TextPart(text=text))
        settled = {result.call_id for result in self.results}
        settled.update(approval.call_id for approval in self.approvals)
        for call in self.calls:
            if settled_only and call.call_id not in settled:
                continue
            parts.append(call)
        parts.extend(self.approvals)
        if not parts:
            return None
        return Message(id=self.message_id, role="assistant", parts=parts)

    def tool_message(self) -> Message | None:
        if not self.results:
            return None
        return Message(id=new_message_id(), role="tool", parts=list(self.results))


class AgentLoop:
    """
    The agent loop is the core processing engine.

    For each turn it:
    1. Validates the request and resolves a credential
    2. Repairs the history and acts on pending approval decisions
    3. Streams generation steps to the caller's output channel
    4. Executes tool calls, suspending the ones that need approval
    5. Returns the updated history for persistence
    """

    def __init__(
        self,
        provider: LLMProvider,
        workspace: Path,
        home: Path,
        credentials: CredentialResolver,
        model: str | None = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        fallback_models: list[str] | None = None,
        exec_config: ExecToolConfig | None = None,
        restrict_to_workspace: bool = False,
        tool_pool: ToolProviderPool | None = None,
        tools: list[Tool] | None = None,
        tool_policy: dict[str, str] | None = None,
        risky_tools: list[str] | None = None,
        approval_mode: str = "off",
        plugins: list[Any] | None = None,
    ):
        from m_agent.config.schema import ExecToolConfig

        self.provider = provider
        self.workspace = workspace
        self.credentials = credentials
        self.model = model or provider.get_default_model()
        self.max_steps = max(1, max_steps)
        models = [self.model]
        for raw in fallback_models or []:
            candidate = (raw or "").strip()
            if candidate and candidate not in models:
                models.append(candidate)
        self.model_chain = models
        self.exec_config = exec_config or ExecToolConfig()
        self.restrict_to_workspace = restrict_to_workspace
        self.tool_pool = tool_pool
        self.policy = ToolPolicy(tool_policy, risky_tools, approval_mode)
        self.plugins = plugins or []

        self.context = ContextBuilder(workspace)
        self.runtime = TurnCheckpointStore(home)
        self.builtin_tools = ToolRegistry()
        self._ledger: OrderedDict[str, ToolResultPart | None] = OrderedDict()

        if tools is None:
            self._register_default_tools()
        else:
            for tool in tools:
                self.builtin_tools.register(tool)
        self._register_plugin_tools()

    def _register_default_tools(self) -> None:
        """Register the default set of tools."""
        allowed_dir = self.workspace if self.restrict_to_workspace else None
        self.builtin_tools.register(ReadFileTool(allowed_dir=allowed_dir))
        self.builtin_tools.register(WriteFileTool(allowed_dir=allowed_dir))
        self.builtin_tools.register(ListDirTool(allowed_dir=allowed_dir))
        self.builtin_tools.register(DeleteFileTool(allowed_dir=allowed_dir))
        self.builtin_tools.register(
            ExecTool(
                timeout=self.exec_config.timeout,
                sandbox_enabled=self.exec_config.sandbox_enabled,
            )
        )

    def _register_plugin_tools(self) -> None:
        if not self.plugins:
            return
        context = PluginContext(workspace=self.workspace, provider=self.provider)
        register_tool_plugins(self.plugins, context, registry=self.builtin_tools)

    def build_tools(self) -> ToolRegistry:
        """Fresh tool set for one turn: built-ins first, then external tools."""
        builtins = [self.builtin_tools.get(name) for name in self.builtin_tools.tool_names]
        external = self.tool_pool.list_tools() if self.tool_pool is not None else []
        return build_tool_set([tool for tool in builtins if tool is not None], external)

    async def _emit(self, sink: EventStream | None, event: StreamEvent) -> None:
        if sink is not None:
            await sink.send(event)

    def _validate(self, request: TurnRequest) -> tuple[str, Credential]:
        if request.messages is None:
            raise ValidationError("Request must include a messages list")
        model = (request.model or self.model).strip()
        credential = self.credentials.resolve(model)
        if credential is None:
            raise CredentialError(model)
        return model, credential

    async def run_turn(
        self,
        request: TurnRequest,
        sink: EventStream | None = None,
        cancel: CancellationToken | None = None,
    ) -> TurnResult:
        """
        Run one turn.

        Raises ValidationError or CredentialError before anything is
        generated. Every other outcome (completed, aborted, failed) is
        returned so the caller can persist the partial history.
        """
        cancel = cancel or CancellationToken()
        if sink is not None:
            sink.on_close(lambda: cancel.cancel("output stream closed"))

        input_text = ""
        if request.messages:
            input_text = request.messages[-1].text
        turn_id = self.runtime.start(
            session_id=request.session_id,
            scope=request.scope,
            model=request.model or self.model,
            input_text=input_text,
        )
        self.runtime.transition(turn_id, "validating")
        try:
            model, credential = self._validate(request)
        except AgentError as exc:
            category = "validation" if isinstance(exc, ValidationError) else "credentials"
            logger.warning(f"Turn {turn_id} rejected: {exc}")
            self.runtime.transition(turn_id, "failed", str(exc))
            await self._emit(sink, ErrorEvent(category=category, message=str(exc)))
            if sink is not None:
                sink.finish()
            raise

        history = prepare_history(list(request.messages or []))
        tools = self.build_tools()
        executor = ToolExecutor(
            request.approval,
            self.policy,
            workspace=request.workspace or self.workspace,
            channel=request.channel,
            sender_id=request.sender_id,
            ledger=self._ledger,
        )
        executor.record_history(history)

        def _progress(data: dict[str, Any]) -> None:
            if sink is not None:
                sink.send_nowait(ToolProgressEvent(call_id=str(data.get("toolCallId", "")), data=data))

        self.runtime.transition(turn_id, "generating", model)
        logger.info(f"Turn {turn_id} generating for session {request.session_id} with {model}")
        new_messages: list[Message] = []
        pending: list[ToolApprovalRequestPart] = []
        buffer: _StepBuffer | None = None
        status: TurnStatus = "completed"
        error: GenerationError | None = None

        try:
            history, resumed = await executor.resume_approvals(
                history, tools, cancel=cancel, emit_progress=_progress
            )
            for result in resumed:
                await self._emit(
                    sink,
                    ToolResultEvent(
                        call_id=result.call_id,
                        tool_name=result.tool_name,
                        output=result.output,
                        is_error=result.is_error,
                    ),
                )

            system_prompt = self.context.build_system_prompt(tools.tool_names, request.gateway_context)
            definitions = tools.get_definitions()
            for step in range(self.max_steps):
                cancel.raise_if_cancelled()
                buffer = _StepBuffer(new_message_id())
                await self._stream_step(
                    buffer,
                    system_prompt=system_prompt,
                    messages=history + new_messages,
                    definitions=definitions,
                    model=model,
                    credential=credential,
                    reasoning_effort=request.reasoning_effort,
                    sink=sink,
                    cancel=cancel,
                    turn_id=turn_id,
                )
                for call in buffer.calls:
                    outcome = await executor.execute(call, tools, cancel=cancel, emit_progress=_progress)
                    if outcome.suspended:
                        buffer.approvals.append(outcome.approval)
                        await self._emit(
                            sink,
                            ToolApprovalRequestEvent(
                                approval_id=outcome.approval.approval_id,
                                call_id=call.call_id,
                                tool_name=call.tool_name,
                                input=call.input,
                            ),
                        )
                        continue
                    buffer.results.append(outcome.result)
                    self.runtime.append_event(turn_id, "tool", call.tool_name)
                    await self._emit(
                        sink,
                        ToolResultEvent(
                            call_id=call.call_id,
                            tool_name=call.tool_name,
                            output=outcome.result.output,
                            is_error=outcome.result.is_error,
                        ),
                    )

                self._commit(buffer, new_messages)
                finished_step = buffer
                buffer = None
                if finished_step.approvals:
                    pending = list(finished_step.approvals)
                    logger.info(f"Turn {turn_id} suspended on {len(pending)} approval request(s)")
                    break
                if not finished_step.calls:
                    break
            else:
                logger.warning(f"Turn {turn_id} reached the step limit ({self.max_steps})")
        except TurnCancelled as exc:
            status = "aborted"
            logger.info(f"Turn {turn_id} cancelled: {exc}")
            if exc.history is not None:
                history = exc.history
            if buffer is not None:
                self._commit(buffer, new_messages, settled_only=True)
        except GenerationError as exc:
            status = "failed"
            error = exc
            logger.error(f"Turn {turn_id} failed ({exc.category}): {exc.detail or exc}")
            if buffer is not None:
                self._commit(buffer, new_messages, settled_only=True)

        text = self._final_text(new_messages)
        if status == "failed" and error is not None:
            self.runtime.transition(turn_id, "failed", error.detail or error.user_message, output_text=text)
            await self._emit(sink, ErrorEvent(category=error.category, message=error.user_message))
        else:
            self.runtime.transition(turn_id, status, output_text=text)
            await self._emit(sink, FinishEvent(status=status, session_id=request.session_id))
        if sink is not None:
            sink.finish()

        return TurnResult(
            status=status,
            session_id=request.session_id,
            messages=history + new_messages,
            new_messages=new_messages,
            text=text,
            pending_approvals=pending,
            error=error,
            turn_id=turn_id,
        )

    @staticmethod
    def _commit(buffer: _StepBuffer, new_messages: list[Message], settled_only: bool = False) -> None:
        assistant = buffer.assistant_message(settled_only=settled_only)
        if assistant is not None:
            new_messages.append(assistant)
        tool_message = buffer.tool_message()
        if tool_message is not None:
            new_messages.append(tool_message)

    @staticmethod
    def _final_text(new_messages: list[Message]) -> str:
        for message in reversed(new_messages):
            if message.role == "assistant" and message.has_text():
                return message.text
        return ""

    async def _stream_step(
        self,
        buffer: _StepBuffer,
        *,
        system_prompt: str,
        messages: list[Message],
        definitions: list[dict[str, Any]],
        model: str,
        credential: Credential,
        reasoning_effort: str | None,
        sink: EventStream | None,
        cancel: CancellationToken,
        turn_id: str,
    ) -> None:
        """Stream one step, falling back to the next model if nothing was produced yet."""
        chain = [model] + [name for name in self.model_chain[1:] if name != model]
        for index, model_name in enumerate(chain):
            step_credential = credential if model_name == model else self.credentials.resolve(model_name)
            if step_credential is None:
                continue
            try:
                await self._consume_stream(
                    buffer,
                    system_prompt=system_prompt,
                    messages=messages,
                    definitions=definitions,
                    model=model_name,
                    credential=step_credential,
                    reasoning_effort=reasoning_effort,
                    sink=sink,
                    cancel=cancel,
                )
                return
            except (TurnCancelled, GenerationError):
                raise
            except Exception as exc:
                failure = classify_generation_error(exc)
                has_next = index < len(chain) - 1
                if has_next and not buffer.produced_output and should_failover_model(failure):
                    next_model = chain[index + 1]
                    logger.warning(f"LLM call failed on {model_name}; retrying with fallback {next_model}")
                    self.runtime.append_event(turn_id, "llm_model_fallback", f"{model_name}->{next_model}")
                    continue
                raise failure from exc

    async def _consume_stream(
        self,
        buffer: _StepBuffer,
        *,
        system_prompt: str,
        messages: list[Message],
        definitions: list[dict[str, Any]],
        model: str,
        credential: Credential,
        reasoning_effort: str | None,
        sink: EventStream | None,
        cancel: CancellationToken,
    ) -> None:
        stream = self.provider.stream(
            system_prompt=system_prompt,
            messages=messages,
            tools=definitions or None,
            model=model,
            reasoning_effort=reasoning_effort,
            credential=credential,
            cancel=cancel,
        )
        iterator = stream.__aiter__()
        try:
            while True:
                try:
                    delta = await cancel.run(iterator.__anext__())
                except StopAsyncIteration:
                    break
                if delta.kind == "text" and delta.text:
                    buffer.produced_output = True
                    buffer.text.append(delta.text)
                    await self._emit(sink, TextDelta(message_id=buffer.message_id, delta=delta.text))
                elif delta.kind == "reasoning" and delta.text:
                    buffer.produced_output = True
                    buffer.reasoning.append(delta.text)
                    await self._emit(sink, ReasoningDelta(message_id=buffer.message_id, delta=delta.text))
                elif delta.kind == "tool-call" and delta.tool_call is not None:
                    buffer.produced_output = True
                    call = ToolCallPart(
                        call_id=delta.tool_call.id,
                        tool_name=delta.tool_call.name,
                        input=delta.tool_call.arguments,
                    )
                    buffer.calls.append(call)
                    await self._emit(
                        sink,
                        ToolCallEvent(call_id=call.call_id, tool_name=call.tool_name, input=call.input),
                    )
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except RuntimeError:
                    logger.debug("Provider stream was already closing")
