"""Tool execution with approval gating and at-most-once semantics."""

from __future__ import annotations

import json
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from m_agent.agent.cancellation import CancellationToken
from m_agent.agent.messages import (
    Message,
    ToolApprovalRequestPart,
    ToolApprovalResponsePart,
    ToolCallPart,
    ToolResultPart,
)
from m_agent.agent.tools.approval import ApprovalSettings, ToolPolicy
from m_agent.agent.tools.base import ProgressCallback, ToolContext
from m_agent.agent.tools.registry import ToolRegistry
from m_agent.errors import ToolExecutionError, TurnCancelled

DEFAULT_DENIAL_REASON = "The user denied this tool call."


@dataclass(slots=True)
class ToolOutcome:
    """Either an executed result or a suspension waiting for approval."""

    call: ToolCallPart
    result: ToolResultPart | None = None
    approval: ToolApprovalRequestPart | None = None
    reused: bool = False

    @property
    def suspended(self) -> bool:
        return self.approval is not None


def _error_result(call: ToolCallPart, message: str) -> ToolResultPart:
    return ToolResultPart(
        call_id=call.call_id,
        tool_name=call.tool_name,
        output={"error": message},
        is_error=True,
    )


def _output_is_error(output: Any) -> bool:
    return isinstance(output, str) and output.strip().lower().startswith("error")


class ToolExecutor:
    """
    Runs tool calls for a turn.

    A ledger keyed by call id makes execution at-most-once: a call id that
    has already started is never run again, its recorded result is reused.
    """

    def __init__(
        self,
        settings: ApprovalSettings | None = None,
        policy: ToolPolicy | None = None,
        *,
        workspace: Path | None = None,
        channel: str = "",
        sender_id: str = "",
        ledger_size: int = 4096,
        ledger: OrderedDict[str, ToolResultPart | None] | None = None,
    ):
        self.settings = settings or ApprovalSettings()
        self.policy = policy or ToolPolicy()
        self.workspace = workspace
        self.channel = channel
        self.sender_id = sender_id
        self.ledger_size = max(16, ledger_size)
        self._ledger: OrderedDict[str, ToolResultPart | None] = ledger if ledger is not None else OrderedDict()

    def _remember(self, call_id: str, result: ToolResultPart | None) -> None:
        self._ledger[call_id] = result
        self._ledger.move_to_end(call_id)
        while len(self._ledger) > self.ledger_size:
            self._ledger.popitem(last=False)

    def has_run(self, call_id: str) -> bool:
        return call_id in self._ledger

    def record_history(self, history: list[Message]) -> None:
        """Seed the ledger with results already present in ``history``."""
        for message in history:
            if message.role != "tool":
                continue
            for part in message.parts:
                if isinstance(part, ToolResultPart) and part.call_id not in self._ledger:
                    self._remember(part.call_id, part)

    def _reuse(self, call: ToolCallPart) -> ToolOutcome:
        recorded = self._ledger.get(call.call_id)
        if recorded is None:
            recorded = _error_result(call, "Tool call was already started; its result is unavailable.")
        logger.debug(f"Skipping duplicate execution of tool call {call.call_id}")
        return ToolOutcome(call=call, result=recorded, reused=True)

    async def execute(
        self,
        call: ToolCallPart,
        tools: ToolRegistry,
        *,
        cancel: CancellationToken | None = None,
        emit_progress: ProgressCallback | None = None,
    ) -> ToolOutcome:
        """Execute ``call`` or suspend it for approval."""
        if call.call_id in self._ledger:
            return self._reuse(call)

        tool = tools.get(call.tool_name)
        if tool is None:
            result = _error_result(call, f"Tool not found: {call.tool_name}")
            self._remember(call.call_id, result)
            return ToolOutcome(call=call, result=result)

        params = call.input if isinstance(call.input, dict) else {}
        decision = self.policy.resolve(call.tool_name, self.channel, self.sender_id)
        if decision == "deny":
            result = _error_result(call, f"Tool '{call.tool_name}' is blocked by policy.")
            self._remember(call.call_id, result)
            return ToolOutcome(call=call, result=result)

        if decision == "ask" or tool.needs_approval(params, self.settings):
            approval = ToolApprovalRequestPart(
                approval_id=f"approval-{uuid.uuid4().hex}",
                call_id=call.call_id,
            )
            logger.info(f"Tool '{call.tool_name}' ({call.call_id}) awaits approval {approval.approval_id}")
            return ToolOutcome(call=call, approval=approval)

        result = await self.run(call, tools, cancel=cancel, emit_progress=emit_progress)
        return ToolOutcome(call=call, result=result)

    async def run(
        self,
        call: ToolCallPart,
        tools: ToolRegistry,
        *,
        cancel: CancellationToken | None = None,
        emit_progress: ProgressCallback | None = None,
    ) -> ToolResultPart:
        """Run a call without approval checks (already approved or not gated)."""
        if call.call_id in self._ledger:
            return self._reuse(call).result  # type: ignore[return-value]

        tool = tools.get(call.tool_name)
        if tool is None:
            result = _error_result(call, f"Tool not found: {call.tool_name}")
            self._remember(call.call_id, result)
            return result

        params = call.input if isinstance(call.input, dict) else {}
        errors = tool.validate_params(params)
        if errors:
            result = _error_result(
                call, f"Invalid parameters for tool '{call.tool_name}': " + "; ".join(errors)
            )
            self._remember(call.call_id, result)
            return result

        self._remember(call.call_id, None)
        context = ToolContext(
            call_id=call.call_id,
            cancel=cancel,
            workspace=self.workspace,
            emit_progress=emit_progress,
        )
        logger.debug(f"Executing tool {call.tool_name} ({call.call_id}) with {json.dumps(params, default=str)[:400]}")
        try:
            awaitable = tool.execute(context, **params)
            output = await (cancel.run(awaitable) if cancel is not None else awaitable)
        except TurnCancelled:
            raise
        except ToolExecutionError as exc:
            result = _error_result(call, str(exc))
        except Exception as exc:
            logger.warning(f"Tool {call.tool_name} ({call.call_id}) failed: {exc}")
            result = _error_result(call, f"Error executing {call.tool_name}: {exc}")
        else:
            result = ToolResultPart(
                call_id=call.call_id,
                tool_name=call.tool_name,
                output=output,
                is_error=_output_is_error(output),
            )
        self._remember(call.call_id, result)
        return result

    async def resume_approvals(
        self,
        history: list[Message],
        tools: ToolRegistry,
        *,
        cancel: CancellationToken | None = None,
        emit_progress: ProgressCallback | None = None,
    ) -> tuple[list[Message], list[ToolResultPart]]:
        """
        Act on approval responses whose call has no result yet.

        Approved calls are executed now; denied calls get a denial result and
        are never retried. Results are added to the tool message that carries
        the response. Returns the updated history and the new results.
        """
        calls: dict[str, ToolCallPart] = {}
        approval_to_call: dict[str, str] = {}
        answered: set[str] = set()
        for message in history:
            for part in message.parts:
                if isinstance(part, ToolCallPart):
                    calls[part.call_id] = part
                elif isinstance(part, ToolApprovalRequestPart):
                    approval_to_call[part.approval_id] = part.call_id
                elif isinstance(part, ToolResultPart):
                    answered.add(part.call_id)

        updated: list[Message] = []
        produced: list[ToolResultPart] = []
        for index, message in enumerate(history):
            if message.role != "tool":
                updated.append(message)
                continue
            additions: list[ToolResultPart] = []
            try:
                for part in message.parts:
                    if not isinstance(part, ToolApprovalResponsePart):
                        continue
                    call_id = approval_to_call.get(part.approval_id)
                    call = calls.get(call_id or "")
                    if call is None or call.call_id in answered:
                        continue
                    if part.approved:
                        logger.info(f"Approval {part.approval_id} granted; running {call.tool_name}")
                        result = await self.run(call, tools, cancel=cancel, emit_progress=emit_progress)
                    else:
                        logger.info(f"Approval {part.approval_id} denied for {call.tool_name}")
                        result = ToolResultPart(
                            call_id=call.call_id,
                            tool_name=call.tool_name,
                            output={"denied": True, "reason": part.reason or DEFAULT_DENIAL_REASON},
                        )
                        self._remember(call.call_id, result)
                    answered.add(call.call_id)
                    additions.append(result)
            except TurnCancelled as exc:
                # Results finished before the cancel stay in the history.
                if additions:
                    message = message.model_copy(update={"parts": [*message.parts, *additions]})
                raise TurnCancelled(str(exc), history=[*updated, message, *history[index + 1 :]]) from exc
            if additions:
                produced.extend(additions)
                message = message.model_copy(update={"parts": [*message.parts, *additions]})
            updated.append(message)
        return updated, produced
