"""
Conversation repair: make a stored history safe to send to a model.

A history can hold tool calls that never got a result (the turn was cancelled,
the process died, a tool provider disappeared). Most providers reject such a
request outright, so before every generation the history is normalized:

* a tool call survives only if it has a result or is waiting on an approval
  decision;
* an assistant message left with nothing worth sending is dropped, except
  the last message of the conversation, which is always kept.
"""

from __future__ import annotations

from loguru import logger

from m_agent.agent.messages import (
    Message,
    ReasoningPart,
    TextPart,
    ToolApprovalRequestPart,
    ToolApprovalResponsePart,
    ToolCallPart,
    ToolResultPart,
)


def _valid_call_ids(history: list[Message]) -> set[str]:
    resolved: set[str] = set()
    pending: set[str] = set()
    approval_to_call: dict[str, str] = {}
    responses: list[str] = []

    for message in history:
        for part in message.parts:
            if message.role == "tool" and isinstance(part, ToolResultPart):
                resolved.add(part.call_id)
            elif message.role == "tool" and isinstance(part, ToolApprovalResponsePart):
                responses.append(part.approval_id)
            elif message.role == "assistant" and isinstance(part, ToolApprovalRequestPart):
                approval_to_call[part.approval_id] = part.call_id
                pending.add(part.call_id)

    for approval_id in responses:
        call_id = approval_to_call.get(approval_id)
        if call_id is None:
            continue
        pending.discard(call_id)
        resolved.add(call_id)

    return resolved | pending


def _is_substantive(message: Message) -> bool:
    return message.has_text() or bool(message.tool_calls())


def _repair_once(history: list[Message]) -> list[Message]:
    valid = _valid_call_ids(history)
    last_index = len(history) - 1
    repaired: list[Message] = []

    for index, message in enumerate(history):
        if message.role != "assistant":
            repaired.append(message)
            continue

        kept = []
        for part in message.parts:
            if isinstance(part, ToolCallPart) and part.call_id not in valid:
                logger.warning(
                    f"Removing dangling tool call {part.call_id} ({part.tool_name}) "
                    f"from message {message.id}"
                )
                continue
            kept.append(part)

        candidate = message if len(kept) == len(message.parts) else message.model_copy(
            update={"parts": kept}
        )
        if index == last_index or _is_substantive(candidate):
            repaired.append(candidate)
        else:
            logger.debug(f"Dropping empty assistant message {message.id}")
    return repaired


def repair_messages(history: list[Message]) -> list[Message]:
    """
    Return a repaired copy of ``history``.

    Pure and deterministic. The filter passes repeat until the output stops
    changing, so ``repair_messages(repair_messages(h)) == repair_messages(h)``.
    """
    current = list(history)
    while True:
        repaired = _repair_once(current)
        if repaired == current:
            return repaired
        current = repaired


def _is_blank(message: Message) -> bool:
    if not message.parts:
        return True
    for part in message.parts:
        if isinstance(part, (TextPart, ReasoningPart)):
            if part.text.strip():
                return False
            continue
        return False
    return True


def prune_empty_messages(history: list[Message]) -> list[Message]:
    """Drop messages that carry no parts or only blank text."""
    return [message for message in history if not _is_blank(message)]


def prepare_history(history: list[Message]) -> list[Message]:
    """Prune blank messages, then repair tool-call pairing."""
    return repair_messages(prune_empty_messages(history))
