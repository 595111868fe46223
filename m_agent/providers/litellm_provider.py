"""LiteLLM provider implementation for multi-provider streaming."""

from __future__ import annotations

import json
import uuid
from typing import TYPE_CHECKING, Any, AsyncIterator

import litellm
from loguru import logger

from m_agent.agent.messages import (
    FilePart,
    Message,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from m_agent.errors import TurnCancelled
from m_agent.providers.base import LLMProvider, StreamDelta

if TYPE_CHECKING:
    from m_agent.agent.cancellation import CancellationToken
    from m_agent.providers.credentials import Credential

DEFAULT_MODEL = "anthropic/claude-opus-4-5"


def _stringify_output(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, default=str)


def to_openai_messages(system_prompt: str, messages: list[Message]) -> list[dict[str, Any]]:
    """
    Convert conversation messages to OpenAI chat format.

    Tool calls without a result are omitted (providers reject unpaired
    calls). Reasoning and approval parts are not sent.
    """
    answered = {
        part.call_id
        for message in messages
        if message.role == "tool"
        for part in message.parts
        if isinstance(part, ToolResultPart)
    }
    converted: list[dict[str, Any]] = []
    if system_prompt:
        converted.append({"role": "system", "content": system_prompt})

    for message in messages:
        if message.role == "system":
            if message.text:
                converted.append({"role": "system", "content": message.text})
        elif message.role == "user":
            images = message.images()
            if images:
                content: list[dict[str, Any]] = []
                if message.text:
                    content.append({"type": "text", "text": message.text})
                for image in images:
                    content.append({"type": "image_url", "image_url": {"url": image.data}})
                converted.append({"role": "user", "content": content})
            else:
                converted.append({"role": "user", "content": message.text})
        elif message.role == "assistant":
            calls = [
                {
                    "id": part.call_id,
                    "type": "function",
                    "function": {
                        "name": part.tool_name,
                        "arguments": json.dumps(part.input if part.input is not None else {}),
                    },
                }
                for part in message.parts
                if isinstance(part, ToolCallPart) and part.call_id in answered
            ]
            text = message.text
            if not text and not calls:
                continue
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            if calls:
                entry["tool_calls"] = calls
            converted.append(entry)
        elif message.role == "tool":
            for part in message.parts:
                if isinstance(part, ToolResultPart):
                    converted.append(
                        {
                            "role": "tool",
                            "tool_call_id": part.call_id,
                            "name": part.tool_name,
                            "content": _stringify_output(part.output),
                        }
                    )
    return converted


def _parse_arguments(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Could not parse tool arguments: {raw[:200]}")
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Streams chat completions and assembles tool-call fragments into complete
    calls at the end of each step.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = DEFAULT_MODEL,
        extra_headers: dict[str, str] | None = None,
        provider_name: str | None = None,
        max_tokens: int = 8192,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = extra_headers or {}
        self.provider_name = provider_name
        self.max_tokens = max_tokens
        self.temperature = temperature
        litellm.suppress_debug_info = True
        litellm.drop_params = True

    def _resolve_model(self, model: str, provider: str | None) -> str:
        if provider == "openrouter" and not model.startswith("openrouter/"):
            return f"openrouter/{model}"
        return model

    async def stream(
        self,
        *,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        reasoning_effort: str | None = None,
        credential: Credential | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamDelta]:
        provider = credential.provider if credential else self.provider_name
        kwargs: dict[str, Any] = {
            "model": self._resolve_model(model or self.default_model, provider),
            "messages": to_openai_messages(system_prompt, messages),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": True,
        }
        api_key = credential.api_key if credential else self.api_key
        api_base = (credential.api_base if credential else None) or self.api_base
        if api_key:
            kwargs["api_key"] = api_key
        if api_base:
            kwargs["api_base"] = api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if reasoning_effort:
            kwargs["reasoning_effort"] = reasoning_effort

        response = await litellm.acompletion(**kwargs)
        pending: dict[int, dict[str, str]] = {}
        finish_reason = "stop"
        usage: dict[str, int] = {}

        async for chunk in response:
            if cancel is not None and cancel.cancelled:
                raise TurnCancelled(cancel.reason or "cancelled")
            chunk_usage = getattr(chunk, "usage", None)
            if chunk_usage:
                usage = {
                    "prompt_tokens": int(getattr(chunk_usage, "prompt_tokens", 0) or 0),
                    "completion_tokens": int(getattr(chunk_usage, "completion_tokens", 0) or 0),
                }
            if not getattr(chunk, "choices", None):
                continue
            choice = chunk.choices[0]
            delta = getattr(choice, "delta", None)
            if delta is not None:
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield StreamDelta.reasoning_delta(reasoning)
                content = getattr(delta, "content", None)
                if content:
                    yield StreamDelta.text_delta(content)
                for fragment in getattr(delta, "tool_calls", None) or []:
                    index = getattr(fragment, "index", None)
                    slot = pending.setdefault(
                        index if index is not None else len(pending),
                        {"id": "", "name": "", "arguments": ""},
                    )
                    if getattr(fragment, "id", None):
                        slot["id"] = fragment.id
                    function = getattr(fragment, "function", None)
                    if function is not None:
                        if getattr(function, "name", None):
                            slot["name"] = function.name
                        if getattr(function, "arguments", None):
                            slot["arguments"] += function.arguments
            if getattr(choice, "finish_reason", None):
                finish_reason = choice.finish_reason

        for index in sorted(pending):
            slot = pending[index]
            if not slot["name"]:
                continue
            yield StreamDelta.call(
                slot["id"] or f"call_{uuid.uuid4().hex[:24]}",
                slot["name"],
                _parse_arguments(slot["arguments"]),
            )
        yield StreamDelta.finish(finish_reason, usage)

    def get_default_model(self) -> str:
        return self.default_model
