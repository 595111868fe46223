"""Error taxonomy for turns, tools and storage."""

from __future__ import annotations

from typing import Any, Literal

ErrorCategory = Literal[
    "authentication",
    "rate_limited",
    "transient_service",
    "context_too_long",
    "unknown",
]


class AgentError(Exception):
    """Base class for m-agent errors."""


class ValidationError(AgentError):
    """A request is malformed (for example the message list is missing)."""


class CredentialError(AgentError):
    """No usable credential exists for the requested model."""

    def __init__(self, model: str, message: str | None = None):
        self.model = model
        super().__init__(
            message
            or f"No API key configured for model '{model}'. Add one in settings or via environment."
        )


class GenerationError(AgentError):
    """The generation capability failed mid-turn."""

    def __init__(self, category: ErrorCategory, user_message: str, detail: str = ""):
        self.category = category
        self.user_message = user_message
        self.detail = detail
        super().__init__(user_message)


class ToolExecutionError(AgentError):
    """A tool failed; surfaced to the model as an error result, never fatal."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(message)


class TurnCancelled(AgentError):
    """The turn was cancelled by its caller.

    ``history`` carries the conversation including any tool results that
    finished before the cancellation, when the raiser had them.
    """

    def __init__(self, message: str = "cancelled", *, history: list[Any] | None = None):
        self.history = history
        super().__init__(message)


class StoreError(AgentError):
    """Session persistence failed."""


_AUTH_MARKERS = (
    "401",
    "403",
    "unauthorized",
    "forbidden",
    "authenticationerror",
    "invalid_api_key",
    "invalid api key",
    "api key not found",
    "permissiondenied",
)
_RATE_LIMIT_MARKERS = (
    "429",
    "rate limit",
    "ratelimiterror",
    "too many requests",
    "quota",
    "credit",
    "balance",
    "billing",
)
_CONTEXT_MARKERS = (
    "context length",
    "context_length",
    "contextwindowexceeded",
    "token limit",
    "too long",
    "maximum context",
)
_TRANSIENT_MARKERS = (
    "500",
    "502",
    "503",
    "529",
    "internal server error",
    "internal_server_error",
    "bad gateway",
    "badgatewayerror",
    "service unavailable",
    "serviceunavailable",
    "overloaded",
    "econnrefused",
    "enotfound",
    "connection",
    "timeout",
    "timed out",
    "etimedout",
)


def _user_message(category: ErrorCategory, text: str, raw: str) -> str:
    if category == "authentication":
        if "403" in text or "forbidden" in text:
            return "API access denied. Your API key may not have access to this model."
        if "invalid_api_key" in text or "invalid api key" in text:
            return "Invalid API key. Please check your API key in settings."
        return "API authentication failed. Please check your API key is valid."
    if category == "rate_limited":
        if any(marker in text for marker in ("credit", "balance", "billing")):
            return "API billing issue. Please check your account has sufficient credits."
        return "Rate limit exceeded. Please wait a moment and try again."
    if category == "context_too_long":
        return "The conversation is too long. Try starting a new chat or removing some messages."
    if category == "transient_service":
        if "econnrefused" in text or "enotfound" in text or "connection" in text:
            return "Could not connect to the AI service. Please check your network connection."
        if "timeout" in text or "timed out" in text or "etimedout" in text:
            return "The request timed out. Please try again."
        if "503" in text or "service unavailable" in text or "overloaded" in text:
            return "The AI service is overloaded. Please try again in a moment."
        if "502" in text or "bad gateway" in text:
            return "The AI service is temporarily unavailable. Please try again."
        return "The AI service encountered an internal error. Please try again."
    return raw or "An unexpected error occurred. Please try again."


def classify_generation_error(exc: BaseException) -> GenerationError:
    """Map a provider exception onto a categorized GenerationError."""
    if isinstance(exc, GenerationError):
        return exc
    raw = str(exc) or exc.__class__.__name__
    text = f"{exc.__class__.__name__} {raw}".lower()
    category: ErrorCategory = "unknown"
    # Context checks run first: providers often wrap them in a 400 with "token" wording.
    if any(marker in text for marker in _CONTEXT_MARKERS):
        category = "context_too_long"
    elif any(marker in text for marker in _AUTH_MARKERS):
        category = "authentication"
    elif any(marker in text for marker in _RATE_LIMIT_MARKERS):
        category = "rate_limited"
    elif any(marker in text for marker in _TRANSIENT_MARKERS) or isinstance(
        exc, (TimeoutError, ConnectionError)
    ):
        category = "transient_service"
    return GenerationError(category, _user_message(category, text, raw), detail=raw)


def should_failover_model(error: GenerationError) -> bool:
    """Whether a failure is worth retrying on the next model in the chain."""
    if error.category in {"authentication", "rate_limited", "transient_service"}:
        return True
    text = error.detail.lower()
    return any(
        marker in text
        for marker in ("notfounderror", "model not found", "unknown provider", "no such model")
    )
