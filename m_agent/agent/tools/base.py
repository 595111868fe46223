"""Tool interface shared by built-in and externally discovered tools."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from m_agent.agent.cancellation import CancellationToken
    from m_agent.agent.tools.approval import ApprovalSettings

ProgressCallback = Callable[[dict[str, Any]], None]

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


@dataclass(slots=True)
class ToolContext:
    """Per-call runtime context handed to ``Tool.execute``."""

    call_id: str
    cancel: CancellationToken | None = None
    workspace: Path | None = None
    emit_progress: ProgressCallback | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def progress(self, data: dict[str, Any]) -> None:
        if self.emit_progress is not None:
            self.emit_progress(data)


class Tool(ABC):
    """
    Abstract base class for agent tools.

    ``requires_approval`` is the static approval class of a tool. Tools whose
    risk depends on the arguments (the shell tool) override
    ``needs_approval``.
    """

    requires_approval: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name used in function calls."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Description of what the tool does."""

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""

    @abstractmethod
    async def execute(self, context: ToolContext, **kwargs: Any) -> Any:
        """Run the tool. Return a string or JSON-serializable value."""

    def needs_approval(self, params: dict[str, Any], settings: ApprovalSettings) -> bool:
        return self.requires_approval

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        """Return a list of problems with ``params`` (empty when valid)."""
        if not isinstance(params, dict):
            return ["parameters must be an object"]
        schema = self.parameters or {}
        errors: list[str] = []
        for key in schema.get("required", []):
            if key not in params:
                errors.append(f"missing required parameter '{key}'")
        properties = schema.get("properties", {})
        for key, value in params.items():
            spec = properties.get(key)
            if not spec or value is None:
                continue
            expected = _JSON_TYPES.get(spec.get("type", ""))
            if expected is None:
                continue
            if isinstance(value, bool) and spec.get("type") in {"integer", "number"}:
                errors.append(f"parameter '{key}' should be {spec['type']}")
            elif not isinstance(value, expected):
                errors.append(f"parameter '{key}' should be {spec['type']}")
        return errors

    def to_schema(self) -> dict[str, Any]:
        """OpenAI function-calling schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
