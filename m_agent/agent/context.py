"""Context builder for assembling the system prompt of a turn."""

import platform
from datetime import datetime
from pathlib import Path

from m_agent.agent.messages import (
    Message,
    ToolApprovalRequestPart,
    ToolApprovalResponsePart,
    ToolResultPart,
)


class ContextBuilder:
    """
    Builds the system prompt for a turn.

    Assembles identity and operating rules, workspace bootstrap files, the
    tool list, and (for gateway turns) the gateway context block.
    """

    BOOTSTRAP_FILES = ["AGENTS.md", "SOUL.md", "USER.md", "TOOLS.md"]

    def __init__(self, workspace: Path):
        self.workspace = workspace

    def build_system_prompt(
        self,
        tool_names: list[str] | None = None,
        gateway_context: str | None = None,
    ) -> str:
        """
        Build the system prompt.

        Args:
            tool_names: Names of the tools available this turn.
            gateway_context: Optional block describing the external sender.

        Returns:
            Complete system prompt.
        """
        parts = []

        # Core identity
        parts.append(self._get_identity())

        # Bootstrap files
        bootstrap = self._load_bootstrap_files()
        if bootstrap:
            parts.append(bootstrap)

        if tool_names:
            listing = "\n".join(f"- {name}" for name in sorted(tool_names))
            parts.append(f"# Tools\n\n{listing}")

        if gateway_context:
            parts.append(gateway_context)

        return "\n\n---\n\n".join(parts)

    def _get_identity(self) -> str:
        """Get the core identity section."""
        now = datetime.now().strftime("%Y-%m-%d %H:%M (%A)")
        workspace_path = str(self.workspace.expanduser().resolve())
        system = platform.system()
        runtime = f"{'macOS' if system == 'Darwin' else system} {platform.machine()}, Python {platform.python_version()}"

        return f"""# m-agent

You are m-agent, a pragmatic assistant working inside the user's workspace.

## Operating Rules
- Be concise, accurate, and action-oriented.
- For normal conversation, respond directly in text.
- Some tool calls need the user's approval (destructive file operations, commands outside the sandbox, commands matching dangerous patterns). When a call is waiting for approval, say what you want to do and why, then stop.
- If a tool call was denied, do not retry it; suggest an alternative.
- If a tool fails, explain the failure plainly and provide the next best step.
- Respect workspace and security constraints.

## Current Time
{now}

## Runtime
{runtime}

## Workspace
Your workspace is at: {workspace_path}"""

    def _load_bootstrap_files(self) -> str:
        """Load all bootstrap files from workspace."""
        parts = []

        for filename in self.BOOTSTRAP_FILES:
            file_path = self.workspace / filename
            if file_path.exists():
                content = file_path.read_text(encoding="utf-8")
                parts.append(f"## {filename}\n\n{content}")

        return "\n\n".join(parts) if parts else ""

    @staticmethod
    def tool_message(message_id: str, parts: list[ToolResultPart | ToolApprovalResponsePart]) -> Message:
        """Wrap tool results in a tool-role message."""
        return Message(id=message_id, role="tool", parts=list(parts))

    @staticmethod
    def approval_response(
        message_id: str,
        request: ToolApprovalRequestPart,
        approved: bool,
        reason: str | None = None,
    ) -> Message:
        """Tool message answering an approval request."""
        return Message(
            id=message_id,
            role="tool",
            parts=[
                ToolApprovalResponsePart(
                    approval_id=request.approval_id,
                    approved=approved,
                    reason=reason,
                )
            ],
        )
