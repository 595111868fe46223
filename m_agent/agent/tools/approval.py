"""Approval settings and tool policy resolution."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import cached_property

from loguru import logger

DEFAULT_DANGEROUS_PATTERNS: tuple[str, ...] = (
    # files
    r"\brm\s+(-[a-z]*r[a-z]*|-[a-z]*f[a-z]*r)\b",
    r"\bmv\s+/\s",
    r"\bshred\b",
    # privileges and disks
    r"\bsudo\b",
    r"\b(mkfs|dd|fdisk|parted)\b",
    r">\s*/dev/(sd|hd|nvme|disk)",
    r"\bchmod\s+(-[a-z]*\s+)?7[0-7]{2}\b",
    r"\bchmod\s+-R\s+777\b",
    r"\bchown\s+(-[a-z]*\s+)?root\b",
    # remote execution
    r"\b(curl|wget)\b.*\|\s*(bash|sh|zsh)\b",
    r":\(\)\s*\{.*:\|:.*\}",
    # processes
    r"\bkill\s+(-9|-KILL)\s",
    r"\bpkill\s+(-9|-KILL)\s",
    r"\b(shutdown|reboot|halt|poweroff)\b",
    # git
    r"\bgit\s+push\s+.*(-f|--force).*\b(main|master)\b",
    r"\bgit\s+push\s+.*\b(main|master)\b.*(-f|--force)",
    r"\bgit\s+reset\s+--hard\b",
    r"\bgit\s+clean\s+-[a-z]*f",
    r"\bgit\s+push\s+.*:(?!\s)",
    r"\bgit\s+push\s+--delete\b",
    # containers
    r"\bdocker\s+system\s+prune\b",
    r"\bdocker\s+(rm|rmi)\s+(-[a-z]*f|-[a-z]*a)",
    r"\bdocker\s+container\s+prune\b",
    # databases
    r"\b(drop\s+database|drop\s+table)\b",
    r"\btruncate\s+table\b",
    r"\bdelete\s+from\s+\w+\s*(;|$|where\s+1)",
)


@dataclass
class ApprovalSettings:
    """Per-turn approval switches sent by the caller."""

    require_unsandboxed_approval: bool = True
    require_dangerous_command_approval: bool = True
    dangerous_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_DANGEROUS_PATTERNS))

    @cached_property
    def compiled_patterns(self) -> list[re.Pattern[str]]:
        compiled: list[re.Pattern[str]] = []
        for raw in self.dangerous_patterns:
            if not raw or not raw.strip():
                continue
            try:
                compiled.append(re.compile(raw, re.IGNORECASE))
            except re.error as exc:
                logger.warning(f"Ignoring invalid dangerous command pattern {raw!r}: {exc}")
        return compiled

    def matches_dangerous(self, command: str) -> str | None:
        """Return the first pattern matching ``command``, if any."""
        for pattern in self.compiled_patterns:
            if pattern.search(command or ""):
                return pattern.pattern
        return None


class ToolPolicy:
    """
    Config-level allow/ask/deny decisions.

    Keys are matched most specific first: ``channel:sender:tool``,
    ``channel:sender:*``, ``channel:*:tool``, ``channel:*:*``, ``channel:tool``,
    ``tool``, ``*``. Under ``approval_mode="confirm"`` the default for tools in
    ``risky_tools`` is ``ask``; otherwise ``allow``.
    """

    def __init__(
        self,
        policy: dict[str, str] | None = None,
        risky_tools: list[str] | None = None,
        approval_mode: str = "off",
    ):
        self.policy = {
            (k or "").strip().lower(): (v or "").strip().lower()
            for k, v in (policy or {}).items()
            if (k or "").strip() and (v or "").strip().lower() in {"allow", "ask", "deny"}
        }
        self.risky_tools = {name.strip().lower() for name in (risky_tools or []) if name and name.strip()}
        self.approval_mode = (approval_mode or "off").strip().lower()
        if self.approval_mode not in {"off", "confirm"}:
            self.approval_mode = "off"

    def resolve(self, tool_name: str, channel: str = "", sender_id: str = "") -> str:
        tool_key = (tool_name or "").strip().lower()
        channel_key = (channel or "").strip().lower()
        sender_key = (sender_id or "").strip().lower()
        default = "allow"
        if self.approval_mode == "confirm" and tool_key in self.risky_tools:
            default = "ask"

        keys: list[str] = []
        if channel_key:
            if sender_key:
                keys.append(f"{channel_key}:{sender_key}:{tool_key}")
                keys.append(f"{channel_key}:{sender_key}:*")
            keys.extend(
                [
                    f"{channel_key}:*:{tool_key}",
                    f"{channel_key}:*:*",
                    f"{channel_key}:{tool_key}",
                ]
            )
        keys.extend([tool_key, "*"])
        for key in keys:
            decision = self.policy.get(key)
            if decision in {"allow", "ask", "deny"}:
                return decision
        return default
