"""Shell command tool with streamed progress and argument-dependent approval."""

from __future__ import annotations

import asyncio
import codecs
import os
from contextlib import suppress
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

from m_agent.agent.tools.base import Tool, ToolContext

if TYPE_CHECKING:
    from m_agent.agent.tools.approval import ApprovalSettings

MAX_OUTPUT_CHARS = 10_000
MAX_BUFFER_CHARS = 1024 * 1024  # per stream
READ_CHUNK_BYTES = 65536


class ExecTool(Tool):
    """
    Run a shell command.

    Needs approval when the call asks to run outside the sandbox (or the
    sandbox is disabled) and unsandboxed approval is required, or when the
    command matches a dangerous pattern and dangerous-command approval is
    required.
    """

    def __init__(
        self,
        timeout: int = 60,
        working_dir: str | Path | None = None,
        sandbox_enabled: bool = True,
        max_buffer: int = MAX_BUFFER_CHARS,
    ):
        self.timeout = timeout
        self.max_buffer = max_buffer
        self.working_dir = str(working_dir) if working_dir else None
        self.sandbox_enabled = sandbox_enabled

    @property
    def name(self) -> str:
        return "exec"

    @property
    def description(self) -> str:
        return (
            f"Execute a shell command and return its output. Commands time out after {self.timeout}s. "
            "Set sandbox=false only when the command needs access outside the workspace."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to execute"},
                "working_dir": {
                    "type": "string",
                    "description": "Optional working directory for the command",
                },
                "sandbox": {
                    "type": "boolean",
                    "description": "Run inside the sandbox (default true)",
                },
            },
            "required": ["command"],
        }

    def needs_approval(self, params: dict[str, Any], settings: ApprovalSettings) -> bool:
        unsandboxed = params.get("sandbox") is False or not self.sandbox_enabled
        if unsandboxed and settings.require_unsandboxed_approval:
            return True
        if settings.require_dangerous_command_approval:
            matched = settings.matches_dangerous(str(params.get("command", "")))
            if matched:
                logger.info(f"Command matches dangerous pattern {matched!r}; approval required")
                return True
        return False

    async def execute(
        self,
        context: ToolContext,
        command: str,
        working_dir: str | None = None,
        sandbox: bool = True,
        **kwargs: Any,
    ) -> str:
        cwd = working_dir or self.working_dir or (str(context.workspace) if context.workspace else None) or os.getcwd()
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        truncated: set[str] = set()

        async def _pump(stream: asyncio.StreamReader | None, name: str, sink: list[str]) -> None:
            if stream is None:
                return
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            buffered = 0
            while True:
                chunk = await stream.read(READ_CHUNK_BYTES)
                text = decoder.decode(chunk, final=not chunk)
                if text:
                    room = self.max_buffer - buffered
                    if len(text) > room and name not in truncated:
                        truncated.add(name)
                        logger.warning(f"exec {name} exceeded {self.max_buffer} chars; dropping the rest")
                    if room > 0:
                        sink.append(text[:room])
                        buffered += min(len(text), room)
                    context.progress(
                        {
                            "toolCallId": context.call_id,
                            "command": command,
                            "stream": name,
                            "delta": text,
                            "status": "running",
                        }
                    )
                if not chunk:
                    return

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    _pump(process.stdout, "stdout", stdout_chunks),
                    _pump(process.stderr, "stderr", stderr_chunks),
                    process.wait(),
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            _kill(process)
            with suppress(ProcessLookupError):
                await process.wait()
            return f"Error: Command timed out after {self.timeout} seconds"
        except asyncio.CancelledError:
            _kill(process)
            raise

        output_parts = []
        stdout = "".join(stdout_chunks)
        stderr = "".join(stderr_chunks)
        if stdout:
            output_parts.append(stdout)
        if stderr.strip():
            output_parts.append(f"STDERR:\n{stderr}")
        if truncated:
            output_parts.append(f"(output beyond {self.max_buffer} chars per stream was dropped)")
        if process.returncode != 0:
            output_parts.append(f"\nExit code: {process.returncode}")
        result = "\n".join(output_parts) if output_parts else "(no output)"
        if len(result) > MAX_OUTPUT_CHARS:
            result = result[:MAX_OUTPUT_CHARS] + f"\n... (truncated, {len(result) - MAX_OUTPUT_CHARS} more chars)"
        return result


def _kill(process: asyncio.subprocess.Process) -> None:
    with suppress(ProcessLookupError):
        process.kill()
