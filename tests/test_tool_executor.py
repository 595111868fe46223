import asyncio
from pathlib import Path
from typing import Any

from m_agent.agent.messages import (
    Message,
    TextPart,
    ToolApprovalRequestPart,
    ToolApprovalResponsePart,
    ToolCallPart,
)
from m_agent.agent.tools.approval import ApprovalSettings, ToolPolicy
from m_agent.agent.tools.base import Tool, ToolContext
from m_agent.agent.tools.executor import ToolExecutor
from m_agent.agent.tools.filesystem import DeleteFileTool
from m_agent.agent.tools.registry import ToolRegistry, build_tool_set
from m_agent.agent.tools.shell import ExecTool
from m_agent.errors import ToolExecutionError


class CountingTool(Tool):
    def __init__(self, name: str = "count", requires_approval: bool = False):
        self._name = name
        self.requires_approval = requires_approval
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return "Counts invocations"

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {"value": {"type": "integer"}},
            "required": ["value"],
        }

    async def execute(self, context: ToolContext, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        context.progress({"toolCallId": context.call_id, "status": "running"})
        return {"seen": kwargs["value"], "count": len(self.calls)}


class FailingTool(CountingTool):
    async def execute(self, context: ToolContext, **kwargs: Any) -> Any:
        raise ToolExecutionError(self.name, 'Error calling tool "fail": boom')


class CrashingTool(CountingTool):
    async def execute(self, context: ToolContext, **kwargs: Any) -> Any:
        raise RuntimeError("kaput")


def _registry(*tools: Tool) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    return registry


def _call(call_id: str, tool_name: str = "count", **params: Any) -> ToolCallPart:
    return ToolCallPart(call_id=call_id, tool_name=tool_name, input=params or {"value": 1})


# ── execution ──────────────────────────────────────────────────────────────


def test_execute_runs_tool_and_reports_progress():
    tool = CountingTool()
    progress: list[dict] = []
    executor = ToolExecutor()
    outcome = asyncio.run(executor.execute(_call("c1"), _registry(tool), emit_progress=progress.append))
    assert not outcome.suspended
    assert outcome.result.output == {"seen": 1, "count": 1}
    assert outcome.result.is_error is False
    assert progress == [{"toolCallId": "c1", "status": "running"}]


def test_same_call_id_never_runs_twice():
    tool = CountingTool()
    executor = ToolExecutor()
    registry = _registry(tool)

    async def _run():
        first = await executor.execute(_call("c1"), registry)
        second = await executor.execute(_call("c1"), registry)
        return first, second

    first, second = asyncio.run(_run())
    assert len(tool.calls) == 1
    assert second.reused is True
    assert second.result == first.result


def test_unknown_tool_yields_error_result():
    outcome = asyncio.run(ToolExecutor().execute(_call("c1", "missing"), _registry()))
    assert outcome.result.is_error is True
    assert outcome.result.output == {"error": "Tool not found: missing"}


def test_invalid_params_yield_error_result():
    tool = CountingTool()
    outcome = asyncio.run(
        ToolExecutor().execute(ToolCallPart(call_id="c1", tool_name="count", input={}), _registry(tool))
    )
    assert outcome.result.is_error is True
    assert "missing required parameter 'value'" in outcome.result.output["error"]
    assert tool.calls == []


def test_tool_errors_are_results_not_exceptions():
    registry = _registry(FailingTool("fail"), CrashingTool("crash"))
    executor = ToolExecutor()

    async def _run():
        failed = await executor.execute(_call("c1", "fail"), registry)
        crashed = await executor.execute(_call("c2", "crash"), registry)
        return failed, crashed

    failed, crashed = asyncio.run(_run())
    assert failed.result.is_error is True
    assert failed.result.output == {"error": 'Error calling tool "fail": boom'}
    assert crashed.result.is_error is True
    assert "kaput" in crashed.result.output["error"]


def test_error_strings_are_flagged(tmp_path: Path):
    tool = DeleteFileTool()
    result = asyncio.run(
        ToolExecutor().run(
            ToolCallPart(call_id="c1", tool_name="delete_file", input={"path": str(tmp_path / "nope")}),
            _registry(tool),
        )
    )
    assert result.is_error is True
    assert result.output.startswith("Error: File not found")


# ── approval gating ────────────────────────────────────────────────────────


def test_static_approval_suspends_without_running():
    tool = CountingTool(requires_approval=True)
    executor = ToolExecutor()
    outcome = asyncio.run(executor.execute(_call("c1"), _registry(tool)))
    assert outcome.suspended
    assert outcome.approval.call_id == "c1"
    assert outcome.approval.approval_id.startswith("approval-")
    assert tool.calls == []
    assert not executor.has_run("c1")


def test_exec_tool_approval_depends_on_arguments():
    tool = ExecTool()
    settings = ApprovalSettings()
    assert tool.needs_approval({"command": "ls -la"}, settings) is False
    assert tool.needs_approval({"command": "sudo reboot"}, settings) is True
    assert tool.needs_approval({"command": "rm -rf build"}, settings) is True
    assert tool.needs_approval({"command": "ls", "sandbox": False}, settings) is True

    relaxed = ApprovalSettings(require_unsandboxed_approval=False, require_dangerous_command_approval=False)
    assert tool.needs_approval({"command": "sudo reboot", "sandbox": False}, relaxed) is False


def test_custom_dangerous_patterns_skip_invalid_regex():
    settings = ApprovalSettings(dangerous_patterns=["(unclosed", r"\bdeploy\b"])
    assert settings.matches_dangerous("make deploy") == r"\bdeploy\b"
    assert settings.matches_dangerous("make test") is None


def test_policy_deny_and_ask():
    tool = CountingTool()
    policy = ToolPolicy({"count": "deny"})
    denied = asyncio.run(ToolExecutor(policy=policy).execute(_call("c1"), _registry(tool)))
    assert denied.result.is_error is True
    assert "blocked by policy" in denied.result.output["error"]

    confirm = ToolPolicy(risky_tools=["count"], approval_mode="confirm")
    asked = asyncio.run(ToolExecutor(policy=confirm).execute(_call("c2"), _registry(tool)))
    assert asked.suspended
    assert tool.calls == []


def test_policy_prefers_channel_specific_rules():
    policy = ToolPolicy({"exec": "allow", "telegram:*:exec": "deny", "telegram:42:exec": "ask"})
    assert policy.resolve("exec") == "allow"
    assert policy.resolve("exec", "telegram", "7") == "deny"
    assert policy.resolve("exec", "telegram", "42") == "ask"


# ── resuming approvals ─────────────────────────────────────────────────────


def _pending_history(approved: bool, reason: str | None = None) -> list[Message]:
    return [
        Message(id="u1", role="user", parts=[TextPart(text="count please")]),
        Message(
            id="a1",
            role="assistant",
            parts=[
                _call("c1"),
                ToolApprovalRequestPart(approval_id="ap1", call_id="c1"),
            ],
        ),
        Message(
            id="t1",
            role="tool",
            parts=[ToolApprovalResponsePart(approval_id="ap1", approved=approved, reason=reason)],
        ),
    ]


def test_resume_runs_approved_call_once_across_turns():
    tool = CountingTool(requires_approval=True)
    registry = _registry(tool)
    executor = ToolExecutor()

    updated, produced = asyncio.run(executor.resume_approvals(_pending_history(True), registry))
    assert len(tool.calls) == 1
    assert [r.call_id for r in produced] == ["c1"]
    assert updated[-1].parts[-1].call_id == "c1"

    # the same approval replayed (client resent the unchanged history)
    _, again = asyncio.run(executor.resume_approvals(_pending_history(True), registry))
    assert len(tool.calls) == 1
    assert again[0].output == produced[0].output

    # the history already carrying the result produces nothing new
    _, none = asyncio.run(executor.resume_approvals(updated, registry))
    assert none == []


def test_resume_denied_call_gets_denial_result():
    tool = CountingTool(requires_approval=True)
    executor = ToolExecutor()
    _, produced = asyncio.run(
        executor.resume_approvals(_pending_history(False, "not now"), _registry(tool))
    )
    assert tool.calls == []
    assert produced[0].output == {"denied": True, "reason": "not now"}
    assert produced[0].is_error is False


def test_record_history_seeds_ledger():
    tool = CountingTool()
    executor = ToolExecutor()
    history = _pending_history(True)
    updated, _ = asyncio.run(ToolExecutor().resume_approvals(history, _registry(CountingTool())))
    executor.record_history(updated)
    outcome = asyncio.run(executor.execute(_call("c1"), _registry(tool)))
    assert outcome.reused is True
    assert tool.calls == []


# ── registry ───────────────────────────────────────────────────────────────


def test_builtin_wins_name_collision():
    builtin = CountingTool("shared")
    external = CountingTool("shared")
    other = CountingTool("srv_other")
    registry = build_tool_set([builtin], [external, other])
    assert registry.get("shared") is builtin
    assert registry.tool_names == ["shared", "srv_other"]
    assert [d["function"]["name"] for d in registry.get_definitions()] == ["shared", "srv_other"]
