from m_agent.agent.messages import (
    Message,
    ReasoningPart,
    TextPart,
    ToolApprovalRequestPart,
    ToolApprovalResponsePart,
    ToolCallPart,
    ToolResultPart,
)
from m_agent.agent.repair import prepare_history, prune_empty_messages, repair_messages


def _user(message_id: str, text: str) -> Message:
    return Message(id=message_id, role="user", parts=[TextPart(text=text)])


def _call(call_id: str, tool_name: str = "exec") -> ToolCallPart:
    return ToolCallPart(call_id=call_id, tool_name=tool_name, input={"command": "ls"})


def _assistant(message_id: str, *parts) -> Message:
    return Message(id=message_id, role="assistant", parts=list(parts))


def _tool(message_id: str, *parts) -> Message:
    return Message(id=message_id, role="tool", parts=list(parts))


def _result(call_id: str, output="ok") -> ToolResultPart:
    return ToolResultPart(call_id=call_id, tool_name="exec", output=output)


def _assistant_ok(message: Message, is_last: bool) -> bool:
    return is_last or message.has_text() or bool(message.tool_calls())


# ── dangling calls ─────────────────────────────────────────────────────────


def test_dangling_call_in_non_final_message_is_dropped():
    history = [
        _user("u1", "hi"),
        _assistant("a1", _call("c1")),
        _user("u2", "are you there?"),
    ]
    repaired = repair_messages(history)
    assert [m.id for m in repaired] == ["u1", "u2"]


def test_dangling_call_in_final_message_is_kept_but_emptied():
    history = [_user("u1", "hi"), _assistant("a1", _call("c1"))]
    repaired = repair_messages(history)
    assert [m.id for m in repaired] == ["u1", "a1"]
    assert repaired[-1].parts == []


def test_matched_call_and_result_survive_unchanged():
    history = [
        _user("u1", "hi"),
        _assistant("a1", _call("c1")),
        _tool("t1", _result("c1")),
        _user("u2", "thanks"),
    ]
    assert repair_messages(history) == history


def test_dangling_call_removed_but_text_kept():
    history = [
        _user("u1", "hi"),
        _assistant("a1", TextPart(text="let me check"), _call("c1"), _call("c2")),
        _tool("t1", _result("c2")),
        _user("u2", "ok"),
    ]
    repaired = repair_messages(history)
    assistant = repaired[1]
    assert assistant.text == "let me check"
    assert [call.call_id for call in assistant.tool_calls()] == ["c2"]


def test_reasoning_only_non_final_message_is_dropped():
    history = [
        _user("u1", "hi"),
        _assistant("a1", ReasoningPart(text="thinking"), _call("c1")),
        _user("u2", "hello?"),
    ]
    assert [m.id for m in repair_messages(history)] == ["u1", "u2"]


# ── approvals ──────────────────────────────────────────────────────────────


def test_call_with_pending_approval_survives():
    history = [
        _user("u1", "delete it"),
        _assistant(
            "a1",
            _call("c1", "delete_file"),
            ToolApprovalRequestPart(approval_id="ap1", call_id="c1"),
        ),
        _user("u2", "wait"),
    ]
    repaired = repair_messages(history)
    assert [m.id for m in repaired] == ["u1", "a1", "u2"]
    assert repaired[1].tool_calls()[0].call_id == "c1"


def test_call_with_answered_approval_survives():
    history = [
        _user("u1", "delete it"),
        _assistant(
            "a1",
            _call("c1", "delete_file"),
            ToolApprovalRequestPart(approval_id="ap1", call_id="c1"),
        ),
        _tool("t1", ToolApprovalResponsePart(approval_id="ap1", approved=True)),
    ]
    assert repair_messages(history) == history


def test_response_for_unknown_approval_does_not_rescue_call():
    history = [
        _user("u1", "hi"),
        _assistant("a1", _call("c1")),
        _tool("t1", ToolApprovalResponsePart(approval_id="nope", approved=True)),
        _user("u2", "and?"),
    ]
    repaired = repair_messages(history)
    assert "a1" not in [m.id for m in repaired]


# ── properties ─────────────────────────────────────────────────────────────


def test_repair_is_idempotent_across_shapes():
    histories = [
        [],
        [_user("u1", "hi")],
        [_user("u1", "hi"), _assistant("a1", _call("c1"))],
        [_user("u1", "hi"), _assistant("a1", _call("c1")), _user("u2", "x")],
        [
            _user("u1", "hi"),
            _assistant("a1", TextPart(text="a"), _call("c1")),
            _tool("t1", _result("c1")),
            _assistant("a2", _call("c2")),
            _assistant("a3", TextPart(text="done")),
        ],
    ]
    for history in histories:
        once = repair_messages(history)
        assert repair_messages(once) == once


def test_surviving_assistant_messages_have_content_or_are_last():
    history = [
        _user("u1", "hi"),
        _assistant("a1", _call("c1")),
        _assistant("a2", TextPart(text="")),
        _assistant("a3", TextPart(text="answer"), _call("c3")),
        _tool("t3", _result("c3")),
        _assistant("a4", _call("c4")),
    ]
    repaired = repair_messages(history)
    last = len(repaired) - 1
    for index, message in enumerate(repaired):
        if message.role == "assistant":
            assert _assistant_ok(message, index == last)


def test_repair_does_not_mutate_input():
    history = [_user("u1", "hi"), _assistant("a1", _call("c1")), _user("u2", "x")]
    snapshot = [m.model_copy(deep=True) for m in history]
    repair_messages(history)
    assert history == snapshot


# ── pruning ────────────────────────────────────────────────────────────────


def test_prune_drops_blank_messages():
    history = [
        _user("u1", "hi"),
        Message(id="u2", role="user", parts=[TextPart(text="   ")]),
        Message(id="a1", role="assistant", parts=[]),
        _user("u3", "there"),
    ]
    assert [m.id for m in prune_empty_messages(history)] == ["u1", "u3"]


def test_prepare_history_prunes_then_repairs():
    history = [
        _user("u1", "hi"),
        _assistant("a1", _call("c1")),
        Message(id="u2", role="user", parts=[TextPart(text="")]),
        _user("u3", "ping"),
    ]
    assert [m.id for m in prepare_history(history)] == ["u1", "u3"]
