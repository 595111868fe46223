import json
from pathlib import Path

import pytest

from m_agent.agent.runtime import InvalidTransition, TurnCheckpointStore


def _load_checkpoint_files(turns_dir: Path) -> list[dict]:
    items = []
    for path in sorted(turns_dir.glob("*.json")):
        items.append(json.loads(path.read_text(encoding="utf-8")))
    return items


def test_checkpoint_store_lifecycle(tmp_path: Path):
    store = TurnCheckpointStore(tmp_path)
    turn_id = store.start(session_id="s1", scope="conversation", model="dummy-model", input_text="hello world")
    assert turn_id

    assert store.transition(turn_id, "validating")
    assert store.transition(turn_id, "generating", "dummy-model")
    assert store.append_event(turn_id, "tool", "exec")
    assert store.transition(turn_id, "completed", output_text="done", metadata={"steps": 2})

    payload = store.get(turn_id)
    assert payload is not None
    assert payload["status"] == "completed"
    assert payload["finished_at"]
    assert payload["input_preview"] == "hello world"
    assert payload["output_preview"] == "done"
    assert payload["metadata"]["steps"] == 2
    assert [event["event"] for event in payload["events"]] == [
        "idle",
        "validating",
        "generating",
        "tool",
        "completed",
    ]


def test_illegal_transitions_are_rejected(tmp_path: Path):
    store = TurnCheckpointStore(tmp_path)
    turn_id = store.start(session_id="s1", scope="conversation", model="m")
    with pytest.raises(InvalidTransition):
        store.transition(turn_id, "completed")

    store.transition(turn_id, "validating")
    store.transition(turn_id, "generating")
    store.transition(turn_id, "aborted")
    with pytest.raises(InvalidTransition):
        store.transition(turn_id, "generating")


def test_failed_turn_records_error(tmp_path: Path):
    store = TurnCheckpointStore(tmp_path)
    turn_id = store.start(session_id="s1", scope="gateway", model="m")
    store.transition(turn_id, "validating")
    store.transition(turn_id, "failed", "No API key configured for model 'm'.")

    checkpoints = _load_checkpoint_files(tmp_path / "state" / "turns")
    assert len(checkpoints) == 1
    assert checkpoints[0]["status"] == "failed"
    assert "No API key" in checkpoints[0]["error"]


def test_unknown_turn_and_latest_lookup(tmp_path: Path):
    store = TurnCheckpointStore(tmp_path)
    assert store.transition("missing", "validating") is False
    assert store.append_event("missing", "tool") is False
    assert store.latest_for_session("s1") is None

    turn_id = store.start(session_id="s1", scope="conversation", model="m")
    store.start(session_id="s2", scope="conversation", model="m")
    assert store.latest_for_session("s1")["turn_id"] == turn_id


def test_corrupt_checkpoint_reads_as_missing(tmp_path: Path):
    store = TurnCheckpointStore(tmp_path)
    (store.turns_dir / "broken.json").write_text("{", encoding="utf-8")
    assert store.get("broken") is None
