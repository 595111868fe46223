"""Turn checkpoints: the lifecycle state of every turn, persisted as JSON."""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from m_agent.utils.helpers import compact_preview, ensure_dir, now_iso

TURN_STATES = ("idle", "validating", "generating", "completed", "aborted", "failed")
TERMINAL_STATES = {"completed", "aborted", "failed"}
_TRANSITIONS: dict[str, set[str]] = {
    "idle": {"validating"},
    "validating": {"generating", "failed", "aborted"},
    "generating": {"completed", "aborted", "failed"},
}


class InvalidTransition(ValueError):
    """A turn was moved to a state it cannot reach from its current one."""


class TurnCheckpointStore:
    """Store turn checkpoints in <home>/state/turns."""

    def __init__(self, home: Path):
        self.home = home
        self.turns_dir = ensure_dir(home / "state" / "turns")

    def _turn_path(self, turn_id: str) -> Path:
        return self.turns_dir / f"{turn_id}.json"

    def _safe_read(self, path: Path) -> dict[str, Any] | None:
        try:
            if not path.exists():
                return None
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None

    def _safe_write(self, path: Path, payload: dict[str, Any]) -> bool:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            tmp_path.replace(path)
            return True
        except OSError as exc:
            logger.warning(f"Failed to write turn checkpoint {path.name}: {exc}")
            return False

    def start(
        self,
        *,
        session_id: str,
        scope: str,
        model: str,
        input_text: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create an idle checkpoint and return its turn_id."""
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        turn_id = f"{timestamp}-{uuid.uuid4().hex[:8]}"
        now = now_iso()
        payload = {
            "turn_id": turn_id,
            "status": "idle",
            "session_id": session_id,
            "scope": scope,
            "model": model,
            "created_at": now,
            "updated_at": now,
            "finished_at": None,
            "input_preview": compact_preview(input_text),
            "output_preview": "",
            "error": "",
            "metadata": metadata or {},
            "events": [{"at": now, "event": "idle", "detail": ""}],
        }
        self._safe_write(self._turn_path(turn_id), payload)
        return turn_id

    def get(self, turn_id: str) -> dict[str, Any] | None:
        return self._safe_read(self._turn_path(turn_id))

    def transition(
        self,
        turn_id: str,
        state: str,
        detail: str = "",
        *,
        output_text: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Move a turn to ``state``; raises InvalidTransition for illegal moves."""
        path = self._turn_path(turn_id)
        payload = self._safe_read(path)
        if payload is None:
            return False
        current = payload.get("status", "idle")
        if state not in _TRANSITIONS.get(current, set()):
            raise InvalidTransition(f"Turn {turn_id}: cannot go from {current} to {state}")
        now = now_iso()
        payload["status"] = state
        payload["updated_at"] = now
        if state in TERMINAL_STATES:
            payload["finished_at"] = now
        if output_text is not None:
            payload["output_preview"] = compact_preview(output_text)
        if state == "failed":
            payload["error"] = compact_preview(detail, limit=600)
        if metadata:
            merged = dict(payload.get("metadata", {}))
            merged.update(metadata)
            payload["metadata"] = merged
        payload.setdefault("events", []).append(
            {"at": now, "event": state, "detail": compact_preview(detail, limit=240)}
        )
        return self._safe_write(path, payload)

    def append_event(self, turn_id: str, event: str, detail: str = "") -> bool:
        """Record a non-state event (tool run, model fallback, approval)."""
        path = self._turn_path(turn_id)
        payload = self._safe_read(path)
        if payload is None:
            return False
        now = now_iso()
        payload.setdefault("events", []).append(
            {
                "at": now,
                "event": (event or "").strip() or "event",
                "detail": compact_preview(detail, limit=240),
            }
        )
        payload["updated_at"] = now
        return self._safe_write(path, payload)

    def latest_for_session(self, session_id: str) -> dict[str, Any] | None:
        """Most recent checkpoint of a session, if any."""
        for path in sorted(self.turns_dir.glob("*.json"), reverse=True):
            payload = self._safe_read(path)
            if payload and payload.get("session_id") == session_id:
                return payload
        return None
