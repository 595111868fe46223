"""JSON file session store partitioned by scope (UI conversations or gateway)."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from m_agent.errors import StoreError
from m_agent.session.models import Session, SessionMeta
from m_agent.utils.helpers import ensure_dir, safe_filename

ScopeKind = Literal["conversation", "gateway"]
DEFAULT_WORKSPACE = "personal"


@dataclass(frozen=True, slots=True)
class SessionScope:
    """Storage partition: conversations are per workspace, gateway sessions may be shared."""

    kind: ScopeKind = "conversation"
    workspace_id: str | None = None

    @classmethod
    def conversation(cls, workspace_id: str | None = None) -> SessionScope:
        return cls("conversation", workspace_id)

    @classmethod
    def gateway(cls, workspace_id: str | None = None) -> SessionScope:
        return cls("gateway", workspace_id)


class SessionStore:
    """
    One JSON file per session under the data home.

    Layout::

        <home>/workspaces/<ws>/conversations/<id>.json
        <home>/workspaces/<ws>/gateway-sessions/<id>.json
        <home>/shared/gateway-sessions/<id>.json      (gateway, no workspace)
    """

    def __init__(self, home: Path):
        self.home = Path(home).expanduser()

    def scope_dir(self, scope: SessionScope) -> Path:
        if scope.kind == "gateway":
            if scope.workspace_id:
                return self.home / "workspaces" / safe_filename(scope.workspace_id) / "gateway-sessions"
            return self.home / "shared" / "gateway-sessions"
        workspace = safe_filename(scope.workspace_id or DEFAULT_WORKSPACE)
        return self.home / "workspaces" / workspace / "conversations"

    def _session_path(self, session_id: str, scope: SessionScope) -> Path:
        name = safe_filename((session_id or "").strip())
        if not name or name.strip(".") == "":
            raise StoreError(f"Invalid session id: {session_id!r}")
        base = self.scope_dir(scope).resolve()
        path = (base / f"{name}.json").resolve()
        if path.parent != base:
            raise StoreError(f"Session id escapes storage directory: {session_id!r}")
        return path

    def list(self, scope: SessionScope) -> list[SessionMeta]:
        """Summaries of all readable sessions, newest first."""
        directory = self.scope_dir(scope)
        if not directory.exists():
            return []
        items: list[SessionMeta] = []
        for path in directory.glob("*.json"):
            if path.name.startswith("."):
                continue
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                items.append(Session.model_validate(payload).meta())
            except (OSError, json.JSONDecodeError, PydanticValidationError) as exc:
                logger.warning(f"Skipping unreadable session file {path.name}: {exc}")
        items.sort(key=lambda item: item.updated_at, reverse=True)
        return items

    def load(self, session_id: str, scope: SessionScope) -> Session | None:
        """Return a snapshot of the session, or None if it does not exist."""
        path = self._session_path(session_id, scope)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return Session.model_validate(payload)
        except (OSError, json.JSONDecodeError, PydanticValidationError) as exc:
            raise StoreError(f"Failed to read session {session_id}: {exc}") from exc

    def save(self, session: Session, scope: SessionScope) -> Path:
        """Atomically write the whole session (last writer wins)."""
        path = self._session_path(session.id, scope)
        session.message_count = len(session.messages)
        payload = json.dumps(session.to_wire(), indent=2, ensure_ascii=False)
        try:
            directory = ensure_dir(path.parent)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StoreError(f"Failed to save session {session.id}: {exc}") from exc
        logger.debug(f"Saved session {session.id} ({session.message_count} messages) to {path}")
        return path

    def delete(self, session_id: str, scope: SessionScope) -> bool:
        """Remove a session. True if a file was removed, False if it was already absent."""
        path = self._session_path(session_id, scope)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StoreError(f"Failed to delete session {session_id}: {exc}") from exc
        logger.info(f"Deleted session {session_id}")
        return True
