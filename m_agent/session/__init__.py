"""File-backed session persistence."""

from m_agent.session.models import Session, SessionMeta, build_session_title
from m_agent.session.store import SessionScope, SessionStore

__all__ = ["Session", "SessionMeta", "SessionScope", "SessionStore", "build_session_title"]
