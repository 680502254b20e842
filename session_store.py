#!/usr/bin/env python3
"""
Process-wide registry of recording sessions with thread-safe access.
"""

import threading
import time
from typing import Callable, Dict, List, Optional

from exceptions import DuplicateSessionError, SessionNotFoundError
from models import Session, SessionState


class SessionStore:
    """Thread-safe mapping of session id to Session.

    The store lock only guards the mapping itself; per-session state is
    guarded by each session's own lock.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def add(self, session: Session) -> None:
        """Register a new session (thread-safe)."""
        with self._lock:
            existing = self._sessions.get(session.session_id)
            if existing is not None:
                raise DuplicateSessionError(session.session_id, existing.state.value)
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[Session]:
        """Look up a session, or None if unknown (thread-safe)."""
        with self._lock:
            return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        """Look up a session, raising SessionNotFoundError if unknown."""
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def all(self) -> List[Session]:
        """Snapshot of every registered session (thread-safe)."""
        with self._lock:
            return list(self._sessions.values())

    def select(self, predicate: Callable[[Session], bool]) -> List[Session]:
        return [session for session in self.all() if predicate(session)]

    def in_state(self, *states: SessionState) -> List[Session]:
        return self.select(lambda session: session.state in states)

    def prune_closed(self, retention: float) -> List[str]:
        """Forget closed sessions older than ``retention`` seconds.

        Returns the ids that were removed.
        """
        now = time.monotonic()
        removed = []
        with self._lock:
            for session_id, session in list(self._sessions.items()):
                if session.state != SessionState.CLOSED or session.closed_at is None:
                    continue
                if now - session.closed_at >= retention:
                    del self._sessions[session_id]
                    removed.append(session_id)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions
