"""Open chat sessions, keyed by session id and owning user."""
import secrets
import time
from collections import OrderedDict
from typing import Callable, List, Optional, Tuple

import structlog

from api.features.conversation.exceptions import SessionNotFoundError
from api.features.conversation.session import SessionController
from api.shared.exceptions import UnauthenticatedError

logger = structlog.get_logger("rag.conversation.sessions")


class SessionRegistry:
    """In-process session table.

    A session is only visible to the user who opened it; other users get the
    same ``SessionNotFoundError`` as for an unknown id.

    Sessions idle for longer than ``idle_timeout`` seconds expire, and closed
    ones are dropped, whenever the table is touched. When it is still full,
    the least recently used session without a running turn is evicted.
    """

    def __init__(
        self,
        max_sessions: Optional[int] = None,
        idle_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout
        self._clock = clock
        # Least recently used first
        self._sessions: "OrderedDict[str, Tuple[str, SessionController, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, session: SessionController, owner_id: str) -> str:
        self.prune()
        if self.max_sessions and len(self._sessions) >= self.max_sessions:
            self._discard(self._eviction_candidate(), reason="capacity")
        session_id = secrets.token_urlsafe(16)
        self._sessions[session_id] = (owner_id, session, self._clock())
        logger.info("session_registered", session_id=session_id, user_id=owner_id)
        return session_id

    def get(self, session_id: str, user_id: Optional[str]) -> SessionController:
        if not user_id:
            raise UnauthenticatedError()
        self.prune()
        entry = self._sessions.get(session_id)
        if entry is None or entry[0] != user_id:
            raise SessionNotFoundError(session_id)
        owner, session, _ = entry
        self._sessions[session_id] = (owner, session, self._clock())
        self._sessions.move_to_end(session_id)
        return session

    def remove(self, session_id: str, user_id: Optional[str]) -> SessionController:
        session = self.get(session_id, user_id)
        self._discard(session_id)
        return session

    def sessions_of(self, user_id: str) -> List[str]:
        return [sid for sid, (owner, _, _) in self._sessions.items() if owner == user_id]

    def prune(self) -> int:
        """Drop closed and idle sessions; returns how many went."""
        now = self._clock()
        stale = [
            (sid, "closed" if session.closed else "idle")
            for sid, (_, session, seen) in self._sessions.items()
            if session.closed
            or (self.idle_timeout and not session.busy and now - seen > self.idle_timeout)
        ]
        for session_id, reason in stale:
            self._discard(session_id, reason=reason)
        return len(stale)

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self._discard(session_id)

    def _eviction_candidate(self) -> str:
        for session_id, (_, session, _) in self._sessions.items():
            if not session.busy:
                return session_id
        return next(iter(self._sessions))

    def _discard(self, session_id: str, reason: str = "removed") -> None:
        _, session, _ = self._sessions.pop(session_id)
        session.close()
        logger.info("session_removed", session_id=session_id, reason=reason)
