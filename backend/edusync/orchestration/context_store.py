"""
Conversation context store for multi-turn dialogues.

Keeps a bounded rolling window of user/assistant messages per session id,
with time-based expiry. Expiry is driven by the host calling
cleanup_expired_sessions() periodically; nothing here runs on a timer.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from edusync.errors import SessionNotFoundError
from edusync.models import ConversationMessage, ConversationSession, MessageRole, utcnow

logger = logging.getLogger(__name__)

ROLE_LABELS = {"user": "Professor", "assistant": "Sunita"}


class ConversationContextStore:
    """
    In-memory context store.

    Sessions are addressed by id string, never by object reference, and are
    owned by whoever created the store (usually the hosting layer).
    """

    def __init__(
        self,
        max_messages_per_session: int = 10,
        session_ttl_minutes: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Args:
            max_messages_per_session: Messages kept per session (oldest evicted first)
            session_ttl_minutes: Inactivity before a session is purged
            clock: Returns the current aware datetime (injectable for tests)
        """
        if max_messages_per_session < 1:
            raise ValueError("max_messages_per_session must be at least 1")

        self._sessions: Dict[str, ConversationSession] = {}
        self.max_messages_per_session = max_messages_per_session
        self.session_ttl = timedelta(minutes=session_ttl_minutes)
        self._clock = clock

    def create_session(self) -> str:
        """Allocate an empty session and return its id."""
        session_id = str(uuid.uuid4())
        now = self._clock()

        self._sessions[session_id] = ConversationSession(
            session_id=session_id,
            created_at=now,
            last_accessed_at=now,
        )
        logger.debug(f"Created conversation session {session_id}")
        return session_id

    def add_message(self, session_id: str, role: MessageRole, content: str) -> None:
        """
        Append a message and trim the window to the most recent entries.

        Raises:
            SessionNotFoundError: If the session id is unknown
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        now = self._clock()
        session.messages.append(
            ConversationMessage(role=role, content=content, timestamp=now)
        )

        if len(session.messages) > self.max_messages_per_session:
            session.messages = session.messages[-self.max_messages_per_session:]

        session.last_accessed_at = now

    def get_history(self, session_id: str) -> Optional[List[ConversationMessage]]:
        """
        Get a copy of the message window, or None for an unknown session.

        Reading counts as activity for expiry purposes.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None

        session.last_accessed_at = self._clock()
        return [message.model_copy() for message in session.messages]

    def get_formatted_context(self, session_id: str) -> str:
        """Render the window as labeled lines for a generation prompt."""
        history = self.get_history(session_id)
        if not history:
            return ""

        formatted = "\n\n".join(
            f"{ROLE_LABELS[message.role]}: {message.content}" for message in history
        )
        return f"\n\nPREVIOUS CONVERSATION:\n{formatted}\n\n"

    def session_exists(self, session_id: str) -> bool:
        return session_id in self._sessions

    def delete_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def cleanup_expired_sessions(self) -> int:
        """
        Remove every session idle for longer than the TTL.

        Returns:
            Number of sessions removed
        """
        now = self._clock()
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if now - session.last_accessed_at > self.session_ttl
        ]

        for session_id in expired:
            del self._sessions[session_id]

        if expired:
            logger.info(f"🧹 Cleaned up {len(expired)} expired conversation session(s)")
        return len(expired)

    def get_session_count(self) -> int:
        return len(self._sessions)
