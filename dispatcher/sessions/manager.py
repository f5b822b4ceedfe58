"""SessionManager: in-memory conversation states backed by the session store."""

from __future__ import annotations

from datetime import UTC, datetime

import structlog

from dispatcher.core.exceptions import PersistenceError, RecoveryNotFound
from dispatcher.jobs.schemas import HistoryMessage, SessionStatus
from dispatcher.sessions.identity import validate_session_key
from dispatcher.sessions.models import (
    ConversationMessage,
    ProgressUpdate,
    SessionContext,
    SessionProgress,
    SessionState,
)
from dispatcher.storage.session_store import S3SessionStore

logger = structlog.get_logger(__name__)


class SessionManager:
    """Owns the live SessionState per thread and decides when to persist.

    persist() never raises: a failed save is logged and the request carries on.
    """

    def __init__(self, store: S3SessionStore | None):
        self.store = store
        self._states: dict[str, SessionState] = {}

    def create_session(
        self,
        session_key: str,
        context: SessionContext,
        now: datetime | None = None,
    ) -> SessionState:
        now = now or datetime.now(UTC)
        state = SessionState(
            session_key=validate_session_key(session_key),
            context=context,
            created_at=now,
            last_activity=now,
        )
        if context.custom_instructions:
            state.conversation.append(
                ConversationMessage(role="system", content=context.custom_instructions, timestamp=now)
            )
        self._states[session_key] = state
        logger.debug("session_created", session_key=session_key)
        return state

    def get_session(self, session_key: str) -> SessionState | None:
        return self._states.get(session_key)

    def add_message(
        self,
        session_key: str,
        role: str,
        content: str,
        metadata: dict | None = None,
        now: datetime | None = None,
    ) -> SessionState:
        state = self._require(session_key)
        now = now or datetime.now(UTC)
        state.conversation.append(
            ConversationMessage(role=role, content=content, timestamp=now, metadata=metadata)
        )
        state.last_activity = now
        return state

    def update_progress(self, session_key: str, update: ProgressUpdate) -> SessionState:
        state = self._require(session_key)
        if state.progress is None:
            state.progress = SessionProgress()
        state.progress.last_update = update
        state.last_activity = update.timestamp
        return state

    def set_status(self, session_key: str, status: SessionStatus, now: datetime | None = None) -> SessionState | None:
        state = self._states.get(session_key)
        if state is None:
            return None
        state.status = status
        state.last_activity = now or datetime.now(UTC)
        return state

    def history(self, session_key: str) -> tuple[HistoryMessage, ...]:
        """Conversation as worker history, system messages excluded."""
        state = self._states.get(session_key)
        if state is None:
            return ()
        return tuple(
            HistoryMessage(role=m.role, content=m.content, timestamp=m.timestamp)
            for m in state.conversation
            if m.role != "system"
        )

    def discard(self, session_key: str) -> None:
        self._states.pop(session_key, None)

    async def persist(self, session_key: str) -> str | None:
        """Save the session if storage is configured. Returns location or None."""
        state = self._states.get(session_key)
        if state is None or self.store is None:
            return None
        try:
            return await self.store.save(state)
        except PersistenceError as e:
            logger.warning(
                "session_persist_failed",
                session_key=session_key,
                operation=e.operation,
                error=str(e),
            )
            return None

    async def recover(self, session_key: str) -> SessionState:
        """Load a persisted session into memory.

        Raises:
            RecoveryNotFound: If storage is absent, unreadable, or has no state.
        """
        if self.store is None:
            raise RecoveryNotFound(session_key)
        try:
            state = await self.store.load(session_key)
        except PersistenceError as e:
            logger.warning("session_recover_failed", session_key=session_key, error=str(e))
            raise RecoveryNotFound(session_key) from e
        if state is None:
            raise RecoveryNotFound(session_key)

        self._states[session_key] = state
        logger.info(
            "session_recovered",
            session_key=session_key,
            message_count=len(state.conversation),
        )
        return state

    def _require(self, session_key: str) -> SessionState:
        state = self._states.get(session_key)
        if state is None:
            raise KeyError(f"Session {session_key} not found")
        return state
