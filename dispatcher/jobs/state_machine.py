"""Session state machine."""

from datetime import UTC, datetime

import structlog

from dispatcher.jobs.schemas import SessionStatus, ThreadSession

logger = structlog.get_logger(__name__)

# Human-readable labels used in chat status messages
STATUS_LABELS: dict[str, str] = {
    "pending": "🔄 Creating pod...",
    "starting": "🚀 Starting Claude session...",
    "running": "⚙️ Working...",
    "completed": "✅ Done",
    "error": "❌ Failed",
    "timeout": "⌛ Timed out",
}


class SessionStateMachine:
    """Validates session status transitions."""

    # A Job can finish between two polls, so STARTING may skip RUNNING.
    TRANSITIONS = {
        SessionStatus.PENDING: [SessionStatus.STARTING, SessionStatus.ERROR],
        SessionStatus.STARTING: [
            SessionStatus.RUNNING,
            SessionStatus.COMPLETED,
            SessionStatus.ERROR,
            SessionStatus.TIMEOUT,
        ],
        SessionStatus.RUNNING: [SessionStatus.COMPLETED, SessionStatus.ERROR, SessionStatus.TIMEOUT],
        SessionStatus.COMPLETED: [],  # Terminal state
        SessionStatus.ERROR: [],  # Terminal state
        SessionStatus.TIMEOUT: [],  # Terminal state
    }

    @classmethod
    def can_transition(cls, current: SessionStatus, new_status: SessionStatus) -> bool:
        return new_status in cls.TRANSITIONS.get(current, [])

    @classmethod
    def transition(
        cls,
        session: ThreadSession,
        new_status: SessionStatus,
        now: datetime | None = None,
    ) -> bool:
        """Move session to new_status if valid.

        Args:
            session: Session to mutate
            new_status: Target status
            now: Current time (for deterministic testing)

        Returns:
            True if the transition was applied, False if it was invalid
        """
        if not cls.can_transition(session.status, new_status):
            logger.debug(
                "session_transition_rejected",
                session_key=session.session_key,
                current=session.status.value,
                requested=new_status.value,
            )
            return False

        session.status = new_status
        session.last_activity = now or datetime.now(UTC)
        return True
