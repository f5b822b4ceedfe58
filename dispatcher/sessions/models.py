"""Persisted conversation state models."""

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from dispatcher.jobs.schemas import SessionStatus


class ProgressType(str, Enum):
    """Kinds of progress updates reported by a running session."""

    OUTPUT = "output"
    STATUS = "status"
    COMPLETION = "completion"
    ERROR = "error"


class ProgressUpdate(BaseModel):
    type: ProgressType
    data: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SessionProgress(BaseModel):
    current_step: str | None = None
    total_steps: int | None = None
    last_update: ProgressUpdate | None = None


class SessionContext(BaseModel):
    """Where a session came from and how it should be run."""

    platform: Literal["slack", "github"] = "slack"
    channel_id: str
    user_id: str
    user_display_name: str | None = None
    team_id: str | None = None
    thread_ts: str | None = None
    message_ts: str
    repository_url: str | None = None
    custom_instructions: str | None = None


class ConversationMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict | None = None


class SessionState(BaseModel):
    """Durable state of one conversation thread.

    ``conversation`` is append-only; order is preserved across save/load.
    """

    session_key: str
    context: SessionContext
    conversation: list[ConversationMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = Field(default_factory=lambda: datetime.now(UTC))
    status: SessionStatus = SessionStatus.PENDING
    progress: SessionProgress | None = None


class ConversationMetadata(BaseModel):
    """Small indexable summary written next to each saved session."""

    session_key: str
    created_at: datetime
    last_activity: datetime
    message_count: int
    platform: str
    user_id: str
    channel_id: str
    status: SessionStatus

    @classmethod
    def from_state(cls, state: SessionState) -> "ConversationMetadata":
        return cls(
            session_key=state.session_key,
            created_at=state.created_at,
            last_activity=state.last_activity,
            message_count=len(state.conversation),
            platform=state.context.platform,
            user_id=state.context.user_id,
            channel_id=state.context.channel_id,
            status=state.status,
        )
