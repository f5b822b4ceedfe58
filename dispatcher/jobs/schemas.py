"""Job schemas, worker execution options and session lifecycle states."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dispatcher.sessions.identity import validate_session_key

# Upper bound on the raw prompt handed to a worker (before base64)
MAX_PROMPT_BYTES = 64 * 1024

# Labels and annotations stamped on every worker Job
WORKER_APP_LABEL = "claude-worker"
SESSION_KEY_ANNOTATION = "claude.ai/session-key"
USER_ID_ANNOTATION = "claude.ai/user-id"
USERNAME_ANNOTATION = "claude.ai/username"
CREATED_AT_ANNOTATION = "claude.ai/created-at"


class SessionStatus(str, Enum):
    """Session lifecycle states."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def is_active(self) -> bool:
        return self in (SessionStatus.STARTING, SessionStatus.RUNNING)

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.ERROR, SessionStatus.TIMEOUT)


class ExecutionOptions(BaseModel):
    """Options forwarded to the worker's Claude invocation (CLAUDE_OPTIONS)."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    model: str | None = None
    fallback_model: str | None = None
    allowed_tools: str | None = None
    disallowed_tools: str | None = None
    max_turns: str | None = None
    system_prompt: str | None = None
    append_system_prompt: str | None = None
    timeout_minutes: str | None = None

    @classmethod
    def from_settings(cls, settings) -> "ExecutionOptions":
        return cls(
            model=settings.claude_model or None,
            fallback_model=settings.claude_fallback_model or None,
            allowed_tools=settings.claude_allowed_tools or None,
            disallowed_tools=settings.claude_disallowed_tools or None,
            max_turns=settings.claude_max_turns or None,
            timeout_minutes=str(max(1, settings.session_timeout_seconds // 60)),
        )


class HistoryMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str
    content: str
    timestamp: datetime


class JobRequest(BaseModel):
    """Immutable request to run one worker Job for a session."""

    model_config = ConfigDict(frozen=True)

    session_key: str
    user_id: str
    username: str
    channel_id: str
    thread_ts: str | None = None
    user_prompt: str
    repository_url: str
    slack_response_channel: str
    slack_response_ts: str
    original_message_ts: str | None = None
    execution_options: ExecutionOptions = Field(default_factory=ExecutionOptions)
    conversation_history: tuple[HistoryMessage, ...] = ()
    recovery_mode: bool = False

    @field_validator("session_key")
    @classmethod
    def _safe_key(cls, value: str) -> str:
        return validate_session_key(value)

    @field_validator("user_prompt")
    @classmethod
    def _bounded_prompt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > MAX_PROMPT_BYTES:
            raise ValueError(f"prompt exceeds {MAX_PROMPT_BYTES} bytes")
        return value


class ThreadSession(BaseModel):
    """In-memory record of a thread currently handled by this process."""

    session_key: str
    channel_id: str
    user_id: str
    username: str
    thread_ts: str | None = None
    message_ts: str
    repository_url: str = ""
    job_name: str | None = None
    status: SessionStatus = SessionStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = Field(default_factory=lambda: datetime.now(UTC))
