"""Shared test fixtures for all test groups."""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from dispatcher.jobs.manifest import WorkerTemplate
from dispatcher.jobs.schemas import JobRequest
from dispatcher.sessions.models import ConversationMessage, SessionContext, SessionState


@pytest.fixture
def template():
    """WorkerTemplate with small, recognizable values."""
    return WorkerTemplate(
        namespace="claude",
        image="claude-worker:test",
        cpu="500m",
        memory="1Gi",
        timeout_seconds=600,
        session_bucket="test-bucket",
    )


@pytest.fixture
def make_request():
    """Factory for JobRequest with overridable fields."""

    def _make(**overrides) -> JobRequest:
        fields = {
            "session_key": "C123-1700000000.000100",
            "user_id": "U123",
            "username": "user-alice",
            "channel_id": "C123",
            "thread_ts": "1700000000.000100",
            "user_prompt": "Add a README",
            "repository_url": "https://github.com/peerbot-community/user-alice",
            "slack_response_channel": "C123",
            "slack_response_ts": "1700000001.000200",
            "original_message_ts": "1700000000.000100",
        }
        fields.update(overrides)
        return JobRequest(**fields)

    return _make


@pytest.fixture
def batch_api():
    """Fake kubernetes BatchV1Api with an empty namespace."""
    api = MagicMock()
    api.list_namespaced_job.return_value = MagicMock(items=[])
    return api


@pytest.fixture
def core_api():
    """Fake kubernetes CoreV1Api."""
    return MagicMock()


@pytest.fixture
def session_context():
    return SessionContext(
        channel_id="C123",
        user_id="U123",
        user_display_name="user-alice",
        thread_ts="1700000000.000100",
        message_ts="1700000000.000100",
    )


@pytest.fixture
def session_state(session_context):
    """SessionState with a short two-message conversation."""
    created = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    state = SessionState(
        session_key="C123-1700000000.000100",
        context=session_context,
        created_at=created,
        last_activity=created,
    )
    state.conversation.append(ConversationMessage(role="user", content="Add a README", timestamp=created))
    state.conversation.append(ConversationMessage(role="assistant", content="Done.", timestamp=created))
    return state
