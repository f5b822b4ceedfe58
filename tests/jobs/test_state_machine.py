"""Tests for SessionStateMachine and the StatusFeed it is driven by."""

from datetime import UTC, datetime

import pytest

from dispatcher.jobs.events import JobStatusEvent, StatusFeed
from dispatcher.jobs.schemas import SessionStatus, ThreadSession
from dispatcher.jobs.state_machine import STATUS_LABELS, SessionStateMachine

pytestmark = pytest.mark.unit


@pytest.fixture
def session():
    return ThreadSession(
        session_key="C123-1700000000.000100",
        channel_id="C123",
        user_id="U123",
        username="user-alice",
        message_ts="1700000000.000100",
    )


def test_happy_path(session):
    for status in (SessionStatus.STARTING, SessionStatus.RUNNING, SessionStatus.COMPLETED):
        assert SessionStateMachine.transition(session, status) is True
    assert session.status == SessionStatus.COMPLETED


def test_starting_may_finish_without_running(session):
    SessionStateMachine.transition(session, SessionStatus.STARTING)
    assert SessionStateMachine.transition(session, SessionStatus.COMPLETED) is True


@pytest.mark.parametrize("terminal", [SessionStatus.COMPLETED, SessionStatus.ERROR, SessionStatus.TIMEOUT])
def test_terminal_states_are_final(session, terminal):
    SessionStateMachine.transition(session, SessionStatus.STARTING)
    SessionStateMachine.transition(session, terminal)

    assert terminal.is_terminal
    for status in SessionStatus:
        assert SessionStateMachine.transition(session, status) is False
    assert session.status == terminal


def test_invalid_transition_leaves_session_untouched(session):
    before = session.last_activity
    assert SessionStateMachine.transition(session, SessionStatus.RUNNING) is False
    assert session.status == SessionStatus.PENDING
    assert session.last_activity == before


def test_transition_stamps_activity(session):
    now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    SessionStateMachine.transition(session, SessionStatus.STARTING, now=now)
    assert session.last_activity == now


def test_active_statuses():
    assert SessionStatus.STARTING.is_active
    assert SessionStatus.RUNNING.is_active
    assert not SessionStatus.PENDING.is_active
    assert not SessionStatus.ERROR.is_active


def test_labels_cover_every_status():
    assert set(STATUS_LABELS) == {s.value for s in SessionStatus}


# ============================================================================
# StatusFeed
# ============================================================================


async def test_feed_fans_out_in_publish_order():
    feed = StatusFeed()
    first, second = feed.subscribe(), feed.subscribe()

    events = [
        JobStatusEvent("C1-1.0", "job-a", SessionStatus.STARTING),
        JobStatusEvent("C1-1.0", "job-a", SessionStatus.RUNNING),
        JobStatusEvent("C1-1.0", "job-a", SessionStatus.COMPLETED),
    ]
    for event in events:
        feed.publish(event)

    for queue in (first, second):
        assert [queue.get_nowait() for _ in events] == events


async def test_unsubscribed_queue_receives_nothing():
    feed = StatusFeed()
    queue = feed.subscribe()
    feed.unsubscribe(queue)
    feed.unsubscribe(queue)

    feed.publish(JobStatusEvent("C1-1.0", "job-a", SessionStatus.RUNNING))

    assert queue.empty()
    assert feed.subscriber_count == 0
