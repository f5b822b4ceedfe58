"""Unit tests for S3SessionStore.

A small dict-backed fake stands in for the boto3 S3 client so saves and
loads round-trip through real JSON.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from dispatcher.core.exceptions import InvalidSessionKeyError, PersistenceError
from dispatcher.jobs.schemas import SessionStatus
from dispatcher.sessions.models import ConversationMessage
from dispatcher.storage.session_store import S3SessionStore, session_prefix

pytestmark = pytest.mark.unit

NOW = datetime(2024, 5, 3, 9, 30, tzinfo=UTC)


class FakeS3:
    """Minimal in-memory S3: put/get/head/list/delete on one bucket."""

    def __init__(self):
        self.objects: dict[str, dict] = {}

    def put_object(self, Bucket, Key, Body, ContentType, CacheControl):
        self.objects[Key] = {
            "Body": Body,
            "ContentType": ContentType,
            "CacheControl": CacheControl,
            "LastModified": NOW,
        }

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        body = MagicMock()
        body.read.return_value = self.objects[Key]["Body"]
        return {"Body": body}

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {"ContentLength": len(self.objects[Key]["Body"])}

    def get_paginator(self, name):
        fake = self

        class _Paginator:
            def paginate(self, Bucket, Prefix):
                contents = [
                    {"Key": k, "LastModified": v["LastModified"]}
                    for k, v in sorted(fake.objects.items())
                    if k.startswith(Prefix)
                ]
                yield {"Contents": contents} if contents else {}

        return _Paginator()

    def delete_objects(self, Bucket, Delete):
        for obj in Delete["Objects"]:
            self.objects.pop(obj["Key"], None)


@pytest.fixture
def s3():
    return FakeS3()


@pytest.fixture
def store(s3):
    return S3SessionStore(bucket="test-bucket", lookback_days=7, s3_client=s3)


# ============================================================================
# save / load
# ============================================================================


async def test_save_writes_three_objects_under_dated_prefix(store, s3, session_state):
    location = await store.save(session_state, now=NOW)

    prefix = "conversations/2024/05/03/C123-1700000000.000100/"
    assert location == f"s3://test-bucket/{prefix}"
    assert sorted(s3.objects) == [
        prefix + "conversation.json",
        prefix + "metadata.json",
        prefix + "state.json",
    ]
    for obj in s3.objects.values():
        assert obj["CacheControl"] == "no-cache"
        assert obj["ContentType"] == "application/json"


async def test_save_then_load_round_trips(store, session_state):
    """Loaded state equals the saved one, conversation order included."""
    session_state.conversation.append(ConversationMessage(role="user", content="And a LICENSE", metadata={"n": 3}))
    session_state.status = SessionStatus.RUNNING

    await store.save(session_state, now=NOW)
    loaded = await store.load(session_state.session_key, now=NOW)

    assert loaded.model_dump() == session_state.model_dump()
    assert [m.content for m in loaded.conversation] == ["Add a README", "Done.", "And a LICENSE"]


async def test_metadata_summarizes_state(store, s3, session_state):
    await store.save(session_state, now=NOW)

    key = session_prefix(session_state.session_key, NOW) + "metadata.json"
    metadata = json.loads(s3.objects[key]["Body"])
    assert metadata["message_count"] == 2
    assert metadata["user_id"] == "U123"
    assert metadata["platform"] == "slack"


async def test_load_finds_state_saved_on_an_earlier_day(store, session_state):
    await store.save(session_state, now=NOW - timedelta(days=2))
    loaded = await store.load(session_state.session_key, now=NOW)
    assert loaded is not None
    assert loaded.session_key == session_state.session_key


async def test_load_prefers_newest_partition(store, session_state):
    await store.save(session_state, now=NOW - timedelta(days=1))
    session_state.conversation.append(ConversationMessage(role="user", content="newer"))
    await store.save(session_state, now=NOW)

    loaded = await store.load(session_state.session_key, now=NOW)
    assert loaded.conversation[-1].content == "newer"


async def test_load_ignores_state_outside_lookback(store, session_state):
    await store.save(session_state, now=NOW - timedelta(days=8))
    assert await store.load(session_state.session_key, now=NOW) is None


async def test_load_missing_returns_none(store):
    assert await store.load("C999-1.0", now=NOW) is None
    assert await store.exists("C999-1.0", now=NOW) is False


async def test_exists_after_save(store, session_state):
    await store.save(session_state, now=NOW)
    assert await store.exists(session_state.session_key, now=NOW) is True


async def test_exists_checks_heads_without_reading_bodies(store, s3, session_state):
    await store.save(session_state, now=NOW - timedelta(days=3))
    s3.get_object = MagicMock(side_effect=AssertionError("exists must not download objects"))

    assert await store.exists(session_state.session_key, now=NOW) is True
    assert await store.exists("C999-1.0", now=NOW) is False


async def test_exists_access_denied_raises_persistence_error(store, s3):
    s3.head_object = MagicMock(
        side_effect=ClientError({"Error": {"Code": "403", "Message": "Forbidden"}}, "HeadObject")
    )
    with pytest.raises(PersistenceError) as exc_info:
        await store.exists("C123-1.0", now=NOW)
    assert exc_info.value.operation == "exists"


# ============================================================================
# Object split: state vs conversation
# ============================================================================


async def test_state_object_omits_conversation(store, s3, session_state):
    await store.save(session_state, now=NOW)

    prefix = session_prefix(session_state.session_key, NOW)
    state = json.loads(s3.objects[prefix + "state.json"]["Body"])
    conversation = json.loads(s3.objects[prefix + "conversation.json"]["Body"])

    assert "conversation" not in state
    assert state["session_key"] == session_state.session_key
    assert [m["content"] for m in conversation] == ["Add a README", "Done."]


async def test_load_reads_conversation_from_its_own_object(store, s3, session_state):
    """conversation.json is the source of truth for the message history."""
    await store.save(session_state, now=NOW)
    key = session_prefix(session_state.session_key, NOW) + "conversation.json"
    s3.objects[key]["Body"] = b"[]"

    loaded = await store.load(session_state.session_key, now=NOW)

    assert loaded.conversation == []
    assert loaded.context == session_state.context


async def test_load_without_conversation_object_yields_empty_history(store, s3, session_state):
    await store.save(session_state, now=NOW)
    del s3.objects[session_prefix(session_state.session_key, NOW) + "conversation.json"]

    loaded = await store.load(session_state.session_key, now=NOW)

    assert loaded is not None
    assert loaded.conversation == []


# ============================================================================
# Key safety
# ============================================================================


@pytest.mark.parametrize("key", ["../../etc/passwd", "C1/evil", "C1-\n", ""])
async def test_unsafe_keys_never_reach_storage(store, s3, key):
    s3.get_object = MagicMock()
    s3.put_object = MagicMock()

    with pytest.raises(InvalidSessionKeyError):
        await store.load(key)
    with pytest.raises(InvalidSessionKeyError):
        await store.delete(key)

    s3.get_object.assert_not_called()
    s3.put_object.assert_not_called()


async def test_save_rejects_unsafe_key(store, s3, session_state):
    unsafe = session_state.model_copy(update={"session_key": "C1/../x"})
    with pytest.raises(InvalidSessionKeyError):
        await store.save(unsafe, now=NOW)
    assert s3.objects == {}


# ============================================================================
# Failures
# ============================================================================


async def test_save_failure_raises_persistence_error(store, s3, session_state):
    s3.put_object = MagicMock(side_effect=RuntimeError("throttled"))

    with pytest.raises(PersistenceError) as exc_info:
        await store.save(session_state, now=NOW)
    assert exc_info.value.operation == "save"


async def test_load_access_denied_raises_persistence_error(store, s3):
    s3.get_object = MagicMock(
        side_effect=ClientError({"Error": {"Code": "AccessDenied", "Message": "no"}}, "GetObject")
    )
    with pytest.raises(PersistenceError) as exc_info:
        await store.load("C123-1.0", now=NOW)
    assert exc_info.value.operation == "load"


# ============================================================================
# delete / listing / cleanup
# ============================================================================


async def test_delete_removes_every_partition(store, s3, session_state):
    await store.save(session_state, now=NOW - timedelta(days=1))
    await store.save(session_state, now=NOW)
    other = session_state.model_copy(update={"session_key": "C999-1.0"})
    await store.save(other, now=NOW)

    deleted = await store.delete(session_state.session_key)

    assert deleted == 6
    assert all("/C999-1.0/" in k for k in s3.objects)


async def test_list_user_sessions_filters_and_orders(store, session_state):
    older = session_state.model_copy(
        update={"session_key": "C1-1.0", "last_activity": session_state.last_activity - timedelta(hours=1)}
    )
    stranger = session_state.model_copy(
        update={
            "session_key": "C2-1.0",
            "context": session_state.context.model_copy(update={"user_id": "U999"}),
        }
    )
    for state in (older, session_state, stranger):
        await store.save(state, now=NOW)

    sessions = await store.list_user_sessions("U123")

    assert [m.session_key for m in sessions] == [session_state.session_key, "C1-1.0"]
    assert len(await store.list_user_sessions("U123", limit=1)) == 1


async def test_cleanup_old_sessions(store, s3, session_state):
    await store.save(session_state, now=NOW)
    for key in list(s3.objects)[:2]:
        s3.objects[key]["LastModified"] = NOW - timedelta(days=45)

    deleted = await store.cleanup_old_sessions(older_than_days=30, now=NOW)

    assert deleted == 2
    assert len(s3.objects) == 1
