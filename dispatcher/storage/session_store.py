"""S3 session store: durable conversation state for thread recovery.

Layout (partitioned by save date, one folder per session per day):
    conversations/{YYYY}/{MM}/{DD}/{session_key}/state.json
    conversations/{YYYY}/{MM}/{DD}/{session_key}/conversation.json
    conversations/{YYYY}/{MM}/{DD}/{session_key}/metadata.json

A session saved on several days has a folder on each of them; load() reads
the newest one within the lookback window.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import boto3
import structlog
from botocore.exceptions import ClientError
from pydantic import TypeAdapter

from dispatcher.core.exceptions import PersistenceError
from dispatcher.sessions.identity import validate_session_key
from dispatcher.sessions.models import ConversationMessage, ConversationMetadata, SessionState

logger = structlog.get_logger(__name__)

ROOT_PREFIX = "conversations"
STATE_OBJECT = "state.json"
CONVERSATION_OBJECT = "conversation.json"
METADATA_OBJECT = "metadata.json"

MISSING_CODES = ("NoSuchKey", "NotFound", "404")

_conversation_adapter = TypeAdapter(list[ConversationMessage])


def session_prefix(session_key: str, when: datetime) -> str:
    """Folder for one session on one day. Validates the key first."""
    key = validate_session_key(session_key)
    return f"{ROOT_PREFIX}/{when:%Y/%m/%d}/{key}/"


class S3SessionStore:
    """Persists SessionState as JSON objects in an S3 bucket.

    Every blocking boto3 call runs in a thread via asyncio.to_thread().
    All failures surface as PersistenceError; callers decide whether to absorb.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        lookback_days: int = 7,
        s3_client=None,
    ) -> None:
        self._bucket = bucket
        self._lookback_days = lookback_days
        self._s3 = s3_client or boto3.client("s3", region_name=region)

    @property
    def bucket(self) -> str:
        return self._bucket

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def save(self, state: SessionState, now: datetime | None = None) -> str:
        """Write state, conversation and metadata objects. Returns the s3:// folder."""
        now = now or datetime.now(UTC)
        prefix = session_prefix(state.session_key, now)

        objects = {
            STATE_OBJECT: state.model_dump_json(indent=2, exclude={"conversation"}),
            CONVERSATION_OBJECT: _conversation_adapter.dump_json(state.conversation, indent=2).decode("utf-8"),
            METADATA_OBJECT: ConversationMetadata.from_state(state).model_dump_json(indent=2),
        }

        try:
            for name, body in objects.items():
                await asyncio.to_thread(self._put_json, prefix + name, body)
        except Exception as e:
            raise PersistenceError("save", f"Failed to save session {state.session_key}: {e}") from e

        location = f"s3://{self._bucket}/{prefix}"
        logger.info(
            "session_saved",
            session_key=state.session_key,
            location=location,
            message_count=len(state.conversation),
        )
        return location

    async def load(self, session_key: str, now: datetime | None = None) -> SessionState | None:
        """Newest saved state within the lookback window, or None."""
        validate_session_key(session_key)
        now = now or datetime.now(UTC)

        try:
            for days_back in range(self._lookback_days + 1):
                prefix = session_prefix(session_key, now - timedelta(days=days_back))
                body = await asyncio.to_thread(self._get_json, prefix + STATE_OBJECT)
                if body is None:
                    continue
                state = SessionState.model_validate_json(body)
                conversation = await asyncio.to_thread(self._get_json, prefix + CONVERSATION_OBJECT)
                if conversation is not None:
                    state.conversation = _conversation_adapter.validate_json(conversation)
                logger.info(
                    "session_loaded",
                    session_key=session_key,
                    prefix=prefix,
                    message_count=len(state.conversation),
                )
                return state
        except Exception as e:
            raise PersistenceError("load", f"Failed to load session {session_key}: {e}") from e

        logger.info("session_not_found", session_key=session_key, lookback_days=self._lookback_days)
        return None

    async def exists(self, session_key: str, now: datetime | None = None) -> bool:
        """True when a state object is present within the lookback window. Reads no bodies."""
        validate_session_key(session_key)
        now = now or datetime.now(UTC)

        try:
            for days_back in range(self._lookback_days + 1):
                prefix = session_prefix(session_key, now - timedelta(days=days_back))
                if await asyncio.to_thread(self._head, prefix + STATE_OBJECT):
                    return True
        except Exception as e:
            raise PersistenceError("exists", f"Failed to check session {session_key}: {e}") from e
        return False

    async def delete(self, session_key: str) -> int:
        """Remove every stored object for the session across all dates."""
        key = validate_session_key(session_key)
        suffix = f"/{key}/"

        try:
            keys = await asyncio.to_thread(self._list_keys, f"{ROOT_PREFIX}/")
            doomed = [k for k in keys if suffix in k]
            if doomed:
                await asyncio.to_thread(self._delete_keys, doomed)
        except Exception as e:
            raise PersistenceError("delete", f"Failed to delete session {session_key}: {e}") from e

        logger.info("session_deleted", session_key=session_key, deleted_count=len(doomed))
        return len(doomed)

    async def list_user_sessions(self, user_id: str, limit: int = 10) -> list[ConversationMetadata]:
        """Most recently active sessions for a user. Reads metadata objects only."""
        try:
            keys = await asyncio.to_thread(self._list_keys, f"{ROOT_PREFIX}/")
            sessions = []
            for key in keys:
                if not key.endswith("/" + METADATA_OBJECT):
                    continue
                body = await asyncio.to_thread(self._get_json, key)
                if body is None:
                    continue
                metadata = ConversationMetadata.model_validate_json(body)
                if metadata.user_id == user_id:
                    sessions.append(metadata)
        except Exception as e:
            raise PersistenceError("list", f"Failed to list sessions for user {user_id}: {e}") from e

        sessions.sort(key=lambda m: m.last_activity, reverse=True)
        return sessions[:limit]

    async def cleanup_old_sessions(self, older_than_days: int = 30, now: datetime | None = None) -> int:
        """Delete objects last modified before the cutoff. Returns number deleted."""
        cutoff = (now or datetime.now(UTC)) - timedelta(days=older_than_days)

        try:
            objects = await asyncio.to_thread(self._list_objects, f"{ROOT_PREFIX}/")
            stale = [o["Key"] for o in objects if o["LastModified"] < cutoff]
            if stale:
                await asyncio.to_thread(self._delete_keys, stale)
        except Exception as e:
            raise PersistenceError("cleanup", f"Failed to clean up sessions: {e}") from e

        logger.info("sessions_cleaned_up", deleted_count=len(stale), older_than_days=older_than_days)
        return len(stale)

    # ------------------------------------------------------------------
    # Private helpers (run inside asyncio.to_thread)
    # ------------------------------------------------------------------

    def _put_json(self, key: str, body: str) -> None:
        self._s3.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=body.encode("utf-8"),
            ContentType="application/json",
            CacheControl="no-cache",
        )

    def _get_json(self, key: str) -> str | None:
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in MISSING_CODES:
                return None
            raise
        return resp["Body"].read().decode("utf-8")

    def _head(self, key: str) -> bool:
        try:
            self._s3.head_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in MISSING_CODES:
                return False
            raise
        return True

    def _list_objects(self, prefix: str) -> list[dict]:
        paginator = self._s3.get_paginator("list_objects_v2")
        objects: list[dict] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            objects.extend(page.get("Contents", []))
        return objects

    def _list_keys(self, prefix: str) -> list[str]:
        return [o["Key"] for o in self._list_objects(prefix)]

    def _delete_keys(self, keys: list[str]) -> None:
        # delete_objects accepts at most 1000 keys per call
        for start in range(0, len(keys), 1000):
            batch = keys[start:start + 1000]
            self._s3.delete_objects(
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": k} for k in batch]},
            )
