"""Outbound chat operations used by the event router."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol

import structlog
from slack_sdk.web.async_client import AsyncWebClient

logger = structlog.get_logger(__name__)


class ChatClient(Protocol):
    """The subset of chat operations the dispatcher needs."""

    async def post_message(
        self, channel: str, text: str, thread_ts: str | None = None, blocks: list[dict] | None = None
    ) -> str: ...

    async def update_message(
        self, channel: str, ts: str, text: str, blocks: list[dict] | None = None
    ) -> None: ...

    async def add_reaction(self, channel: str, ts: str, name: str) -> None: ...

    async def remove_reaction(self, channel: str, ts: str, name: str) -> None: ...

    async def user_info(self, user_id: str) -> dict: ...

    async def thread_replies(self, channel: str, thread_ts: str, limit: int = 100) -> list[dict]: ...


class SlackChatClient:
    """ChatClient over slack_sdk's AsyncWebClient.

    When a token provider is given, the client token is refreshed from it
    before every call, so rotated credentials take effect immediately.
    """

    def __init__(
        self,
        web_client: AsyncWebClient,
        token_provider: Callable[[], Awaitable[str]] | None = None,
    ):
        self.web = web_client
        self._token_provider = token_provider

    async def _client(self) -> AsyncWebClient:
        if self._token_provider is not None:
            self.web.token = await self._token_provider()
        return self.web

    async def post_message(
        self, channel: str, text: str, thread_ts: str | None = None, blocks: list[dict] | None = None
    ) -> str:
        web = await self._client()
        response = await web.chat_postMessage(
            channel=channel,
            text=text,
            thread_ts=thread_ts,
            blocks=blocks,
            mrkdwn=True,
        )
        return response["ts"]

    async def update_message(
        self, channel: str, ts: str, text: str, blocks: list[dict] | None = None
    ) -> None:
        web = await self._client()
        await web.chat_update(channel=channel, ts=ts, text=text, blocks=blocks)

    async def add_reaction(self, channel: str, ts: str, name: str) -> None:
        web = await self._client()
        await web.reactions_add(channel=channel, timestamp=ts, name=name)

    async def remove_reaction(self, channel: str, ts: str, name: str) -> None:
        web = await self._client()
        await web.reactions_remove(channel=channel, timestamp=ts, name=name)

    async def user_info(self, user_id: str) -> dict:
        web = await self._client()
        response = await web.users_info(user=user_id)
        return response["user"]

    async def thread_replies(self, channel: str, thread_ts: str, limit: int = 100) -> list[dict]:
        web = await self._client()
        response = await web.conversations_replies(channel=channel, ts=thread_ts, limit=limit)
        return response.get("messages", [])
