"""CredentialRotator: keeps the Slack bot token fresh using its refresh token.

Refresh is proactive: a timer fires at ``expires_at - safety_margin``. A
failed refresh reschedules the timer after a fixed backoff and keeps doing
so indefinitely; the old token stays in use until it actually expires.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import httpx
import structlog

from dispatcher.core.exceptions import CredentialError

logger = structlog.get_logger(__name__)

SLACK_TOKEN_URL = "https://slack.com/api/oauth.v2.access"

# Used when the token endpoint omits expires_in
DEFAULT_TOKEN_LIFETIME = timedelta(hours=12)
# Assumed remaining lifetime of a token configured at startup
ASSUMED_INITIAL_LIFETIME = timedelta(hours=11)


@dataclass
class CredentialState:
    access_token: str
    refresh_token: str
    expires_at: datetime


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CredentialRotator:
    """Owns CredentialState. Only refresh() mutates it."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        access_token: str = "",
        token_url: str = SLACK_TOKEN_URL,
        safety_margin_seconds: int = 30 * 60,
        retry_backoff_seconds: int = 5 * 60,
        http_client: httpx.AsyncClient | None = None,
        on_rotate: Callable[[str], Awaitable[None] | None] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.safety_margin = timedelta(seconds=safety_margin_seconds)
        self.retry_backoff = timedelta(seconds=retry_backoff_seconds)
        self._http = http_client
        self._on_rotate = on_rotate
        self._clock = clock

        self.state = CredentialState(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=clock() + ASSUMED_INITIAL_LIFETIME if access_token else clock(),
        )
        self._next_refresh_at = self.state.expires_at - self.safety_margin
        self._refresh_lock = asyncio.Lock()
        self._timer: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "CredentialRotator":
        return cls(
            client_id=settings.slack_client_id,
            client_secret=settings.slack_client_secret,
            refresh_token=settings.slack_refresh_token,
            access_token=settings.slack_bot_token,
            token_url=settings.slack_token_url,
            safety_margin_seconds=settings.token_refresh_margin_seconds,
            retry_backoff_seconds=settings.token_refresh_retry_seconds,
            **kwargs,
        )

    @property
    def next_refresh_at(self) -> datetime:
        return self._next_refresh_at

    @property
    def access_token(self) -> str:
        return self.state.access_token

    # ------------------------------------------------------------------
    # Token access
    # ------------------------------------------------------------------

    async def bootstrap(self) -> str:
        """Obtain the first access token when none was configured."""
        if self.state.access_token:
            logger.info("credential_bootstrap_skipped", expires_at=self.state.expires_at.isoformat())
            return self.state.access_token
        return await self.refresh()

    async def get_valid_token(self) -> str:
        """Current token, refreshed first if it is inside the safety margin.

        Raises:
            CredentialError: If refresh fails and the current token has expired.
        """
        now = self._clock()
        if now < self.state.expires_at - self.safety_margin:
            return self.state.access_token

        try:
            return await self.refresh(only_if_due=True)
        except CredentialError as e:
            if self.state.access_token and now < self.state.expires_at:
                logger.warning(
                    "credential_refresh_failed_using_current",
                    error=str(e),
                    expires_at=self.state.expires_at.isoformat(),
                )
                return self.state.access_token
            raise

    async def refresh(self, only_if_due: bool = False) -> str:
        """Exchange the refresh token for a new access token.

        With only_if_due, callers that queued behind another refresh get the
        token it produced instead of rotating again.

        Raises:
            CredentialError: On transport errors or a non-ok response.
        """
        async with self._refresh_lock:
            if only_if_due and not self._is_due():
                return self.state.access_token

            data = await self._request_token()

            now = self._clock()
            expires_in = data.get("expires_in")
            lifetime = timedelta(seconds=int(expires_in)) if expires_in else DEFAULT_TOKEN_LIFETIME
            self.state = CredentialState(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token") or self.state.refresh_token,
                expires_at=now + lifetime,
            )
            self._next_refresh_at = self.state.expires_at - self.safety_margin

            logger.info(
                "credential_refreshed",
                expires_at=self.state.expires_at.isoformat(),
                next_refresh_at=self._next_refresh_at.isoformat(),
            )

        if self._on_rotate is not None:
            result = self._on_rotate(self.state.access_token)
            if asyncio.iscoroutine(result):
                await result
        return self.state.access_token

    def _is_due(self) -> bool:
        if not self.state.access_token:
            return True
        return self._clock() >= self.state.expires_at - self.safety_margin

    async def _request_token(self) -> dict:
        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": self.state.refresh_token,
        }
        try:
            if self._http is not None:
                response = await self._http.post(self.token_url, data=form)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(self.token_url, data=form)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CredentialError(f"Token refresh request failed: {e}") from e

        if not data.get("ok") or not data.get("access_token"):
            raise CredentialError(f"Token refresh rejected: {data.get('error', 'no access_token')}")
        return data

    # ------------------------------------------------------------------
    # Proactive timer
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._timer is None:
            self._timer = asyncio.create_task(self._run())
            logger.info("credential_rotator_started", next_refresh_at=self._next_refresh_at.isoformat())

    async def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

    async def _run(self) -> None:
        while True:
            delay = (self._next_refresh_at - self._clock()).total_seconds()
            if delay > 0:
                # a synchronous refresh may move the deadline while we sleep
                await asyncio.sleep(delay)
                continue
            await self._tick()

    async def _tick(self) -> None:
        try:
            await self.refresh(only_if_due=True)
        except CredentialError as e:
            self._next_refresh_at = self._clock() + self.retry_backoff
            logger.error(
                "credential_refresh_failed",
                error=str(e),
                retry_at=self._next_refresh_at.isoformat(),
            )
