"""GitHub repository provisioning: one workspace repository per chat user.

The repository name equals the mapped username. Lookups check the configured
organization first, then the authenticated account, and create the repository
in the organization (falling back to the authenticated user) when absent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dispatcher.core.exceptions import RepositoryError

logger = structlog.get_logger(__name__)


class _TransientGitHubError(Exception):
    """5xx or secondary rate limit from GitHub; retried by tenacity."""


@dataclass
class RepositoryRef:
    username: str
    url: str
    clone_url: str
    created_at: datetime | None = None
    last_used: datetime = field(default_factory=lambda: datetime.now(UTC))


class RepositoryProvisioner:
    """Finds or creates a user's workspace repository. Results are cached per username."""

    BASE_URL = "https://api.github.com"

    def __init__(
        self,
        token: str,
        organization: str,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.token = token
        self.organization = organization
        self._http = http_client or httpx.AsyncClient(base_url=self.BASE_URL, timeout=30.0)
        self._cache: dict[str, RepositoryRef] = {}

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def ensure_repository(self, username: str) -> RepositoryRef:
        """Return the user's repository, creating it on first use.

        Raises:
            RepositoryError: If the repository can be neither found nor created.
        """
        cached = self._cache.get(username)
        if cached is not None:
            cached.last_used = datetime.now(UTC)
            return cached

        try:
            ref = await self._find(username)
            if ref is None:
                ref = await self._create(username)
        except (httpx.HTTPError, _TransientGitHubError) as e:
            logger.error("repository_ensure_failed", username=username, error=str(e))
            raise RepositoryError(username, f"Failed to ensure repository for user {username}: {e}") from e

        self._cache[username] = ref
        return ref

    def cached_repository(self, username: str) -> RepositoryRef | None:
        return self._cache.get(username)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def validate_organization(self) -> bool:
        try:
            response = await self._request("GET", f"/orgs/{self.organization}")
            response.raise_for_status()
            return True
        except (httpx.HTTPError, _TransientGitHubError) as e:
            logger.warning("github_organization_unavailable", organization=self.organization, error=str(e))
            return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, _TransientGitHubError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(self, method: str, path: str, json: dict | None = None) -> httpx.Response:
        response = await self._http.request(method, path, headers=self.headers, json=json)
        if response.status_code >= 500 or response.status_code == 429:
            logger.warning("github_transient_error", path=path, status=response.status_code)
            raise _TransientGitHubError(f"GitHub {method} {path} returned {response.status_code}")
        return response

    async def _owners(self) -> list[str]:
        owners = [self.organization]
        response = await self._request("GET", "/user")
        if response.is_success:
            login = response.json().get("login")
            if login and login != self.organization:
                owners.append(login)
        else:
            logger.warning("github_authenticated_user_unavailable", status=response.status_code)
        return owners

    async def _find(self, username: str) -> RepositoryRef | None:
        for owner in await self._owners():
            response = await self._request("GET", f"/repos/{owner}/{username}")
            if response.status_code == 404:
                continue
            response.raise_for_status()
            data = response.json()
            logger.info("repository_found", username=username, owner=owner, url=data["html_url"])
            return RepositoryRef(
                username=username,
                url=data["html_url"],
                clone_url=data["clone_url"],
                created_at=datetime.fromisoformat(data["created_at"].replace("Z", "+00:00"))
                if data.get("created_at")
                else None,
            )
        return None

    async def _create(self, username: str) -> RepositoryRef:
        body = {
            "name": username,
            "description": f"Personal workspace for {username}",
            "private": False,
            "has_issues": True,
            "has_projects": False,
            "has_wiki": False,
            "auto_init": True,
        }
        response = await self._request("POST", f"/orgs/{self.organization}/repos", json=body)
        if response.status_code == 404:
            logger.info("github_organization_not_found", organization=self.organization)
            response = await self._request("POST", "/user/repos", json=body)
        response.raise_for_status()

        data = response.json()
        logger.info("repository_created", username=username, url=data["html_url"])
        return RepositoryRef(
            username=username,
            url=data["html_url"],
            clone_url=data["clone_url"],
            created_at=datetime.now(UTC),
        )

    async def aclose(self) -> None:
        await self._http.aclose()
