"""Repository host client (GitHub REST API)."""

from __future__ import annotations

import base64
import time
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from clawforge.config import settings
from clawforge.errors import ConfigurationError, RepositoryHostError

log = structlog.get_logger()


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def vault_repository_name(prefix: str | None = None) -> str:
    """``<prefix>-<base36 epoch ms>``, unique per creation."""
    return f"{prefix or settings.vault_repo_prefix}-{_base36(int(time.time() * 1000))}"


@dataclass(frozen=True)
class GitHubUser:
    login: str
    email: str | None = None

    @property
    def commit_email(self) -> str:
        return self.email or f"{self.login}@users.noreply.github.com"


@dataclass(frozen=True)
class Repository:
    name: str
    url: str
    ssh_url: str


class GitHubClient:
    """Async GitHub client for the calls provisioning needs."""

    def __init__(
        self,
        token: str | None = None,
        *,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        token = token if token is not None else settings.github_token.get_secret_value()
        if not token:
            raise ConfigurationError("GitHub token is not configured")
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.github_api_base).rstrip("/"),
            timeout=30.0,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            transport=transport,
        )
        self._user: GitHubUser | None = None

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RepositoryHostError(f"GitHub request failed: {e}") from e

    @staticmethod
    def _raise_for(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        try:
            detail = response.json().get("message", "")
        except ValueError:
            detail = response.text
        raise RepositoryHostError(
            f"Failed to {action}: {response.status_code} {detail}".strip(),
            status_code=response.status_code,
        )

    async def get_user(self) -> GitHubUser:
        if self._user is None:
            response = await self._request("GET", "/user")
            self._raise_for(response, "get GitHub user")
            payload = response.json()
            self._user = GitHubUser(login=payload["login"], email=payload.get("email"))
        return self._user

    def ssh_url(self, login: str, name: str) -> str:
        return f"git@github.com:{login}/{name}.git"

    async def repo_exists(self, name: str) -> bool:
        user = await self.get_user()
        response = await self._request("GET", f"/repos/{user.login}/{name}")
        if response.status_code == 404:
            return False
        self._raise_for(response, f"check repository {name}")
        return True

    async def create_repository(self, name: str, description: str | None = None) -> Repository:
        response = await self._request(
            "POST",
            "/user/repos",
            json={
                "name": name,
                "description": description or "Knowledge vault for the clawdbot agent",
                "private": True,
                "auto_init": True,
            },
        )
        self._raise_for(response, f"create repository {name}")
        payload = response.json()
        log.info("repository_created", name=payload["name"])
        return Repository(name=payload["name"], url=payload["html_url"], ssh_url=payload["ssh_url"])

    async def create_deploy_key(
        self,
        repo_name: str,
        public_key: str,
        *,
        title: str = "clawdbot-vm",
        read_only: bool = False,
    ) -> None:
        user = await self.get_user()
        response = await self._request(
            "POST",
            f"/repos/{user.login}/{repo_name}/keys",
            json={"title": title, "key": public_key, "read_only": read_only},
        )
        if response.status_code == 422 and "already in use" in response.text:
            log.info("deploy_key_exists", repo=repo_name)
            return
        self._raise_for(response, f"add deploy key to {repo_name}")
        log.info("deploy_key_added", repo=repo_name)

    async def write_file(self, repo_name: str, path: str, content: str, message: str) -> None:
        """Create or replace a file in the repository's default branch."""
        user = await self.get_user()
        url = f"/repos/{user.login}/{repo_name}/contents/{path}"
        existing = await self._request("GET", url)
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        }
        if existing.status_code == 200:
            body["sha"] = existing.json().get("sha")
        elif existing.status_code != 404:
            self._raise_for(existing, f"read {path}")

        response = await self._request("PUT", url, json=body)
        self._raise_for(response, f"write {path}")
        log.info("repository_file_written", repo=repo_name, path=path)
