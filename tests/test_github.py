"""Tests for the GitHub repository host client."""

import base64
import json
import re
from typing import Any

import httpx
import pytest

from clawforge.errors import ConfigurationError, RepositoryHostError
from clawforge.github import GitHubClient, GitHubUser, vault_repository_name


class FakeGitHubAPI:
    """Routes requests to canned responses and records them."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, Any]] = []
        self.routes: dict[tuple[str, str], httpx.Response] = {
            ("GET", "/user"): httpx.Response(200, json={"login": "octo", "email": None}),
        }

    def on(self, method: str, path: str, response: httpx.Response) -> None:
        self.routes[(method, path)] = response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        return self.routes.get(
            (request.method, request.url.path), httpx.Response(404, json={"message": "Not Found"})
        )

    def client(self) -> GitHubClient:
        return GitHubClient(
            "ghp_test", base_url="https://gh.test", transport=httpx.MockTransport(self)
        )


@pytest.fixture
def api() -> FakeGitHubAPI:
    return FakeGitHubAPI()


class TestGitHubClient:
    """Tests for GitHubClient."""

    def test_requires_token(self) -> None:
        """A missing token is a configuration error."""
        with pytest.raises(ConfigurationError):
            GitHubClient("")

    @pytest.mark.asyncio
    async def test_user_is_cached(self, api: FakeGitHubAPI) -> None:
        """The authenticated user is fetched once."""
        client = api.client()

        user = await client.get_user()
        await client.get_user()
        await client.close()

        assert user == GitHubUser("octo")
        assert user.commit_email == "octo@users.noreply.github.com"
        assert [r[1] for r in api.requests] == ["/user"]

    @pytest.mark.asyncio
    async def test_repo_exists(self, api: FakeGitHubAPI) -> None:
        """404 means absent; other errors raise."""
        api.on("GET", "/repos/octo/vault", httpx.Response(200, json={"name": "vault"}))
        api.on("GET", "/repos/octo/broken", httpx.Response(500, json={"message": "oops"}))
        client = api.client()

        assert await client.repo_exists("vault")
        assert not await client.repo_exists("missing")
        with pytest.raises(RepositoryHostError) as exc_info:
            await client.repo_exists("broken")
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_create_repository(self, api: FakeGitHubAPI) -> None:
        """Vaults are private and initialized."""
        api.on(
            "POST",
            "/user/repos",
            httpx.Response(
                201,
                json={
                    "name": "samantha-vault-abc",
                    "html_url": "https://github.com/octo/samantha-vault-abc",
                    "ssh_url": "git@github.com:octo/samantha-vault-abc.git",
                },
            ),
        )

        repo = await api.client().create_repository("samantha-vault-abc")

        assert repo.url == "https://github.com/octo/samantha-vault-abc"
        _, _, body = api.requests[-1]
        assert body["private"] is True
        assert body["auto_init"] is True

    @pytest.mark.asyncio
    async def test_deploy_key_already_in_use(self, api: FakeGitHubAPI) -> None:
        """A key GitHub already knows is accepted."""
        api.on(
            "POST",
            "/repos/octo/vault/keys",
            httpx.Response(422, json={"message": "Validation Failed: key is already in use"}),
        )

        await api.client().create_deploy_key("vault", "ssh-ed25519 AAAA", title="clawdbot-fox")

        _, path, body = api.requests[-1]
        assert path == "/repos/octo/vault/keys"
        assert body == {"title": "clawdbot-fox", "key": "ssh-ed25519 AAAA", "read_only": False}

    @pytest.mark.asyncio
    async def test_deploy_key_rejected(self, api: FakeGitHubAPI) -> None:
        """Other validation failures raise."""
        api.on(
            "POST",
            "/repos/octo/vault/keys",
            httpx.Response(422, json={"message": "key is invalid"}),
        )
        with pytest.raises(RepositoryHostError, match="key is invalid"):
            await api.client().create_deploy_key("vault", "garbage")

    @pytest.mark.asyncio
    async def test_write_file_updates_existing(self, api: FakeGitHubAPI) -> None:
        """Existing files are replaced using their sha."""
        path = "/repos/octo/vault/contents/integrations/github/repositories.md"
        api.on("GET", path, httpx.Response(200, json={"sha": "abc123"}))
        api.on("PUT", path, httpx.Response(200, json={}))

        await api.client().write_file(
            "vault", "integrations/github/repositories.md", "# Repos", "Update"
        )

        method, _, body = api.requests[-1]
        assert method == "PUT"
        assert body["sha"] == "abc123"
        assert base64.b64decode(body["content"]).decode() == "# Repos"

    @pytest.mark.asyncio
    async def test_write_file_creates_new(self, api: FakeGitHubAPI) -> None:
        """New files are written without a sha."""
        api.on("PUT", "/repos/octo/vault/contents/notes.md", httpx.Response(201, json={}))

        await api.client().write_file("vault", "notes.md", "hello", "Add notes")

        _, _, body = api.requests[-1]
        assert "sha" not in body

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        """Transport failures become repository host errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        transport = httpx.MockTransport(handler)
        client = GitHubClient("t", base_url="https://gh.test", transport=transport)
        with pytest.raises(RepositoryHostError, match="GitHub request failed"):
            await client.get_user()


def test_vault_repository_name() -> None:
    name = vault_repository_name("samantha-vault")
    assert re.fullmatch(r"samantha-vault-[0-9a-z]+", name)
