# FILE: tests/test_github_fetcher.py
"""
Tests for the GitHub fetcher against an in-process httpx.MockTransport.
"""

import sys
from pathlib import Path

_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import base64
from unittest.mock import patch

import httpx
import pytest

from codechat.errors import (
    AuthError,
    ConfigurationError,
    ContentError,
    RepositoryFetchError,
    TransientProviderError,
)
from codechat.github.fetcher import GitHubFetcher


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


ROUTES = {
    "/repos/acme/widgets": {"default_branch": "main"},
    "/repos/acme/widgets/branches/main": {
        "name": "main",
        "commit": {"sha": "c0ffee", "commit": {"tree": {"sha": "tree123"}}},
    },
    "/repos/acme/widgets/git/trees/tree123": {
        "truncated": False,
        "tree": [
            {"path": "src", "type": "tree"},
            {"path": "src/app.ts", "type": "blob", "size": 120, "sha": "a1"},
            {"path": "README.md", "type": "blob", "size": 40, "sha": "b2"},
        ],
    },
    "/repos/acme/widgets/contents/src/app.ts": {
        "type": "file", "size": 22, "sha": "a1", "content": _b64("export const x = 1;\n"),
    },
    "/repos/acme/widgets/contents/bin/blob.dat": {
        "type": "file", "size": 4, "sha": "z", "content": _b64("a\x00bc"),
    },
    "/repos/acme/widgets/contents/huge.json": {
        "type": "file", "size": 10_000_000, "sha": "h", "content": "",
    },
    "/repos/acme/widgets/contents/src": [{"name": "app.ts"}],
}


def _router(request: httpx.Request) -> httpx.Response:
    body = ROUTES.get(request.url.path)
    if body is None:
        return httpx.Response(404, json={"message": "Not Found"})
    return httpx.Response(200, json=body, headers={"X-RateLimit-Remaining": "4999"})


def _fetcher(handler=_router) -> GitHubFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.github.test")
    return GitHubFetcher(access_token="ghp_test", client=client)


class TestRepositoryStructure:
    """Tests for branch resolution and tree listing."""

    @pytest.mark.asyncio
    async def test_structure_on_default_branch(self):
        fetcher = _fetcher()
        tree = await fetcher.fetch_repository_structure("acme", "widgets")

        assert tree.branch == "main"
        assert tree.commit_sha == "c0ffee"
        assert [f.path for f in tree.files] == ["src/app.ts", "README.md"]
        assert tree.files[0].size == 120
        assert not tree.truncated

    @pytest.mark.asyncio
    async def test_max_files_truncates(self):
        tree = await _fetcher().fetch_repository_structure("acme", "widgets", "main", max_files=1)
        assert len(tree.files) == 1
        assert tree.truncated

    @pytest.mark.asyncio
    async def test_latest_commit_sha(self):
        assert await _fetcher().get_latest_commit_sha("acme", "widgets") == "c0ffee"

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("Authorization"))
            return _router(request)

        await _fetcher(handler).get_default_branch("acme", "widgets")
        assert seen == ["Bearer ghp_test"]


class TestFileContent:
    """Tests for decoding and content checks."""

    @pytest.mark.asyncio
    async def test_decodes_base64(self):
        content = await _fetcher().fetch_file_content("acme", "widgets", "src/app.ts", ref="c0ffee")
        assert content.content == "export const x = 1;\n"
        assert content.sha == "a1"

    @pytest.mark.asyncio
    async def test_binary_content_rejected(self):
        with pytest.raises(ContentError):
            await _fetcher().fetch_file_content("acme", "widgets", "bin/blob.dat")

    @pytest.mark.asyncio
    async def test_oversized_file_rejected(self):
        with pytest.raises(ContentError) as exc_info:
            await _fetcher().fetch_file_content("acme", "widgets", "huge.json")
        assert exc_info.value.path == "huge.json"

    @pytest.mark.asyncio
    async def test_directory_rejected(self):
        with pytest.raises(ContentError):
            await _fetcher().fetch_file_content("acme", "widgets", "src")

    @pytest.mark.asyncio
    async def test_missing_gitignore_is_empty(self):
        assert await _fetcher().fetch_gitignore("acme", "widgets") == ""

    @pytest.mark.asyncio
    async def test_missing_file_is_fetch_error(self):
        with pytest.raises(RepositoryFetchError) as exc_info:
            await _fetcher().fetch_file_content("acme", "widgets", "nope.py")
        assert exc_info.value.status_code == 404


class TestErrorMapping:
    """Tests for status-code mapping and the single retry."""

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        fetcher = _fetcher(lambda request: httpx.Response(401, json={"message": "Bad credentials"}))
        with pytest.raises(AuthError):
            await fetcher.get_default_branch("acme", "widgets")

    @pytest.mark.asyncio
    async def test_forbidden_without_rate_limit_is_auth(self):
        fetcher = _fetcher(lambda request: httpx.Response(403, json={"message": "Resource not accessible"}))
        with pytest.raises(AuthError):
            await fetcher.get_default_branch("acme", "widgets")

    @pytest.mark.asyncio
    async def test_server_error_retried_once(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if len(calls) == 1:
                return httpx.Response(502, text="bad gateway")
            return _router(request)

        with patch("codechat.github.fetcher.RETRY_BACKOFF_S", 0):
            assert await _fetcher(handler).get_default_branch("acme", "widgets") == "main"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted_is_transient(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(403, json={"message": "API rate limit exceeded"},
                                  headers={"X-RateLimit-Remaining": "0"})

        with patch("codechat.github.fetcher.RETRY_BACKOFF_S", 0), \
                patch("codechat.github.fetcher.GITHUB_RATE_LIMIT_MAX_WAIT_S", 0):
            with pytest.raises(TransientProviderError):
                await _fetcher(handler).get_default_branch("acme", "widgets")
        assert len(calls) == 2

    def test_missing_token(self):
        with patch.dict("os.environ", {"GITHUB_TOKEN": ""}):
            with pytest.raises(ConfigurationError):
                GitHubFetcher()
