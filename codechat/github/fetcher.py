"""
GitHub repository fetcher (REST v3 over httpx.AsyncClient).

Provides what the indexing pipeline needs from a repository host:
- default branch and branch head (commit + tree SHA)
- recursive file tree (blobs only, capped at MAX_FILES_TO_FETCH)
- single file contents (base64-decoded UTF-8, size-capped)
- .gitignore contents
- latest commit SHA (for "newer commit available" checks)

Error mapping:
- 401, or 403 without rate-limit exhaustion -> AuthError (never retried)
- 403/429 with the rate limit exhausted, 5xx, timeouts -> TransientProviderError (one retry)
- 404 and other 4xx -> RepositoryFetchError
- oversized / binary / undecodable file -> ContentError (caller skips the file)
"""

import asyncio
import base64
import binascii
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from codechat.config import (
    GITHUB_API_URL,
    GITHUB_RATE_LIMIT_MAX_WAIT_S,
    GITHUB_RATE_LIMIT_THRESHOLD,
    HTTP_TIMEOUT_S,
    MAX_FILE_SIZE_BYTES,
    MAX_FILES_TO_FETCH,
    PROVIDER_MAX_RETRIES,
    RETRY_BACKOFF_S,
    require_github_token,
)
from codechat.errors import (
    AuthError,
    ContentError,
    ProviderError,
    RepositoryFetchError,
    TransientProviderError,
)
from codechat.parsing.file_filter import FileInfo

logger = logging.getLogger(__name__)


@dataclass
class BranchInfo:
    name: str
    commit_sha: str
    tree_sha: str


@dataclass
class RepositoryTree:
    branch: str
    commit_sha: str
    files: List[FileInfo] = field(default_factory=list)
    truncated: bool = False


@dataclass
class FileContent:
    path: str
    content: str
    size: int
    sha: Optional[str] = None


class GitHubFetcher:
    """Async GitHub client scoped to one access token."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: str = GITHUB_API_URL,
        timeout: float = HTTP_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        token = require_github_token(access_token)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(timeout))
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "codechat-indexer",
        }
        self._rate_remaining: Optional[int] = None
        self._rate_reset: Optional[float] = None

    async def __aenter__(self) -> "GitHubFetcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _respect_rate_limit(self) -> None:
        """Sleep until the rate-limit window resets when few requests remain."""
        if self._rate_remaining is None or self._rate_remaining >= GITHUB_RATE_LIMIT_THRESHOLD:
            return
        wait = (self._rate_reset or 0) - time.time() + 1
        self._rate_remaining = None
        if wait <= 0:
            return
        wait = min(wait, GITHUB_RATE_LIMIT_MAX_WAIT_S)
        logger.info(f"[github] Rate limit low, waiting {wait:.0f}s")
        await asyncio.sleep(wait)

    def _record_rate_limit(self, response: httpx.Response) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        try:
            if remaining is not None:
                self._rate_remaining = int(remaining)
            if reset is not None:
                self._rate_reset = float(reset)
        except ValueError:
            logger.debug(f"[github] Unparseable rate-limit headers: {remaining!r} / {reset!r}")

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        status = response.status_code
        if status < 400:
            return

        if status == 401:
            raise AuthError(f"GitHub rejected the access token while fetching {what}", status)

        if status in (403, 429):
            exhausted = response.headers.get("X-RateLimit-Remaining") == "0"
            if status == 429 or exhausted or "rate limit" in response.text.lower():
                raise TransientProviderError(f"GitHub rate limit exceeded while fetching {what}", status)
            raise AuthError(f"Access denied to {what}", status)

        if status >= 500:
            raise TransientProviderError(f"GitHub unavailable ({status}) while fetching {what}", status)

        if status == 404:
            raise RepositoryFetchError(f"Not found: {what}", status)
        raise RepositoryFetchError(f"GitHub error {status} while fetching {what}", status)

    async def _get(self, path: str, what: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a JSON resource with one retry for transient failures."""
        backoff = RETRY_BACKOFF_S
        for attempt in range(1, PROVIDER_MAX_RETRIES + 2):
            await self._respect_rate_limit()
            try:
                try:
                    response = await self._client.get(path, params=params, headers=self._headers)
                except httpx.TimeoutException as e:
                    raise TransientProviderError(f"Timed out fetching {what}: {e}") from e
                except httpx.TransportError as e:
                    raise TransientProviderError(f"Network error fetching {what}: {e}") from e

                self._record_rate_limit(response)
                self._raise_for_status(response, what)
                return response.json()
            except TransientProviderError as e:
                if attempt > PROVIDER_MAX_RETRIES:
                    raise
                logger.warning(f"[github] {e}; retrying in {backoff:.2f}s")
                await asyncio.sleep(backoff)
                backoff *= 2
        raise ProviderError(f"GitHub retry loop exited unexpectedly for {what}")

    # =========================================================================
    # REPOSITORY
    # =========================================================================

    async def get_default_branch(self, owner: str, repo: str) -> str:
        data = await self._get(f"/repos/{owner}/{repo}", f"{owner}/{repo}")
        return data.get("default_branch") or "main"

    async def get_branch_info(self, owner: str, repo: str, branch: str) -> BranchInfo:
        data = await self._get(
            f"/repos/{owner}/{repo}/branches/{quote(branch, safe='')}",
            f"branch {branch} of {owner}/{repo}",
        )
        commit = data.get("commit") or {}
        tree = ((commit.get("commit") or {}).get("tree") or {})
        return BranchInfo(name=branch, commit_sha=commit.get("sha", ""), tree_sha=tree.get("sha", ""))

    async def get_latest_commit_sha(self, owner: str, repo: str, branch: Optional[str] = None) -> str:
        branch = branch or await self.get_default_branch(owner, repo)
        info = await self.get_branch_info(owner, repo, branch)
        return info.commit_sha

    async def fetch_repository_structure(
        self,
        owner: str,
        repo: str,
        branch: Optional[str] = None,
        max_files: int = MAX_FILES_TO_FETCH,
    ) -> RepositoryTree:
        """Recursive file listing at the head of a branch (default branch if None)."""
        branch = branch or await self.get_default_branch(owner, repo)
        info = await self.get_branch_info(owner, repo, branch)

        data = await self._get(
            f"/repos/{owner}/{repo}/git/trees/{info.tree_sha}",
            f"tree of {owner}/{repo}@{branch}",
            params={"recursive": "1"},
        )

        files = [
            FileInfo(path=entry["path"], size=int(entry.get("size") or 0), sha=entry.get("sha"))
            for entry in data.get("tree", [])
            if entry.get("type") == "blob"
        ]
        truncated = bool(data.get("truncated"))
        if len(files) > max_files:
            logger.warning(f"[github] {owner}/{repo}: {len(files)} files, keeping first {max_files}")
            files = files[:max_files]
            truncated = True

        logger.info(f"[github] {owner}/{repo}@{branch}: {len(files)} files (truncated={truncated})")
        return RepositoryTree(branch=branch, commit_sha=info.commit_sha, files=files, truncated=truncated)

    async def fetch_file_content(self, owner: str, repo: str, path: str, ref: Optional[str] = None) -> FileContent:
        """
        Fetch and decode one file.

        Raises:
            ContentError: too large, not a file, binary, or not valid UTF-8
        """
        params = {"ref": ref} if ref else None
        data = await self._get(
            f"/repos/{owner}/{repo}/contents/{quote(path)}",
            f"{path} in {owner}/{repo}",
            params=params,
        )

        if isinstance(data, list) or data.get("type") != "file":
            raise ContentError(f"{path} is not a file", path=path)

        size = int(data.get("size") or 0)
        if size > MAX_FILE_SIZE_BYTES:
            raise ContentError(f"{path} is too large ({size} bytes)", path=path)

        encoded = data.get("content")
        if encoded is None or (not encoded and size > 0):
            raise ContentError(f"{path} has no inline content", path=path)

        try:
            raw = base64.b64decode(encoded)
            text = raw.decode("utf-8")
        except (binascii.Error, ValueError) as e:
            raise ContentError(f"{path} could not be decoded: {e}", path=path) from e

        if "\x00" in text:
            raise ContentError(f"{path} looks binary", path=path)

        return FileContent(path=path, content=text, size=size, sha=data.get("sha"))

    async def fetch_gitignore(self, owner: str, repo: str, ref: Optional[str] = None) -> str:
        """Root .gitignore contents, or '' when the repository has none."""
        try:
            return (await self.fetch_file_content(owner, repo, ".gitignore", ref)).content
        except RepositoryFetchError as e:
            if e.status_code == 404:
                return ""
            raise
        except ContentError as e:
            logger.warning(f"[github] Ignoring unreadable .gitignore: {e}")
            return ""
