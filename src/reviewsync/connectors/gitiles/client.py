"""Gitiles commit log browsing client.

Read-only access to a Gitiles host's JSON views: commit logs by ref,
single commits, refs and file contents. Shares the Gerrit client's
conventions: rate-limited requests, ")]}'" prefix stripping, no retries.
"""

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import quote

import httpx

from ...rate_limiter import RateLimiter
from ..gerrit.client import strip_xssi_prefix

logger = logging.getLogger("reviewsync.gitiles.client")

__all__ = [
    "CommitInfo",
    "GitilesClient",
    "GitilesClientError",
    "GitilesConnectionError",
    "LogPage",
    "PersonInfo",
]


class GitilesClientError(Exception):
    """Raised when a Gitiles request fails."""


class GitilesConnectionError(GitilesClientError, ConnectionError):
    """Raised when the Gitiles host cannot be reached."""


def _parse_person_time(value: str) -> datetime | None:
    # Gitiles renders times like "Mon Jan 02 15:04:05 2006 +0000"
    if not value:
        return None
    try:
        return datetime.strptime(value, "%a %b %d %H:%M:%S %Y %z")
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


@dataclass
class PersonInfo:
    name: str = ""
    email: str = ""
    time: datetime | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any] | None) -> "PersonInfo":
        data = data or {}
        return cls(
            name=data.get("name", ""),
            email=data.get("email", ""),
            time=_parse_person_time(data.get("time", "")),
        )


@dataclass
class CommitInfo:
    """One commit as rendered by Gitiles."""

    commit: str
    message: str = ""
    tree: str = ""
    parents: list[str] = field(default_factory=list)
    author: PersonInfo = field(default_factory=PersonInfo)
    committer: PersonInfo = field(default_factory=PersonInfo)

    @property
    def subject(self) -> str:
        return self.message.split("\n", 1)[0]

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "CommitInfo":
        return cls(
            commit=data["commit"],
            message=data.get("message", ""),
            tree=data.get("tree", ""),
            parents=list(data.get("parents") or []),
            author=PersonInfo.from_json(data.get("author")),
            committer=PersonInfo.from_json(data.get("committer")),
        )


@dataclass
class LogPage:
    """A page of commit log; `next` is the start commit of the following page."""

    commits: list[CommitInfo]
    next: str | None = None


class GitilesClient:
    """Async Gitiles client.

    Example:
        >>> async with GitilesClient("https://go.googlesource.com") as client:
        ...     page = await client.get_log("go", "refs/heads/master", limit=10)

    Setting cancel_event aborts pending rate-limit waits with
    asyncio.CancelledError.
    """

    def __init__(
        self,
        base_url: str,
        rate_limiter: RateLimiter | None = None,
        timeout: float = 30.0,
        cancel_event: asyncio.Event | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._rate_limiter = rate_limiter or RateLimiter(name="gitiles")
        self._cancel_event = cancel_event
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json", "User-Agent": "reviewsync/1.0"},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def __aenter__(self) -> "GitilesClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def get_log(
        self,
        project: str,
        ref: str = "HEAD",
        limit: int = 25,
        start: str | None = None,
    ) -> LogPage:
        """Fetch one page of commit log for a ref.

        Args:
            project: Repository name
            ref: Branch, tag or commit (e.g. refs/heads/master)
            limit: Commits per page
            start: Commit to continue from (the previous page's `next`)
        """
        params = {"format": "JSON", "n": str(limit)}
        if start:
            params["s"] = start
        data = await self._get_json(f"/{quote(project, safe='')}/+log/{quote(ref, safe='/')}", params)
        return LogPage(
            commits=[CommitInfo.from_json(c) for c in data.get("log") or []],
            next=data.get("next") or None,
        )

    async def get_commit(self, project: str, sha: str) -> CommitInfo:
        """Fetch a single commit."""
        data = await self._get_json(
            f"/{quote(project, safe='')}/+/{quote(sha, safe='')}", {"format": "JSON"}
        )
        return CommitInfo.from_json(data)

    async def list_refs(self, project: str) -> dict[str, str]:
        """Map of ref name to target commit."""
        data = await self._get_json(f"/{quote(project, safe='')}/+refs", {"format": "JSON"})
        return {name: (info or {}).get("value", "") for name, info in data.items()}

    async def get_file_content(self, project: str, ref: str, path: str) -> bytes:
        """Raw file content at a ref (Gitiles serves it base64 encoded)."""
        response = await self._get(
            f"/{quote(project, safe='')}/+/{quote(ref, safe='/')}/{quote(path, safe='/')}",
            {"format": "TEXT"},
        )
        try:
            return base64.b64decode(response.text)
        except (binascii.Error, ValueError) as e:
            raise GitilesClientError(f"Invalid base64 content for {path}: {e}") from e

    async def _get(self, path: str, params: dict[str, str]) -> httpx.Response:
        if not await self._rate_limiter.acquire(self._cancel_event):
            raise asyncio.CancelledError("gitiles request cancelled while waiting for rate limit")
        try:
            response = await self._client.get(path, params=params)
        except httpx.ConnectError as e:
            raise GitilesConnectionError(f"Cannot connect to Gitiles at {self.base_url}: {e}") from e
        except httpx.HTTPError as e:
            raise GitilesClientError(f"Gitiles HTTP error: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise GitilesClientError(f"Gitiles API error {response.status_code} for {path}")
        return response

    async def _get_json(self, path: str, params: dict[str, str]) -> Any:
        response = await self._get(path, params)
        try:
            return json.loads(strip_xssi_prefix(response.text))
        except json.JSONDecodeError as e:
            raise GitilesClientError(f"Invalid JSON from Gitiles for {path}: {e}") from e
