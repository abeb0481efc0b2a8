"""Gerrit REST API client.

Async httpx-based client for the Gerrit change endpoints used by sync:
change queries, change detail, comments, file lists and per-file diffs.

- Every request acquires a token from the client's RateLimiter first
- Responses carry the ")]}'" XSSI guard line, stripped before parsing
- Authenticated access uses HTTP basic auth and the /a/ path prefix
- No retries here: errors propagate to the caller

Reference: https://gerrit-review.googlesource.com/Documentation/rest-api-changes.html
"""

import asyncio
import json
import logging
from typing import Any
from urllib.parse import quote

import httpx

from ...rate_limiter import RateLimiter

logger = logging.getLogger("reviewsync.gerrit.client")

__all__ = [
    "DEFAULT_QUERY_OPTIONS",
    "DETAIL_OPTIONS",
    "GerritClient",
    "GerritClientError",
    "GerritConnectionError",
    "strip_xssi_prefix",
]

XSSI_PREFIX = ")]}'"

# Detail-inclusion flags for full change queries
DEFAULT_QUERY_OPTIONS = ("CURRENT_REVISION", "CURRENT_FILES", "LABELS", "DETAILED_LABELS")

# Flags for single-change fetches
DETAIL_OPTIONS = (
    "CURRENT_REVISION",
    "CURRENT_COMMIT",
    "CURRENT_FILES",
    "DETAILED_LABELS",
    "DETAILED_ACCOUNTS",
    "MESSAGES",
)


class GerritClientError(Exception):
    """Raised when a Gerrit API request fails.

    Attributes:
        status_code: HTTP status, when the server answered
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class GerritConnectionError(GerritClientError, ConnectionError):
    """Raised when the Gerrit host cannot be reached at all."""


def strip_xssi_prefix(body: str) -> str:
    """Remove Gerrit's anti-XSSI guard line if present."""
    if body.startswith(XSSI_PREFIX):
        newline = body.find("\n")
        return body[newline + 1 :] if newline != -1 else ""
    return body


def _quote(segment: str) -> str:
    return quote(segment, safe="")


class GerritClient:
    """Gerrit REST API client using a long-lived httpx.AsyncClient.

    Attributes:
        base_url: Gerrit base URL without trailing slash
        authenticated: True when basic-auth credentials were supplied

    Example:
        >>> async with GerritClient("https://go-review.googlesource.com") as client:
        ...     changes = await client.query_changes("status:open project:go", limit=25)
    """

    CONNECT_TIMEOUT = 10.0  # seconds
    DEFAULT_TIMEOUT = 30.0  # seconds

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        rate_limiter: RateLimiter | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        cancel_event: asyncio.Event | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize Gerrit client.

        Args:
            base_url: Gerrit base URL
            username: HTTP username (empty for anonymous access)
            password: HTTP password
            rate_limiter: Shared limiter; a default 20 burst / 10 rps one if None
            timeout: Read timeout in seconds
            cancel_event: When set, pending rate-limit waits abort
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.authenticated = bool(username and password)
        self._rate_limiter = rate_limiter or RateLimiter(name="gerrit")
        self._cancel_event = cancel_event

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(username, password) if self.authenticated else None,
            headers={
                "Accept": "application/json",
                "User-Agent": "reviewsync/1.0",
            },
            timeout=httpx.Timeout(timeout, connect=self.CONNECT_TIMEOUT),
            transport=transport,
        )

    async def __aenter__(self) -> "GerritClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the httpx client and release connections."""
        await self._client.aclose()

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    # --- Connection ---

    async def test_connection(self) -> dict[str, Any]:
        """Check that Gerrit answers and report its version.

        Returns:
            dict with keys: success (bool), version (str) or error (str)
        """
        try:
            version = await self._get_json("/config/server/version")
            return {"success": True, "version": version, "authenticated": self.authenticated}
        except GerritClientError as e:
            return {"success": False, "error": str(e)}

    # --- Change endpoints ---

    async def query_changes(
        self,
        query: str,
        limit: int,
        start: int = 0,
        options: list[str] | tuple[str, ...] = (),
    ) -> list[dict[str, Any]]:
        """Run one page of a change query.

        Args:
            query: Gerrit query expression
            limit: Page size (n)
            start: Offset (S), only sent when positive
            options: Detail-inclusion flags (o)

        Returns:
            List of ChangeInfo dicts, possibly empty
        """
        params: list[tuple[str, str]] = [("q", query), ("n", str(limit))]
        if start > 0:
            params.append(("S", str(start)))
        params.extend(("o", opt) for opt in options)

        result = await self._get_json("/changes/", params=params)
        if not isinstance(result, list):
            raise GerritClientError(
                f"Unexpected change query response type: {type(result).__name__}"
            )
        return result

    async def get_change(
        self,
        change_id: str,
        options: list[str] | tuple[str, ...] = DETAIL_OPTIONS,
    ) -> dict[str, Any]:
        """Fetch one change by id (project~number, Change-Id or number)."""
        params = [("o", opt) for opt in options]
        return await self._get_json(f"/changes/{_quote(change_id)}", params=params)

    async def list_change_comments(self, change_id: str) -> dict[str, list[dict[str, Any]]]:
        """List published comments keyed by file path."""
        return await self._get_json(f"/changes/{_quote(change_id)}/comments")

    async def list_files(self, change_id: str, revision_id: str) -> dict[str, dict[str, Any]]:
        """List files modified in a revision, keyed by path."""
        return await self._get_json(
            f"/changes/{_quote(change_id)}/revisions/{_quote(revision_id)}/files"
        )

    async def get_file_diff(
        self, change_id: str, revision_id: str, file_path: str
    ) -> dict[str, Any]:
        """Fetch the DiffInfo for one file in a revision."""
        return await self._get_json(
            f"/changes/{_quote(change_id)}/revisions/{_quote(revision_id)}"
            f"/files/{_quote(file_path)}/diff"
        )

    # --- Core HTTP ---

    def _path(self, path: str) -> str:
        if self.authenticated and not path.startswith("/a/"):
            return "/a" + path
        if not self.authenticated and path.startswith("/a/"):
            return path[2:]
        return path

    async def _get_json(
        self,
        path: str,
        params: list[tuple[str, str]] | None = None,
    ) -> Any:
        """GET a Gerrit endpoint and parse its JSON body.

        Raises:
            asyncio.CancelledError: The rate-limit wait was cancelled
            GerritConnectionError: Host unreachable
            GerritClientError: Non-2xx status or unparseable body
        """
        if not await self._rate_limiter.acquire(self._cancel_event):
            raise asyncio.CancelledError("gerrit request cancelled while waiting for rate limit")

        url_path = self._path(path)
        try:
            response = await self._client.get(url_path, params=params)
        except httpx.ConnectError as e:
            logger.error("gerrit_unreachable", extra={"path": url_path, "error": str(e)})
            raise GerritConnectionError(f"Cannot connect to Gerrit at {self.base_url}: {e}") from e
        except httpx.TimeoutException as e:
            raise GerritClientError(f"Gerrit request timed out: {url_path}: {e}") from e
        except httpx.HTTPError as e:
            raise GerritClientError(f"Gerrit HTTP error: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise GerritClientError(
                f"Gerrit API error {response.status_code} for {url_path}: "
                f"{response.text[:200].strip()}",
                status_code=response.status_code,
            )

        try:
            return json.loads(strip_xssi_prefix(response.text))
        except json.JSONDecodeError as e:
            raise GerritClientError(f"Invalid JSON from Gerrit for {url_path}: {e}") from e
