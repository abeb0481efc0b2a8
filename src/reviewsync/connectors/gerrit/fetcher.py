"""Offset-paginated change fetching with local branch filtering."""

import logging
from datetime import datetime
from typing import Any

from ...models import Change
from .client import GerritClient
from .query import BranchPattern, build_query, match_branch

logger = logging.getLogger("reviewsync.gerrit.fetcher")

__all__ = ["DEFAULT_PAGE_LIMIT", "PaginatedFetcher"]

DEFAULT_PAGE_LIMIT = 100


class PaginatedFetcher:
    """Walks every page of a change query for one status.

    Pagination continues while the raw page is full, even when every change
    on it was dropped by the branch filter: a page of out-of-scope branches
    says nothing about what the next page holds.
    """

    def __init__(
        self,
        client: GerritClient,
        project: str,
        branch_patterns: list[BranchPattern],
        exclude_wip: bool = True,
    ):
        self.client = client
        self.project = project
        self.branch_patterns = branch_patterns
        self.exclude_wip = exclude_wip

    async def fetch_all_for_status(
        self,
        status: str,
        since: datetime | None,
        options: list[str] | tuple[str, ...] = (),
        page_limit: int = DEFAULT_PAGE_LIMIT,
    ) -> list[Change]:
        """Fetch every change with the given status updated after `since`.

        Args:
            status: Change status to query
            since: Lower bound on updated time (date granularity)
            options: Detail-inclusion flags
            page_limit: Page size; non-positive values use DEFAULT_PAGE_LIMIT

        Returns:
            Changes whose branch matches a configured pattern, in fetch order

        Raises:
            GerritClientError: On any remote failure (no retry at this layer)
        """
        if page_limit <= 0:
            page_limit = DEFAULT_PAGE_LIMIT

        query = build_query(status, since, self.project, self.exclude_wip)
        matched: list[Change] = []
        start = 0
        pages = 0
        fetched = 0

        while True:
            page = await self.client.query_changes(query, page_limit, start, options)
            pages += 1
            if not page:
                break

            fetched += len(page)
            for raw in page:
                change = self._parse(raw)
                if change is not None and match_branch(change.branch, self.branch_patterns):
                    matched.append(change)

            if len(page) < page_limit:
                break
            start += page_limit

        logger.info(
            "status_fetch_complete",
            extra={
                "status": status,
                "query": query,
                "pages": pages,
                "fetched": fetched,
                "matched": len(matched),
            },
        )
        return matched

    def _parse(self, raw: dict[str, Any]) -> Change | None:
        try:
            return Change.from_gerrit(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                "change_parse_failed",
                extra={"change_number": raw.get("_number"), "error": str(e)},
            )
            return None
