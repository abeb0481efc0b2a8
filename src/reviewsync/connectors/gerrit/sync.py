"""Gerrit sync engine and cursor-driven sync service.

GerritSyncEngine fetches every configured status through PaginatedFetcher,
one status at a time. A failing status is logged and skipped; cancellation
and deadline errors abort the whole run. The run fails only when every status
failed.

SyncService wraps the engine with per-(project, status) cursors, store upserts
and optional per-change detail sync (comments and file diffs). backfill()
re-fetches a fixed window without touching the cursors.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from ...config import ReviewSyncConfig
from ...metrics import (
    changes_synced_total,
    push_metrics,
    sync_duration_seconds,
    sync_status_failures_total,
)
from ...models import Change, ReviewComment, parse_gerrit_time
from ...storage import ChangeStore
from .client import DEFAULT_QUERY_OPTIONS, DETAIL_OPTIONS, GerritClient, GerritClientError
from .diff_policy import DiffPolicy
from .fetcher import PaginatedFetcher

logger = logging.getLogger("reviewsync.gerrit.sync")

__all__ = [
    "CANCELLATION_ERRORS",
    "GerritSyncEngine",
    "SyncResult",
    "SyncService",
    "UpdateCheckResult",
]

# Errors that abort a sync run instead of being tolerated per status
CANCELLATION_ERRORS: tuple[type[BaseException], ...] = (
    asyncio.CancelledError,
    asyncio.TimeoutError,
    TimeoutError,
)

PATCHSET_LEVEL_PATH = "/PATCHSET_LEVEL"


class GerritSyncEngine:
    """Fetches changes for every configured status.

    Attributes:
        statuses: Status values fetched in order
        fetcher: PaginatedFetcher bound to the configured project and branches
    """

    LIGHT_PAGE_LIMIT = 25

    def __init__(
        self,
        client: GerritClient,
        config: ReviewSyncConfig,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.client = client
        self.config = config
        self.statuses = list(config.gerrit_statuses)
        self.fetcher = PaginatedFetcher(
            client,
            project=config.gerrit_project,
            branch_patterns=config.branch_patterns,
            exclude_wip=config.sync_exclude_wip,
        )
        self._cancel_event = cancel_event

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise asyncio.CancelledError("sync cancelled before start")

    async def fetch_per_status(
        self,
        since_by_status: dict[str, datetime | None],
        options: list[str] | tuple[str, ...] = DEFAULT_QUERY_OPTIONS,
        page_limit: int | None = None,
    ) -> dict[str, list[Change]]:
        """Fetch each status sequentially, tolerating per-status failures.

        Args:
            since_by_status: Lower bound per status; statuses absent from the
                mapping are skipped
            options: Detail-inclusion flags
            page_limit: Page size (default: config.sync_page_limit)

        Returns:
            Changes keyed by status, for the statuses that succeeded

        Raises:
            asyncio.CancelledError, TimeoutError: Immediately, from any status
            Exception: The last per-status error, when no status succeeded
        """
        self._check_cancelled()
        limit = page_limit or self.config.sync_page_limit

        results: dict[str, list[Change]] = {}
        last_error: Exception | None = None

        for status in self.statuses:
            if status not in since_by_status:
                continue
            try:
                changes = await self.fetcher.fetch_all_for_status(
                    status, since_by_status[status], options, limit
                )
            except CANCELLATION_ERRORS:
                logger.info("sync_cancelled", extra={"status": status})
                raise
            except Exception as e:
                last_error = e
                sync_status_failures_total.labels(status=status).inc()
                logger.error(
                    "status_fetch_failed",
                    extra={
                        "status": status,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                continue
            results[status] = changes

        if not results and last_error is not None:
            raise last_error
        return results

    async def sync_since(self, since: datetime | None) -> list[Change]:
        """Full fetch of every status updated after `since`."""
        per_status = await self.fetch_per_status(
            {status: since for status in self.statuses},
            options=DEFAULT_QUERY_OPTIONS,
            page_limit=self.config.sync_page_limit,
        )
        return _flatten(per_status)

    async def sync_since_light(self, since: datetime | None) -> list[Change]:
        """Fast poll: small pages, no detail-inclusion flags."""
        per_status = await self.fetch_per_status(
            {status: since for status in self.statuses},
            options=(),
            page_limit=self.config.sync_light_page_limit or self.LIGHT_PAGE_LIMIT,
        )
        return _flatten(per_status)


def _flatten(per_status: dict[str, list[Change]]) -> list[Change]:
    """Merge per-status lists, keeping the newest observation of each change."""
    merged: dict[tuple[str, int], Change] = {}
    for changes in per_status.values():
        for change in changes:
            key = (change.project, change.change_number)
            current = merged.get(key)
            if current is None or change.updated > current.updated:
                merged[key] = change
    return list(merged.values())


@dataclass
class SyncResult:
    """Result of one sync run.

    Tracks per-status outcome, store writes and timing for metrics.
    """

    statuses_synced: list[str] = field(default_factory=list)
    statuses_failed: list[str] = field(default_factory=list)
    changes_fetched: int = 0
    changes_inserted: int = 0
    changes_updated: int = 0
    details_synced: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    error_details: list[str] = field(default_factory=list)

    @property
    def total_synced(self) -> int:
        """Changes successfully written."""
        return self.changes_inserted + self.changes_updated

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for metrics and logging."""
        return {
            "statuses_synced": list(self.statuses_synced),
            "statuses_failed": list(self.statuses_failed),
            "changes_fetched": self.changes_fetched,
            "changes_inserted": self.changes_inserted,
            "changes_updated": self.changes_updated,
            "details_synced": self.details_synced,
            "errors": self.errors,
            "total_synced": self.total_synced,
            "duration_seconds": round(self.duration_seconds, 2),
        }


@dataclass
class UpdateCheckResult:
    """Recent upstream changes compared with the store."""

    checked: int
    missing: list[int] = field(default_factory=list)
    since: datetime | None = None

    @property
    def has_updates(self) -> bool:
        return bool(self.missing)


class SyncService:
    """Cursor-driven incremental sync into a ChangeStore.

    Each status keeps its own cursor. A run reads the cursor, subtracts the
    safety window, fetches, upserts, and advances the cursor to the run's
    start time only for statuses whose fetch and writes all succeeded.

    Example:
        >>> service = SyncService(config, client, store)
        >>> result = await service.run_once()
    """

    def __init__(
        self,
        config: ReviewSyncConfig,
        client: GerritClient,
        store: ChangeStore,
        diff_policy: DiffPolicy | None = None,
        engine: GerritSyncEngine | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.store = store
        self.project = config.gerrit_project
        self.engine = engine or GerritSyncEngine(client, config)
        self.diff_policy = diff_policy or DiffPolicy(
            max_size_bytes=config.diff_max_size_bytes,
            exclude_paths=config.diff_exclude_paths,
            exclude_patterns=config.diff_exclude_patterns,
        )

    async def _since_for(self, status: str, run_start: datetime) -> datetime:
        """Lower bound for a status: cursor minus safety window, or the lookback."""
        cursor = await self.store.get_cursor(self.project, status)
        if cursor is None:
            return run_start - timedelta(days=self.config.sync_updated_days)
        return cursor.last_synced_at - timedelta(minutes=self.config.sync_safety_window_minutes)

    async def run_once(self) -> SyncResult:
        """Run one incremental sync over every configured status.

        Returns:
            SyncResult with counts for this run

        Raises:
            asyncio.CancelledError: The run was cancelled
            Exception: Every status failed to fetch (the last error)
        """
        start_time = time.monotonic()
        run_start = datetime.now(timezone.utc)
        result = SyncResult()

        since_by_status = {
            status: await self._since_for(status, run_start) for status in self.engine.statuses
        }
        logger.info(
            "sync_started",
            extra={
                "project": self.project,
                "since": {s: t.isoformat() for s, t in since_by_status.items()},
            },
        )

        per_status = await self.engine.fetch_per_status(since_by_status)
        result.statuses_failed = [s for s in self.engine.statuses if s not in per_status]

        for status, changes in per_status.items():
            result.changes_fetched += len(changes)
            status_errors = 0
            for change in changes:
                if not await self._store_change(change, status, result):
                    status_errors += 1

            if status_errors:
                logger.warning(
                    "cursor_not_advanced",
                    extra={"status": status, "failed_writes": status_errors},
                )
                result.statuses_failed.append(status)
                continue

            await self.store.advance_cursor(self.project, status, run_start)
            result.statuses_synced.append(status)

        result.duration_seconds = time.monotonic() - start_time
        sync_duration_seconds.set(result.duration_seconds)
        push_metrics(self.config.pushgateway_url, job="reviewsync_sync", instance=self.project)

        logger.info(
            "sync_complete",
            extra={**result.to_dict(), "rate_limiter": self.client.rate_limiter.get_status()},
        )
        return result

    async def backfill(self, days: int) -> SyncResult:
        """Full fetch of every status updated in the last `days` days.

        Ignores and never moves the per-status cursors, so incremental runs
        keep their own watermarks. Per-status fetch failures follow the
        engine's policy; store failures are counted in the result.

        Raises:
            asyncio.CancelledError: The run was cancelled
            Exception: Every status failed to fetch (the last error)
        """
        start_time = time.monotonic()
        since = datetime.now(timezone.utc) - timedelta(days=days)
        result = SyncResult()
        logger.info(
            "backfill_started",
            extra={"project": self.project, "days": days, "since": since.isoformat()},
        )

        changes = await self.engine.sync_since(since)
        result.changes_fetched = len(changes)
        for change in changes:
            await self._store_change(change, change.status.value, result)

        result.duration_seconds = time.monotonic() - start_time
        logger.info("backfill_complete", extra=result.to_dict())
        return result

    async def _store_change(self, change: Change, status: str, result: SyncResult) -> bool:
        """Upsert one change (and its details). Returns False on a store failure."""
        try:
            inserted = await self.store.upsert_change(change)
        except CANCELLATION_ERRORS:
            raise
        except Exception as e:
            result.errors += 1
            result.error_details.append(f"{change.key}: {e}")
            changes_synced_total.labels(status=status, result="failed").inc()
            logger.error(
                "change_store_failed",
                extra={"change_number": change.change_number, "error": str(e)},
            )
            return False

        if inserted:
            result.changes_inserted += 1
        else:
            result.changes_updated += 1
        changes_synced_total.labels(
            status=status, result="inserted" if inserted else "updated"
        ).inc()

        if self.config.sync_fetch_details:
            if await self.sync_details(change):
                result.details_synced += 1
        return True

    async def sync_details(self, change: Change) -> bool:
        """Fetch and store comments and current-revision diffs for a change.

        Detail failures are logged and reported as False; they never fail
        the surrounding sync run.
        """
        try:
            raw_comments = await self.client.list_change_comments(change.key)
            comments = _parse_comments(raw_comments)
            await self.store.replace_comments(change.project, change.change_number, comments)

            if change.current_revision:
                files = await self.client.list_files(change.key, change.current_revision)
                diffs = []
                for path, file_info in sorted(files.items()):
                    if self.diff_policy.should_skip_file(path):
                        continue
                    diff_info = None
                    if not file_info.get("binary"):
                        diff_info = await self.client.get_file_diff(
                            change.key, change.current_revision, path
                        )
                    diffs.append(self.diff_policy.process(path, file_info, diff_info))
                await self.store.upsert_file_diffs(
                    change.project, change.change_number, change.current_revision, diffs
                )
            return True
        except CANCELLATION_ERRORS:
            raise
        except (GerritClientError, KeyError, ValueError) as e:
            logger.warning(
                "change_details_failed",
                extra={"change_number": change.change_number, "error": str(e)},
            )
            return False

    async def sync_change(self, change_number: int) -> Change:
        """Fetch one change with full detail and store it.

        Raises:
            GerritClientError: If the change cannot be fetched
        """
        raw = await self.client.get_change(f"{self.project}~{change_number}", DETAIL_OPTIONS)
        change = Change.from_gerrit(raw)
        inserted = await self.store.upsert_change(change)
        await self.sync_details(change)
        logger.info(
            "change_synced",
            extra={"change_number": change_number, "inserted": inserted},
        )
        return change

    async def check_for_updates(self, days: int = 30) -> UpdateCheckResult:
        """Light fetch of recent changes, reporting those not yet stored."""
        since = datetime.now(timezone.utc) - timedelta(days=days)
        changes = await self.engine.sync_since_light(since)
        numbers = [c.change_number for c in changes]
        existing = await self.store.existing_change_numbers(self.project, numbers)
        missing = sorted(set(numbers) - existing)
        logger.info(
            "update_check_complete",
            extra={"checked": len(numbers), "missing": len(missing), "days": days},
        )
        return UpdateCheckResult(checked=len(numbers), missing=missing, since=since)


def _parse_comments(raw: dict[str, list[dict[str, Any]]]) -> list[ReviewComment]:
    """Flatten Gerrit's path-keyed comment map."""
    comments = []
    for path, entries in (raw or {}).items():
        for entry in entries or []:
            author = entry.get("author") or {}
            comments.append(
                ReviewComment(
                    comment_id=entry.get("id", ""),
                    message=entry.get("message", "") or "",
                    path=None if path == PATCHSET_LEVEL_PATH else path,
                    line=entry.get("line") or None,
                    author_name=author.get("name", "") or "",
                    author_email=author.get("email", "") or "",
                    updated=parse_gerrit_time(entry.get("updated")),
                    unresolved=bool(entry.get("unresolved")),
                    in_reply_to=entry.get("in_reply_to") or None,
                )
            )
    return comments
