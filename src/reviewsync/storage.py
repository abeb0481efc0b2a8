"""Persistence for changes, sync cursors, analyses and summaries.

ChangeStore is the contract the sync and analysis code depends on;
SQLiteChangeStore implements it on aiosqlite with WAL mode and
`INSERT ... ON CONFLICT DO UPDATE` upserts.

Timestamps are stored as UTC ISO 8601 strings with microsecond precision,
so lexical comparison in SQL matches chronological order.
"""

import abc
import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from .models import (
    AnalysisCandidate,
    AnalysisCategory,
    AnalysisResult,
    Change,
    ChangeMessage,
    ChangeStatus,
    ChangeSummary,
    FileDiff,
    LabelVote,
    ReviewComment,
    SyncCursor,
)

logger = logging.getLogger("reviewsync.storage")

__all__ = ["ChangeStore", "SCHEMA_SQL", "SQLiteChangeStore"]

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project TEXT NOT NULL,
    change_number INTEGER NOT NULL,
    change_id TEXT NOT NULL,
    branch TEXT NOT NULL,
    status TEXT NOT NULL,
    subject TEXT NOT NULL DEFAULT '',
    message TEXT NOT NULL DEFAULT '',
    owner_name TEXT NOT NULL DEFAULT '',
    owner_email TEXT NOT NULL DEFAULT '',
    created TEXT NOT NULL,
    updated TEXT NOT NULL,
    submitted TEXT,
    insertions INTEGER NOT NULL DEFAULT 0,
    deletions INTEGER NOT NULL DEFAULT 0,
    current_revision TEXT NOT NULL DEFAULT '',
    last_synced_at TEXT NOT NULL,
    UNIQUE(project, change_number)
);
CREATE INDEX IF NOT EXISTS idx_changes_updated ON changes(updated);

CREATE TABLE IF NOT EXISTS change_labels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_db_id INTEGER NOT NULL REFERENCES changes(id) ON DELETE CASCADE,
    label TEXT NOT NULL,
    value INTEGER NOT NULL,
    account_name TEXT NOT NULL DEFAULT '',
    account_email TEXT NOT NULL DEFAULT '',
    granted_on TEXT
);
CREATE INDEX IF NOT EXISTS idx_change_labels_change ON change_labels(change_db_id);

CREATE TABLE IF NOT EXISTS change_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_db_id INTEGER NOT NULL REFERENCES changes(id) ON DELETE CASCADE,
    message_id TEXT NOT NULL,
    author_name TEXT NOT NULL DEFAULT '',
    author_email TEXT NOT NULL DEFAULT '',
    message TEXT NOT NULL DEFAULT '',
    date TEXT,
    revision_number INTEGER,
    UNIQUE(change_db_id, message_id)
);

CREATE TABLE IF NOT EXISTS change_comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_db_id INTEGER NOT NULL REFERENCES changes(id) ON DELETE CASCADE,
    comment_id TEXT NOT NULL,
    path TEXT,
    line INTEGER,
    author_name TEXT NOT NULL DEFAULT '',
    author_email TEXT NOT NULL DEFAULT '',
    message TEXT NOT NULL DEFAULT '',
    updated TEXT,
    unresolved INTEGER NOT NULL DEFAULT 0,
    in_reply_to TEXT,
    UNIQUE(change_db_id, comment_id)
);

CREATE TABLE IF NOT EXISTS change_files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_db_id INTEGER NOT NULL REFERENCES changes(id) ON DELETE CASCADE,
    revision TEXT NOT NULL,
    path TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'M',
    lines_inserted INTEGER NOT NULL DEFAULT 0,
    lines_deleted INTEGER NOT NULL DEFAULT 0,
    size_delta INTEGER NOT NULL DEFAULT 0,
    is_binary INTEGER NOT NULL DEFAULT 0,
    diff_text TEXT NOT NULL DEFAULT '',
    size_exceeded INTEGER NOT NULL DEFAULT 0,
    UNIQUE(change_db_id, revision, path)
);

CREATE TABLE IF NOT EXISTS sync_cursors (
    project TEXT NOT NULL,
    status TEXT NOT NULL,
    last_synced_at TEXT NOT NULL,
    PRIMARY KEY(project, status)
);

CREATE TABLE IF NOT EXISTS analyses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_db_id INTEGER NOT NULL UNIQUE REFERENCES changes(id) ON DELETE CASCADE,
    category TEXT NOT NULL,
    summary TEXT NOT NULL DEFAULT '',
    discussion TEXT NOT NULL DEFAULT '',
    philosophy_notes TEXT NOT NULL DEFAULT '',
    insights TEXT NOT NULL DEFAULT '[]',
    key_changes TEXT NOT NULL DEFAULT '[]',
    decision_reason TEXT NOT NULL DEFAULT '',
    used_fallback INTEGER NOT NULL DEFAULT 0,
    change_updated TEXT,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_analyses_category ON analyses(category);

CREATE TABLE IF NOT EXISTS change_summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_db_id INTEGER NOT NULL UNIQUE REFERENCES changes(id) ON DELETE CASCADE,
    description_summary TEXT NOT NULL DEFAULT '',
    diff_summary TEXT NOT NULL DEFAULT '',
    diff_explanation TEXT NOT NULL DEFAULT '',
    comments_summary TEXT NOT NULL DEFAULT '',
    discussion_summary TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL
);
"""


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _format_comment(row: aiosqlite.Row) -> str:
    """Render a stored comment as "author (path:line): message"."""
    location = ""
    if row["path"]:
        location = row["path"]
        if row["line"]:
            location += f":{row['line']}"
        location = f" ({location})"
    return f"{row['author_name'] or 'unknown'}{location}: {row['message']}"


class ChangeStore(abc.ABC):
    """Read/write contract for synced changes, cursors and analyses."""

    @abc.abstractmethod
    async def upsert_change(self, change: Change) -> bool:
        """Insert or update a change by (project, change_number).

        Returns:
            True if the change was new
        """

    @abc.abstractmethod
    async def get_change(self, project: str, change_number: int) -> Change | None:
        """Read one change with its labels and messages."""

    @abc.abstractmethod
    async def existing_change_numbers(self, project: str, numbers: list[int]) -> set[int]:
        """Subset of `numbers` already stored for the project."""

    @abc.abstractmethod
    async def get_cursor(self, project: str, status: str) -> SyncCursor | None:
        """Read the watermark for (project, status)."""

    @abc.abstractmethod
    async def advance_cursor(self, project: str, status: str, synced_at: datetime) -> SyncCursor:
        """Move the watermark forward; never moves it backwards."""

    @abc.abstractmethod
    async def replace_comments(
        self, project: str, change_number: int, comments: list[ReviewComment]
    ) -> int:
        """Upsert review comments for a change. Returns rows written."""

    @abc.abstractmethod
    async def upsert_file_diffs(
        self, project: str, change_number: int, revision: str, diffs: list[FileDiff]
    ) -> int:
        """Upsert per-file diffs for a revision. Returns rows written."""

    @abc.abstractmethod
    async def select_changes_needing_analysis(self, limit: int = 50) -> list[AnalysisCandidate]:
        """Changes with no analysis, or one made from an older snapshot of the change."""

    @abc.abstractmethod
    async def upsert_analysis(self, result: AnalysisResult) -> None:
        """Insert or replace the single analysis for a change."""

    @abc.abstractmethod
    async def get_analysis(self, project: str, change_number: int) -> AnalysisResult | None:
        """Read the analysis for one change."""

    @abc.abstractmethod
    async def list_analyses(
        self,
        project: str,
        category: AnalysisCategory | None = None,
        limit: int = 100,
        since: datetime | None = None,
    ) -> list[tuple[Change, AnalysisResult]]:
        """Newest analyses for a project, optionally filtered by category.

        With `since`, only changes updated at or after that time are returned.
        """

    @abc.abstractmethod
    async def upsert_summary(self, summary: ChangeSummary) -> None:
        """Insert or replace the free-text summaries for a change."""

    @abc.abstractmethod
    async def get_summary(self, project: str, change_number: int) -> ChangeSummary | None:
        """Read the summaries for one change."""


class SQLiteChangeStore(ChangeStore):
    """aiosqlite-backed ChangeStore.

    A single connection serves all reads and writes; multi-statement writes
    are serialized with an asyncio.Lock.

    Example:
        >>> async with SQLiteChangeStore("reviewsync.db") as store:
        ...     await store.upsert_change(change)
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def __aenter__(self) -> "SQLiteChangeStore":
        await self.open()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def open(self) -> None:
        """Open the connection and create the schema if needed."""
        if self._conn is not None:
            return
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA busy_timeout=5000")
        await conn.executescript(SCHEMA_SQL)
        await conn.commit()
        self._conn = conn
        logger.info("database_opened", extra={"db_path": self.db_path})

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed", extra={"db_path": self.db_path})

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("SQLiteChangeStore is not open; call open() first")
        return self._conn

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize a write block; commit on success, roll back on any error."""
        async with self._write_lock:
            try:
                yield self.conn
            except BaseException:
                await self.conn.rollback()
                raise
            await self.conn.commit()

    async def _change_db_id(self, project: str, change_number: int) -> int | None:
        async with self.conn.execute(
            "SELECT id FROM changes WHERE project = ? AND change_number = ?",
            (project, change_number),
        ) as cursor:
            row = await cursor.fetchone()
        return row["id"] if row else None

    # --- Changes ---

    async def upsert_change(self, change: Change) -> bool:
        now = _ts(change.last_synced_at or datetime.now(timezone.utc))
        async with self._transaction():
            existing = await self._change_db_id(change.project, change.change_number)
            await self.conn.execute(
                """
                INSERT INTO changes (
                    project, change_number, change_id, branch, status, subject, message,
                    owner_name, owner_email, created, updated, submitted,
                    insertions, deletions, current_revision, last_synced_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(project, change_number) DO UPDATE SET
                    change_id=excluded.change_id,
                    branch=excluded.branch,
                    status=excluded.status,
                    subject=excluded.subject,
                    message=CASE WHEN excluded.message != '' THEN excluded.message
                                 ELSE changes.message END,
                    owner_name=excluded.owner_name,
                    owner_email=excluded.owner_email,
                    updated=MAX(changes.updated, excluded.updated),
                    submitted=COALESCE(excluded.submitted, changes.submitted),
                    insertions=excluded.insertions,
                    deletions=excluded.deletions,
                    current_revision=CASE WHEN excluded.current_revision != ''
                                          THEN excluded.current_revision
                                          ELSE changes.current_revision END,
                    last_synced_at=excluded.last_synced_at
                """,
                (
                    change.project,
                    change.change_number,
                    change.change_id,
                    change.branch,
                    change.status.value,
                    change.subject,
                    change.message,
                    change.owner_name,
                    change.owner_email,
                    _ts(change.created),
                    _ts(change.updated),
                    _ts(change.submitted),
                    change.insertions,
                    change.deletions,
                    change.current_revision,
                    now,
                ),
            )
            db_id = await self._change_db_id(change.project, change.change_number)

            if change.labels:
                await self.conn.execute(
                    "DELETE FROM change_labels WHERE change_db_id = ?", (db_id,)
                )
                await self.conn.executemany(
                    """
                    INSERT INTO change_labels
                        (change_db_id, label, value, account_name, account_email, granted_on)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (db_id, v.label, v.value, v.account_name, v.account_email, _ts(v.granted_on))
                        for v in change.labels
                    ],
                )

            if change.messages:
                await self.conn.executemany(
                    """
                    INSERT INTO change_messages
                        (change_db_id, message_id, author_name, author_email, message,
                         date, revision_number)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(change_db_id, message_id) DO UPDATE SET
                        message=excluded.message
                    """,
                    [
                        (
                            db_id,
                            m.message_id,
                            m.author_name,
                            m.author_email,
                            m.message,
                            _ts(m.date),
                            m.revision_number,
                        )
                        for m in change.messages
                    ],
                )

        logger.debug(
            "change_upserted",
            extra={"change_number": change.change_number, "inserted": existing is None},
        )
        return existing is None

    def _row_to_change(self, row: aiosqlite.Row) -> Change:
        return Change(
            change_number=row["change_number"],
            change_id=row["change_id"],
            project=row["project"],
            branch=row["branch"],
            status=ChangeStatus(row["status"]),
            subject=row["subject"],
            created=_parse_ts(row["created"]),
            updated=_parse_ts(row["updated"]),
            message=row["message"],
            owner_name=row["owner_name"],
            owner_email=row["owner_email"],
            submitted=_parse_ts(row["submitted"]),
            insertions=row["insertions"],
            deletions=row["deletions"],
            current_revision=row["current_revision"],
            last_synced_at=_parse_ts(row["last_synced_at"]),
        )

    async def get_change(self, project: str, change_number: int) -> Change | None:
        async with self.conn.execute(
            "SELECT * FROM changes WHERE project = ? AND change_number = ?",
            (project, change_number),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None

        change = self._row_to_change(row)
        change.labels = [
            LabelVote(
                label=r["label"],
                value=r["value"],
                account_name=r["account_name"],
                account_email=r["account_email"],
                granted_on=_parse_ts(r["granted_on"]),
            )
            for r in await self.conn.execute_fetchall(
                "SELECT * FROM change_labels WHERE change_db_id = ? ORDER BY id", (row["id"],)
            )
        ]
        change.messages = await self._load_messages(row["id"])
        return change

    async def _load_messages(self, change_db_id: int) -> list[ChangeMessage]:
        rows = await self.conn.execute_fetchall(
            "SELECT * FROM change_messages WHERE change_db_id = ? ORDER BY date, id",
            (change_db_id,),
        )
        return [
            ChangeMessage(
                message_id=r["message_id"],
                message=r["message"],
                author_name=r["author_name"],
                author_email=r["author_email"],
                date=_parse_ts(r["date"]),
                revision_number=r["revision_number"],
            )
            for r in rows
        ]

    async def existing_change_numbers(self, project: str, numbers: list[int]) -> set[int]:
        if not numbers:
            return set()
        found: set[int] = set()
        # Stay well under SQLite's bound-parameter limit
        for i in range(0, len(numbers), 500):
            chunk = numbers[i : i + 500]
            placeholders = ",".join("?" for _ in chunk)
            rows = await self.conn.execute_fetchall(
                f"SELECT change_number FROM changes WHERE project = ? "
                f"AND change_number IN ({placeholders})",
                (project, *chunk),
            )
            found.update(r["change_number"] for r in rows)
        return found

    # --- Cursors ---

    async def get_cursor(self, project: str, status: str) -> SyncCursor | None:
        async with self.conn.execute(
            "SELECT last_synced_at FROM sync_cursors WHERE project = ? AND status = ?",
            (project, status),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return SyncCursor(project=project, status=status, last_synced_at=_parse_ts(row[0]))

    async def advance_cursor(self, project: str, status: str, synced_at: datetime) -> SyncCursor:
        async with self._transaction():
            await self.conn.execute(
                """
                INSERT INTO sync_cursors (project, status, last_synced_at)
                VALUES (?, ?, ?)
                ON CONFLICT(project, status) DO UPDATE SET
                    last_synced_at=MAX(sync_cursors.last_synced_at, excluded.last_synced_at)
                """,
                (project, status, _ts(synced_at)),
            )
        cursor = await self.get_cursor(project, status)
        logger.debug(
            "cursor_advanced",
            extra={
                "project": project,
                "status": status,
                "last_synced_at": cursor.last_synced_at.isoformat(),
            },
        )
        return cursor

    # --- Details ---

    async def replace_comments(
        self, project: str, change_number: int, comments: list[ReviewComment]
    ) -> int:
        if not comments:
            return 0
        async with self._transaction():
            db_id = await self._change_db_id(project, change_number)
            if db_id is None:
                raise KeyError(f"change {project}~{change_number} is not stored")
            await self.conn.executemany(
                """
                INSERT INTO change_comments
                    (change_db_id, comment_id, path, line, author_name, author_email,
                     message, updated, unresolved, in_reply_to)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(change_db_id, comment_id) DO UPDATE SET
                    message=excluded.message,
                    updated=excluded.updated,
                    unresolved=excluded.unresolved
                """,
                [
                    (
                        db_id,
                        c.comment_id,
                        c.path,
                        c.line,
                        c.author_name,
                        c.author_email,
                        c.message,
                        _ts(c.updated),
                        int(c.unresolved),
                        c.in_reply_to,
                    )
                    for c in comments
                ],
            )
        return len(comments)

    async def upsert_file_diffs(
        self, project: str, change_number: int, revision: str, diffs: list[FileDiff]
    ) -> int:
        if not diffs:
            return 0
        async with self._transaction():
            db_id = await self._change_db_id(project, change_number)
            if db_id is None:
                raise KeyError(f"change {project}~{change_number} is not stored")
            await self.conn.executemany(
                """
                INSERT INTO change_files
                    (change_db_id, revision, path, status, lines_inserted, lines_deleted,
                     size_delta, is_binary, diff_text, size_exceeded)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(change_db_id, revision, path) DO UPDATE SET
                    status=excluded.status,
                    lines_inserted=excluded.lines_inserted,
                    lines_deleted=excluded.lines_deleted,
                    size_delta=excluded.size_delta,
                    is_binary=excluded.is_binary,
                    diff_text=excluded.diff_text,
                    size_exceeded=excluded.size_exceeded
                """,
                [
                    (
                        db_id,
                        revision,
                        d.path,
                        d.status,
                        d.lines_inserted,
                        d.lines_deleted,
                        d.size_delta,
                        int(d.binary),
                        d.diff_text,
                        int(d.size_exceeded),
                    )
                    for d in diffs
                ],
            )
        return len(diffs)

    # --- Analyses ---

    async def select_changes_needing_analysis(self, limit: int = 50) -> list[AnalysisCandidate]:
        # Rows without a snapshot time fall back to when they were written
        rows = await self.conn.execute_fetchall(
            """
            SELECT c.* FROM changes c
            LEFT JOIN analyses a ON a.change_db_id = c.id
            WHERE a.id IS NULL OR COALESCE(a.change_updated, a.updated_at) < c.updated
            ORDER BY c.updated DESC
            LIMIT ?
            """,
            (limit,),
        )

        candidates = []
        for row in rows:
            change = self._row_to_change(row)
            change.messages = await self._load_messages(row["id"])

            comment_rows = await self.conn.execute_fetchall(
                "SELECT * FROM change_comments WHERE change_db_id = ? ORDER BY updated, id",
                (row["id"],),
            )
            comment_texts = [_format_comment(r) for r in comment_rows]
            discussion = "\n".join(
                f"{m.author_name or 'unknown'}: {m.message}" for m in change.messages if m.message
            )

            diff_rows = await self.conn.execute_fetchall(
                """
                SELECT path, diff_text FROM change_files
                WHERE change_db_id = ? AND revision = ? AND diff_text != ''
                ORDER BY path
                """,
                (row["id"], change.current_revision),
            )
            diff = "".join(f"--- {r['path']}\n{r['diff_text']}" for r in diff_rows)

            candidates.append(
                AnalysisCandidate(
                    change=change,
                    comments="\n".join(comment_texts),
                    discussion=discussion,
                    diff=diff,
                    comment_texts=comment_texts,
                )
            )
        return candidates

    async def upsert_analysis(self, result: AnalysisResult) -> None:
        async with self._transaction():
            db_id = await self._change_db_id(result.project, result.change_number)
            if db_id is None:
                raise KeyError(f"change {result.project}~{result.change_number} is not stored")
            await self.conn.execute(
                """
                INSERT INTO analyses (
                    change_db_id, category, summary, discussion, philosophy_notes,
                    insights, key_changes, decision_reason, used_fallback,
                    change_updated, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(change_db_id) DO UPDATE SET
                    category=excluded.category,
                    summary=excluded.summary,
                    discussion=excluded.discussion,
                    philosophy_notes=excluded.philosophy_notes,
                    insights=excluded.insights,
                    key_changes=excluded.key_changes,
                    decision_reason=excluded.decision_reason,
                    used_fallback=excluded.used_fallback,
                    change_updated=excluded.change_updated,
                    updated_at=excluded.updated_at
                """,
                (
                    db_id,
                    result.category.value,
                    result.summary,
                    result.discussion,
                    result.philosophy_notes,
                    json.dumps(result.insights),
                    json.dumps(result.key_changes),
                    result.decision_reason,
                    int(result.used_fallback),
                    _ts(result.change_updated),
                    _ts(result.updated_at),
                ),
            )

    @staticmethod
    def _row_to_analysis(
        row: aiosqlite.Row, project: str, change_number: int, prefix: str = ""
    ) -> AnalysisResult:
        return AnalysisResult(
            change_number=change_number,
            project=project,
            category=AnalysisCategory.normalize(row[f"{prefix}category"]),
            summary=row[f"{prefix}summary"],
            discussion=row[f"{prefix}discussion"],
            philosophy_notes=row[f"{prefix}philosophy_notes"],
            insights=json.loads(row[f"{prefix}insights"] or "[]"),
            key_changes=json.loads(row[f"{prefix}key_changes"] or "[]"),
            decision_reason=row[f"{prefix}decision_reason"],
            used_fallback=bool(row[f"{prefix}used_fallback"]),
            change_updated=_parse_ts(row[f"{prefix}change_updated"]),
            updated_at=_parse_ts(row[f"{prefix}updated_at"]),
        )

    async def get_analysis(self, project: str, change_number: int) -> AnalysisResult | None:
        async with self.conn.execute(
            """
            SELECT a.* FROM analyses a JOIN changes c ON c.id = a.change_db_id
            WHERE c.project = ? AND c.change_number = ?
            """,
            (project, change_number),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_analysis(row, project, change_number)

    async def list_analyses(
        self,
        project: str,
        category: AnalysisCategory | None = None,
        limit: int = 100,
        since: datetime | None = None,
    ) -> list[tuple[Change, AnalysisResult]]:
        sql = """
            SELECT c.*, a.category AS a_category, a.summary AS a_summary,
                   a.discussion AS a_discussion, a.philosophy_notes AS a_philosophy_notes,
                   a.insights AS a_insights, a.key_changes AS a_key_changes,
                   a.decision_reason AS a_decision_reason, a.used_fallback AS a_used_fallback,
                   a.change_updated AS a_change_updated, a.updated_at AS a_updated_at
            FROM analyses a JOIN changes c ON c.id = a.change_db_id
            WHERE c.project = ?
        """
        params: list[Any] = [project]
        if category is not None:
            sql += " AND a.category = ?"
            params.append(category.value)
        if since is not None:
            sql += " AND c.updated >= ?"
            params.append(_ts(since))
        sql += " ORDER BY c.updated DESC LIMIT ?"
        params.append(limit)

        pairs = []
        for row in await self.conn.execute_fetchall(sql, params):
            change = self._row_to_change(row)
            pairs.append(
                (change, self._row_to_analysis(row, project, change.change_number, prefix="a_"))
            )
        return pairs

    # --- Summaries ---

    async def upsert_summary(self, summary: ChangeSummary) -> None:
        async with self._transaction():
            db_id = await self._change_db_id(summary.project, summary.change_number)
            if db_id is None:
                raise KeyError(f"change {summary.project}~{summary.change_number} is not stored")
            await self.conn.execute(
                """
                INSERT INTO change_summaries (
                    change_db_id, description_summary, diff_summary, diff_explanation,
                    comments_summary, discussion_summary, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(change_db_id) DO UPDATE SET
                    description_summary=excluded.description_summary,
                    diff_summary=excluded.diff_summary,
                    diff_explanation=excluded.diff_explanation,
                    comments_summary=excluded.comments_summary,
                    discussion_summary=excluded.discussion_summary,
                    updated_at=excluded.updated_at
                """,
                (
                    db_id,
                    summary.description_summary,
                    summary.diff_summary,
                    summary.diff_explanation,
                    summary.comments_summary,
                    summary.discussion_summary,
                    _ts(summary.updated_at),
                ),
            )

    async def get_summary(self, project: str, change_number: int) -> ChangeSummary | None:
        async with self.conn.execute(
            """
            SELECT s.* FROM change_summaries s JOIN changes c ON c.id = s.change_db_id
            WHERE c.project = ? AND c.change_number = ?
            """,
            (project, change_number),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return ChangeSummary(
            change_number=change_number,
            project=project,
            description_summary=row["description_summary"],
            diff_summary=row["diff_summary"],
            diff_explanation=row["diff_explanation"],
            comments_summary=row["comments_summary"],
            discussion_summary=row["discussion_summary"],
            updated_at=_parse_ts(row["updated_at"]),
        )
