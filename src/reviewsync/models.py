"""Domain models for synced changes and their analyses.

Gerrit payloads are parsed into these dataclasses at the connector boundary;
everything downstream (storage, analysis) works with the typed objects.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

__all__ = [
    "AnalysisCandidate",
    "AnalysisCategory",
    "AnalysisResult",
    "Change",
    "ChangeMessage",
    "ChangeStatus",
    "ChangeSummary",
    "FileDiff",
    "LabelVote",
    "ReviewComment",
    "SyncCursor",
    "format_gerrit_time",
    "parse_gerrit_time",
]

# Gerrit timestamps are UTC without an offset; nanosecond precision is common.
_GERRIT_TIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
)


class ChangeStatus(str, Enum):
    """Lifecycle state of a change."""

    OPEN = "open"
    MERGED = "merged"
    ABANDONED = "abandoned"

    @classmethod
    def from_gerrit(cls, value: str) -> "ChangeStatus":
        """Map Gerrit wire values (NEW, MERGED, ABANDONED) onto statuses."""
        normalized = (value or "").strip().lower()
        if normalized in ("new", "open"):
            return cls.OPEN
        return cls(normalized)


class AnalysisCategory(str, Enum):
    """Closed set of categories an analysis may assign."""

    ERROR_HANDLING = "error-handling"
    TESTING = "testing"
    PERFORMANCE = "performance"
    CONCURRENCY = "concurrency"
    API_DESIGN = "api-design"
    TOOLING = "tooling"
    DOCUMENTATION = "documentation"
    OTHER = "other"

    @classmethod
    def normalize(cls, value: Any) -> "AnalysisCategory":
        """Coerce free text into a category, falling back to OTHER."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return cls.OTHER
        try:
            return cls(value.strip().lower().replace("_", "-").replace(" ", "-"))
        except ValueError:
            return cls.OTHER


def parse_gerrit_time(value: str | None) -> datetime | None:
    """Parse a Gerrit timestamp into an aware UTC datetime.

    Accepts "2024-01-02 03:04:05.000000000", the microsecond and
    second-precision forms, and RFC 3339.

    Args:
        value: Timestamp string, possibly empty

    Returns:
        Aware datetime, or None for empty/unparseable input
    """
    if not value:
        return None
    text = value.strip()

    # strptime's %f takes at most 6 digits; drop nanosecond precision
    if "." in text and " " in text:
        head, _, frac = text.partition(".")
        text = f"{head}.{frac[:6]}"

    for fmt in _GERRIT_TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue

    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_gerrit_time(value: datetime) -> str:
    """Format a datetime the way Gerrit does (UTC, nanosecond field)."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%d %H:%M:%S.") + f"{value.microsecond:06d}000"


def _account(data: dict[str, Any] | None) -> tuple[str, str]:
    if not data:
        return "", ""
    return data.get("name", "") or "", data.get("email", "") or ""


@dataclass
class LabelVote:
    """A single non-zero vote on a review label."""

    label: str
    value: int
    account_name: str = ""
    account_email: str = ""
    granted_on: datetime | None = None


@dataclass
class ChangeMessage:
    """A change-level message (review summary, bot notification, etc.)."""

    message_id: str
    message: str
    author_name: str = ""
    author_email: str = ""
    date: datetime | None = None
    revision_number: int | None = None


@dataclass
class ReviewComment:
    """An inline or patchset-level review comment.

    Attributes:
        comment_id: Gerrit comment UUID
        path: File path, None for patchset-level comments
        line: Line number, None for file-level comments
        in_reply_to: Parent comment UUID for threaded replies
    """

    comment_id: str
    message: str
    path: str | None = None
    line: int | None = None
    author_name: str = ""
    author_email: str = ""
    updated: datetime | None = None
    unresolved: bool = False
    in_reply_to: str | None = None


@dataclass
class FileDiff:
    """Per-file diff stats, with the rendered diff when it fits the policy.

    Attributes:
        path: File path within the revision
        status: Gerrit file status letter (A, D, R, C, W, M)
        diff_text: Rendered unified diff, empty when not stored
        size_exceeded: True when the diff was too large to store
    """

    path: str
    status: str = "M"
    lines_inserted: int = 0
    lines_deleted: int = 0
    size_delta: int = 0
    binary: bool = False
    diff_text: str = ""
    size_exceeded: bool = False


@dataclass
class Change:
    """A code-review change as last observed upstream.

    Identity is (project, change_number); change_id is the opaque
    Change-Id footer value. `updated` never moves backwards across
    observations of the same change.

    Attributes:
        change_number: Numeric change id, unique per project
        change_id: Opaque Change-Id string
        status: Lifecycle status
        subject: First line of the commit message
        message: Full commit message of the current revision, if fetched
        current_revision: SHA of the current patch set, if fetched
        labels: Non-zero votes, if detailed labels were requested
        messages: Change messages, if requested
        last_synced_at: When this record was last written by sync
    """

    change_number: int
    change_id: str
    project: str
    branch: str
    status: ChangeStatus
    subject: str
    created: datetime
    updated: datetime
    message: str = ""
    owner_name: str = ""
    owner_email: str = ""
    submitted: datetime | None = None
    insertions: int = 0
    deletions: int = 0
    current_revision: str = ""
    labels: list[LabelVote] = field(default_factory=list)
    messages: list[ChangeMessage] = field(default_factory=list)
    last_synced_at: datetime | None = None

    @property
    def key(self) -> str:
        """Gerrit change identifier in project~number form."""
        return f"{self.project}~{self.change_number}"

    @classmethod
    def from_gerrit(cls, data: dict[str, Any]) -> "Change":
        """Build a Change from a Gerrit ChangeInfo JSON object.

        Args:
            data: ChangeInfo dict as returned by /changes/

        Returns:
            Parsed Change

        Raises:
            KeyError: If a required identity field is missing
            ValueError: If status or timestamps are malformed
        """
        created = parse_gerrit_time(data.get("created"))
        updated = parse_gerrit_time(data.get("updated"))
        if created is None or updated is None:
            raise ValueError(
                f"change {data.get('_number')} has unparseable created/updated timestamps"
            )

        owner_name, owner_email = _account(data.get("owner"))

        current_revision = data.get("current_revision", "") or ""
        message = ""
        revisions = data.get("revisions") or {}
        if current_revision and current_revision in revisions:
            commit = revisions[current_revision].get("commit") or {}
            message = commit.get("message", "") or ""

        labels: list[LabelVote] = []
        for label_name, label_info in (data.get("labels") or {}).items():
            for approval in (label_info or {}).get("all") or []:
                value = approval.get("value") or 0
                if value == 0:
                    continue
                name, email = _account(approval)
                labels.append(
                    LabelVote(
                        label=label_name,
                        value=int(value),
                        account_name=name,
                        account_email=email,
                        granted_on=parse_gerrit_time(approval.get("date")),
                    )
                )

        messages = []
        for msg in data.get("messages") or []:
            name, email = _account(msg.get("author"))
            messages.append(
                ChangeMessage(
                    message_id=msg.get("id", ""),
                    message=msg.get("message", "") or "",
                    author_name=name,
                    author_email=email,
                    date=parse_gerrit_time(msg.get("date")),
                    revision_number=msg.get("_revision_number") or None,
                )
            )

        return cls(
            change_number=int(data["_number"]),
            change_id=data.get("change_id", "") or data.get("id", ""),
            project=data["project"],
            branch=data.get("branch", ""),
            status=ChangeStatus.from_gerrit(data.get("status", "")),
            subject=data.get("subject", "") or "",
            created=created,
            updated=updated,
            message=message,
            owner_name=owner_name,
            owner_email=owner_email,
            submitted=parse_gerrit_time(data.get("submitted")),
            insertions=int(data.get("insertions") or 0),
            deletions=int(data.get("deletions") or 0),
            current_revision=current_revision,
            labels=labels,
            messages=messages,
        )


@dataclass
class SyncCursor:
    """Watermark for one (project, status) pair.

    Only advanced after a fully paginated fetch for that status succeeds.
    """

    project: str
    status: str
    last_synced_at: datetime


@dataclass
class AnalysisResult:
    """Structured analysis of one change. At most one per change.

    Attributes:
        category: Assigned category (OTHER when nothing better is known)
        summary: One-paragraph summary of the change
        discussion: Summary of the review discussion
        philosophy_notes: Design-philosophy observations
        insights: Ordered list of takeaways
        key_changes: Notable code changes
        decision_reason: Why the change was merged or abandoned, when known
        used_fallback: True when the category came from the title keyword scan
        change_updated: `updated` of the change snapshot that was analyzed;
            a later upstream update makes the analysis stale
        updated_at: When this result was produced
    """

    change_number: int
    project: str
    category: AnalysisCategory = AnalysisCategory.OTHER
    summary: str = ""
    discussion: str = ""
    philosophy_notes: str = ""
    insights: list[str] = field(default_factory=list)
    key_changes: list[str] = field(default_factory=list)
    decision_reason: str = ""
    used_fallback: bool = False
    change_updated: datetime | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for logging and CLI output."""
        return {
            "change_number": self.change_number,
            "project": self.project,
            "category": self.category.value,
            "summary": self.summary,
            "discussion": self.discussion,
            "philosophy_notes": self.philosophy_notes,
            "insights": list(self.insights),
            "key_changes": list(self.key_changes),
            "decision_reason": self.decision_reason,
            "used_fallback": self.used_fallback,
            "change_updated": self.change_updated.isoformat() if self.change_updated else None,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ChangeSummary:
    """Free-text summaries of one change, produced alongside its analysis.

    Empty fields mean the summary was skipped (no input) or its
    generation failed.
    """

    change_number: int
    project: str
    description_summary: str = ""
    diff_summary: str = ""
    diff_explanation: str = ""
    comments_summary: str = ""
    discussion_summary: str = ""
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AnalysisCandidate:
    """A change selected for analysis, with the text the prompts need.

    Attributes:
        comments: Rendered review comments, one per line
        discussion: Change messages as "author: message" lines
        diff: Concatenated stored diffs of the current revision
        comment_texts: The same comments as a list, for per-comment prompts
    """

    change: Change
    comments: str = ""
    discussion: str = ""
    diff: str = ""
    comment_texts: list[str] = field(default_factory=list)
