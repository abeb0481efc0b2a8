"""Gerrit query string construction and local branch matching.

Branches are never part of the server-side query: Gerrit's branch
operators do not handle wildcards reliably, so sync over-fetches by
project/status/date and narrows by branch locally with BranchPattern.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Union

__all__ = [
    "BranchPattern",
    "ExactBranch",
    "WildcardBranch",
    "build_query",
    "compile_branch_pattern",
    "compile_branch_patterns",
    "match_branch",
]


@dataclass(frozen=True)
class ExactBranch:
    """Branch pattern without wildcards; matches by string equality."""

    name: str

    def matches(self, branch: str) -> bool:
        return branch == self.name


@dataclass(frozen=True)
class WildcardBranch:
    """Branch pattern containing '*', compiled to an anchored regex.

    The raw pattern string is also accepted verbatim as an exact match.
    """

    pattern: str
    regex: re.Pattern

    def matches(self, branch: str) -> bool:
        return branch == self.pattern or self.regex.fullmatch(branch) is not None


BranchPattern = Union[ExactBranch, WildcardBranch]


def compile_branch_pattern(pattern: str) -> BranchPattern:
    """Compile one configured branch pattern.

    Args:
        pattern: Branch name, optionally containing '*' wildcards

    Returns:
        ExactBranch or WildcardBranch
    """
    if "*" not in pattern:
        return ExactBranch(pattern)
    expr = ".*".join(re.escape(part) for part in pattern.split("*"))
    return WildcardBranch(pattern=pattern, regex=re.compile(f"^{expr}$"))


def compile_branch_patterns(patterns: list[str]) -> list[BranchPattern]:
    """Compile every configured branch pattern, skipping blanks."""
    return [compile_branch_pattern(p.strip()) for p in patterns if p.strip()]


def match_branch(branch: str, patterns: list[BranchPattern]) -> bool:
    """True if any pattern matches the branch."""
    return any(p.matches(branch) for p in patterns)


def build_query(
    status: str,
    since: datetime | None,
    project: str,
    exclude_wip: bool = True,
) -> str:
    """Build a Gerrit change query.

    Terms appear in a fixed order: project, status, WIP exclusion, date.
    The date is rendered as YYYY-MM-DD (UTC) since Gerrit's time-of-day
    parsing for `after:` is inconsistent across versions.

    Args:
        status: Change status (open, merged, abandoned, ...)
        since: Only changes updated after this day; None for no date filter
        project: Gerrit project name
        exclude_wip: Append -is:wip

    Returns:
        Space-separated query string
    """
    parts: list[str] = []
    if project:
        parts.append(f"repo:{project}")
        parts.append(f"project:{project}")
    if status:
        parts.append(f"status:{status}")
    if exclude_wip:
        parts.append("-is:wip")
    if since is not None:
        if since.tzinfo is not None:
            since = since.astimezone(timezone.utc)
        parts.append(f"after:{since.strftime('%Y-%m-%d')}")
    return " ".join(parts)
