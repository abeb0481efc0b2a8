"""Diff rendering, size limits and path exclusion for stored diffs."""

import re
from typing import Any

from ...models import FileDiff

__all__ = ["MAGIC_FILES", "DiffPolicy"]

# Gerrit pseudo-files that are not part of the tree
MAGIC_FILES = frozenset({"/COMMIT_MSG", "/MERGE_LIST"})


class DiffPolicy:
    """Decides which file diffs are stored and renders them as text.

    Attributes:
        max_size_bytes: Largest rendered diff stored verbatim
        exclude_paths: Path prefixes never stored
        exclude_patterns: Compiled regexes of paths never stored
    """

    def __init__(
        self,
        max_size_bytes: int = 1024 * 1024,
        exclude_paths: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
    ):
        self.max_size_bytes = max_size_bytes
        self.exclude_paths = list(exclude_paths or [])
        self.exclude_patterns = [re.compile(p) for p in (exclude_patterns or [])]

    def should_skip_file(self, path: str) -> bool:
        """True for magic files and excluded paths."""
        if path in MAGIC_FILES:
            return True
        if any(path.startswith(prefix) for prefix in self.exclude_paths):
            return True
        return any(p.search(path) for p in self.exclude_patterns)

    def should_store(self, diff_size: int) -> bool:
        return diff_size <= self.max_size_bytes

    @staticmethod
    def diff_to_text(diff_info: dict[str, Any]) -> str:
        """Render a Gerrit DiffInfo as unified-style text.

        Context lines (ab) get a space prefix, removals (a) '-', additions (b) '+'.
        """
        lines: list[str] = list(diff_info.get("diff_header") or [])
        for chunk in diff_info.get("content") or []:
            lines.extend(f" {line}" for line in chunk.get("ab") or [])
            lines.extend(f"-{line}" for line in chunk.get("a") or [])
            lines.extend(f"+{line}" for line in chunk.get("b") or [])
        return "".join(f"{line}\n" for line in lines)

    def process(self, path: str, file_info: dict[str, Any], diff_info: dict[str, Any] | None) -> FileDiff:
        """Build a FileDiff, keeping the rendered diff only within the size limit.

        Args:
            path: File path
            file_info: Gerrit FileInfo (stats)
            diff_info: Gerrit DiffInfo, or None when not fetched

        Returns:
            FileDiff with diff_text set, or size_exceeded set when too large
        """
        file_diff = FileDiff(
            path=path,
            status=file_info.get("status") or "M",
            lines_inserted=int(file_info.get("lines_inserted") or 0),
            lines_deleted=int(file_info.get("lines_deleted") or 0),
            size_delta=int(file_info.get("size_delta") or 0),
            binary=bool(file_info.get("binary")),
        )
        if diff_info is None or file_diff.binary:
            return file_diff

        text = self.diff_to_text(diff_info)
        if self.should_store(len(text.encode("utf-8"))):
            file_diff.diff_text = text
        else:
            file_diff.size_exceeded = True
        return file_diff
