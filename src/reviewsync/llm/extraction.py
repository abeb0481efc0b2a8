"""Tolerant extraction of structured analysis from model output.

Two stages, each usable on its own:

1. extract_json_object(): find the first balanced {...} span by brace depth
2. parse_analysis(): json-decode that span into analysis fields

When either stage fails, categorize_from_title() supplies a keyword-based
category so a change always gets a result.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from ..models import AnalysisCategory

logger = logging.getLogger("reviewsync.llm.extraction")

__all__ = [
    "CATEGORY_KEYWORDS",
    "ParsedAnalysis",
    "categorize_from_title",
    "extract_json_object",
    "parse_analysis",
]

# Checked in order; the first category with a matching keyword wins
CATEGORY_KEYWORDS: tuple[tuple[AnalysisCategory, tuple[str, ...]], ...] = (
    (AnalysisCategory.ERROR_HANDLING, ("error", "err", "panic", "recover")),
    (AnalysisCategory.TESTING, ("test", "bench", "fuzz")),
    (AnalysisCategory.PERFORMANCE, ("perf", "optimize", "fast", "slow", "memory")),
    (AnalysisCategory.CONCURRENCY, ("goroutine", "channel", "sync", "mutex", "race")),
    (AnalysisCategory.API_DESIGN, ("api", "http", "rpc", "handler")),
    (AnalysisCategory.TOOLING, ("cmd", "tool", "go build", "go mod")),
    (AnalysisCategory.DOCUMENTATION, ("doc", "comment", "readme")),
)


@dataclass
class ParsedAnalysis:
    """Fields recovered from a model response."""

    category: AnalysisCategory
    summary: str = ""
    discussion: str = ""
    philosophy_notes: str = ""
    insights: list[str] = field(default_factory=list)
    key_changes: list[str] = field(default_factory=list)
    used_fallback: bool = False


def extract_json_object(text: str) -> str | None:
    """Return the first balanced {...} span in text, or None.

    Closing braces seen before the first opening brace are ignored.
    """
    start = -1
    depth = 0
    for i, ch in enumerate(text or ""):
        if ch == "{":
            if start == -1:
                start = i
            depth += 1
        elif ch == "}" and start != -1:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def categorize_from_title(title: str) -> AnalysisCategory:
    """Keyword scan of a change title, case-insensitive. Never raises."""
    lowered = (title or "").lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(word in lowered for word in keywords):
            return category
    return AnalysisCategory.OTHER


def _str_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v).strip()]
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def _str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def parse_analysis(response: str, title: str) -> ParsedAnalysis:
    """Parse a categorization response, degrading to the title heuristic.

    Args:
        response: Raw model output, JSON possibly wrapped in prose
        title: Change subject used by the fallback categorizer

    Returns:
        ParsedAnalysis; used_fallback is True when no JSON object could be
        decoded, in which case the raw response becomes the summary
    """
    span = extract_json_object(response)
    data: Any = None
    if span is not None:
        try:
            data = json.loads(span)
        except json.JSONDecodeError as e:
            logger.debug("analysis_json_invalid", extra={"error": str(e)})

    if not isinstance(data, dict):
        logger.info(
            "analysis_fallback_categorizer",
            extra={"reason": "no_json" if span is None else "invalid_json"},
        )
        return ParsedAnalysis(
            category=categorize_from_title(title),
            summary=(response or "").strip(),
            used_fallback=True,
        )

    return ParsedAnalysis(
        category=AnalysisCategory.normalize(data.get("category")),
        summary=_str(data.get("summary")),
        discussion=_str(data.get("discussion")),
        philosophy_notes=_str(
            data.get("philosophy_notes") or data.get("philosophy") or data.get("go_philosophy")
        ),
        insights=_str_list(data.get("insights")),
        key_changes=_str_list(data.get("key_changes")),
    )
