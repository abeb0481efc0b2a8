"""Prompt-driven summaries and analyses of changes.

Summarizer covers the free-text tasks (description, diff, comments);
Analyzer covers decision reasons, the reviewer mental model, skill
documents and the structured per-change categorization.

Every call:
- sanitizes untrusted text before it reaches a prompt
- is bounded by asyncio.wait_for; expiry raises LLMTimeoutError
- goes through the RetryPolicy when one is supplied
"""

import asyncio
import logging
import re

from ..models import AnalysisCandidate, AnalysisResult, Change
from ..retry import RetryPolicy
from . import prompts
from .client import LLMError, LLMTimeoutError, OllamaClient
from .extraction import parse_analysis
from .sanitizer import sanitize

logger = logging.getLogger("reviewsync.llm.analyzer")

__all__ = ["Analyzer", "Summarizer", "split_sections"]

TRUNCATION_NOTE = "\n... (truncated)"


def split_sections(text: str, first_marker: str, second_marker: str) -> tuple[str, str]:
    """Split a two-section response on its markers (case-insensitive).

    - both markers: text between them, text after the second
    - only the first: everything after it, ""
    - only the second: "", everything after it
    - neither: the response cut in half

    All parts are stripped.
    """
    text = text or ""
    first = re.search(re.escape(first_marker), text, re.IGNORECASE)
    second = re.search(re.escape(second_marker), text, re.IGNORECASE)

    if first and second and first.start() < second.start():
        return (
            text[first.end() : second.start()].strip(),
            text[second.end() :].strip(),
        )
    if first and not second:
        return text[first.end() :].strip(), ""
    if second and not first:
        return "", text[second.end() :].strip()
    if first and second:
        # Sections came back in reverse order
        return text[first.end() :].strip(), text[second.end() : first.start()].strip()

    half = len(text) // 2
    return text[:half].strip(), text[half:].strip()


class _LLMTask:
    def __init__(
        self,
        client: OllamaClient,
        timeout: float = 120.0,
        retry_policy: RetryPolicy | None = None,
    ):
        self.client = client
        self.timeout = timeout
        self.retry_policy = retry_policy

    async def _generate_once(self, prompt: str, task: str, timeout: float) -> str:
        try:
            return await asyncio.wait_for(self.client.generate(prompt, task=task), timeout)
        except LLMError:
            raise
        except asyncio.TimeoutError as e:
            logger.warning("llm_task_timeout", extra={"task": task, "timeout": timeout})
            raise LLMTimeoutError(f"{task} exceeded {timeout}s") from e

    async def _generate(self, prompt: str, task: str, timeout: float | None = None) -> str:
        limit = timeout if timeout is not None else self.timeout
        if self.retry_policy is None:
            return await self._generate_once(prompt, task, limit)
        return await self.retry_policy.run(lambda: self._generate_once(prompt, task, limit))


class Summarizer(_LLMTask):
    """Free-text summaries of change descriptions, diffs and comments."""

    async def summarize_description(self, description: str) -> str:
        """Summary of a change description; "" for empty input."""
        content = sanitize(description)
        if not content:
            return ""
        return await self._generate(
            prompts.DESCRIPTION_SUMMARY.format(content=content), "summarize_description"
        )

    async def summarize_diff(self, diff: str) -> tuple[str, str]:
        """Summarize a diff.

        Returns:
            (summary, explanation); ("", "") for empty input
        """
        content = sanitize(diff)
        if not content:
            return "", ""
        response = await self._generate(prompts.DIFF_SUMMARY.format(content=content), "summarize_diff")
        return split_sections(
            response, prompts.DIFF_SUMMARY_MARKER, prompts.DIFF_EXPLANATION_MARKER
        )

    async def summarize_comments(self, comments: list[str]) -> tuple[str, str]:
        """Summarize review comments.

        Returns:
            (comments_summary, discussion_summary); ("", "") when there are
            no comments
        """
        if not comments:
            return "", ""
        content = "".join(
            f"Comment {i}: {sanitize(comment)}\n\n" for i, comment in enumerate(comments, 1)
        )
        response = await self._generate(
            prompts.COMMENTS_SUMMARY.format(content=content), "summarize_comments"
        )
        return split_sections(response, prompts.COMMENTS_MARKER, prompts.DISCUSSION_MARKER)


class Analyzer(_LLMTask):
    """Decision-reason, mental-model and per-change structured analysis.

    Example:
        >>> analyzer = Analyzer(client, timeout=120, retry_policy=RetryPolicy(3))
        >>> result = await analyzer.analyze_change(candidate)
    """

    @staticmethod
    def _reason_content(change_info: str, comments: str, discussion: str) -> str:
        return prompts.REASON_CONTEXT.format(
            change_info=sanitize(change_info),
            comments=sanitize(comments),
            discussion=sanitize(discussion),
        )

    async def analyze_merge_reason(self, change_info: str, comments: str, discussion: str) -> str:
        """Why a change was merged."""
        content = self._reason_content(change_info, comments, discussion)
        return await self._generate(prompts.MERGE_REASON.format(content=content), "merge_reason")

    async def analyze_close_reason(self, change_info: str, comments: str, discussion: str) -> str:
        """Why a change was abandoned."""
        content = self._reason_content(change_info, comments, discussion)
        return await self._generate(prompts.CLOSE_REASON.format(content=content), "close_reason")

    async def analyze_mental_model(
        self,
        changes_data: str,
        analysis_type: str = "",
        related_data: str = "",
    ) -> str:
        """Reviewer mental model over a batch of merged changes.

        Runs with twice the normal timeout.

        Args:
            changes_data: Rendered change summaries
            analysis_type: Optional focus area appended to the prompt
            related_data: Optional related discussion
        """
        prompt = prompts.MENTAL_MODEL.format(
            changes=sanitize(changes_data), related=sanitize(related_data)
        )
        focus = sanitize(analysis_type)
        if focus:
            prompt += prompts.MENTAL_MODEL_FOCUS.format(focus=focus)
        return await self._generate(prompt, "mental_model", timeout=self.timeout * 2)

    async def generate_skill(
        self, project: str, category: str, name: str, title: str, changes_data: str
    ) -> str:
        """Skill document (Markdown with front matter) for one category.

        Only changes_data is untrusted; the other fields come from
        configuration and the category enum.
        """
        prompt = prompts.SKILL_DOCUMENT.format(
            project=project,
            category=category,
            name=name,
            title=title,
            changes=sanitize(changes_data),
        )
        return await self._generate(prompt, "skill_document")

    def build_change_prompt(self, candidate: AnalysisCandidate) -> str:
        """Render the categorization prompt for one change."""
        change = candidate.change
        diff = candidate.diff
        if len(diff) > prompts.MAX_DIFF_CHARS:
            diff = diff[: prompts.MAX_DIFF_CHARS] + TRUNCATION_NOTE
        return prompts.CHANGE_ANALYSIS.format(
            project=sanitize(change.project),
            title=sanitize(change.subject),
            number=change.change_number,
            status=change.status.value,
            owner=sanitize(change.owner_name or change.owner_email),
            description=sanitize(change.message),
            comments=sanitize("\n\n".join(p for p in (candidate.comments, candidate.discussion) if p)),
            diff=sanitize(diff),
            categories=prompts.CATEGORY_NAMES,
        )

    async def analyze_change(self, candidate: AnalysisCandidate) -> AnalysisResult:
        """Structured analysis of one change.

        Model output that cannot be parsed degrades to a title-keyword
        category with the raw response as summary.

        Raises:
            LLMError: The generation itself failed
            RetryExhaustedError: Every retry attempt failed
        """
        change = candidate.change
        response = await self._generate(self.build_change_prompt(candidate), "analyze_change")
        parsed = parse_analysis(response, change.subject)
        result = AnalysisResult(
            change_number=change.change_number,
            project=change.project,
            category=parsed.category,
            summary=parsed.summary,
            discussion=parsed.discussion,
            philosophy_notes=parsed.philosophy_notes,
            insights=parsed.insights,
            key_changes=parsed.key_changes,
            used_fallback=parsed.used_fallback,
            change_updated=change.updated,
        )
        logger.info(
            "change_analyzed",
            extra={
                "change": change.key,
                "category": result.category.value,
                "used_fallback": result.used_fallback,
            },
        )
        return result

    async def analyze_decision(self, candidate: AnalysisCandidate, discussion: str = "") -> str:
        """Merge or abandon reason for a closed change; "" for open ones.

        Args:
            candidate: The change and its review text
            discussion: Discussion summary; the raw change messages when empty
        """
        change: Change = candidate.change
        info = f"#{change.change_number} {change.subject}\n\n{change.message}".strip()
        if candidate.comment_texts:
            comments = "".join(
                f"Comment {i}: {text}\n\n" for i, text in enumerate(candidate.comment_texts, 1)
            )
        else:
            comments = candidate.comments
        discussion = discussion or candidate.discussion
        if change.status.value == "merged":
            return await self.analyze_merge_reason(info, comments, discussion)
        if change.status.value == "abandoned":
            return await self.analyze_close_reason(info, comments, discussion)
        return ""
