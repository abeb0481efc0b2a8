"""Batch analysis of stored changes.

One run:
1. Preflight: Ollama reachable and the model installed (once per run)
2. Select up to analysis_batch_size changes with no analysis, or a stale one
3. Per change: summarize the description, diff and comments, categorize,
   add a merge/abandon reason for closed changes (from the discussion
   summary), upsert the summaries and the analysis
4. Count outcomes (success / fallback / failed) and push metrics

A failing change is logged and counted; the batch moves on. Losing the
Ollama host mid-batch ends the batch early, since every remaining call
would fail the same way.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .config import ReviewSyncConfig
from .llm.analyzer import Analyzer, Summarizer
from .llm.client import LLMConnectionError, LLMError, OllamaClient
from .metrics import analysis_total, push_metrics
from .models import AnalysisCandidate, AnalysisResult, ChangeStatus, ChangeSummary
from .retry import RetryExhaustedError, RetryPolicy
from .storage import ChangeStore

logger = logging.getLogger("reviewsync.pipeline")

__all__ = ["AnalysisPipeline", "PipelineResult"]

T = TypeVar("T")


@dataclass
class PipelineResult:
    """Outcome counts for one analysis batch."""

    selected: int = 0
    analyzed: int = 0
    fallbacks: int = 0
    failed: int = 0
    aborted: bool = False
    duration_seconds: float = 0.0
    error_details: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for metrics and logging."""
        return {
            "selected": self.selected,
            "analyzed": self.analyzed,
            "fallbacks": self.fallbacks,
            "failed": self.failed,
            "aborted": self.aborted,
            "duration_seconds": round(self.duration_seconds, 2),
        }


class AnalysisPipeline:
    """Runs pending changes through the analyzer and stores the results.

    Example:
        >>> pipeline = AnalysisPipeline(config, store, ollama)
        >>> result = await pipeline.run_once()
    """

    def __init__(
        self,
        config: ReviewSyncConfig,
        store: ChangeStore,
        client: OllamaClient,
        analyzer: Analyzer | None = None,
        summarizer: Summarizer | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.client = client
        retry_policy = RetryPolicy(max_attempts=config.llm_max_retries)
        self.analyzer = analyzer or Analyzer(
            client, timeout=config.llm_timeout, retry_policy=retry_policy
        )
        self.summarizer = summarizer or Summarizer(
            client, timeout=config.llm_timeout, retry_policy=retry_policy
        )

    async def run_once(self, limit: int | None = None) -> PipelineResult:
        """Analyze one batch.

        Args:
            limit: Override for analysis_batch_size

        Returns:
            PipelineResult with per-outcome counts

        Raises:
            LLMConnectionError: Ollama unreachable at preflight
            ModelNotInstalledError: Configured model missing
            asyncio.CancelledError: The run was cancelled
        """
        start_time = time.monotonic()
        result = PipelineResult()

        await self.client.check_connection()

        candidates = await self.store.select_changes_needing_analysis(
            limit or self.config.analysis_batch_size
        )
        result.selected = len(candidates)
        logger.info("analysis_batch_started", extra={"selected": result.selected})

        for candidate in candidates:
            try:
                analysis, summary = await self.analyze_candidate(candidate)
                await self.store.upsert_summary(summary)
                await self.store.upsert_analysis(analysis)
            except asyncio.CancelledError:
                raise
            except LLMConnectionError as e:
                self._record_failure(result, candidate, e)
                result.aborted = True
                logger.error("analysis_batch_aborted", extra={"error": str(e)})
                break
            except Exception as e:
                self._record_failure(result, candidate, e)
                continue

            result.analyzed += 1
            if analysis.used_fallback:
                result.fallbacks += 1
                analysis_total.labels(outcome="fallback").inc()
            else:
                analysis_total.labels(outcome="success").inc()

        result.duration_seconds = time.monotonic() - start_time
        push_metrics(self.config.pushgateway_url, job="reviewsync_analysis")
        logger.info("analysis_batch_complete", extra=result.to_dict())
        return result

    async def analyze_candidate(
        self, candidate: AnalysisCandidate
    ) -> tuple[AnalysisResult, ChangeSummary]:
        """Summarize and categorize one change, then explain its outcome if closed.

        The discussion summary feeds the merge/abandon reason. Failed
        summaries and a failed decision reason are left empty; the
        categorization still stands.
        """
        summary = await self.summarize_candidate(candidate)
        analysis = await self.analyzer.analyze_change(candidate)
        if candidate.change.status in (ChangeStatus.MERGED, ChangeStatus.ABANDONED):
            analysis.decision_reason = await self._best_effort(
                "decision_reason",
                candidate,
                self.analyzer.analyze_decision(candidate, discussion=summary.discussion_summary),
                "",
            )
        return analysis, summary

    async def summarize_candidate(self, candidate: AnalysisCandidate) -> ChangeSummary:
        """Description, diff and comment summaries for one change."""
        change = candidate.change
        summary = ChangeSummary(change_number=change.change_number, project=change.project)
        summary.description_summary = await self._best_effort(
            "description_summary",
            candidate,
            self.summarizer.summarize_description(change.message),
            "",
        )
        summary.diff_summary, summary.diff_explanation = await self._best_effort(
            "diff_summary", candidate, self.summarizer.summarize_diff(candidate.diff), ("", "")
        )
        summary.comments_summary, summary.discussion_summary = await self._best_effort(
            "comments_summary",
            candidate,
            self.summarizer.summarize_comments(candidate.comment_texts),
            ("", ""),
        )
        return summary

    @staticmethod
    async def _best_effort(
        task: str, candidate: AnalysisCandidate, operation: Awaitable[T], default: T
    ) -> T:
        """Await an optional model task; generation failures yield `default`.

        Connection loss still propagates so the batch can abort.
        """
        try:
            return await operation
        except LLMConnectionError:
            raise
        except (LLMError, RetryExhaustedError) as e:
            logger.warning(
                f"{task}_failed",
                extra={"change": candidate.change.key, "error": str(e)},
            )
            return default

    @staticmethod
    def _record_failure(result: PipelineResult, candidate: AnalysisCandidate, error: Exception) -> None:
        result.failed += 1
        result.error_details.append(f"{candidate.change.key}: {error}")
        analysis_total.labels(outcome="failed").inc()
        logger.error(
            "change_analysis_failed",
            extra={
                "change": candidate.change.key,
                "exception_type": type(error).__name__,
                "error": str(error),
            },
        )
