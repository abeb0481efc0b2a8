"""Skill documents built from stored change analyses.

One SKILL.md per analysis category is written under
<output_dir>/<project>-<category>/, plus a <project>-digest skill that lists
the top changes of every category. Category documents are written by the
model; when generation fails the document is rendered from a template so a
run still produces every skill.

Usage:
    async with SQLiteChangeStore(config.db_path) as store:
        generator = SkillGenerator(store, analyzer, "go", "skills")
        result = await generator.generate(days=30)
"""

import logging
import os
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from .llm.analyzer import Analyzer
from .llm.client import LLMConnectionError, LLMError
from .models import AnalysisCategory, AnalysisResult, Change
from .retry import RetryExhaustedError
from .storage import ChangeStore

logger = logging.getLogger("reviewsync.skills")

__all__ = [
    "CATEGORY_TITLES",
    "SKILL_FILENAME",
    "SkillGenerationResult",
    "SkillGenerator",
    "list_skills",
]

SKILL_FILENAME = "SKILL.md"

# Changes fed to one category document, newest first
MAX_CHANGES_PER_SKILL = 10
DIGEST_CHANGES_PER_CATEGORY = 3
DIGEST_SUMMARY_CHARS = 100
MAX_ANALYSES = 1000

CATEGORY_TITLES = {
    AnalysisCategory.ERROR_HANDLING: "Error Handling",
    AnalysisCategory.TESTING: "Testing",
    AnalysisCategory.PERFORMANCE: "Performance",
    AnalysisCategory.CONCURRENCY: "Concurrency",
    AnalysisCategory.API_DESIGN: "API Design",
    AnalysisCategory.TOOLING: "Tooling",
    AnalysisCategory.DOCUMENTATION: "Documentation",
    AnalysisCategory.OTHER: "Other",
}

_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9]+")

Pair = tuple[Change, AnalysisResult]


def list_skills(output_dir: str | Path) -> list[str]:
    """Names of skill directories under output_dir that contain a SKILL.md."""
    root = Path(output_dir)
    if not root.is_dir():
        return []
    return sorted(p.name for p in root.iterdir() if (p / SKILL_FILENAME).is_file())


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."


@dataclass
class SkillGenerationResult:
    """Outcome of one generation run.

    Attributes:
        generated: Skill names written, sorted
        templated: Category skills rendered from the template fallback
        analyses: Analyses that fed the run
    """

    generated: list[str] = field(default_factory=list)
    templated: list[str] = field(default_factory=list)
    analyses: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated": list(self.generated),
            "templated": list(self.templated),
            "analyses": self.analyses,
        }


class SkillGenerator:
    """Writes skill documents for one project.

    Example:
        >>> generator = SkillGenerator(store, analyzer, "go", "skills")
        >>> result = await generator.generate(days=30)
        >>> generator.existing_skills()
        ['go-concurrency', 'go-digest', 'go-testing']
    """

    def __init__(
        self,
        store: ChangeStore,
        analyzer: Analyzer,
        project: str,
        output_dir: str | Path = "skills",
    ) -> None:
        self.store = store
        self.analyzer = analyzer
        self.project = project
        self.output_dir = Path(output_dir)
        self.prefix = _UNSAFE_NAME_CHARS.sub("-", project.lower()).strip("-") or "project"

    def skill_name(self, suffix: str) -> str:
        return f"{self.prefix}-{suffix}"

    def existing_skills(self) -> list[str]:
        return list_skills(self.output_dir)

    async def generate(self, days: int = 30, now: datetime | None = None) -> SkillGenerationResult:
        """Write one skill per category with recent analyses, then the digest.

        Args:
            days: Only changes updated within this many days are used
            now: Reference time (default: current UTC time)

        Returns:
            SkillGenerationResult; empty when there is nothing to write

        Raises:
            LLMConnectionError: Ollama became unreachable
            OSError: A skill file could not be written
        """
        now = now or datetime.now(timezone.utc)
        pairs = await self.store.list_analyses(
            self.project, limit=MAX_ANALYSES, since=now - timedelta(days=days)
        )
        result = SkillGenerationResult(analyses=len(pairs))
        if not pairs:
            logger.info("skills_no_analyses", extra={"project": self.project, "days": days})
            return result

        by_category = self._group(pairs)
        for category, category_pairs in by_category.items():
            content, templated = await self._category_document(category, category_pairs, days, now)
            name = self.skill_name(category.value)
            self._write(name, content)
            result.generated.append(name)
            if templated:
                result.templated.append(name)
            logger.info(
                "skill_generated",
                extra={"skill": name, "changes": len(category_pairs), "templated": templated},
            )

        digest = self.skill_name("digest")
        self._write(digest, self.render_digest(by_category, now))
        result.generated.append(digest)
        result.generated.sort()

        logger.info("skills_complete", extra={"project": self.project, **result.to_dict()})
        return result

    @staticmethod
    def _group(pairs: Iterable[Pair]) -> dict[AnalysisCategory, list[Pair]]:
        """Group by category in enum order, keeping newest-first order within each."""
        grouped: dict[AnalysisCategory, list[Pair]] = {}
        for change, analysis in pairs:
            grouped.setdefault(analysis.category, []).append((change, analysis))
        return {c: grouped[c] for c in AnalysisCategory if c in grouped}

    async def _category_document(
        self,
        category: AnalysisCategory,
        pairs: list[Pair],
        days: int,
        now: datetime,
    ) -> tuple[str, bool]:
        """Model-written document, or the template when generation fails."""
        try:
            content = await self.analyzer.generate_skill(
                project=self.project,
                category=category.value,
                name=self.skill_name(category.value),
                title=f"{self.project} {CATEGORY_TITLES[category]}",
                changes_data=self.format_changes(pairs),
            )
        except LLMConnectionError:
            raise
        except (LLMError, RetryExhaustedError) as e:
            logger.warning(
                "skill_generation_failed",
                extra={"category": category.value, "error": str(e)},
            )
        else:
            if content.strip():
                return content.strip() + "\n", False
            logger.warning("skill_generation_empty", extra={"category": category.value})
        return self.render_template(category, pairs, days, now), True

    @staticmethod
    def format_changes(pairs: list[Pair]) -> str:
        """Change digest sent to the model."""
        blocks = []
        for change, analysis in pairs[:MAX_CHANGES_PER_SKILL]:
            lines = [
                f"### #{change.change_number}: {change.subject}",
                f"- Status: {change.status.value}",
                f"- Summary: {analysis.summary}",
            ]
            if analysis.discussion:
                lines.append(f"- Discussion: {analysis.discussion}")
            if analysis.philosophy_notes:
                lines.append(f"- Design philosophy: {analysis.philosophy_notes}")
            if analysis.decision_reason:
                lines.append(f"- Decision: {analysis.decision_reason}")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)

    def render_template(
        self,
        category: AnalysisCategory,
        pairs: list[Pair],
        days: int,
        now: datetime,
    ) -> str:
        """Category document built without the model."""
        title = CATEGORY_TITLES[category]
        entries = []
        for change, analysis in pairs[:MAX_CHANGES_PER_SKILL]:
            owner = change.owner_name or change.owner_email or "-"
            entry = [
                f"### #{change.change_number}: {change.subject}",
                "",
                f"**Status**: {change.status.value} | **Owner**: {owner}",
                "",
            ]
            if analysis.summary:
                entry += [f"**Summary**: {analysis.summary}", ""]
            if analysis.discussion:
                entry += [f"**Discussion**: {analysis.discussion}", ""]
            if analysis.insights:
                entry += ["**Insights**:", *(f"- {i}" for i in analysis.insights), ""]
            if analysis.philosophy_notes:
                entry += [f"**Design philosophy**: {analysis.philosophy_notes}", ""]
            entry += ["---", ""]
            entries.append("\n".join(entry))

        return (
            f"---\n"
            f"name: {self.skill_name(category.value)}\n"
            f"description: Practices and lessons from recent {title.lower()} changes in "
            f"{self.project}. Use when writing or reviewing {title.lower()} code.\n"
            f"---\n\n"
            f"# {self.project} {title}\n\n"
            f"> Last updated: {now.strftime('%Y-%m-%d')}\n"
            f"> Analyzed changes: {len(pairs)}\n\n"
            f"## Overview\n\n"
            f"Changes in the {category.value} category updated in the last {days} days.\n\n"
            f"## Notable changes\n\n"
            f"{''.join(entries)}"
            f"## Using this skill\n\n"
            f"- As a reference when writing {title.lower()} code\n"
            f"- As a checklist during code review\n"
        )

    def render_digest(self, by_category: dict[AnalysisCategory, list[Pair]], now: datetime) -> str:
        """Cross-category overview with the newest changes of each category."""
        total = sum(len(p) for p in by_category.values())
        lines = [
            "---",
            f"name: {self.skill_name('digest')}",
            f"description: Overview of recent {self.project} changes by category. "
            f"Use to catch up on current review trends.",
            "---",
            "",
            f"# {self.project} digest",
            "",
            f"> Last updated: {now.strftime('%Y-%m-%d')}",
            f"> Analyzed changes: {total}",
            "",
            "## Trends by category",
            "",
        ]
        for category, pairs in by_category.items():
            lines += [f"### {CATEGORY_TITLES[category]} ({len(pairs)})", ""]
            for change, analysis in pairs[:DIGEST_CHANGES_PER_CATEGORY]:
                lines.append(f"- **#{change.change_number}**: {change.subject}")
                if analysis.summary:
                    lines.append(f"  - {_truncate(analysis.summary, DIGEST_SUMMARY_CHARS)}")
            lines.append("")

        lines += ["## Category skills", ""]
        lines += [
            f"- `{self.skill_name(c.value)}`: {CATEGORY_TITLES[c]}" for c in by_category
        ]
        return "\n".join(lines) + "\n"

    def _write(self, name: str, content: str) -> Path:
        """Write <output_dir>/<name>/SKILL.md via a temp file and rename."""
        path = self.output_dir / name / SKILL_FILENAME
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
        return path
