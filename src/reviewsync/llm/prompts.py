"""Prompt templates for change analysis.

Templates use str.format with named fields. Every interpolated value must
already have gone through sanitizer.sanitize(), which escapes braces, so
user text can never introduce new format fields.
"""

__all__ = [
    "CATEGORY_NAMES",
    "CHANGE_ANALYSIS",
    "CLOSE_REASON",
    "COMMENTS_MARKER",
    "COMMENTS_SUMMARY",
    "DESCRIPTION_SUMMARY",
    "DIFF_EXPLANATION_MARKER",
    "DIFF_SUMMARY",
    "DIFF_SUMMARY_MARKER",
    "DISCUSSION_MARKER",
    "MAX_DIFF_CHARS",
    "MENTAL_MODEL",
    "MENTAL_MODEL_FOCUS",
    "MERGE_REASON",
    "REASON_CONTEXT",
    "SKILL_DOCUMENT",
]

CATEGORY_NAMES = (
    "error-handling, testing, performance, concurrency, api-design, "
    "tooling, documentation, other"
)

# Section markers the model is asked to emit; the summarizer splits on them
DIFF_SUMMARY_MARKER = "[SUMMARY]"
DIFF_EXPLANATION_MARKER = "[EXPLANATION]"
COMMENTS_MARKER = "[COMMENTS SUMMARY]"
DISCUSSION_MARKER = "[DISCUSSION SUMMARY]"

# Diff characters included in the categorization prompt
MAX_DIFF_CHARS = 5000

DESCRIPTION_SUMMARY = """Summarize the following change description.
Keep the technical content accurate and the summary concise.

{content}"""

DIFF_SUMMARY = """Analyze the following code diff and answer in exactly this format:

[SUMMARY]
A concise summary of what changed.

[EXPLANATION]
The intent and reasoning behind each change and its technical impact.

{content}"""

COMMENTS_SUMMARY = """Analyze the following review comments and discussion and answer in exactly this format:

[COMMENTS SUMMARY]
The main points raised and the most important review remarks.

[DISCUSSION SUMMARY]
How the discussion unfolded and how consensus was reached.

{content}"""

REASON_CONTEXT = """Change:
{change_info}

Comments:
{comments}

Discussion:
{discussion}"""

MERGE_REASON = """Analyze why the following change was merged.
From the comments, discussion and change details, extract:
1. The reasons and background for merging
2. The technical criteria the decision rested on
3. The intent behind the decision

{content}"""

CLOSE_REASON = """Analyze why the following change was abandoned.
From the comments and discussion, extract:
1. The reasons and background for abandoning it
2. The criteria the decision rested on
3. Any stated future direction

{content}"""

MENTAL_MODEL = """Analyze the comments and discussion on the following merged changes
and extract the mental model of the maintainers and reviewers.

Consider:
- Tendencies in code style and best practices
- What reviews emphasize (performance, security, readability, ...)
- Decision-making patterns (how discussions lead to decisions)
- Technical philosophy and design principles

Changes:
{changes}

Related discussion:
{related}"""

MENTAL_MODEL_FOCUS = "\n\nFocus in particular on: {focus}"

CHANGE_ANALYSIS = """You are an expert reviewer of the {project} project. Analyze the
following change and extract the points that matter for understanding the
project's design philosophy.

## Change

Title: {title}
Number: {number}
Status: {status}
Owner: {owner}

Description:
{description}

Review discussion:
{comments}

Diff (partial):
{diff}

## Instructions

Answer with a JSON object in this shape:

{{
  "category": "one of: {categories}",
  "summary": "two or three sentences describing the change",
  "discussion": "the main points of the review discussion",
  "insights": ["takeaway 1", "takeaway 2"],
  "philosophy_notes": "design philosophy visible in this change",
  "key_changes": ["key change 1", "key change 2"]
}}

Output only the JSON object."""

SKILL_DOCUMENT = """Write a skill document for developers working on the {project} project,
based on the analyzed changes in the "{category}" category below.

Answer with Markdown only, starting with YAML front matter in exactly this shape:

---
name: {name}
description: What this skill covers and when it should be used.
---

# {title}

## Overview
The overall trends and most important points in this category.

## Notable changes
What each change did and what it teaches.

## Design philosophy
The design principles these changes reveal.

## Practical lessons
Concrete guidance a developer can apply.

## Analyzed changes

{changes}"""
