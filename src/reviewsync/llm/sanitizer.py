"""Prompt-injection hardening for untrusted review text.

Every description, comment and diff passes through sanitize() before it is
interpolated into a prompt:

1. Escape template/markup tokens: braces, ``` fences, --- separators
2. Drop lines matching known instruction-injection phrasings
3. Wrap what remains in a ```user_content fenced block

This is a heuristic filter over a fixed pattern set. It lowers the odds of
review text steering the model; it cannot rule it out.
"""

import re

__all__ = ["INJECTION_PATTERNS", "USER_CONTENT_FENCE", "remove_instruction_lines", "sanitize"]

USER_CONTENT_FENCE = "```user_content"

INJECTION_PATTERNS: tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^\s*(ignore|forget|disregard|skip)\s+(the|all|previous|above|following|next)",
        r"^\s*(do\s+not|don't|never)\s+(follow|execute|run|use|apply)",
        r"^\s*(follow|execute|run|use|apply)\s+(the\s+)?(next|following|new|different)",
        r"^\s*(system|assistant|user):\s*",
        r"^\s*(you\s+are|you're|act\s+as|pretend\s+to\s+be)",
        r"^\s*(output|respond|reply|answer)\s+(only|just|exactly|precisely)",
        r"^\s*(delete|remove|clear|erase)\s+(all|everything|previous|above)",
        r"^\s*(override|replace|change)\s+(the\s+)?(prompt|instruction|system)",
    )
)


def _escape_tokens(text: str) -> str:
    text = text.replace("{", "\\{").replace("}", "\\}")
    text = text.replace("```", "\\`\\`\\`")
    return text.replace("---", "\\-\\-\\-")


def remove_instruction_lines(text: str) -> str:
    """Drop every line that matches an injection pattern."""
    kept = [
        line
        for line in text.split("\n")
        if not any(p.search(line) for p in INJECTION_PATTERNS)
    ]
    return "\n".join(kept)


def sanitize(raw: str) -> str:
    """Make untrusted text safe to embed in a prompt.

    Args:
        raw: Untrusted text

    Returns:
        Escaped, filtered text inside a ```user_content block, or "" when
        nothing remains
    """
    if not raw:
        return ""
    content = remove_instruction_lines(_escape_tokens(raw))
    if not content:
        return ""
    return f"{USER_CONTENT_FENCE}\n{content}\n```"
