"""Local generative-model analysis of changes.

Public API:
    - OllamaClient: Ollama /api/generate client with model preflight
    - Summarizer: description, diff and comment summaries
    - Analyzer: decision reasons, mental model, structured categorization,
      skill documents
    - sanitize(): Prompt-injection hardening for untrusted text
    - extract_json_object(), parse_analysis(), categorize_from_title()
"""

from .analyzer import Analyzer, Summarizer, split_sections
from .client import (
    LLMConnectionError,
    LLMError,
    LLMTimeoutError,
    ModelNotInstalledError,
    OllamaClient,
)
from .extraction import (
    ParsedAnalysis,
    categorize_from_title,
    extract_json_object,
    parse_analysis,
)
from .sanitizer import sanitize

__all__ = [
    "Analyzer",
    "LLMConnectionError",
    "LLMError",
    "LLMTimeoutError",
    "ModelNotInstalledError",
    "OllamaClient",
    "ParsedAnalysis",
    "Summarizer",
    "categorize_from_title",
    "extract_json_object",
    "parse_analysis",
    "sanitize",
    "split_sections",
]
