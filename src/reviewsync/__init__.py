"""reviewsync - Gerrit change sync and local-LLM review analysis.

Provides:
- Incremental, rate-limited Gerrit change sync into SQLite
- Prompt-injection-hardened analysis of changes with a local Ollama model
- Interval and cron schedulers driving both
- Per-category skill documents built from stored analyses

Python Version: 3.10+ required
"""

from .__version__ import __version__
from .config import ReviewSyncConfig, load_config
from .connectors.gerrit.client import GerritClient, GerritClientError, GerritConnectionError
from .connectors.gerrit.sync import GerritSyncEngine, SyncResult, SyncService
from .llm.analyzer import Analyzer, Summarizer
from .llm.client import LLMError, OllamaClient
from .logging_config import StructuredFormatter, configure_logging
from .models import AnalysisCategory, AnalysisResult, Change, ChangeStatus, ChangeSummary
from .pipeline import AnalysisPipeline, PipelineResult
from .rate_limiter import RateLimiter
from .retry import RetryExhaustedError, RetryPolicy
from .scheduler import CronScheduler, IntervalScheduler, build_scheduler
from .skills import SkillGenerator
from .storage import ChangeStore, SQLiteChangeStore

__all__ = [
    "AnalysisCategory",
    "AnalysisPipeline",
    "AnalysisResult",
    "Analyzer",
    "Change",
    "ChangeStatus",
    "ChangeSummary",
    "ChangeStore",
    "CronScheduler",
    "GerritClient",
    "GerritClientError",
    "GerritConnectionError",
    "GerritSyncEngine",
    "IntervalScheduler",
    "LLMError",
    "OllamaClient",
    "PipelineResult",
    "RateLimiter",
    "RetryExhaustedError",
    "RetryPolicy",
    "ReviewSyncConfig",
    "SQLiteChangeStore",
    "SkillGenerator",
    "StructuredFormatter",
    "SyncResult",
    "SyncService",
    "Summarizer",
    "__version__",
    "configure_logging",
    "load_config",
]
