"""Configuration management with pydantic-settings for reviewsync.

- Environment variables prefixed with REVIEWSYNC_
- Automatic .env file loading
- Optional YAML file (REVIEWSYNC_CONFIG_FILE, default config.yaml)
- Validation with clear error messages
- SecretStr for credentials
- Frozen config (immutable after load)

Precedence: constructor kwargs > environment > .env > YAML file > defaults.

No module-level instance exists: callers build one with load_config() and
pass it into the components that need it.
"""

import logging
import os
from functools import cached_property
from typing import Annotated

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from .connectors.gerrit.query import BranchPattern, compile_branch_patterns

logger = logging.getLogger("reviewsync.config")

__all__ = [
    "CONFIG_FILE_ENV",
    "DEFAULT_CONFIG_FILE",
    "VALID_STATUSES",
    "ReviewSyncConfig",
    "load_config",
]

CONFIG_FILE_ENV = "REVIEWSYNC_CONFIG_FILE"
DEFAULT_CONFIG_FILE = "config.yaml"

# Status names accepted by the Gerrit query language
VALID_STATUSES = ("open", "merged", "abandoned", "closed", "new")


def _split_csv(v):
    """Parse a comma-separated string into a list; pass lists through."""
    if isinstance(v, str):
        return [p.strip() for p in v.split(",") if p.strip()]
    return v


class ReviewSyncConfig(BaseSettings):
    """Runtime configuration for sync, analysis and scheduling.

    Attributes:
        gerrit_base_url: Gerrit REST base URL
        gerrit_project: Project to sync
        gerrit_branches: Branch patterns; '*' is a wildcard
        gerrit_statuses: Change statuses fetched per sync run
        gerrit_username: Optional HTTP user (enables the /a/ auth prefix)
        gerrit_password: Optional HTTP password
        gerrit_rate_limit_burst: Token bucket capacity
        gerrit_rate_limit_per_second: Token refill rate
        gerrit_timeout: HTTP timeout in seconds
        gitiles_base_url: Gitiles base URL for commit log browsing
        sync_updated_days: Initial lookback when no cursor exists
        sync_safety_window_minutes: Overlap subtracted from stored cursors
        sync_page_limit: Page size for full fetches
        sync_light_page_limit: Page size for light fetches
        sync_exclude_wip: Exclude work-in-progress changes
        sync_fetch_details: Fetch comments and diffs after each change upsert
        diff_max_size_bytes: Largest diff stored verbatim
        diff_exclude_paths: Path prefixes never stored
        diff_exclude_patterns: Regexes of paths never stored
        ollama_base_url: Ollama server URL
        ollama_model: Model used for every analysis task
        llm_timeout: Per-call generation timeout in seconds
        llm_max_retries: Attempts per generation call
        analysis_batch_size: Changes analyzed per pipeline run
        scheduler_enabled: Run schedulers in `serve`
        sync_schedule: Interval ("30m", "@every 30m") or cron expression for sync
        analysis_schedule: Interval or cron expression for analysis
        skills_output_dir: Directory that receives generated skill documents
        skills_window_days: Analyses of changes updated within this many days
        db_path: SQLite database path
        log_level: Logging level
        log_format: json or text
        pushgateway_url: Prometheus Pushgateway address; empty disables push
    """

    model_config = SettingsConfigDict(
        env_prefix="REVIEWSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        validate_default=True,
        frozen=True,
        extra="ignore",
    )

    # =========================================================================
    # Gerrit
    # =========================================================================

    gerrit_base_url: str = Field(
        default="https://go-review.googlesource.com",
        description="Gerrit REST API base URL",
    )
    gerrit_project: str = Field(
        default="go",
        min_length=1,
        description="Gerrit project to sync",
    )
    gerrit_branches: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["master", "release-branch.go1.*"],
        description="Branch patterns kept after fetch ('*' matches any run of characters)",
    )
    gerrit_statuses: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["open", "merged"],
        description="Change statuses fetched on each sync run",
    )
    gerrit_username: str = Field(
        default="",
        description="HTTP username; requests use the /a/ prefix when set",
    )
    gerrit_password: SecretStr = Field(
        default=SecretStr(""),
        description="HTTP password for authenticated Gerrit access",
    )
    gerrit_rate_limit_burst: int = Field(
        default=20,
        ge=1,
        le=1000,
        description="Token bucket capacity for Gerrit and Gitiles requests",
    )
    gerrit_rate_limit_per_second: float = Field(
        default=10.0,
        gt=0.0,
        le=1000.0,
        description="Token refill rate per second",
    )
    gerrit_timeout: float = Field(
        default=30.0,
        gt=0.0,
        le=600.0,
        description="HTTP timeout for Gerrit and Gitiles requests in seconds",
    )

    gitiles_base_url: str = Field(
        default="https://go.googlesource.com",
        description="Gitiles base URL for commit log browsing",
    )

    # =========================================================================
    # Sync
    # =========================================================================

    sync_updated_days: int = Field(
        default=30,
        ge=1,
        le=3650,
        description="Lookback in days for the first sync of a status",
    )
    sync_safety_window_minutes: int = Field(
        default=10,
        ge=0,
        le=1440,
        description="Minutes subtracted from a stored cursor to absorb clock skew",
    )
    sync_page_limit: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Page size for full change queries",
    )
    sync_light_page_limit: int = Field(
        default=25,
        ge=1,
        le=500,
        description="Page size for light change queries",
    )
    sync_exclude_wip: bool = Field(
        default=True,
        description="Exclude work-in-progress changes from queries",
    )
    sync_fetch_details: bool = Field(
        default=True,
        description="Fetch comments and file diffs for every synced change",
    )

    # =========================================================================
    # Diff policy
    # =========================================================================

    diff_max_size_bytes: int = Field(
        default=1024 * 1024,
        ge=1024,
        description="Largest rendered diff stored verbatim; larger diffs keep stats only",
    )
    diff_exclude_paths: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["vendor/", "third_party/"],
        description="Path prefixes whose diffs are never stored",
    )
    diff_exclude_patterns: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [r"\.pb\.go$", r"_generated\.go$", r"^go\.sum$"],
        description="Regular expressions matching paths whose diffs are never stored",
    )

    # =========================================================================
    # LLM
    # =========================================================================

    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server URL",
    )
    ollama_model: str = Field(
        default="llama3.2",
        min_length=1,
        description="Ollama model used for analysis",
    )
    llm_timeout: float = Field(
        default=120.0,
        gt=0.0,
        le=3600.0,
        description="Per-call generation timeout in seconds (doubled for mental-model analysis)",
    )
    llm_max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per generation call before giving up",
    )
    analysis_batch_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Changes analyzed per pipeline run",
    )

    # =========================================================================
    # Scheduling
    # =========================================================================

    scheduler_enabled: bool = Field(
        default=True,
        description="Start the sync and analysis schedulers in serve mode",
    )
    sync_schedule: str = Field(
        default="30m",
        description="Sync cadence: duration (e.g. 30m, @every 1h) or 5-field cron expression",
    )
    analysis_schedule: str = Field(
        default="0 * * * *",
        description="Analysis cadence: duration or 5-field cron expression",
    )

    # =========================================================================
    # Skills
    # =========================================================================

    skills_output_dir: str = Field(
        default="skills",
        description="Directory for generated SKILL.md documents",
    )
    skills_window_days: int = Field(
        default=30,
        ge=1,
        le=3650,
        description="Only changes updated within this many days feed skill documents",
    )

    # =========================================================================
    # Storage, logging, metrics
    # =========================================================================

    db_path: str = Field(
        default="reviewsync.db",
        description="SQLite database file",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_format: str = Field(
        default="json",
        description="Log format: json or text",
    )
    pushgateway_url: str = Field(
        default="",
        description="Prometheus Pushgateway address; empty disables metric push",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_file = os.getenv(CONFIG_FILE_ENV, DEFAULT_CONFIG_FILE)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
            file_secret_settings,
        )

    @field_validator(
        "gerrit_branches",
        "gerrit_statuses",
        "diff_exclude_paths",
        "diff_exclude_patterns",
        mode="before",
    )
    @classmethod
    def parse_comma_separated(cls, v):
        """Parse comma-separated strings from environment variables."""
        return _split_csv(v)

    @field_validator("gerrit_base_url", "gitiles_base_url", "ollama_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("gerrit_statuses")
    @classmethod
    def validate_statuses(cls, v: list[str]) -> list[str]:
        """Reject unknown status names early."""
        normalized = [s.lower() for s in v]
        unknown = [s for s in normalized if s not in VALID_STATUSES]
        if unknown:
            raise ValueError(
                f"Unknown change status(es) {unknown}; expected one of {list(VALID_STATUSES)}"
            )
        if not normalized:
            raise ValueError("At least one change status must be configured")
        return normalized

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: '{v}'")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        fmt = v.lower()
        if fmt not in ("json", "text"):
            raise ValueError(f"Invalid log format: '{v}'. Expected 'json' or 'text'.")
        return fmt

    @model_validator(mode="after")
    def validate_branches(self) -> "ReviewSyncConfig":
        """At least one branch pattern is required for the local filter."""
        if not self.gerrit_branches:
            raise ValueError("REVIEWSYNC_GERRIT_BRANCHES must name at least one branch")
        return self

    @model_validator(mode="after")
    def validate_schedules(self) -> "ReviewSyncConfig":
        """Fail at load time on unparseable schedule strings."""
        from .scheduler import validate_schedule

        for name in ("sync_schedule", "analysis_schedule"):
            try:
                validate_schedule(getattr(self, name))
            except ValueError as e:
                raise ValueError(f"Invalid {name}: {e}") from e
        return self

    @cached_property
    def branch_patterns(self) -> list[BranchPattern]:
        """Branch patterns compiled once per config instance."""
        return compile_branch_patterns(self.gerrit_branches)

    @property
    def gerrit_auth(self) -> tuple[str, str] | None:
        """HTTP basic credentials, or None for anonymous access."""
        password = self.gerrit_password.get_secret_value()
        if self.gerrit_username and password:
            return (self.gerrit_username, password)
        return None


def load_config(**overrides) -> ReviewSyncConfig:
    """Build a fresh configuration from the environment and config file.

    Args:
        **overrides: Field values that take precedence over every source

    Returns:
        A validated, frozen ReviewSyncConfig

    Raises:
        pydantic.ValidationError: If any value fails validation
    """
    config = ReviewSyncConfig(**overrides)
    logger.debug(
        "config_loaded",
        extra={
            "project": config.gerrit_project,
            "statuses": config.gerrit_statuses,
            "branches": config.gerrit_branches,
        },
    )
    return config
