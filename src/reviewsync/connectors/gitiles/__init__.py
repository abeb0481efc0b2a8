"""Gitiles integration package: commit log, commit and ref browsing."""

from .client import (
    CommitInfo,
    GitilesClient,
    GitilesClientError,
    GitilesConnectionError,
    LogPage,
    PersonInfo,
)

__all__ = [
    "CommitInfo",
    "GitilesClient",
    "GitilesClientError",
    "GitilesConnectionError",
    "LogPage",
    "PersonInfo",
]
