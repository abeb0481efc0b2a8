"""Gerrit integration package.

Provides the async REST client, query construction with local branch
matching, offset pagination and diff policy. The sync engine and service
live in .sync, which depends on the configuration module and is imported
from there directly.
"""

from .client import (
    DEFAULT_QUERY_OPTIONS,
    DETAIL_OPTIONS,
    GerritClient,
    GerritClientError,
    GerritConnectionError,
    strip_xssi_prefix,
)
from .diff_policy import DiffPolicy
from .fetcher import PaginatedFetcher
from .query import (
    BranchPattern,
    ExactBranch,
    WildcardBranch,
    build_query,
    compile_branch_patterns,
    match_branch,
)

__all__ = [
    "DEFAULT_QUERY_OPTIONS",
    "DETAIL_OPTIONS",
    "BranchPattern",
    "DiffPolicy",
    "ExactBranch",
    "GerritClient",
    "GerritClientError",
    "GerritConnectionError",
    "PaginatedFetcher",
    "WildcardBranch",
    "build_query",
    "compile_branch_patterns",
    "match_branch",
    "strip_xssi_prefix",
]
