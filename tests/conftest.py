"""Shared pytest fixtures for reviewsync tests.

Fixture Organization:
    - Config fixtures: ReviewSyncConfig isolated from the developer's env/.env/YAML
    - Sample data fixtures: Gerrit ChangeInfo payloads and parsed Changes
    - Store fixtures: SQLiteChangeStore on a temporary database file
"""

import json
import os
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from reviewsync.config import ReviewSyncConfig
from reviewsync.models import Change, format_gerrit_time
from reviewsync.storage import SQLiteChangeStore

# =============================================================================
# Config Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep REVIEWSYNC_* variables and config.yaml from leaking into tests."""
    for key in list(os.environ):
        if key.startswith("REVIEWSYNC_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("REVIEWSYNC_CONFIG_FILE", str(tmp_path / "absent-config.yaml"))


@pytest.fixture
def make_config():
    """Factory for configs that ignore any .env file."""

    def _make(**overrides) -> ReviewSyncConfig:
        return ReviewSyncConfig(_env_file=None, **overrides)

    return _make


@pytest.fixture
def config(make_config) -> ReviewSyncConfig:
    return make_config(
        gerrit_statuses=["open", "merged"],
        gerrit_branches=["master", "release-branch.go1.*"],
        sync_page_limit=2,
        sync_fetch_details=False,
    )


# =============================================================================
# Sample Data Fixtures
# =============================================================================

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def gerrit_change(
    number: int,
    *,
    branch: str = "master",
    status: str = "NEW",
    subject: str | None = None,
    updated: datetime | None = None,
    project: str = "go",
) -> dict:
    """Build a minimal Gerrit ChangeInfo dict."""
    updated = updated or BASE_TIME
    return {
        "id": f"{project}~{branch}~I{number:040d}",
        "project": project,
        "branch": branch,
        "change_id": f"I{number:040d}",
        "subject": subject or f"change {number}",
        "status": status,
        "created": format_gerrit_time(BASE_TIME),
        "updated": format_gerrit_time(updated),
        "insertions": 3,
        "deletions": 1,
        "_number": number,
        "owner": {"name": "Gopher", "email": "gopher@example.com"},
    }


def xssi_json(payload) -> str:
    """Serialize a payload the way Gerrit does, with the XSSI guard line."""
    return ")]}'\n" + json.dumps(payload)


@pytest.fixture
def sample_change() -> Change:
    return Change.from_gerrit(gerrit_change(1001, subject="runtime: fix race condition in timers"))


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def store(tmp_path):
    """Open SQLiteChangeStore on a temp file; closed after the test."""
    db = SQLiteChangeStore(tmp_path / "reviewsync-test.db")
    await db.open()
    yield db
    await db.close()

