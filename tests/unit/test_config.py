"""Unit tests for ReviewSyncConfig.

Tests defaults, env overrides, comma-separated lists, YAML file loading
and validation errors.
"""

import pytest
from pydantic import ValidationError

from reviewsync.config import ReviewSyncConfig, load_config
from reviewsync.connectors.gerrit.query import ExactBranch, WildcardBranch


class TestDefaults:
    def test_defaults(self, make_config):
        config = make_config()
        assert config.gerrit_base_url == "https://go-review.googlesource.com"
        assert config.gerrit_project == "go"
        assert config.gerrit_statuses == ["open", "merged"]
        assert config.sync_safety_window_minutes == 10
        assert config.ollama_model == "llama3.2"
        assert config.gerrit_auth is None

    def test_branch_patterns_compiled(self, make_config):
        patterns = make_config().branch_patterns
        assert isinstance(patterns[0], ExactBranch)
        assert isinstance(patterns[1], WildcardBranch)

    def test_frozen(self, make_config):
        config = make_config()
        with pytest.raises(ValidationError):
            config.gerrit_project = "tools"


class TestEnvironment:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("REVIEWSYNC_GERRIT_PROJECT", "tools")
        monkeypatch.setenv("REVIEWSYNC_GERRIT_BRANCHES", "master, release-branch.*")
        monkeypatch.setenv("REVIEWSYNC_GERRIT_STATUSES", "Open,ABANDONED")
        monkeypatch.setenv("REVIEWSYNC_SYNC_SCHEDULE", "15m")

        config = load_config(_env_file=None)

        assert config.gerrit_project == "tools"
        assert config.gerrit_branches == ["master", "release-branch.*"]
        assert config.gerrit_statuses == ["open", "abandoned"]
        assert config.sync_schedule == "15m"

    def test_credentials(self, monkeypatch):
        monkeypatch.setenv("REVIEWSYNC_GERRIT_USERNAME", "bot")
        monkeypatch.setenv("REVIEWSYNC_GERRIT_PASSWORD", "hunter2")

        config = load_config(_env_file=None)

        assert config.gerrit_auth == ("bot", "hunter2")
        assert "hunter2" not in repr(config)

    def test_kwargs_beat_env(self, monkeypatch):
        monkeypatch.setenv("REVIEWSYNC_GERRIT_PROJECT", "tools")
        assert load_config(_env_file=None, gerrit_project="net").gerrit_project == "net"


class TestYamlFile:
    def test_yaml_values_below_env(self, monkeypatch, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "gerrit_project: crypto\nanalysis_batch_size: 7\nollama_model: qwen2.5\n"
        )
        monkeypatch.setenv("REVIEWSYNC_CONFIG_FILE", str(config_file))
        monkeypatch.setenv("REVIEWSYNC_OLLAMA_MODEL", "llama3.1")

        config = load_config(_env_file=None)

        assert config.gerrit_project == "crypto"
        assert config.analysis_batch_size == 7
        assert config.ollama_model == "llama3.1"


class TestValidation:
    def test_unknown_status(self, make_config):
        with pytest.raises(ValidationError, match="Unknown change status"):
            make_config(gerrit_statuses=["open", "pending"])

    def test_empty_branches(self, make_config):
        with pytest.raises(ValidationError, match="at least one branch"):
            make_config(gerrit_branches=[])

    @pytest.mark.parametrize("field", ["sync_schedule", "analysis_schedule"])
    def test_invalid_schedule(self, make_config, field):
        with pytest.raises(ValidationError, match=f"Invalid {field}"):
            make_config(**{field: "every tuesday"})

    @pytest.mark.parametrize("spec", ["30m", "1h30m", "@every 30m", "0 * * * *", "@daily"])
    def test_valid_schedules(self, make_config, spec):
        assert make_config(sync_schedule=spec).sync_schedule == spec

    def test_invalid_log_format(self, make_config):
        with pytest.raises(ValidationError):
            make_config(log_format="xml")

    def test_urls_lose_trailing_slash(self, make_config):
        config = make_config(gerrit_base_url="https://review.example.com/")
        assert config.gerrit_base_url == "https://review.example.com"

    def test_rate_limit_must_be_positive(self, make_config):
        with pytest.raises(ValidationError):
            make_config(gerrit_rate_limit_per_second=0)

    def test_isinstance(self, make_config):
        assert isinstance(make_config(), ReviewSyncConfig)
