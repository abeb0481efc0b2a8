"""Unit tests for the reviewsync CLI.

Commands are exercised with their network clients patched out; main() is
tested for argument parsing, config errors and exit codes.
"""

import argparse
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import gerrit_change

from reviewsync import cli
from reviewsync.connectors.gerrit.client import GerritConnectionError
from reviewsync.connectors.gerrit.sync import SyncResult
from reviewsync.connectors.gitiles.client import CommitInfo, LogPage
from reviewsync.llm.client import ModelNotInstalledError
from reviewsync.models import AnalysisCategory, AnalysisResult, Change
from reviewsync.storage import SQLiteChangeStore


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch("reviewsync.cli.configure_logging") as configure:
        yield configure


def _async_cm(obj):
    """Wrap obj so `async with factory(...) as x` yields obj."""
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=obj)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


# =============================================================================
# Parser
# =============================================================================


class TestParser:
    def test_defaults(self):
        parser = cli.build_parser()

        assert parser.parse_args(["updates"]).days == 30
        log = parser.parse_args(["log"])
        assert (log.ref, log.limit, log.start) == ("refs/heads/master", 20, None)
        mental = parser.parse_args(["mental-model", "--focus", "errors"])
        assert (mental.focus, mental.limit) == ("errors", 30)
        skills = parser.parse_args(["skills"])
        assert (skills.list, skills.output_dir, skills.days) == (False, None, None)
        assert parser.parse_args(["sync", "--backfill-days", "90"]).backfill_days == 90

    def test_every_command_is_dispatched(self):
        parser = cli.build_parser()
        for name in cli.COMMANDS:
            assert parser.parse_args([name]).command == name

    def test_command_required(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.build_parser().parse_args([])
        assert exc_info.value.code == 2

    def test_version(self, capsys):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--version"])
        assert "reviewsync" in capsys.readouterr().out


# =============================================================================
# main()
# =============================================================================


class TestMain:
    def test_dispatches_command(self, no_logging_setup):
        command = AsyncMock(return_value=cli.EXIT_SUCCESS)
        with patch.dict(cli.COMMANDS, {"sync": command}):
            assert cli.main(["--log-level", "DEBUG", "sync", "--change", "42"]) == cli.EXIT_SUCCESS

        config, args = command.await_args.args
        assert config.gerrit_project == "go"
        assert args.change == 42
        no_logging_setup.assert_called_once_with(level="DEBUG", log_format="json")

    def test_invalid_config_exits_2(self, monkeypatch, capsys):
        monkeypatch.setenv("REVIEWSYNC_LLM_MAX_RETRIES", "0")
        command = AsyncMock()
        with patch.dict(cli.COMMANDS, {"check": command}):
            assert cli.main(["check"]) == cli.EXIT_USAGE

        command.assert_not_awaited()
        assert "Invalid configuration" in capsys.readouterr().err

    @pytest.mark.parametrize(
        "error",
        [GerritConnectionError("refused"), ModelNotInstalledError("llama3.2")],
    )
    def test_client_errors_exit_1(self, error, capsys):
        with patch.dict(cli.COMMANDS, {"sync": AsyncMock(side_effect=error)}):
            assert cli.main(["sync"]) == cli.EXIT_FAILURE
        assert "Error:" in capsys.readouterr().err


# =============================================================================
# Commands
# =============================================================================


class TestCheck:
    @pytest.mark.asyncio
    async def test_both_healthy(self, config, capsys):
        gerrit = AsyncMock()
        gerrit.test_connection.return_value = {"success": True, "version": "3.10.0"}
        ollama = AsyncMock()

        with patch.object(cli, "_gerrit_client", return_value=_async_cm(gerrit)), patch.object(
            cli, "_ollama_client", return_value=_async_cm(ollama)
        ):
            code = await cli.cmd_check(config, argparse.Namespace())

        assert code == cli.EXIT_SUCCESS
        out = capsys.readouterr().out
        assert "Gerrit:  OK" in out
        assert "Ollama:  OK" in out

    @pytest.mark.asyncio
    async def test_model_missing(self, config, capsys):
        gerrit = AsyncMock()
        gerrit.test_connection.return_value = {"success": True, "version": "3.10.0"}
        ollama = AsyncMock()
        ollama.check_connection.side_effect = ModelNotInstalledError("llama3.2")

        with patch.object(cli, "_gerrit_client", return_value=_async_cm(gerrit)), patch.object(
            cli, "_ollama_client", return_value=_async_cm(ollama)
        ):
            code = await cli.cmd_check(config, argparse.Namespace())

        assert code == cli.EXIT_FAILURE
        assert "ollama pull llama3.2" in capsys.readouterr().out


class TestLog:
    @pytest.mark.asyncio
    async def test_prints_commits_and_continuation(self, config, capsys):
        page = LogPage(
            commits=[
                CommitInfo.from_json(
                    {
                        "commit": "0123456789abcdef" * 2 + "01234567",
                        "message": "runtime: fix race\n\nbody",
                        "author": {"name": "Gopher"},
                        "committer": {"time": "Fri Mar 01 12:00:00 2024 +0000"},
                    }
                )
            ],
            next="f" * 40,
        )
        gitiles = AsyncMock()
        gitiles.get_log.return_value = page
        args = argparse.Namespace(ref="refs/heads/master", limit=1, start=None)

        with patch.object(cli, "GitilesClient", return_value=_async_cm(gitiles)):
            assert await cli.cmd_log(config, args) == cli.EXIT_SUCCESS

        gitiles.get_log.assert_awaited_once_with("go", ref="refs/heads/master", limit=1, start=None)
        out = capsys.readouterr().out
        assert "0123456789ab 2024-03-01 Gopher: runtime: fix race" in out
        assert f"--start {'f' * 40}" in out


class TestMentalModel:
    @pytest.fixture
    def db_config(self, make_config, tmp_path):
        return make_config(db_path=str(tmp_path / "cli.db"))

    async def _seed(self, db_path: str) -> None:
        async with SQLiteChangeStore(db_path) as store:
            for number, status in [(1, "MERGED"), (2, "NEW")]:
                await store.upsert_change(
                    Change.from_gerrit(gerrit_change(number, status=status, subject=f"subject {number}"))
                )
                await store.upsert_analysis(
                    AnalysisResult(
                        change_number=number,
                        project="go",
                        category=AnalysisCategory.TESTING,
                        summary=f"summary {number}",
                    )
                )

    @pytest.mark.asyncio
    async def test_no_analyses(self, db_config, capsys):
        args = argparse.Namespace(focus=None, category=None, limit=30)
        assert await cli.cmd_mental_model(db_config, args) == cli.EXIT_FAILURE
        assert "No analyzed merged changes" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_uses_merged_analyses_only(self, db_config, capsys):
        await self._seed(db_config.db_path)
        ollama = AsyncMock()
        analyzer = AsyncMock()
        analyzer.analyze_mental_model.return_value = "Reviewers favor small changes."
        args = argparse.Namespace(focus="testing", category="testing", limit=30)

        with patch.object(cli, "_ollama_client", return_value=_async_cm(ollama)), patch.object(
            cli, "Analyzer", return_value=analyzer
        ):
            assert await cli.cmd_mental_model(db_config, args) == cli.EXIT_SUCCESS

        changes_data = analyzer.analyze_mental_model.await_args.args[0]
        assert "#1 subject 1 [testing]" in changes_data
        assert "subject 2" not in changes_data
        assert analyzer.analyze_mental_model.await_args.kwargs["analysis_type"] == "testing"
        ollama.check_connection.assert_awaited_once()
        assert "Reviewers favor small changes." in capsys.readouterr().out


class TestGerritClientFactory:
    @pytest.mark.asyncio
    async def test_credentials_enable_auth(self, make_config):
        config = make_config(gerrit_username="bot", gerrit_password="s3cret")
        async with cli._gerrit_client(config) as client:
            assert client.authenticated

    @pytest.mark.asyncio
    async def test_username_alone_is_anonymous(self, make_config):
        async with cli._gerrit_client(make_config(gerrit_username="bot")) as client:
            assert not client.authenticated


class TestSyncBackfill:
    @pytest.mark.asyncio
    async def test_backfill_uses_window(self, make_config, tmp_path, capsys):
        config = make_config(db_path=str(tmp_path / "cli.db"))
        service = AsyncMock()
        service.backfill.return_value = SyncResult(changes_fetched=4, changes_inserted=3, changes_updated=1)
        args = argparse.Namespace(change=None, backfill_days=90)

        with patch.object(cli, "_gerrit_client", return_value=_async_cm(AsyncMock())), patch.object(
            cli, "SyncService", return_value=service
        ):
            assert await cli.cmd_sync(config, args) == cli.EXIT_SUCCESS

        service.backfill.assert_awaited_once_with(90)
        service.run_once.assert_not_awaited()
        assert "Fetched: 4, Inserted: 3, Updated: 1, Errors: 0" in capsys.readouterr().out


class TestSkills:
    @pytest.fixture
    def db_config(self, make_config, tmp_path):
        return make_config(db_path=str(tmp_path / "cli.db"), skills_output_dir=str(tmp_path / "skills"))

    @pytest.mark.asyncio
    async def test_list_without_skills(self, db_config, capsys):
        args = argparse.Namespace(list=True, output_dir=None, days=None)
        assert await cli.cmd_skills(db_config, args) == cli.EXIT_FAILURE
        assert "No skills found" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_list_existing(self, db_config, tmp_path, capsys):
        skill_dir = tmp_path / "skills" / "go-testing"
        skill_dir.mkdir(parents=True)
        (skill_dir / "SKILL.md").write_text("---\nname: go-testing\n---\n")
        args = argparse.Namespace(list=True, output_dir=None, days=None)

        assert await cli.cmd_skills(db_config, args) == cli.EXIT_SUCCESS
        assert capsys.readouterr().out.strip() == "go-testing"

    @pytest.mark.asyncio
    async def test_generate_from_stored_analyses(self, db_config, tmp_path, capsys):
        async with SQLiteChangeStore(db_config.db_path) as store:
            await store.upsert_change(Change.from_gerrit(gerrit_change(1, status="MERGED")))
            await store.upsert_analysis(
                AnalysisResult(change_number=1, project="go", category=AnalysisCategory.TESTING)
            )
        ollama = AsyncMock()
        analyzer = AsyncMock()
        analyzer.generate_skill.return_value = "---\nname: go-testing\n---\n"
        args = argparse.Namespace(list=False, output_dir=None, days=36500)

        with patch.object(cli, "_ollama_client", return_value=_async_cm(ollama)), patch.object(
            cli, "Analyzer", return_value=analyzer
        ):
            assert await cli.cmd_skills(db_config, args) == cli.EXIT_SUCCESS

        ollama.check_connection.assert_awaited_once()
        assert (tmp_path / "skills" / "go-testing" / "SKILL.md").read_text() == "---\nname: go-testing\n---\n"
        out = capsys.readouterr().out
        assert "Wrote 2 skills" in out
        assert "go-digest" in out

    @pytest.mark.asyncio
    async def test_generate_without_analyses(self, db_config, capsys):
        args = argparse.Namespace(list=False, output_dir=None, days=None)

        with patch.object(cli, "_ollama_client", return_value=_async_cm(AsyncMock())):
            assert await cli.cmd_skills(db_config, args) == cli.EXIT_FAILURE

        assert "No analyses in the last 30 days" in capsys.readouterr().out
