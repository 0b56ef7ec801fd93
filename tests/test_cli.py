"""
Tests for the CLI interface.
"""
import json
import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from token_ledger.cli.main import app, EXIT_CODE_OK, EXIT_CODE_ERROR
from token_ledger.config.loader import load_config
from token_ledger.core.context import AnalyticsContext
from token_ledger.core.pricing import reset_adapter_cache

runner = CliRunner()

SESSION_ID = "11111111-2222-4333-8444-555555555555"


@pytest.fixture
def workspace():
    """Temporary state directory with live pricing disabled."""
    reset_adapter_cache()
    temp_dir = tempfile.mkdtemp()
    config_path = Path(temp_dir) / "config.yaml"
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump({
            "state_dir": str(Path(temp_dir) / "state"),
            "pricing": {"external_module": None},
        }, f)
    yield Path(temp_dir), str(config_path)
    shutil.rmtree(temp_dir, ignore_errors=True)


def _seed(config_path, session_id="session-a"):
    context = AnalyticsContext(load_config(config_path), session_id=session_id)
    context.tracker.record_token_usage("claude-sonnet-4.5", 1000, 500, agent_name="planner")
    context.tracker.record_token_usage("claude-opus-4.6", 2000, 1000)
    return context


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self, workspace):
        _, config_path = workspace
        result = runner.invoke(app, ["--config", config_path])
        assert result.exit_code == EXIT_CODE_OK
        assert "--help" in result.output

    def test_invalid_config_fails(self, workspace):
        temp_dir, _ = workspace
        bad = temp_dir / "bad.yaml"
        bad.write_text("unknown_key: 1\n", encoding="utf-8")

        result = runner.invoke(app, ["--config", str(bad), "status"])

        assert result.exit_code == EXIT_CODE_ERROR
        assert "invalid configuration" in result.output

    def test_status(self, workspace):
        _, config_path = workspace
        _seed(config_path)

        result = runner.invoke(app, ["--config", config_path, "status"])

        assert result.exit_code == EXIT_CODE_OK
        assert "static" in result.output
        assert "present" in result.output

    def test_stats_empty(self, workspace):
        _, config_path = workspace
        result = runner.invoke(app, ["--config", config_path, "stats"])
        assert result.exit_code == EXIT_CODE_OK
        assert "No token usage recorded yet" in result.output

    def test_stats(self, workspace):
        _, config_path = workspace
        _seed(config_path)

        result = runner.invoke(app, ["--config", config_path, "stats"])

        assert result.exit_code == EXIT_CODE_OK
        assert "Entries: 2" in result.output
        assert "Input tokens: 3,000" in result.output
        assert "claude-opus-4.6" in result.output

    def test_top_agents_all_sessions(self, workspace):
        _, config_path = workspace
        _seed(config_path)

        result = runner.invoke(app, ["--config", config_path, "top-agents", "--limit", "1"])

        assert result.exit_code == EXIT_CODE_OK
        assert "(main session)" in result.output
        assert "planner" not in result.output

    def test_top_agents_for_session(self, workspace):
        _, config_path = workspace
        _seed(config_path)

        result = runner.invoke(app, ["--config", config_path, "top-agents", "--session", "session-a"])

        assert result.exit_code == EXIT_CODE_OK
        assert "planner" in result.output

    def test_top_agents_unknown_session(self, workspace):
        _, config_path = workspace
        result = runner.invoke(app, ["--config", config_path, "top-agents", "--session", "nope"])
        assert result.exit_code == EXIT_CODE_OK
        assert "No usage recorded" in result.output

    def test_summary(self, workspace):
        _, config_path = workspace
        context = _seed(config_path)

        result = runner.invoke(app, ["--config", config_path, "summary", "session-a"])

        assert result.exit_code == EXIT_CODE_OK
        assert "Input tokens: 3,000" in result.output
        assert context.paths.summary_file("session-a").exists()

        rebuilt = runner.invoke(app, ["--config", config_path, "summary", "session-a", "--rebuild"])
        assert rebuilt.exit_code == EXIT_CODE_OK

    def test_recent(self, workspace):
        _, config_path = workspace
        _seed(config_path)

        result = runner.invoke(app, ["--config", config_path, "recent", "--limit", "5"])

        assert result.exit_code == EXIT_CODE_OK
        assert "Recent usage" in result.output

    def test_recent_empty(self, workspace):
        _, config_path = workspace
        result = runner.invoke(app, ["--config", config_path, "recent"])
        assert result.exit_code == EXIT_CODE_OK
        assert "No usage records found" in result.output

    def test_report(self, workspace):
        _, config_path = workspace
        _seed(config_path)

        result = runner.invoke(app, ["--config", config_path, "report", "--period", "weekly"])

        assert result.exit_code == EXIT_CODE_OK
        assert "Cost report (weekly)" in result.output
        assert "Sessions: 1" in result.output
        assert "Peak hours:" in result.output

    def test_report_unknown_period(self, workspace):
        _, config_path = workspace
        result = runner.invoke(app, ["--config", config_path, "report", "--period", "yearly"])
        assert result.exit_code == EXIT_CODE_ERROR
        assert "Unknown report period" in result.output

    def test_cleanup(self, workspace):
        _, config_path = workspace
        _seed(config_path)

        result = runner.invoke(app, ["--config", config_path, "cleanup", "--days", "7"])

        assert result.exit_code == EXIT_CODE_OK
        assert "Removed 0 records" in result.output

    def test_backfill_and_replay(self, workspace):
        temp_dir, config_path = workspace
        transcripts = temp_dir / "projects"
        transcripts.mkdir()
        entry = {
            "type": "assistant",
            "timestamp": "2026-01-01T00:00:00Z",
            "message": {"model": "claude-haiku-4-5", "usage": {"input_tokens": 10, "output_tokens": 2}},
        }
        (transcripts / f"{SESSION_ID}.jsonl").write_text(json.dumps(entry) + "\n", encoding="utf-8")

        first = runner.invoke(app, ["--config", config_path, "backfill", str(transcripts)])
        second = runner.invoke(app, ["--config", config_path, "backfill", str(transcripts)])

        assert first.exit_code == EXIT_CODE_OK
        assert "Entries added: 1" in first.output
        assert "Duplicates skipped: 1" in second.output

        reset = runner.invoke(app, ["--config", config_path, "backfill", str(transcripts), "--reset", "--dry-run"])
        assert "Entries added: 0" in reset.output

    def test_command_error_exits_with_failure(self, workspace):
        _, config_path = workspace
        with patch("token_ledger.cli.main.AnalyticsContext", side_effect=RuntimeError("boom")):
            result = runner.invoke(app, ["--config", config_path, "stats"])

        assert result.exit_code == EXIT_CODE_ERROR
        assert "boom" in result.output
