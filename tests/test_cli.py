"""
Tests for the command-line interface.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from webpilot.cli import create_parser, main
from webpilot.errors import LLMCollaboratorError
from webpilot.types import ExecutionSummary


def make_summary(is_complete=True):
    return ExecutionSummary(
        execution_id="exec-1", goal="Check the heading", is_complete=is_complete,
        total_steps=2, succeeded_steps=2, failed_steps=0, final_phase="completion",
        final_confidence=80.0, loops_detected=0, elapsed_seconds=3.0,
    )


class TestParser:
    """Tests for argument parsing."""

    def test_run_arguments(self):
        args = create_parser().parse_args([
            "run", "Check the heading", "--url", "https://example.com",
            "--provider", "anthropic", "--max-steps", "12", "--headed", "--json",
        ])
        assert args.command == "run"
        assert args.goal == "Check the heading"
        assert args.provider == "anthropic"
        assert args.max_steps == 12
        assert args.headed and args.json
        assert not args.no_log

    def test_url_is_required(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["run", "Check the heading"])

    def test_unknown_provider_rejected(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["run", "g", "--url", "u", "--provider", "acme"])

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "webpilot" in capsys.readouterr().out


class TestRunCommand:
    """Tests for the run command with the orchestrator mocked out."""

    def run_main(self, argv, summary=None, error=None):
        orchestrator = MagicMock()
        if error is not None:
            orchestrator.run.side_effect = error
        else:
            orchestrator.run.return_value = summary
        with patch("webpilot.cli.ExecutionOrchestrator", return_value=orchestrator) as factory, \
                patch("webpilot.cli.signal.signal"), \
                patch("webpilot.cli.AgentConfig.ensure_directories"):
            code = main(argv)
        return code, orchestrator, factory

    def test_success_json(self, capsys):
        code, orchestrator, factory = self.run_main(
            ["run", "Check the heading", "--url", "https://example.com", "--json", "--no-log"],
            summary=make_summary(),
        )
        assert code == 0
        goal = orchestrator.run.call_args.args[0]
        assert goal.target_url == "https://example.com"
        config = factory.call_args.args[0]
        assert config.log_runs is False
        assert json.loads(capsys.readouterr().out)["status"] == "success"
        orchestrator.shutdown.assert_called_once()

    def test_incomplete_run_exits_nonzero(self):
        code, _, _ = self.run_main(
            ["run", "Check the heading", "--url", "https://example.com", "--no-log"],
            summary=make_summary(is_complete=False),
        )
        assert code == 1

    def test_collaborator_error(self, capsys):
        code, orchestrator, _ = self.run_main(
            ["run", "g", "--url", "https://example.com", "--json", "--no-log"],
            error=LLMCollaboratorError("OpenAI requires an API key (set OPENAI_API_KEY)"),
        )
        assert code == 1
        assert json.loads(capsys.readouterr().out) == {
            "success": False, "error": "OpenAI requires an API key (set OPENAI_API_KEY)",
        }
        orchestrator.shutdown.assert_called_once()

    def test_interrupt(self):
        code, orchestrator, _ = self.run_main(
            ["run", "g", "--url", "https://example.com", "--no-log"],
            error=KeyboardInterrupt(),
        )
        assert code == 130
        orchestrator.shutdown.assert_called_once()


class TestServersCommand:
    def test_lists_playwright(self, capsys):
        assert main(["servers"]) == 0
        assert "playwright" in capsys.readouterr().out
