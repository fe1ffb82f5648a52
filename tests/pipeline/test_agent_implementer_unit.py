"""Unit tests for the agent CLI implementer."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from stagegate.errors import ImplementationError
from stagegate.runner.agent import (
    AgentCliImplementer,
    ImplementationOutcome,
    build_task_markdown,
    parse_coverage,
)
from stagegate.runner.command import CommandResult
from stagegate.tasks.models import Task


def run_async(coro):
    return asyncio.run(coro)


def _task(**overrides) -> Task:
    fields = {
        "task_id": "T-7",
        "title": "Add password reset",
        "description": "Send a reset link by email.",
        "files": frozenset({"src/reset.py", "tests/test_reset.py"}),
    }
    fields.update(overrides)
    return Task(**fields)


def _implementer(tmp_path: Path, result: CommandResult):
    command_runner = AsyncMock()
    command_runner.run = AsyncMock(return_value=result)
    implementer = AgentCliImplementer(
        command_runner=command_runner,
        cli_path="/usr/local/bin/agent-cli",
        workspace_path=tmp_path / "workspace",
        state_dir=tmp_path / "state",
        tool_name="stagegate-agent",
        model_name="qwen2.5-coder",
        timeout_seconds=120,
    )
    return implementer, command_runner


class TestParseCoverage:
    def test_last_coverage_line_wins(self):
        output = "Coverage: 10%\nrunning tests\ncoverage:   92% of lines  \n"
        assert parse_coverage(output) == "92% of lines"

    def test_no_coverage_line(self):
        assert parse_coverage("all done") is None


class TestBuildTaskMarkdown:
    def test_lists_files_and_feedback(self):
        markdown = build_task_markdown(_task(attempt=2), feedback="lint failed on reset.py")

        assert markdown.startswith("# Task T-7: Add password reset")
        assert "**Attempt:** 2" in markdown
        assert "- src/reset.py\n- tests/test_reset.py" in markdown
        assert "## Feedback From Previous Attempt" in markdown
        assert "lint failed on reset.py" in markdown

    def test_no_feedback_section_on_first_attempt(self):
        assert "Feedback" not in build_task_markdown(_task())


class TestAgentCliImplementer:
    def test_implement_runs_cli_with_task_file(self, tmp_path):
        result = CommandResult(True, 0, "done\nCoverage: 88%", "", 12.5)
        implementer, command_runner = _implementer(tmp_path, result)

        outcome = run_async(implementer.implement(_task(), feedback="retry"))

        assert outcome.coverage == "88%"
        assert outcome.duration_seconds == 12.5
        task_file = tmp_path / "state" / "T-7-attempt1.md"
        assert task_file.exists()
        assert "retry" in task_file.read_text(encoding="utf-8")

        argv = command_runner.run.await_args.args[0]
        assert argv == [
            "/usr/local/bin/agent-cli",
            "--workspace",
            str(tmp_path / "workspace"),
            "--task",
            str(task_file),
        ]
        assert command_runner.run.await_args.kwargs["timeout_seconds"] == 120

    def test_implement_in_run_worktree(self, tmp_path):
        result = CommandResult(True, 0, "Coverage: 80%", "", 1.0)
        implementer, command_runner = _implementer(tmp_path, result)
        worktree = tmp_path / "worktrees" / "run-1"

        run_async(implementer.implement(_task(run_id="run-1"), None, worktree))

        task_file = tmp_path / "state" / "run-1" / "T-7-attempt1.md"
        assert task_file.exists()
        argv = command_runner.run.await_args.args[0]
        assert argv[2] == str(worktree)
        assert command_runner.run.await_args.kwargs["cwd"] == worktree

    def test_failed_cli_raises(self, tmp_path):
        result = CommandResult(False, 2, "", "model quota exceeded", 3.0)
        implementer, _ = _implementer(tmp_path, result)

        with pytest.raises(ImplementationError, match="model quota exceeded"):
            run_async(implementer.implement(_task()))

    def test_commit_metadata_for_code_task(self, tmp_path):
        implementer, _ = _implementer(tmp_path, CommandResult(True, 0, "", "", 0.0))
        task = _task(plan_ref="plans/auth.md")
        outcome = ImplementationOutcome("T-7", 1, "75%", "", 0.0)

        metadata = implementer.commit_metadata(task, outcome)

        assert metadata.to_schema() == {
            "tool": "agent-cli",
            "toolName": "stagegate-agent",
            "model": "qwen2.5-coder",
            "taskRef": "T-7",
            "planRef": "plans/auth.md",
            "coverage": "75%",
        }

    def test_documentation_task_reports_documentation_coverage(self, tmp_path):
        implementer, _ = _implementer(tmp_path, CommandResult(True, 0, "", "", 0.0))
        task = _task(files=frozenset({"docs/reset.md"}))
        outcome = ImplementationOutcome("T-7", 1, None, "", 0.0)

        metadata = implementer.commit_metadata(task, outcome)

        assert metadata.coverage == "Documentation"
        assert metadata.plan_ref == "N/A"
        assert metadata.missing_fields() == []

    def test_code_task_without_reported_coverage_is_incomplete(self, tmp_path):
        implementer, _ = _implementer(tmp_path, CommandResult(True, 0, "", "", 0.0))
        outcome = ImplementationOutcome("T-7", 1, None, "", 0.0)

        metadata = implementer.commit_metadata(_task(), outcome)

        assert metadata.missing_fields() == ["coverage"]
