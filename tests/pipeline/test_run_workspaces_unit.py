"""Unit tests for per-run worktree provisioning."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from stagegate.errors import WorkspaceError
from stagegate.runner.command import CommandResult
from stagegate.tasks.workspace import RunWorkspaces


def run_async(coro):
    return asyncio.run(coro)


REPO = Path("/work/repo")


def _result(success: bool = True, stderr: str = "", exit_code: int = 0) -> CommandResult:
    return CommandResult(
        success=success,
        exit_code=exit_code if success else (exit_code or 128),
        stdout="",
        stderr=stderr,
        duration_seconds=0.0,
    )


def _workspaces(tmp_path: Path, *results: CommandResult):
    command_runner = AsyncMock()
    command_runner.run = AsyncMock(side_effect=list(results))
    return RunWorkspaces(REPO, tmp_path / "worktrees", command_runner), command_runner


def _argvs(command_runner):
    return [call.args[0] for call in command_runner.run.await_args_list]


class TestPaths:
    def test_path_and_branch_per_run(self, tmp_path):
        workspaces, _ = _workspaces(tmp_path)

        assert workspaces.path_for("run-1") == tmp_path / "worktrees" / "run-1"
        assert workspaces.branch_for("run-1") == "stagegate/run-1"

    def test_unsafe_characters_replaced(self, tmp_path):
        workspaces, _ = _workspaces(tmp_path)

        assert workspaces.path_for("../run 1").name == ".._run_1"
        assert workspaces.branch_for("a/b") == "stagegate/a_b"


class TestProvision:
    def test_new_run_gets_new_branch(self, tmp_path):
        workspaces, command_runner = _workspaces(
            tmp_path, _result(success=False, exit_code=1), _result()
        )

        path = run_async(workspaces.provision("run-1"))

        assert path == tmp_path / "worktrees" / "run-1"
        assert (tmp_path / "worktrees").is_dir()
        assert _argvs(command_runner) == [
            ["git", "-C", str(REPO), "rev-parse", "--verify", "--quiet", "refs/heads/stagegate/run-1"],
            ["git", "-C", str(REPO), "worktree", "add", "-b", "stagegate/run-1", str(path)],
        ]

    def test_existing_branch_is_checked_out(self, tmp_path):
        workspaces, command_runner = _workspaces(tmp_path, _result(), _result())

        path = run_async(workspaces.provision("run-1"))

        assert _argvs(command_runner)[1] == [
            "git", "-C", str(REPO), "worktree", "add", str(path), "stagegate/run-1",
        ]

    def test_existing_worktree_is_reused(self, tmp_path):
        workspaces, command_runner = _workspaces(tmp_path)
        workspaces.path_for("run-1").mkdir(parents=True)

        path = run_async(workspaces.provision("run-1"))

        assert path == workspaces.path_for("run-1")
        command_runner.run.assert_not_awaited()

    def test_failed_worktree_add_raises(self, tmp_path):
        workspaces, _ = _workspaces(
            tmp_path,
            _result(success=False, exit_code=1),
            _result(success=False, stderr="fatal: invalid reference"),
        )

        with pytest.raises(WorkspaceError, match="invalid reference") as exc_info:
            run_async(workspaces.provision("run-1"))

        assert exc_info.value.run_id == "run-1"


class TestRemove:
    def test_remove_existing_worktree(self, tmp_path):
        workspaces, command_runner = _workspaces(tmp_path, _result())
        path = workspaces.path_for("run-1")
        path.mkdir(parents=True)

        run_async(workspaces.remove("run-1"))

        assert _argvs(command_runner) == [
            ["git", "-C", str(REPO), "worktree", "remove", "--force", str(path)],
        ]

    def test_remove_without_worktree_is_a_no_op(self, tmp_path):
        workspaces, command_runner = _workspaces(tmp_path)

        run_async(workspaces.remove("run-1"))

        command_runner.run.assert_not_awaited()

    def test_failed_remove_is_not_raised(self, tmp_path):
        workspaces, _ = _workspaces(tmp_path, _result(success=False, stderr="locked"))
        workspaces.path_for("run-1").mkdir(parents=True)

        run_async(workspaces.remove("run-1"))
