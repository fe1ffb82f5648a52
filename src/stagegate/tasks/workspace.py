"""Per-run git worktrees.

Every run implements its tasks in its own worktree of the target repository,
on its own branch, so that concurrent runs never see each other's changes:

    <worktrees_path>/<run_id>   on branch <branch_prefix><run_id>

A worktree is provisioned the first time a run reaches dev execution and
reused by later attempts of the same run. It is removed when the run is
archived; the branch and its commits stay in the repository.
"""

import logging
import re
from pathlib import Path
from typing import List

from stagegate.errors import WorkspaceError
from stagegate.runner.command import CommandResult, CommandRunner


logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class RunWorkspaces:
    """Creates and removes the worktree of each run.

    Attributes:
        repo_path: The repository the worktrees belong to.
        worktrees_path: Directory holding one worktree per run.
        command_runner: Executes git.
        git_path: git executable.
        branch_prefix: Prefix of every run branch.
    """

    def __init__(
        self,
        repo_path: Path,
        worktrees_path: Path,
        command_runner: CommandRunner,
        git_path: str = "git",
        branch_prefix: str = "stagegate/",
    ):
        self.repo_path = repo_path
        self.worktrees_path = worktrees_path
        self.command_runner = command_runner
        self.git_path = git_path
        self.branch_prefix = branch_prefix

    def path_for(self, run_id: str) -> Path:
        """Worktree directory of a run.

        Example:
            >>> RunWorkspaces(Path("/repo"), Path("/wt"), runner).path_for("run/1")
            PosixPath('/wt/run_1')
        """
        return self.worktrees_path / _UNSAFE_CHARS.sub("_", run_id)

    def branch_for(self, run_id: str) -> str:
        return f"{self.branch_prefix}{_UNSAFE_CHARS.sub('_', run_id)}"

    async def provision(self, run_id: str) -> Path:
        """Return the run's worktree, creating it on first use.

        Raises:
            WorkspaceError: The directory or the worktree cannot be created.
        """
        path = self.path_for(run_id)
        if path.exists():
            return path

        try:
            self.worktrees_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(run_id, f"cannot create {self.worktrees_path}: {e}") from e

        branch = self.branch_for(run_id)
        existing = await self._git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"])
        if existing.success:
            args = ["worktree", "add", str(path), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(path)]

        result = await self._git(args)
        if not result.success:
            detail = result.stderr.strip() or f"exit code {result.exit_code}"
            raise WorkspaceError(run_id, f"git worktree add failed: {detail}")

        logger.info(
            "Provisioned run worktree",
            extra={"run_id": run_id, "path": str(path), "branch": branch},
        )
        return path

    async def remove(self, run_id: str) -> None:
        """Remove the run's worktree if there is one. Failures are logged."""
        path = self.path_for(run_id)
        if not path.exists():
            return

        result = await self._git(["worktree", "remove", "--force", str(path)])
        if not result.success:
            logger.warning(
                "Failed to remove run worktree",
                extra={"run_id": run_id, "path": str(path), "stderr": result.stderr.strip()},
            )
            return
        logger.info("Removed run worktree", extra={"run_id": run_id, "path": str(path)})

    async def _git(self, args: List[str]) -> CommandResult:
        return await self.command_runner.run([self.git_path, "-C", str(self.repo_path), *args])
