"""Version-control adapter.

The commit coordinator reaches version control only through the
VersionControl protocol. GitVersionControl implements it by running the
git CLI through CommandRunner. Every operation names the worktree it acts
on, so one adapter serves the worktrees of every run.
"""

import logging
from pathlib import Path
from typing import FrozenSet, Iterable, List, Protocol, runtime_checkable

from stagegate.runner.command import CommandResult, CommandRunner


logger = logging.getLogger(__name__)


class VCSError(Exception):
    """Raised when a git command fails.

    Attributes:
        args_used: The git arguments that failed.
        result: The failed command result.
    """

    def __init__(self, args_used: List[str], result: CommandResult):
        self.args_used = args_used
        self.result = result
        detail = result.stderr.strip() or f"exit code {result.exit_code}"
        super().__init__(f"git {' '.join(args_used[:2])} failed: {detail}")


@runtime_checkable
class VersionControl(Protocol):
    """Operations the commit coordinator needs from version control."""

    async def changed_files(self, worktree: Path) -> FrozenSet[str]:
        """Paths with staged, unstaged or untracked changes."""
        ...

    async def commit(self, worktree: Path, files: FrozenSet[str], message: str) -> str:
        """Stage exactly ``files`` and commit them. Returns the commit id."""
        ...

    async def reset(self, worktree: Path, files: FrozenSet[str]) -> None:
        """Unstage ``files`` after a failed commit."""
        ...


def parse_porcelain(output: str) -> List[str]:
    """Parse ``git status --porcelain -z`` output into changed paths.

    Renames and copies are reported as ``XY new\\0old\\0``; both paths count
    as changed.

    Example:
        >>> parse_porcelain(" M a.py\\0?? b.py\\0R  c.py\\0old.py\\0")
        ['a.py', 'b.py', 'c.py', 'old.py']
    """
    files: List[str] = []
    entries = output.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        if len(entry) < 4:
            i += 1
            continue

        status = entry[:2]
        files.append(entry[3:])

        if status[0] in ("R", "C") and i + 1 < len(entries) and entries[i + 1]:
            files.append(entries[i + 1])
            i += 2
        else:
            i += 1

    return files


class GitVersionControl:
    """VersionControl backed by the git CLI.

    Attributes:
        command_runner: Executes git.
        git_path: git executable.
    """

    def __init__(self, command_runner: CommandRunner, git_path: str = "git"):
        self.command_runner = command_runner
        self.git_path = git_path

    async def _git(self, worktree: Path, args: List[str]) -> CommandResult:
        result = await self.command_runner.run([self.git_path, *args], cwd=worktree)
        if not result.success:
            raise VCSError(args, result)
        return result

    async def changed_files(self, worktree: Path) -> FrozenSet[str]:
        result = await self._git(worktree, ["status", "--porcelain", "-z", "--untracked-files=all"])
        return frozenset(parse_porcelain(result.stdout))

    async def commit(self, worktree: Path, files: FrozenSet[str], message: str) -> str:
        paths = sorted(files)
        await self._git(worktree, ["add", "-A", "--", *paths])
        await self._git(worktree, ["commit", "-m", message, "--", *paths])
        head = await self._git(worktree, ["rev-parse", "HEAD"])
        sha = head.stdout.strip()
        logger.info(
            "Created commit",
            extra={"sha": sha, "file_count": len(paths), "worktree": str(worktree)},
        )
        return sha

    async def reset(self, worktree: Path, files: Iterable[str]) -> None:
        await self._git(worktree, ["reset", "-q", "--", *sorted(files)])
