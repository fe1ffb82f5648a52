"""Implementation agent driver.

Runs the implementation agent CLI against the workspace for one task. The
task description is written as Markdown to the state directory (outside
the worktree, so it never shows up as a changed file) and passed to the
CLI with ``--task``.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from stagegate.errors import ImplementationError
from stagegate.runner.command import CommandRunner
from stagegate.tasks.models import (
    DOCUMENTATION_COVERAGE,
    NOT_APPLICABLE,
    CommitMetadata,
    Task,
)

logger = logging.getLogger(__name__)

_COVERAGE_LINE = re.compile(r"^\s*coverage\s*:\s*(?P<value>\S.*?)\s*$", re.IGNORECASE | re.MULTILINE)


@dataclass
class ImplementationOutcome:
    """What the implementation agent reported for one task attempt.

    Attributes:
        task_id: The implemented task.
        attempt: Attempt number of the task.
        coverage: Coverage summary reported by the agent, if any.
        output: Combined agent output.
        duration_seconds: Wall-clock execution time.
    """

    task_id: str
    attempt: int
    coverage: Optional[str]
    output: str
    duration_seconds: float


@runtime_checkable
class Implementer(Protocol):
    """Capability that changes the workspace to implement a task."""

    async def implement(
        self,
        task: Task,
        feedback: Optional[str] = None,
        workspace: Optional[Path] = None,
    ) -> ImplementationOutcome:
        ...

    def commit_metadata(self, task: Task, outcome: ImplementationOutcome) -> CommitMetadata:
        ...


def parse_coverage(output: str) -> Optional[str]:
    """Extract the last ``Coverage: <value>`` line from agent output."""
    matches = _COVERAGE_LINE.findall(output)
    return matches[-1] if matches else None


def build_task_markdown(task: Task, feedback: Optional[str] = None) -> str:
    """Assemble the task file handed to the agent CLI."""
    sections: list[str] = []

    sections.append(f"# Task {task.task_id}: {task.title}\n")
    sections.append(f"**Attempt:** {task.attempt}\n")
    sections.append("## Objective\n")
    sections.append(f"{task.description or task.title}\n")

    sections.append("## Files\n")
    sections.append("Change only these files:\n")
    for path in sorted(task.files):
        sections.append(f"- {path}")
    sections.append("")

    if feedback:
        sections.append("## Feedback From Previous Attempt\n")
        sections.append(f"{feedback}\n")

    sections.append("## Reporting\n")
    sections.append("Finish with a line `Coverage: <summary>` describing test coverage.\n")

    return "\n".join(sections)


class AgentCliImplementer:
    """Implements tasks by invoking the agent CLI.

    Attributes:
        command_runner: Executes the CLI process.
        cli_path: Path to the agent CLI executable.
        workspace_path: Default worktree the agent changes.
        state_dir: Directory for task files, outside the worktree.
        tool_name: Reported as ``toolName`` in commit metadata.
        model_name: Reported as ``model`` in commit metadata.
        timeout_seconds: Maximum agent execution time per task.
    """

    def __init__(
        self,
        command_runner: CommandRunner,
        cli_path: str,
        workspace_path: Path,
        state_dir: Path,
        tool_name: str,
        model_name: str,
        timeout_seconds: float = 3600,
    ):
        self.command_runner = command_runner
        self.cli_path = cli_path
        self.workspace_path = workspace_path
        self.state_dir = state_dir
        self.tool_name = tool_name
        self.model_name = model_name
        self.timeout_seconds = timeout_seconds

    def _write_task_file(self, task: Task, feedback: Optional[str]) -> Path:
        task_dir = self.state_dir / task.run_id if task.run_id else self.state_dir
        task_dir.mkdir(parents=True, exist_ok=True)
        task_file = task_dir / f"{task.task_id}-attempt{task.attempt}.md"
        task_file.write_text(build_task_markdown(task, feedback), encoding="utf-8")
        logger.info("Generated task file", extra={"path": str(task_file), "task_id": task.task_id})
        return task_file

    async def implement(
        self,
        task: Task,
        feedback: Optional[str] = None,
        workspace: Optional[Path] = None,
    ) -> ImplementationOutcome:
        """Run the agent CLI for one task attempt in ``workspace``.

        Raises:
            ImplementationError: If the CLI exits non-zero, times out or
                cannot be started.
        """
        try:
            task_file = self._write_task_file(task, feedback)
        except OSError as e:
            raise ImplementationError(task.task_id, f"cannot write task file: {e}") from e

        worktree = workspace or self.workspace_path
        result = await self.command_runner.run(
            [
                self.cli_path,
                "--workspace",
                str(worktree),
                "--task",
                str(task_file),
            ],
            cwd=worktree,
            timeout_seconds=self.timeout_seconds,
        )

        if not result.success:
            detail = result.stderr.strip() or f"exit code {result.exit_code}"
            raise ImplementationError(task.task_id, detail)

        return ImplementationOutcome(
            task_id=task.task_id,
            attempt=task.attempt,
            coverage=parse_coverage(result.output),
            output=result.output,
            duration_seconds=result.duration_seconds,
        )

    def commit_metadata(self, task: Task, outcome: ImplementationOutcome) -> CommitMetadata:
        """Build commit metadata for an agent-authored task.

        Documentation-only tasks report ``Documentation`` coverage. Other
        tasks report whatever the agent printed; when it printed nothing the
        field stays absent and the commit is refused.
        """
        coverage = DOCUMENTATION_COVERAGE if task.is_documentation_only else outcome.coverage
        return CommitMetadata(
            tool="agent-cli",
            tool_name=self.tool_name,
            model=self.model_name,
            task_ref=task.task_id,
            plan_ref=task.plan_ref or NOT_APPLICABLE,
            coverage=coverage,
        )
