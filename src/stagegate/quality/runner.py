"""Ordered, fail-fast quality-gate execution.

Runs the configured checks against a task strictly in declared order. The
first failing check stops the sequence and every later check is recorded
as skipped. The runner only reports; it never modifies code.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from stagegate.quality.models import (
    DEFAULT_CHECKS,
    CheckResult,
    CheckStatus,
    QualityGateCheck,
    QualityGateRun,
)
from stagegate.runner.command import CommandRunner
from stagegate.tasks.models import Task


logger = logging.getLogger(__name__)

MAX_DIAGNOSTIC_CHARS = 4000


def _truncate(text: str, limit: int = MAX_DIAGNOSTIC_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 15] + "\n...[truncated]"


class QualityGateRunner:
    """Executes quality-gate checks for a task.

    Attributes:
        checks: Checks in execution order.
        command_runner: Runs each check's command.
        workspace_path: Default directory the checks run in.
    """

    def __init__(
        self,
        command_runner: CommandRunner,
        workspace_path: Path,
        checks: Optional[Sequence[QualityGateCheck]] = None,
    ):
        self.checks: List[QualityGateCheck] = list(checks if checks is not None else DEFAULT_CHECKS)
        if not self.checks:
            raise ValueError("at least one quality-gate check is required")
        self.command_runner = command_runner
        self.workspace_path = workspace_path

    async def run(
        self,
        task: Task,
        cancel_event: Optional[asyncio.Event] = None,
        workspace: Optional[Path] = None,
    ) -> QualityGateRun:
        """Run every check against the task's file set.

        A check that is already running when ``cancel_event`` is set runs to
        completion; the remaining checks are recorded as skipped and the run
        is marked cancelled.

        Args:
            task: The task whose files are checked.
            cancel_event: Optional event signalling that the run should stop.
            workspace: Worktree to check; defaults to ``workspace_path``.

        Returns:
            QualityGateRun with one result per configured check.
        """
        cwd = workspace or self.workspace_path
        started_at = datetime.now(timezone.utc)
        results: List[CheckResult] = []
        stopped = False
        cancelled = False

        for check in self.checks:
            if not stopped and cancel_event is not None and cancel_event.is_set():
                stopped = True
                cancelled = True
            if stopped:
                results.append(CheckResult(name=check.name, status=CheckStatus.SKIPPED))
                continue

            result = await self._run_check(check, task, cwd)
            results.append(result)
            if result.status == CheckStatus.FAILED:
                stopped = True

        gate_run = QualityGateRun(
            task_id=task.task_id,
            run_id=task.run_id,
            attempt=task.attempt,
            checks=results,
            cancelled=cancelled,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

        failure = gate_run.first_failure
        logger.info(
            "Quality gate finished",
            extra={
                "task_id": task.task_id,
                "attempt": task.attempt,
                "all_passed": gate_run.all_passed,
                "failed_check": failure.name if failure else None,
                "cancelled": cancelled,
            },
        )
        return gate_run

    async def _run_check(self, check: QualityGateCheck, task: Task, cwd: Path) -> CheckResult:
        argv = check.render(task.files)
        result = await self.command_runner.run(argv, cwd=cwd)

        if result.success:
            status = CheckStatus.PASSED
        else:
            status = CheckStatus.FAILED
            logger.warning(
                "Quality check failed",
                extra={
                    "task_id": task.task_id,
                    "check": check.name,
                    "exit_code": result.exit_code,
                    "timed_out": result.timed_out,
                },
            )

        return CheckResult(
            name=check.name,
            status=status,
            exit_code=None if result.exit_code < 0 else result.exit_code,
            diagnostics=_truncate(result.output),
            duration_seconds=max(result.duration_seconds, 0.0),
        )
