"""Dev execution stage.

Implements every task of the approved subtask breakdown, one at a time:

    implement → quality gate → commit metadata → atomic commit

Tasks run in the worktree of their run. When code review sends the work
back, every task is executed again as its next attempt with the review
findings as feedback.

A quality-gate failure or a violated commit precondition fails the stage;
neither is ever turned into a regeneration. TaskLockedError propagates to
the caller, since it means the same task of the same run is already being
committed.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from stagegate.errors import (
    CommitError,
    CommitPreconditionError,
    ImplementationError,
    QualityGateFailedError,
    WorkspaceError,
)
from stagegate.quality.models import QualityGateRun
from stagegate.quality.runner import QualityGateRunner
from stagegate.runner.agent import Implementer
from stagegate.stages.base import StageExecutor
from stagegate.stages.content import tasks_from_payload
from stagegate.state.models import (
    Artifact,
    FailureKind,
    PipelineRun,
    Stage,
    StageResult,
    Verdict,
)
from stagegate.tasks.coordinator import TaskCommitCoordinator
from stagegate.tasks.models import CommitRecord, Task
from stagegate.tasks.workspace import RunWorkspaces


logger = logging.getLogger(__name__)


def _require_pass(gate_run: QualityGateRun) -> None:
    if gate_run.all_passed:
        return
    failure = gate_run.first_failure
    raise QualityGateFailedError(
        gate_run.task_id,
        failure.name if failure else None,
        failure.diagnostics if failure else "",
    )


class DevExecutionExecutor(StageExecutor):
    """Implements, checks and commits each task of the breakdown.

    Attributes:
        implementer: Changes the workspace for a task.
        quality_gate: Runs the ordered checks for a task.
        coordinator: Commits a task atomically.
        workspaces: Provides the worktree of each run.
    """

    stage = Stage.DEV_EXECUTION

    def __init__(
        self,
        implementer: Implementer,
        quality_gate: QualityGateRunner,
        coordinator: TaskCommitCoordinator,
        workspaces: RunWorkspaces,
    ):
        self.implementer = implementer
        self.quality_gate = quality_gate
        self.coordinator = coordinator
        self.workspaces = workspaces

    async def execute(
        self,
        run: PipelineRun,
        prior_results: Mapping[Stage, StageResult],
        feedback: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> StageResult:
        tasks, problems = self._tasks_for(run, prior_results)
        attempt = max((t.attempt for t in tasks), default=1)
        ref = f"{run.run_id}/{self.stage.value}/attempt-{attempt}"
        if problems:
            return self._failed(ref, "; ".join(problems), FailureKind.EXECUTION_ERROR)

        try:
            worktree = await self.workspaces.provision(run.run_id)
        except WorkspaceError as e:
            return self._failed(ref, str(e), FailureKind.EXECUTION_ERROR)

        gate_runs: List[QualityGateRun] = []
        commits: List[CommitRecord] = []

        for task in tasks:
            if cancel_event is not None and cancel_event.is_set():
                return self._failed(
                    ref, "run abandoned", FailureKind.ABANDONED, gate_runs, commits
                )

            try:
                commits.append(
                    await self._run_task(run, task, feedback, cancel_event, worktree, gate_runs)
                )
            except QualityGateFailedError as e:
                if gate_runs and gate_runs[-1].cancelled:
                    return self._failed(
                        ref, "run abandoned", FailureKind.ABANDONED, gate_runs, commits
                    )
                reason = f"task {e.task_id}: check {e.check_name} failed"
                if e.diagnostics:
                    reason += f"\n{e.diagnostics}"
                return self._failed(ref, reason, FailureKind.QUALITY_GATE, gate_runs, commits)
            except CommitPreconditionError as e:
                return self._failed(
                    ref,
                    f"task {e.task_id}: " + "; ".join(e.problems),
                    FailureKind.COMMIT_PRECONDITION,
                    gate_runs,
                    commits,
                )
            except (CommitError, ImplementationError) as e:
                return self._failed(ref, str(e), FailureKind.EXECUTION_ERROR, gate_runs, commits)

        payload: Dict[str, Any] = {
            "attempt": attempt,
            "tasks": [t.task_id for t in tasks],
            "task_records": [t.model_dump(mode="json") for t in tasks],
            "commits": [
                {"task_id": c.task_id, "commit_sha": c.commit_sha, "files": sorted(c.files)}
                for c in commits
            ],
        }
        logger.info(
            "Dev execution completed",
            extra={"run_id": run.run_id, "attempt": attempt, "task_count": len(tasks)},
        )
        return StageResult(
            stage=self.stage,
            artifact=Artifact(ref=ref, payload=payload),
            verdict=Verdict.passed(),
            quality_gate_runs=tuple(gate_runs),
            commits=tuple(commits),
        )

    async def _run_task(
        self,
        run: PipelineRun,
        task: Task,
        feedback: Optional[str],
        cancel_event: Optional[asyncio.Event],
        worktree: Path,
        gate_runs: List[QualityGateRun],
    ) -> CommitRecord:
        logger.info(
            "Executing task",
            extra={"run_id": run.run_id, "task_id": task.task_id, "attempt": task.attempt},
        )
        outcome = await self.implementer.implement(task, feedback, worktree)

        gate_run = await self.quality_gate.run(task, cancel_event, worktree)
        gate_runs.append(gate_run)
        _require_pass(gate_run)

        metadata = self.implementer.commit_metadata(task, outcome)
        return await self.coordinator.commit(task, gate_run, metadata, worktree)

    async def release(self, run_id: str) -> None:
        self.coordinator.forget_run(run_id)
        await self.workspaces.remove(run_id)

    def _tasks_for(
        self,
        run: PipelineRun,
        prior_results: Mapping[Stage, StageResult],
    ) -> Tuple[List[Task], List[str]]:
        """Next attempts of the previous execution, or the breakdown's tasks."""
        previous = prior_results.get(self.stage)
        records = previous.artifact.payload.get("task_records") if previous else None
        if records:
            return [Task.model_validate(record).next_attempt() for record in records], []

        breakdown = prior_results.get(Stage.SUBTASK_BREAKDOWN)
        if breakdown is None:
            return [], ["no subtask breakdown available"]
        tasks, problems = tasks_from_payload(breakdown.artifact.payload)
        return [t.model_copy(update={"run_id": run.run_id}) for t in tasks], problems

    def _failed(
        self,
        ref: str,
        reason: str,
        failure_kind: FailureKind,
        gate_runs: Optional[List[QualityGateRun]] = None,
        commits: Optional[List[CommitRecord]] = None,
    ) -> StageResult:
        logger.warning(
            "Dev execution failed",
            extra={"artifact_ref": ref, "failure_kind": failure_kind.value, "reason": reason},
        )
        return StageResult(
            stage=self.stage,
            artifact=Artifact(ref=ref, payload={"error": reason}),
            verdict=Verdict.failed(reason, failure_kind),
            quality_gate_runs=tuple(gate_runs or ()),
            commits=tuple(commits or ()),
        )
