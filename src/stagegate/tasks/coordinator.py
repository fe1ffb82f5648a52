"""Atomic per-task commits.

TaskCommitCoordinator is the only path from a finished task to a commit. It
refuses to commit unless every precondition holds:

- the quality-gate run belongs to this task attempt and passed in full
- the task has not been committed before at this or a later attempt
- agent-authored tasks carry complete commit metadata
- the files changed in the worktree are exactly the task's declared files

Task ids are scoped to their run: locks and commit records are keyed by
``(run_id, task_id)``, and each commit reads the run's own worktree. At
most one commit per task is in flight; a concurrent attempt fails
immediately with TaskLockedError instead of queueing.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from stagegate.audit.log import AuditLog
from stagegate.audit.models import Actor, ActorType, MutationKind
from stagegate.errors import CommitError, CommitPreconditionError, TaskLockedError
from stagegate.quality.models import QualityGateRun
from stagegate.tasks.models import AuthorKind, CommitMetadata, CommitRecord, Task
from stagegate.tasks.vcs import VCSError, VersionControl


logger = logging.getLogger(__name__)

TaskKey = Tuple[str, str]


def task_key(task: Task) -> TaskKey:
    return (task.run_id or "", task.task_id)


def render_commit_message(task: Task, metadata: CommitMetadata) -> str:
    """Commit subject, body and metadata trailers.

    Example:
        >>> print(render_commit_message(task, metadata))
        Add login form

        Task: T-1 (attempt 1)

        Tool: agent-cli
        ToolName: stagegate-agent
        ...
    """
    lines = [task.title, "", f"Task: {task.task_id} (attempt {task.attempt})"]
    trailers = metadata.trailers()
    if trailers:
        lines.append("")
        lines.extend(trailers)
    return "\n".join(lines) + "\n"


class TaskCommitCoordinator:
    """Commits one task's file set after its quality gate passed.

    Attributes:
        vcs: Version control adapter.
        audit_log: Receives a ``task.committed`` record per commit.
    """

    def __init__(self, vcs: VersionControl, audit_log: AuditLog):
        self.vcs = vcs
        self.audit_log = audit_log
        self._locks: Dict[TaskKey, asyncio.Lock] = {}
        self._committed: Dict[TaskKey, CommitRecord] = {}

    def is_committed(self, task: Task) -> bool:
        """True when this attempt of the task, or a later one, already landed."""
        record = self._committed.get(task_key(task))
        return record is not None and record.attempt >= task.attempt

    def committed_record(self, task_id: str, run_id: Optional[str] = None) -> Optional[CommitRecord]:
        return self._committed.get((run_id or "", task_id))

    def forget_run(self, run_id: str) -> None:
        """Drop the commit records of a finished run."""
        for key in [k for k in self._committed if k[0] == run_id]:
            del self._committed[key]

    def _lock_for(self, key: TaskKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def commit(
        self,
        task: Task,
        quality_gate_run: QualityGateRun,
        metadata: CommitMetadata,
        worktree: Path,
    ) -> CommitRecord:
        """Commit the task's file set.

        Args:
            task: The task being committed.
            quality_gate_run: The passing quality-gate run for this attempt.
            metadata: Commit metadata; mandatory in full for agent tasks.
            worktree: The run's worktree holding the task's changes.

        Returns:
            The immutable CommitRecord.

        Raises:
            TaskLockedError: Another commit for this task is in flight.
            CommitPreconditionError: A precondition is violated; nothing
                was staged or committed.
            CommitError: The VCS commit failed; staged files were reset.
        """
        key = task_key(task)
        lock = self._lock_for(key)
        if lock.locked():
            logger.warning(
                "Concurrent commit refused",
                extra={"run_id": task.run_id, "task_id": task.task_id, "attempt": task.attempt},
            )
            raise TaskLockedError(task.task_id)

        try:
            async with lock:
                record = await self._commit_locked(task, quality_gate_run, metadata, worktree)
                self._committed[key] = record
        finally:
            if not lock.locked():
                self._locks.pop(key, None)

        self.audit_log.record(
            "task.committed",
            kind=MutationKind.CREATE,
            actor=_actor_for(task, metadata),
            after={
                "run_id": task.run_id,
                "task_id": task.task_id,
                "attempt": task.attempt,
                "commit_sha": record.commit_sha,
                "files": sorted(task.files),
            },
            metadata=metadata.to_schema(),
            security_relevant=True,
        )
        logger.info(
            "Task committed",
            extra={
                "run_id": task.run_id,
                "task_id": task.task_id,
                "attempt": task.attempt,
                "sha": record.commit_sha,
            },
        )
        return record

    async def _commit_locked(
        self,
        task: Task,
        quality_gate_run: QualityGateRun,
        metadata: CommitMetadata,
        worktree: Path,
    ) -> CommitRecord:
        problems = self._static_problems(task, quality_gate_run, metadata)
        if not problems:
            problems = await self._file_set_problems(task, worktree)
        if problems:
            logger.warning(
                "Commit preconditions failed",
                extra={"run_id": task.run_id, "task_id": task.task_id, "problems": problems},
            )
            raise CommitPreconditionError(task.task_id, problems)

        message = render_commit_message(task, metadata)
        sha = await self._commit_or_reset(task, message, worktree)

        return CommitRecord(
            run_id=task.run_id,
            task_id=task.task_id,
            attempt=task.attempt,
            commit_sha=sha,
            files=task.files,
            metadata=metadata,
            message=message,
            committed_at=datetime.now(timezone.utc),
        )

    def _static_problems(
        self,
        task: Task,
        quality_gate_run: QualityGateRun,
        metadata: CommitMetadata,
    ) -> List[str]:
        problems: List[str] = []

        if (
            quality_gate_run.task_id != task.task_id
            or quality_gate_run.attempt != task.attempt
            or quality_gate_run.run_id != task.run_id
        ):
            problems.append(
                f"quality gate run is for {quality_gate_run.task_id} "
                f"attempt {quality_gate_run.attempt} of run {quality_gate_run.run_id}"
            )
        elif not quality_gate_run.all_passed:
            failure = quality_gate_run.first_failure
            problems.append(
                f"quality gate did not pass ({failure.name if failure else 'incomplete'})"
            )

        if not task.files:
            problems.append("declared file set is empty")

        if self.is_committed(task):
            problems.append(f"task already committed at attempt {task.attempt} or later")

        if task.author_kind == AuthorKind.AGENT:
            missing = metadata.missing_fields()
            if missing:
                problems.append("missing commit metadata: " + ", ".join(missing))

        return problems

    async def _file_set_problems(self, task: Task, worktree: Path) -> List[str]:
        try:
            changed = await self.vcs.changed_files(worktree)
        except VCSError as e:
            raise CommitError(task.task_id, "cannot read worktree status", e) from e

        problems: List[str] = []
        unexpected = sorted(changed - task.files)
        missing = sorted(task.files - changed)
        if unexpected:
            problems.append("unexpected changed files: " + ", ".join(unexpected))
        if missing:
            problems.append("declared files without changes: " + ", ".join(missing))
        return problems

    async def _commit_or_reset(self, task: Task, message: str, worktree: Path) -> str:
        try:
            return await self.vcs.commit(worktree, task.files, message)
        except VCSError as e:
            logger.error(
                "Commit failed, resetting staged files",
                extra={"task_id": task.task_id, "error": str(e)},
            )
            try:
                await self.vcs.reset(worktree, task.files)
            except VCSError:
                logger.exception("Reset after failed commit failed", extra={"task_id": task.task_id})
            raise CommitError(task.task_id, str(e), e) from e


def _actor_for(task: Task, metadata: CommitMetadata) -> Actor:
    if task.author_kind == AuthorKind.AGENT:
        return Actor(id=metadata.tool_name or "agent", type=ActorType.AGENT)
    return Actor(id=metadata.tool_name or "human", type=ActorType.HUMAN)
