"""Pipeline state machine implementation.

PipelineStateMachine owns the stage sequence, the transition table and the
retry/regeneration bookkeeping. A run advances only when the current
stage's exit conditions hold:

- approval stages need a resolved Approved decision for this run and stage
- quality-gated stages need every quality-gate run on the result to pass

NeedsRegenerate re-enters the same stage while the stage's budget lasts;
Fail, or an exhausted budget, aborts the run. Every transition appends an
immutable history entry, is persisted with optimistic locking and is
recorded in the audit log.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from stagegate.audit.log import AuditLog
from stagegate.audit.models import SYSTEM_ACTOR, Actor, ActorType, MutationKind
from stagegate.errors import (
    GateNotSatisfiedError,
    RunNotFoundError,
    RunTerminalError,
    StageMismatchError,
    VersionConflictError,
)
from stagegate.state.models import (
    TRANSITION_TABLE,
    FailureKind,
    PipelineRun,
    RunOutcome,
    Stage,
    StageResult,
    TransitionAction,
    TransitionRecord,
    VerdictKind,
    is_terminal_stage,
    next_stage,
    requires_approval,
    requires_quality_gate,
)

if TYPE_CHECKING:
    from stagegate.approvals.models import ApprovalRequest


logger = logging.getLogger(__name__)

DEFAULT_MAX_STAGE_RETRIES = 2
DEFAULT_MAX_REGENERATIONS = 3


@runtime_checkable
class RunRepository(Protocol):
    """Protocol defining the interface for pipeline run persistence.

    Implementations:
    - InMemoryRunRepository (tests, single-process deployments)
    - PostgresRunRepository (asyncpg)
    """

    async def save(self, run: PipelineRun) -> None:
        """Persist a new run.

        Raises:
            DatabaseError: If the run already exists or the save fails.
        """
        ...

    async def get(self, run_id: str) -> Optional[PipelineRun]:
        """Get a run by ID, or None if unknown."""
        ...

    async def list_by_stage(self, stage: Stage) -> List[PipelineRun]:
        """List all runs currently in ``stage``."""
        ...

    async def update_with_version(self, run: PipelineRun) -> bool:
        """Replace the stored run if its version is ``run.version - 1``.

        Returns:
            True if the update succeeded, False on a version conflict.
        """
        ...

    async def health_check(self) -> bool:
        """True if the store is reachable."""
        ...


class PipelineStateMachine:
    """State machine for pipeline runs.

    Attributes:
        repository: Run persistence.
        audit_log: Receives run.created / run.transitioned / run.abandoned.
        max_stage_retries: Retry budget per work stage.
        max_regenerations: Regeneration budget per approval stage.

    Example:
        >>> machine = PipelineStateMachine(InMemoryRunRepository(), AuditLog())
        >>> run = await machine.create("specs/login.md")
        >>> run = await machine.advance(run, intake_result)
        >>> run.current_stage
        <Stage.SPEC_VALIDATION: 'spec_validation'>
    """

    def __init__(
        self,
        repository: RunRepository,
        audit_log: AuditLog,
        max_stage_retries: int = DEFAULT_MAX_STAGE_RETRIES,
        max_regenerations: int = DEFAULT_MAX_REGENERATIONS,
    ):
        if max_stage_retries < 0 or max_regenerations < 0:
            raise ValueError("budgets cannot be negative")
        self.repository = repository
        self.audit_log = audit_log
        self.max_stage_retries = max_stage_retries
        self.max_regenerations = max_regenerations

    async def create(self, spec_ref: str, run_id: Optional[str] = None) -> PipelineRun:
        """Create and persist a new run at the intake stage.

        Raises:
            ValueError: If spec_ref is empty.
        """
        if not spec_ref:
            raise ValueError("spec_ref cannot be empty")

        now = datetime.now(timezone.utc)
        run = PipelineRun(
            run_id=run_id or uuid.uuid4().hex,
            spec_ref=spec_ref,
            current_stage=Stage.INTAKE,
            created_at=now,
            updated_at=now,
            version=1,
        )

        logger.info(
            "Creating pipeline run",
            extra={"run_id": run.run_id, "spec_ref": spec_ref},
        )

        await self.repository.save(run)
        self.audit_log.record(
            "run.created",
            kind=MutationKind.CREATE,
            actor=SYSTEM_ACTOR,
            after=run.summary(),
        )
        return run

    async def get(self, run_id: str) -> Optional[PipelineRun]:
        return await self.repository.get(run_id)

    async def require(self, run_id: str) -> PipelineRun:
        run = await self.repository.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def list_by_stage(self, stage: Stage) -> List[PipelineRun]:
        return await self.repository.list_by_stage(stage)

    def remaining_budget(self, run: PipelineRun, stage: Stage) -> int:
        used, limit = self._budget(run, stage)
        return max(limit - used, 0)

    def _budget(self, run: PipelineRun, stage: Stage) -> Tuple[int, int]:
        if requires_approval(stage):
            return run.regenerations(stage), self.max_regenerations
        return run.retries(stage), self.max_stage_retries

    async def advance(
        self,
        run: PipelineRun,
        result: StageResult,
        approval: Optional["ApprovalRequest"] = None,
    ) -> PipelineRun:
        """Apply a stage result to a run.

        Args:
            run: The run, at the stage the result was produced for.
            result: The stage result.
            approval: The resolved approval request, for approval stages.

        Returns:
            The updated run.

        Raises:
            RunTerminalError: The run is terminal.
            StageMismatchError: The result is for a different stage.
            GateNotSatisfiedError: A Pass result does not meet the stage's
                exit conditions; nothing is recorded.
            VersionConflictError: The run changed concurrently.
        """
        stage = run.current_stage
        if run.terminal or is_terminal_stage(stage):
            raise RunTerminalError(run.run_id, stage.value)
        if result.stage != stage:
            raise StageMismatchError(run.run_id, stage.value, result.stage.value)

        verdict = result.verdict
        action = TRANSITION_TABLE[(stage, verdict.kind)]
        reason = verdict.reason
        failure_kind = verdict.failure_kind

        if action == TransitionAction.ADVANCE:
            self._check_exit_conditions(run, result, approval)

        retry_counts: Dict[Stage, int] = dict(run.retry_counts)
        regeneration_counts: Dict[Stage, int] = dict(run.regeneration_counts)

        if action == TransitionAction.RETRY:
            used, limit = self._budget(run, stage)
            if used >= limit:
                action = TransitionAction.ABORT
                failure_kind = FailureKind.RETRY_BUDGET_EXHAUSTED
                reason = f"budget of {limit} exhausted at {stage.value}: {verdict.reason}"
            elif requires_approval(stage):
                regeneration_counts[stage] = used + 1
            else:
                retry_counts[stage] = used + 1

        if action == TransitionAction.ADVANCE:
            to_stage = next_stage(stage)
        else:
            to_stage = stage

        terminal = action == TransitionAction.ABORT or is_terminal_stage(to_stage)
        outcome: Optional[RunOutcome] = None
        if action == TransitionAction.ABORT:
            outcome = RunOutcome.ABORTED
        elif terminal:
            outcome = RunOutcome.RELEASED

        now = datetime.now(timezone.utc)
        record = TransitionRecord(
            sequence=len(run.history) + 1,
            from_stage=stage,
            to_stage=to_stage,
            verdict=verdict.kind,
            action=action,
            reason=reason,
            failure_kind=failure_kind,
            approval_request_id=approval.request_id if approval else None,
            timestamp=now,
        )

        updated = run.model_copy(
            update={
                "current_stage": to_stage,
                "history": run.history + (record,),
                "retry_counts": retry_counts,
                "regeneration_counts": regeneration_counts,
                "terminal": terminal,
                "outcome": outcome,
                "error": reason if action == TransitionAction.ABORT else run.error,
                "updated_at": now,
                "version": run.version + 1,
            }
        )

        log = logger.warning if action == TransitionAction.ABORT else logger.info
        log(
            "Transitioning pipeline run",
            extra={
                "run_id": run.run_id,
                "from_stage": stage.value,
                "to_stage": to_stage.value,
                "verdict": verdict.kind.value,
                "action": action.value,
                "failure_kind": failure_kind.value if failure_kind else None,
                "version": updated.version,
            },
        )

        await self._persist(run, updated)

        actor = SYSTEM_ACTOR
        if approval is not None and approval.decided_by:
            actor = Actor(id=approval.decided_by, type=ActorType.HUMAN)
        self.audit_log.record(
            "run.transitioned",
            kind=MutationKind.UPDATE,
            actor=actor,
            before=run.summary(),
            after=updated.summary(),
            metadata=record.model_dump(mode="json"),
        )
        return updated

    def _check_exit_conditions(
        self,
        run: PipelineRun,
        result: StageResult,
        approval: Optional["ApprovalRequest"],
    ) -> None:
        stage = run.current_stage
        if requires_approval(stage):
            if approval is None:
                raise GateNotSatisfiedError(run.run_id, stage.value, "no approval supplied")
            if approval.run_id != run.run_id or approval.stage != stage:
                raise GateNotSatisfiedError(
                    run.run_id,
                    stage.value,
                    f"approval {approval.request_id} belongs to "
                    f"{approval.run_id}/{approval.stage.value}",
                )
            if not approval.is_approved:
                raise GateNotSatisfiedError(
                    run.run_id,
                    stage.value,
                    f"approval {approval.request_id} is {approval.decision.value}",
                )
        if requires_quality_gate(stage) and not result.quality_gate_passed:
            raise GateNotSatisfiedError(run.run_id, stage.value, "quality gate not passed")

    async def abandon(
        self,
        run: PipelineRun,
        reason: str,
        actor: Optional[Actor] = None,
    ) -> PipelineRun:
        """Mark a run abandoned. Terminal; recorded with FailureKind.ABANDONED.

        Raises:
            RunTerminalError: The run is already terminal.
            VersionConflictError: The run changed concurrently.
        """
        if run.terminal:
            raise RunTerminalError(run.run_id, run.current_stage.value)

        now = datetime.now(timezone.utc)
        stage = run.current_stage
        record = TransitionRecord(
            sequence=len(run.history) + 1,
            from_stage=stage,
            to_stage=stage,
            verdict=VerdictKind.FAIL,
            action=TransitionAction.ABORT,
            reason=reason,
            failure_kind=FailureKind.ABANDONED,
            timestamp=now,
        )
        updated = run.model_copy(
            update={
                "history": run.history + (record,),
                "terminal": True,
                "outcome": RunOutcome.ABANDONED,
                "error": reason,
                "updated_at": now,
                "version": run.version + 1,
            }
        )

        logger.warning(
            "Abandoning pipeline run",
            extra={"run_id": run.run_id, "stage": stage.value, "reason": reason},
        )

        await self._persist(run, updated)
        self.audit_log.record(
            "run.abandoned",
            kind=MutationKind.UPDATE,
            actor=actor or SYSTEM_ACTOR,
            before=run.summary(),
            after=updated.summary(),
            metadata={"reason": reason},
        )
        return updated

    async def archive(self, run: PipelineRun) -> PipelineRun:
        """Stamp ``archived_at`` on a terminal run.

        Raises:
            ValueError: The run is not terminal.
        """
        if not run.terminal:
            raise ValueError(f"run {run.run_id} is not terminal")
        if run.archived_at is not None:
            return run

        now = datetime.now(timezone.utc)
        updated = run.model_copy(
            update={"archived_at": now, "updated_at": now, "version": run.version + 1}
        )
        await self._persist(run, updated)
        logger.info("Archived pipeline run", extra={"run_id": run.run_id})
        return updated

    async def _persist(self, before: PipelineRun, after: PipelineRun) -> None:
        success = await self.repository.update_with_version(after)
        if not success:
            current = await self.repository.get(before.run_id)
            raise VersionConflictError(
                before.run_id,
                before.version,
                current.version if current else None,
            )
