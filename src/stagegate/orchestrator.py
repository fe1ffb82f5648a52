"""Pipeline orchestrator driving runs from intake to release.

Each run is driven by its own asyncio task:

    intake → work stage → ... → approval gate → ... → released

Work stages are executed by their StageExecutor and the verdict is handed
to the state machine. Approval stages park the run on the ApprovalGateway
until a reviewer decides; a rejection or a regeneration request re-executes
the reviewed stage with the reviewer's feedback and asks again. A code review
that does not approve sends the tasks back to dev execution as new attempts.
Runs within the orchestrator share nothing but the audit log: all per-run
data lives in a RunContext.

A driver that stops on an unexpected error leaves its run where it was; the
run can be resumed with a new driver or abandoned. A finished run releases
its approval requests, commit records and worktree.

Abandoning a run withdraws its parked approval, asks a running quality
gate to stop after the current check, and records the run as abandoned.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional

from stagegate.approvals.gateway import ApprovalGateway
from stagegate.approvals.models import ApprovalDecision, ApprovalRequest, verdict_for_decision
from stagegate.audit.models import Actor
from stagegate.errors import (
    RunAbandonedError,
    RunActiveError,
    RunNotFoundError,
    RunTerminalError,
)
from stagegate.events.emitter import EventEmitter, NullEventEmitter
from stagegate.events.models import EventType, PipelineEvent
from stagegate.quality.runner import QualityGateRunner
from stagegate.runner.agent import Implementer
from stagegate.stages.base import ContentGenerator, StageExecutor, intake_result
from stagegate.stages.content import (
    CodeReviewExecutor,
    DocSyncExecutor,
    EpicDraftExecutor,
    SpecValidationExecutor,
    StoryGenerationExecutor,
    SubtaskBreakdownExecutor,
    TechnicalRefinementExecutor,
)
from stagegate.stages.dev import DevExecutionExecutor
from stagegate.state.machine import PipelineStateMachine
from stagegate.state.models import (
    STAGE_ORDER,
    FailureKind,
    PipelineRun,
    RunOutcome,
    Stage,
    StageResult,
    TransitionAction,
    Verdict,
    VerdictKind,
    abort_report,
    approval_origin,
    is_terminal_stage,
    requires_approval,
    review_origin,
)
from stagegate.tasks.coordinator import TaskCommitCoordinator
from stagegate.tasks.workspace import RunWorkspaces


logger = logging.getLogger(__name__)


def executed_stages() -> List[Stage]:
    """Stages that need a StageExecutor."""
    return [
        stage
        for stage in STAGE_ORDER
        if stage != Stage.INTAKE and not requires_approval(stage) and not is_terminal_stage(stage)
    ]


def default_executors(
    generator: ContentGenerator,
    implementer: Implementer,
    quality_gate: QualityGateRunner,
    coordinator: TaskCommitCoordinator,
    workspaces: RunWorkspaces,
) -> Dict[Stage, StageExecutor]:
    """Wire the standard executor for every executed stage."""
    executors: List[StageExecutor] = [
        SpecValidationExecutor(generator),
        EpicDraftExecutor(generator),
        StoryGenerationExecutor(generator),
        TechnicalRefinementExecutor(generator),
        SubtaskBreakdownExecutor(generator),
        DevExecutionExecutor(implementer, quality_gate, coordinator, workspaces),
        CodeReviewExecutor(generator),
        DocSyncExecutor(generator),
    ]
    return {executor.stage: executor for executor in executors}


@dataclass
class RunContext:
    """Everything the driver of one run keeps between stages.

    Attributes:
        run_id: The run being driven.
        spec_text: The intake document.
        results: Latest result of every executed stage.
        feedback: Feedback for the next execution of a stage.
        cancel_event: Set when the run is being abandoned.
        abandon_reason: Why the run is being abandoned.
        abandon_actor: Who asked for the abandonment.
        started_at: When the run was started.
    """

    run_id: str
    spec_text: str
    results: Dict[Stage, StageResult] = field(default_factory=dict)
    feedback: Dict[Stage, str] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    abandon_reason: Optional[str] = None
    abandon_actor: Optional[Actor] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def abandoning(self) -> bool:
        return self.cancel_event.is_set()


class PipelineOrchestrator:
    """Drives pipeline runs through their stages.

    Attributes:
        state_machine: Owns transitions, budgets and persistence.
        gateway: Parks runs on human approval.
        executors: StageExecutor for every executed stage.
        event_emitter: Emits pipeline events for observability.
    """

    def __init__(
        self,
        state_machine: PipelineStateMachine,
        gateway: ApprovalGateway,
        executors: Mapping[Stage, StageExecutor],
        event_emitter: Optional[EventEmitter] = None,
    ):
        missing = [s.value for s in executed_stages() if s not in executors]
        if missing:
            raise ValueError("no executor for stages: " + ", ".join(missing))

        self.state_machine = state_machine
        self.gateway = gateway
        self.executors = dict(executors)
        self.event_emitter = event_emitter or NullEventEmitter()
        self._contexts: Dict[str, RunContext] = {}
        self._tasks: Dict[str, "asyncio.Task[PipelineRun]"] = {}

    async def start_run(
        self,
        spec_ref: str,
        spec_text: str,
        run_id: Optional[str] = None,
    ) -> PipelineRun:
        """Create a run and start driving it in the background.

        Returns:
            The newly created run, at the intake stage.
        """
        run = await self.state_machine.create(spec_ref, run_id)
        self._contexts[run.run_id] = RunContext(run_id=run.run_id, spec_text=spec_text)

        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.RUN_STARTED,
                run_id=run.run_id,
                stage=run.current_stage.value,
                details={"spec_ref": spec_ref},
            )
        )

        self._spawn(run.run_id)
        return run

    async def resume(self, run_id: str) -> PipelineRun:
        """Start a new driver for a run whose driver stopped.

        The run continues from its current stage with the results its
        context still holds.

        Raises:
            RunNotFoundError: Unknown run, or one this orchestrator has no
                context for.
            RunTerminalError: The run is already terminal.
            RunActiveError: The run still has a live driver.
        """
        run = await self.state_machine.require(run_id)
        if run.terminal:
            raise RunTerminalError(run_id, run.current_stage.value)
        if run_id not in self._contexts:
            raise RunNotFoundError(run_id)
        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            raise RunActiveError(run_id)

        logger.info(
            "Resuming pipeline run",
            extra={"run_id": run_id, "stage": run.current_stage.value},
        )
        self._spawn(run_id)
        return run

    def _spawn(self, run_id: str) -> "asyncio.Task[PipelineRun]":
        task = asyncio.create_task(self.drive(run_id), name=f"stagegate-run-{run_id}")
        task.add_done_callback(functools.partial(self._driver_done, run_id))
        self._tasks[run_id] = task
        return task

    def _driver_done(self, run_id: str, task: "asyncio.Task[PipelineRun]") -> None:
        if self._tasks.get(run_id) is task:
            del self._tasks[run_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Pipeline run left unfinished, resume or abandon it",
                extra={"run_id": run_id, "error_type": type(exc).__name__},
            )

    async def wait(self, run_id: str) -> PipelineRun:
        """Wait for the driver of a run to finish and return the run.

        Re-raises whatever stopped the driver.
        """
        task = self._tasks.get(run_id)
        if task is not None:
            return await task
        return await self.state_machine.require(run_id)

    async def drive(self, run_id: str) -> PipelineRun:
        """Drive a started run until it is terminal.

        Raises:
            RunNotFoundError: The run was not started by this orchestrator.
        """
        context = self._contexts.get(run_id)
        if context is None:
            raise RunNotFoundError(run_id)

        run = await self.state_machine.require(run_id)
        try:
            while not run.terminal:
                if context.abandoning:
                    run = await self._abandon_now(run, context)
                    break

                stage = run.current_stage
                if stage == Stage.INTAKE:
                    run = await self._run_intake(run, context)
                elif requires_approval(stage):
                    run = await self._run_gate(run, context)
                else:
                    run = await self._run_work_stage(run, context)
        except RunAbandonedError:
            run = await self.state_machine.require(run_id)
            if not run.terminal:
                run = await self._abandon_now(run, context)
        except Exception as exc:
            logger.exception(
                "Pipeline run driver stopped",
                extra={"run_id": run_id, "stage": run.current_stage.value},
            )
            await self._emit_error_event(run_id, run.current_stage.value, exc)
            raise

        return await self._finish(run, context)

    async def abandon(
        self,
        run_id: str,
        reason: str,
        actor: Optional[Actor] = None,
    ) -> PipelineRun:
        """Abandon a run.

        A driven run is stopped at its next suspension point and recorded by
        its driver; a run without a driver is recorded directly.

        Raises:
            RunNotFoundError: Unknown run.
            RunTerminalError: The run is already terminal.
        """
        run = await self.state_machine.require(run_id)
        if run.terminal:
            raise RunTerminalError(run_id, run.current_stage.value)

        logger.info(
            "Abandon requested",
            extra={"run_id": run_id, "stage": run.current_stage.value, "reason": reason},
        )

        context = self._contexts.get(run_id)
        task = self._tasks.get(run_id)
        if context is None or task is None or task.done():
            self.gateway.withdraw(run_id, reason)
            run = await self.state_machine.abandon(run, reason, actor)
            await self._emit_abort_event(run, None)
            self._contexts.pop(run_id, None)
            await self._release(run_id)
            return run

        context.abandon_reason = reason
        context.abandon_actor = actor
        context.cancel_event.set()
        self.gateway.withdraw(run_id, reason)
        return await task

    def submit_decision(self, decision: ApprovalDecision) -> ApprovalRequest:
        """Resolve the pending approval of ``(decision.run_id, decision.stage)``."""
        return self.gateway.submit(decision)

    def pending_approvals(self, run_id: Optional[str] = None) -> List[ApprovalRequest]:
        return self.gateway.pending(run_id)

    async def get_run(self, run_id: str) -> PipelineRun:
        return await self.state_machine.require(run_id)

    async def shutdown(self) -> None:
        """Cancel every run driver still in flight."""
        running = [task for task in self._tasks.values() if not task.done()]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        logger.info("Orchestrator shut down", extra={"cancelled_runs": len(running)})

    async def _run_intake(self, run: PipelineRun, context: RunContext) -> PipelineRun:
        result = intake_result(run, context.spec_text)
        context.results[Stage.INTAKE] = result
        return await self._advance(run, result)

    async def _run_work_stage(self, run: PipelineRun, context: RunContext) -> PipelineRun:
        """Execute the current stage and apply its verdict.

        A review stage that sent the work back first re-executes the
        reviewed stage with the review findings.
        """
        stage = run.current_stage
        origin = review_origin(stage)
        if origin is not None and origin in context.feedback:
            feedback = context.feedback.pop(origin)
            moved = await self._reexecute_origin(run, context, origin, feedback)
            if moved is not None:
                return moved

        result = await self.executors[stage].execute(
            run,
            dict(context.results),
            context.feedback.pop(stage, None),
            context.cancel_event,
        )
        await self._emit_stage_work(run, result)

        if context.abandoning:
            return await self._abandon_now(run, context)

        context.results[stage] = result
        updated = await self._advance(run, result)
        if self._is_retry(updated, stage) and result.verdict.reason:
            if origin is not None and result.verdict.failure_kind == FailureKind.REVIEW_REJECTION:
                context.feedback[origin] = result.verdict.reason
            else:
                context.feedback[stage] = result.verdict.reason
        return updated

    async def _run_gate(self, run: PipelineRun, context: RunContext) -> PipelineRun:
        """Ask for approval of the origin stage's artifact and apply the decision."""
        stage = run.current_stage
        origin = approval_origin(stage)
        feedback = context.feedback.pop(origin, None)

        if origin not in context.results or feedback is not None:
            moved = await self._reexecute_origin(run, context, origin, feedback)
            if moved is not None:
                return moved

        if context.abandoning:
            return await self._abandon_now(run, context)

        origin_result = context.results[origin]
        request = self._pending_request(run, stage)
        if request is None:
            request = self.gateway.open_request(run, stage, origin_result.artifact)
            await self._safe_emit(
                PipelineEvent(
                    event_type=EventType.APPROVAL_REQUESTED,
                    run_id=run.run_id,
                    stage=stage.value,
                    details={
                        "request_id": request.request_id,
                        "artifact_ref": request.artifact_ref,
                    },
                )
            )

        resolved = await self.gateway.wait_for_decision(request.request_id)
        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.APPROVAL_RESOLVED,
                run_id=run.run_id,
                stage=stage.value,
                details={
                    "request_id": resolved.request_id,
                    "decision": resolved.decision.value,
                    "decided_by": resolved.decided_by,
                },
            )
        )

        verdict = verdict_for_decision(resolved)
        result = StageResult(stage=stage, artifact=origin_result.artifact, verdict=verdict)
        updated = await self._advance(run, result, approval=resolved)
        if self._is_retry(updated, stage):
            context.feedback[origin] = resolved.feedback or verdict.reason or ""
        return updated

    def _pending_request(self, run: PipelineRun, stage: Stage) -> Optional[ApprovalRequest]:
        """The request a previous driver left pending for this stage, if any."""
        for request in self.gateway.pending(run.run_id):
            if request.stage == stage:
                return request
        return None

    async def _reexecute_origin(
        self,
        run: PipelineRun,
        context: RunContext,
        origin: Stage,
        feedback: Optional[str],
    ) -> Optional[PipelineRun]:
        """Re-execute the stage under review, with the reviewer's feedback.

        Returns None when the new artifact can be reviewed. Otherwise its
        verdict is applied to the current stage, so a regeneration counts
        against the current stage's budget, and the updated run is returned.
        """
        stage = run.current_stage
        origin_result = await self.executors[origin].execute(
            run, dict(context.results), feedback, context.cancel_event
        )
        await self._emit_stage_work(run, origin_result)
        if context.abandoning:
            return await self._abandon_now(run, context)
        context.results[origin] = origin_result

        verdict = origin_result.verdict
        if verdict.is_pass:
            return None

        if verdict.kind == VerdictKind.NEEDS_REGENERATE:
            stage_verdict = Verdict.needs_regenerate(
                f"{origin.value}: {verdict.reason}",
                verdict.failure_kind or FailureKind.VALIDATION,
            )
        else:
            stage_verdict = Verdict.failed(
                f"{origin.value}: {verdict.reason}",
                verdict.failure_kind or FailureKind.EXECUTION_ERROR,
            )
        updated = await self._advance(
            run,
            StageResult(stage=stage, artifact=origin_result.artifact, verdict=stage_verdict),
        )
        if self._is_retry(updated, stage) and verdict.reason:
            context.feedback[origin] = verdict.reason
        return updated

    @staticmethod
    def _is_retry(updated: PipelineRun, stage: Stage) -> bool:
        return (
            not updated.terminal
            and updated.current_stage == stage
            and bool(updated.history)
            and updated.history[-1].action == TransitionAction.RETRY
        )

    async def _advance(
        self,
        run: PipelineRun,
        result: StageResult,
        approval: Optional[ApprovalRequest] = None,
    ) -> PipelineRun:
        updated = await self.state_machine.advance(run, result, approval)
        record = updated.history[-1]
        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.STAGE_TRANSITION,
                run_id=run.run_id,
                stage=record.to_stage.value,
                details={
                    "from_stage": record.from_stage.value,
                    "to_stage": record.to_stage.value,
                    "action": record.action.value,
                    "verdict": record.verdict.value,
                    "failure_kind": record.failure_kind.value if record.failure_kind else None,
                    "reason": record.reason,
                    "terminal": updated.terminal,
                },
            )
        )
        return updated

    async def _abandon_now(self, run: PipelineRun, context: RunContext) -> PipelineRun:
        return await self.state_machine.abandon(
            run,
            context.abandon_reason or "run abandoned",
            context.abandon_actor,
        )

    async def _finish(self, run: PipelineRun, context: RunContext) -> PipelineRun:
        """Emit the completion or abort event and archive the run."""
        duration = (datetime.now(timezone.utc) - context.started_at).total_seconds()

        if run.outcome == RunOutcome.RELEASED:
            logger.info(
                "Pipeline run released",
                extra={"run_id": run.run_id, "duration_seconds": duration},
            )
            await self._safe_emit(
                PipelineEvent(
                    event_type=EventType.RELEASE,
                    run_id=run.run_id,
                    stage=run.current_stage.value,
                    details={
                        "duration_seconds": duration,
                        "history_length": len(run.history),
                    },
                )
            )
        else:
            await self._emit_abort_event(run, duration)

        run = await self.state_machine.archive(run)
        self._contexts.pop(run.run_id, None)
        await self._release(run.run_id)
        return run

    async def _release(self, run_id: str) -> None:
        """Drop the approval requests and executor resources of a finished run."""
        self.gateway.discard(run_id)
        for stage, executor in self.executors.items():
            try:
                await executor.release(run_id)
            except Exception:
                logger.exception(
                    "Failed to release run resources",
                    extra={"run_id": run_id, "stage": stage.value},
                )

    async def _emit_stage_work(self, run: PipelineRun, result: StageResult) -> None:
        """Emit QUALITY_GATE and COMMIT events carried by a stage result."""
        for gate_run in result.quality_gate_runs:
            await self._safe_emit(
                PipelineEvent(
                    event_type=EventType.QUALITY_GATE,
                    run_id=run.run_id,
                    stage=result.stage.value,
                    details={
                        "task_id": gate_run.task_id,
                        "attempt": gate_run.attempt,
                        "all_passed": gate_run.all_passed,
                        "cancelled": gate_run.cancelled,
                        "checks": [
                            {"name": check.name, "status": check.status.value}
                            for check in gate_run.checks
                        ],
                    },
                )
            )
        for commit in result.commits:
            await self._safe_emit(
                PipelineEvent(
                    event_type=EventType.COMMIT,
                    run_id=run.run_id,
                    stage=result.stage.value,
                    details={
                        "task_id": commit.task_id,
                        "commit_sha": commit.commit_sha,
                        "files": sorted(commit.files),
                    },
                )
            )

    async def _emit_abort_event(self, run: PipelineRun, duration: Optional[float]) -> None:
        report = abort_report(run)
        logger.warning(
            "Pipeline run stopped",
            extra={
                "run_id": run.run_id,
                "outcome": report["outcome"],
                "stage": report["stage"],
                "failure_kind": report["failure_kind"],
            },
        )
        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.ABORT,
                run_id=run.run_id,
                stage=report["stage"],
                details={
                    "outcome": report["outcome"],
                    "verdict": report["verdict"],
                    "failure_kind": report["failure_kind"],
                    "reason": report["reason"],
                    "history": report["history"],
                    "duration_seconds": duration,
                },
            )
        )

    async def _emit_error_event(self, run_id: str, stage: str, exc: Exception) -> None:
        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.ERROR,
                run_id=run_id,
                stage=stage,
                details={"error_type": type(exc).__name__, "error_message": str(exc)},
            )
        )

    async def _safe_emit(self, event: PipelineEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the pipeline."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit pipeline event",
                extra={"event_type": event.event_type.value, "run_id": event.run_id},
            )
