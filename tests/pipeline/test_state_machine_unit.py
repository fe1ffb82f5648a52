"""Unit tests for PipelineStateMachine.

Covers stage advancement, exit conditions of approval and quality-gated
stages, retry and regeneration budgets, abandonment, archiving and the
abort report.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

import pytest

from stagegate.approvals.models import ApprovalRequest, Decision
from stagegate.audit.log import AuditLog, InMemoryAuditSink
from stagegate.audit.models import Actor, ActorType, MutationKind
from stagegate.errors import (
    GateNotSatisfiedError,
    RunTerminalError,
    StageMismatchError,
    VersionConflictError,
)
from stagegate.quality.models import CheckResult, CheckStatus, QualityGateRun
from stagegate.state.machine import PipelineStateMachine
from stagegate.state.models import (
    STAGE_ORDER,
    TRANSITION_TABLE,
    Artifact,
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
    requires_quality_gate,
    review_origin,
)
from stagegate.state.repository import InMemoryRunRepository


def run_async(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _machine(**kwargs):
    sink = InMemoryAuditSink()
    machine = PipelineStateMachine(InMemoryRunRepository(), AuditLog([sink]), **kwargs)
    return machine, sink


def _passing_gate_run(task_id: str = "T-1") -> QualityGateRun:
    return QualityGateRun(
        task_id=task_id,
        checks=[CheckResult(name="lint", status=CheckStatus.PASSED, exit_code=0)],
    )


def _result(
    stage: Stage,
    verdict: Optional[Verdict] = None,
    with_gate: bool = True,
) -> StageResult:
    gate_runs = (_passing_gate_run(),) if with_gate and requires_quality_gate(stage) else ()
    return StageResult(
        stage=stage,
        artifact=Artifact(ref=f"artifact-{stage.value}"),
        verdict=verdict or Verdict.passed(),
        quality_gate_runs=gate_runs,
    )


def _approval(
    run: PipelineRun,
    stage: Stage,
    decision: Decision = Decision.APPROVED,
    decided_by: str = "alice",
) -> ApprovalRequest:
    return ApprovalRequest(
        request_id=f"req-{stage.value}",
        run_id=run.run_id,
        stage=stage,
        artifact_ref="artifact",
        decision=decision,
        decided_by=decided_by if decision != Decision.PENDING else None,
        decided_at=datetime.now(timezone.utc) if decision != Decision.PENDING else None,
    )


async def _advance_to(machine: PipelineStateMachine, run: PipelineRun, target: Stage) -> PipelineRun:
    while run.current_stage != target:
        stage = run.current_stage
        approval = _approval(run, stage) if requires_approval(stage) else None
        run = await machine.advance(run, _result(stage), approval)
    return run


# ---------------------------------------------------------------------------
# Creation and advancement
# ---------------------------------------------------------------------------


class TestCreate:
    def test_new_run_starts_at_intake(self):
        machine, sink = _machine()
        run = run_async(machine.create("specs/login.md"))

        assert run.current_stage == Stage.INTAKE
        assert run.version == 1
        assert run.history == ()
        assert not run.terminal
        created = sink.by_operation("run.created")
        assert len(created) == 1
        assert created[0].kind == MutationKind.CREATE

    def test_explicit_run_id_is_used(self):
        machine, _ = _machine()
        run = run_async(machine.create("spec.md", run_id="run-7"))
        assert run.run_id == "run-7"

    def test_empty_spec_ref_rejected(self):
        machine, _ = _machine()
        with pytest.raises(ValueError):
            run_async(machine.create(""))

    def test_negative_budget_rejected(self):
        with pytest.raises(ValueError):
            PipelineStateMachine(InMemoryRunRepository(), AuditLog(), max_stage_retries=-1)


class TestAdvance:
    def test_pass_moves_to_next_stage(self):
        machine, sink = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            return await machine.advance(run, _result(Stage.INTAKE))

        run = run_async(scenario())

        assert run.current_stage == Stage.SPEC_VALIDATION
        assert run.version == 2
        assert len(run.history) == 1
        record = run.history[0]
        assert record.sequence == 1
        assert record.from_stage == Stage.INTAKE
        assert record.to_stage == Stage.SPEC_VALIDATION
        assert record.action == TransitionAction.ADVANCE
        transitioned = sink.by_operation("run.transitioned")
        assert len(transitioned) == 1
        assert transitioned[0].before["version"] == 1
        assert transitioned[0].after["version"] == 2

    def test_transition_is_persisted(self):
        machine, _ = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            run = await machine.advance(run, _result(Stage.INTAKE))
            return run, await machine.get(run.run_id)

        run, stored = run_async(scenario())
        assert stored == run

    def test_full_walk_releases_run(self):
        machine, _ = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            return await _advance_to(machine, run, Stage.RELEASED)

        run = run_async(scenario())

        assert run.terminal
        assert run.outcome == RunOutcome.RELEASED
        assert len(run.history) == len(STAGE_ORDER) - 1
        assert [r.from_stage for r in run.history] == STAGE_ORDER[:-1]

    def test_result_for_other_stage_rejected(self):
        machine, _ = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            await machine.advance(run, _result(Stage.EPIC_DRAFT))

        with pytest.raises(StageMismatchError):
            run_async(scenario())

    def test_stale_run_raises_version_conflict(self):
        machine, _ = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            await machine.advance(run, _result(Stage.INTAKE))
            await machine.advance(run, _result(Stage.INTAKE))

        with pytest.raises(VersionConflictError):
            run_async(scenario())


class TestExitConditions:
    def test_approval_stage_requires_approval(self):
        machine, _ = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            run = await _advance_to(machine, run, Stage.EPIC_APPROVAL)
            try:
                await machine.advance(run, _result(Stage.EPIC_APPROVAL))
            except GateNotSatisfiedError as e:
                return run, e, await machine.get(run.run_id)
            raise AssertionError("advance should have been refused")

        run, error, stored = run_async(scenario())
        assert error.stage == Stage.EPIC_APPROVAL.value
        assert stored.version == run.version
        assert stored.current_stage == Stage.EPIC_APPROVAL

    @pytest.mark.parametrize(
        "decision",
        [Decision.PENDING, Decision.REJECTED, Decision.REGENERATE_REQUESTED],
    )
    def test_non_approved_decision_does_not_open_gate(self, decision):
        machine, _ = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            run = await _advance_to(machine, run, Stage.EPIC_APPROVAL)
            await machine.advance(
                run,
                _result(Stage.EPIC_APPROVAL),
                _approval(run, Stage.EPIC_APPROVAL, decision),
            )

        with pytest.raises(GateNotSatisfiedError):
            run_async(scenario())

    def test_approval_for_other_stage_rejected(self):
        machine, _ = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            run = await _advance_to(machine, run, Stage.EPIC_APPROVAL)
            await machine.advance(
                run,
                _result(Stage.EPIC_APPROVAL),
                _approval(run, Stage.FINAL_APPROVAL),
            )

        with pytest.raises(GateNotSatisfiedError):
            run_async(scenario())

    def test_dev_execution_requires_passing_quality_gate(self):
        machine, _ = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            run = await _advance_to(machine, run, Stage.DEV_EXECUTION)
            await machine.advance(run, _result(Stage.DEV_EXECUTION, with_gate=False))

        with pytest.raises(GateNotSatisfiedError, match="quality gate"):
            run_async(scenario())

    def test_approved_transition_attributed_to_reviewer(self):
        machine, sink = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            run = await _advance_to(machine, run, Stage.EPIC_APPROVAL)
            return await machine.advance(
                run,
                _result(Stage.EPIC_APPROVAL),
                _approval(run, Stage.EPIC_APPROVAL, decided_by="bob"),
            )

        run = run_async(scenario())

        assert run.current_stage == Stage.STORY_GENERATION
        assert run.history[-1].approval_request_id == "req-epic_approval"
        last = sink.by_operation("run.transitioned")[-1]
        assert last.actor == Actor(id="bob", type=ActorType.HUMAN)


class TestBudgets:
    def test_epic_draft_regenerated_three_times_aborts(self):
        machine, _ = _machine()
        regenerate = Verdict.needs_regenerate("goals missing", FailureKind.VALIDATION)

        async def scenario():
            run = await machine.create("spec.md")
            run = await _advance_to(machine, run, Stage.EPIC_DRAFT)
            actions = []
            for _ in range(3):
                run = await machine.advance(run, _result(Stage.EPIC_DRAFT, regenerate))
                actions.append(run.history[-1].action)
            return run, actions

        run, actions = run_async(scenario())

        assert actions == [TransitionAction.RETRY, TransitionAction.RETRY, TransitionAction.ABORT]
        assert run.terminal
        assert run.outcome == RunOutcome.ABORTED
        assert run.current_stage == Stage.EPIC_DRAFT
        assert run.history[-1].failure_kind == FailureKind.RETRY_BUDGET_EXHAUSTED
        assert run.retries(Stage.EPIC_DRAFT) == 2

    def test_approval_stage_uses_regeneration_budget(self):
        machine, _ = _machine(max_regenerations=1)
        regenerate = Verdict.needs_regenerate("tighten scope", FailureKind.APPROVAL_REJECTION)

        async def scenario():
            run = await machine.create("spec.md")
            run = await _advance_to(machine, run, Stage.EPIC_APPROVAL)
            run = await machine.advance(run, _result(Stage.EPIC_APPROVAL, regenerate))
            first = run
            run = await machine.advance(run, _result(Stage.EPIC_APPROVAL, regenerate))
            return first, run

        first, run = run_async(scenario())

        assert first.history[-1].action == TransitionAction.RETRY
        assert first.regenerations(Stage.EPIC_APPROVAL) == 1
        assert first.retries(Stage.EPIC_APPROVAL) == 0
        assert run.terminal
        assert run.history[-1].failure_kind == FailureKind.RETRY_BUDGET_EXHAUSTED

    def test_remaining_budget(self):
        machine, _ = _machine(max_stage_retries=2, max_regenerations=3)
        run = PipelineRun(
            run_id="r1",
            spec_ref="spec.md",
            retry_counts={Stage.EPIC_DRAFT: 1},
            regeneration_counts={Stage.DEV_REVIEW: 3},
        )
        assert machine.remaining_budget(run, Stage.EPIC_DRAFT) == 1
        assert machine.remaining_budget(run, Stage.DEV_REVIEW) == 0
        assert machine.remaining_budget(run, Stage.EPIC_APPROVAL) == 3

    def test_zero_budget_aborts_on_first_regeneration(self):
        machine, _ = _machine(max_stage_retries=0)
        regenerate = Verdict.needs_regenerate("bad", FailureKind.VALIDATION)

        async def scenario():
            run = await machine.create("spec.md")
            run = await _advance_to(machine, run, Stage.SPEC_VALIDATION)
            return await machine.advance(run, _result(Stage.SPEC_VALIDATION, regenerate))

        run = run_async(scenario())
        assert run.terminal
        assert run.history[-1].failure_kind == FailureKind.RETRY_BUDGET_EXHAUSTED


class TestAbort:
    def test_fail_aborts_at_current_stage(self):
        machine, _ = _machine()
        fail = Verdict.failed("lint failed", FailureKind.QUALITY_GATE)

        async def scenario():
            run = await machine.create("spec.md")
            run = await _advance_to(machine, run, Stage.DEV_EXECUTION)
            return await machine.advance(run, _result(Stage.DEV_EXECUTION, fail, with_gate=False))

        run = run_async(scenario())

        assert run.terminal
        assert run.outcome == RunOutcome.ABORTED
        assert run.current_stage == Stage.DEV_EXECUTION
        assert run.error == "lint failed"
        assert run.history[-1].failure_kind == FailureKind.QUALITY_GATE

    def test_intake_needs_regenerate_aborts(self):
        machine, _ = _machine()
        regenerate = Verdict.needs_regenerate("unreadable", FailureKind.VALIDATION)

        async def scenario():
            run = await machine.create("spec.md")
            return await machine.advance(run, _result(Stage.INTAKE, regenerate))

        run = run_async(scenario())
        assert run.terminal
        assert run.history[-1].action == TransitionAction.ABORT

    def test_terminal_run_cannot_advance(self):
        machine, _ = _machine()
        fail = Verdict.failed("empty", FailureKind.VALIDATION)

        async def scenario():
            run = await machine.create("spec.md")
            run = await machine.advance(run, _result(Stage.INTAKE, fail))
            await machine.advance(run, _result(Stage.INTAKE))

        with pytest.raises(RunTerminalError):
            run_async(scenario())

    def test_abort_report_carries_history(self):
        machine, _ = _machine()
        fail = Verdict.failed("no requirements", FailureKind.VALIDATION)

        async def scenario():
            run = await machine.create("spec.md")
            run = await machine.advance(run, _result(Stage.INTAKE))
            return await machine.advance(run, _result(Stage.SPEC_VALIDATION, fail))

        report = abort_report(run_async(scenario()))

        assert report["outcome"] == "aborted"
        assert report["stage"] == "spec_validation"
        assert report["verdict"] == "fail"
        assert report["reason"] == "no requirements"
        assert report["failure_kind"] == "validation"
        assert [h["sequence"] for h in report["history"]] == [1, 2]

    def test_abort_report_rejects_released_run(self):
        machine, _ = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            return await _advance_to(machine, run, Stage.RELEASED)

        with pytest.raises(ValueError):
            abort_report(run_async(scenario()))

    def test_abort_report_rejects_active_run(self):
        with pytest.raises(ValueError):
            abort_report(PipelineRun(run_id="r1", spec_ref="spec.md"))


class TestAbandonAndArchive:
    def test_abandon_records_abandoned_outcome(self):
        machine, sink = _machine()
        actor = Actor(id="carol", type=ActorType.HUMAN)

        async def scenario():
            run = await machine.create("spec.md")
            run = await _advance_to(machine, run, Stage.EPIC_APPROVAL)
            return await machine.abandon(run, "priorities changed", actor)

        run = run_async(scenario())

        assert run.terminal
        assert run.outcome == RunOutcome.ABANDONED
        assert run.current_stage == Stage.EPIC_APPROVAL
        assert run.history[-1].failure_kind == FailureKind.ABANDONED
        assert sink.by_operation("run.abandoned")[0].actor == actor
        assert abort_report(run)["outcome"] == "abandoned"

    def test_abandon_terminal_run_rejected(self):
        machine, _ = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            run = await machine.abandon(run, "first")
            await machine.abandon(run, "second")

        with pytest.raises(RunTerminalError):
            run_async(scenario())

    def test_archive_requires_terminal_run(self):
        machine, _ = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            await machine.archive(run)

        with pytest.raises(ValueError):
            run_async(scenario())

    def test_archive_is_idempotent(self):
        machine, _ = _machine()

        async def scenario():
            run = await machine.create("spec.md")
            run = await machine.abandon(run, "stop")
            archived = await machine.archive(run)
            again = await machine.archive(archived)
            return archived, again

        archived, again = run_async(scenario())
        assert archived.archived_at is not None
        assert again == archived


def test_transition_table_is_total():
    for stage in STAGE_ORDER:
        for kind in VerdictKind:
            if is_terminal_stage(stage):
                assert (stage, kind) not in TRANSITION_TABLE
            else:
                assert (stage, kind) in TRANSITION_TABLE


def test_code_review_reviews_dev_execution():
    assert review_origin(Stage.CODE_REVIEW) == Stage.DEV_EXECUTION
    assert approval_origin(Stage.CODE_REVIEW) is None
    assert review_origin(Stage.EPIC_APPROVAL) == approval_origin(Stage.EPIC_APPROVAL)
    assert review_origin(Stage.DEV_EXECUTION) is None
