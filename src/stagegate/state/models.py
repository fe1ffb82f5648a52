"""Pipeline run models.

This module defines the data models for the pipeline state machine, including:
- Stage: the fixed, ordered set of pipeline stages and their exit requirements
- Verdict / StageResult: what one stage execution produced
- TransitionRecord: one immutable history entry
- PipelineRun: complete state of one specification's journey
- TRANSITION_TABLE: the total (stage, verdict kind) -> action map

The models use Pydantic for validation; runs and results are frozen and
are only ever replaced, never mutated.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from stagegate.quality.models import QualityGateRun
from stagegate.tasks.models import CommitRecord


class Stage(str, Enum):
    """Pipeline stages in execution order.

    Stage Flow:
        intake → spec_validation → epic_draft → epic_approval
        → story_generation → technical_refinement → tech_lead_approval
        → subtask_breakdown → dev_review → dev_execution → code_review
        → doc_sync → final_approval → released

    Approval stages (epic_approval, tech_lead_approval, dev_review,
    final_approval) review the artifact of the stage just before them.
    code_review reviews dev_execution: a rejected review sends the tasks
    back to dev_execution as new attempts. released is terminal.
    """

    INTAKE = "intake"
    SPEC_VALIDATION = "spec_validation"
    EPIC_DRAFT = "epic_draft"
    EPIC_APPROVAL = "epic_approval"
    STORY_GENERATION = "story_generation"
    TECHNICAL_REFINEMENT = "technical_refinement"
    TECH_LEAD_APPROVAL = "tech_lead_approval"
    SUBTASK_BREAKDOWN = "subtask_breakdown"
    DEV_REVIEW = "dev_review"
    DEV_EXECUTION = "dev_execution"
    CODE_REVIEW = "code_review"
    DOC_SYNC = "doc_sync"
    FINAL_APPROVAL = "final_approval"
    RELEASED = "released"


@dataclass(frozen=True)
class StageSpec:
    """Static exit requirements of a stage.

    Attributes:
        requires_approval: A resolved Approved decision is needed to exit.
        requires_quality_gate: Every quality-gate run on the result must pass.
        origin: For review stages, the stage whose artifact is reviewed.
        terminal: No outgoing transitions.
    """

    requires_approval: bool = False
    requires_quality_gate: bool = False
    origin: Optional[Stage] = None
    terminal: bool = False


STAGE_ORDER: List[Stage] = list(Stage)

STAGE_SPECS: Dict[Stage, StageSpec] = {
    Stage.INTAKE: StageSpec(),
    Stage.SPEC_VALIDATION: StageSpec(),
    Stage.EPIC_DRAFT: StageSpec(),
    Stage.EPIC_APPROVAL: StageSpec(requires_approval=True, origin=Stage.EPIC_DRAFT),
    Stage.STORY_GENERATION: StageSpec(),
    Stage.TECHNICAL_REFINEMENT: StageSpec(),
    Stage.TECH_LEAD_APPROVAL: StageSpec(
        requires_approval=True, origin=Stage.TECHNICAL_REFINEMENT
    ),
    Stage.SUBTASK_BREAKDOWN: StageSpec(),
    Stage.DEV_REVIEW: StageSpec(requires_approval=True, origin=Stage.SUBTASK_BREAKDOWN),
    Stage.DEV_EXECUTION: StageSpec(requires_quality_gate=True),
    Stage.CODE_REVIEW: StageSpec(origin=Stage.DEV_EXECUTION),
    Stage.DOC_SYNC: StageSpec(),
    Stage.FINAL_APPROVAL: StageSpec(requires_approval=True, origin=Stage.DOC_SYNC),
    Stage.RELEASED: StageSpec(terminal=True),
}


def stage_index(stage: Stage) -> int:
    return STAGE_ORDER.index(stage)


def next_stage(stage: Stage) -> Stage:
    """Return the stage that follows ``stage``.

    Raises:
        ValueError: If ``stage`` is terminal.
    """
    if is_terminal_stage(stage):
        raise ValueError(f"{stage.value} has no next stage")
    return STAGE_ORDER[stage_index(stage) + 1]


def requires_approval(stage: Stage) -> bool:
    return STAGE_SPECS[stage].requires_approval


def requires_quality_gate(stage: Stage) -> bool:
    return STAGE_SPECS[stage].requires_quality_gate


def approval_origin(stage: Stage) -> Optional[Stage]:
    spec = STAGE_SPECS[stage]
    return spec.origin if spec.requires_approval else None


def review_origin(stage: Stage) -> Optional[Stage]:
    """Stage whose artifact ``stage`` reviews, for approval and review stages."""
    return STAGE_SPECS[stage].origin


def is_terminal_stage(stage: Stage) -> bool:
    return STAGE_SPECS[stage].terminal


class VerdictKind(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    NEEDS_REGENERATE = "needs_regenerate"


class FailureKind(str, Enum):
    """Why a stage did not pass, recorded on verdicts and history entries."""

    VALIDATION = "validation"
    APPROVAL_REJECTION = "approval_rejection"
    REVIEW_REJECTION = "review_rejection"
    QUALITY_GATE = "quality_gate"
    COMMIT_PRECONDITION = "commit_precondition"
    RETRY_BUDGET_EXHAUSTED = "retry_budget_exhausted"
    EXECUTION_ERROR = "execution_error"
    ABANDONED = "abandoned"


class TransitionAction(str, Enum):
    ADVANCE = "advance"
    RETRY = "retry"
    ABORT = "abort"


class RunOutcome(str, Enum):
    RELEASED = "released"
    ABORTED = "aborted"
    ABANDONED = "abandoned"


class Verdict(BaseModel):
    """Judgement on one stage execution."""

    model_config = ConfigDict(frozen=True)

    kind: VerdictKind
    reason: Optional[str] = Field(default=None, description="Why the stage did not pass")
    failure_kind: Optional[FailureKind] = Field(default=None)

    @classmethod
    def passed(cls) -> "Verdict":
        return cls(kind=VerdictKind.PASS)

    @classmethod
    def failed(cls, reason: str, failure_kind: FailureKind) -> "Verdict":
        return cls(kind=VerdictKind.FAIL, reason=reason, failure_kind=failure_kind)

    @classmethod
    def needs_regenerate(cls, reason: str, failure_kind: FailureKind) -> "Verdict":
        return cls(kind=VerdictKind.NEEDS_REGENERATE, reason=reason, failure_kind=failure_kind)

    @property
    def is_pass(self) -> bool:
        return self.kind == VerdictKind.PASS


class Artifact(BaseModel):
    """Opaque reference plus payload produced by a stage."""

    model_config = ConfigDict(frozen=True)

    ref: str = Field(..., min_length=1, description="Opaque artifact reference")
    payload: Dict[str, Any] = Field(default_factory=dict)


class StageResult(BaseModel):
    """Output of one stage execution. Superseded, never mutated, by regeneration."""

    model_config = ConfigDict(frozen=True)

    stage: Stage
    artifact: Artifact
    verdict: Verdict
    produced_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    quality_gate_runs: Tuple[QualityGateRun, ...] = Field(default=())
    commits: Tuple[CommitRecord, ...] = Field(default=())

    @property
    def quality_gate_passed(self) -> bool:
        """True iff at least one quality-gate run exists and all passed."""
        return bool(self.quality_gate_runs) and all(
            run.all_passed for run in self.quality_gate_runs
        )


class TransitionRecord(BaseModel):
    """One immutable history entry of a run.

    Attributes:
        sequence: Position in the run history, starting at 1.
        from_stage: Stage before the transition.
        to_stage: Stage after the transition (same stage for retries).
        verdict: Verdict kind that drove the transition.
        action: Advance, retry or abort.
        reason: Verdict reason, if any.
        failure_kind: Failure category for non-pass transitions.
        approval_request_id: Approval that authorized a gated advance.
        timestamp: When the transition was recorded (UTC).
    """

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(..., ge=1)
    from_stage: Stage
    to_stage: Stage
    verdict: VerdictKind
    action: TransitionAction
    reason: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    approval_request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PipelineRun(BaseModel):
    """Complete state of one specification's journey through the pipeline.

    The run is persisted with optimistic locking via the version field; each
    transition produces a new PipelineRun with ``version + 1``.

    Attributes:
        run_id: Unique run identifier.
        spec_ref: Reference to the intake specification.
        current_stage: The stage the run occupies.
        history: Ordered transition records; append-only.
        retry_counts: Retries consumed per work stage.
        regeneration_counts: Regenerations consumed per approval stage.
        terminal: True once released, aborted or abandoned.
        outcome: Final outcome for terminal runs.
        error: Reason of the abort or abandonment.
        created_at: When the run was created (UTC).
        updated_at: When the run last changed (UTC).
        archived_at: When the terminal run was archived.
        version: Optimistic locking version.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(..., min_length=1)
    spec_ref: str = Field(..., min_length=1)
    current_stage: Stage = Field(default=Stage.INTAKE)
    history: Tuple[TransitionRecord, ...] = Field(default=())
    retry_counts: Dict[Stage, int] = Field(default_factory=dict)
    regeneration_counts: Dict[Stage, int] = Field(default_factory=dict)
    terminal: bool = False
    outcome: Optional[RunOutcome] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    archived_at: Optional[datetime] = None
    version: int = Field(default=1, ge=1)

    def retries(self, stage: Stage) -> int:
        return self.retry_counts.get(stage, 0)

    def regenerations(self, stage: Stage) -> int:
        return self.regeneration_counts.get(stage, 0)

    def summary(self) -> Dict[str, Any]:
        """Compact snapshot used in audit records and events."""
        return {
            "run_id": self.run_id,
            "stage": self.current_stage.value,
            "terminal": self.terminal,
            "outcome": self.outcome.value if self.outcome else None,
            "history_length": len(self.history),
            "version": self.version,
        }


# Transition table
#
# Total over non-terminal stages: every (stage, verdict kind) pair maps to
# exactly one action. Retry actions are subject to the stage budget; the
# state machine turns an exhausted retry into an abort.
TRANSITION_TABLE: Dict[Tuple[Stage, VerdictKind], TransitionAction] = {}
for _stage in STAGE_ORDER:
    if is_terminal_stage(_stage):
        continue
    TRANSITION_TABLE[(_stage, VerdictKind.PASS)] = TransitionAction.ADVANCE
    TRANSITION_TABLE[(_stage, VerdictKind.FAIL)] = TransitionAction.ABORT
    # The intake document is supplied by a human, there is nothing to regenerate.
    TRANSITION_TABLE[(_stage, VerdictKind.NEEDS_REGENERATE)] = (
        TransitionAction.ABORT if _stage == Stage.INTAKE else TransitionAction.RETRY
    )
del _stage


def abort_report(run: PipelineRun) -> Dict[str, Any]:
    """Describe why a terminal, non-released run stopped.

    Returns:
        Dict with the stopping stage, verdict, reason, failure kind and the
        full history.

    Raises:
        ValueError: If the run is not aborted or abandoned.
    """
    if not run.terminal or run.outcome == RunOutcome.RELEASED:
        raise ValueError(f"run {run.run_id} was not aborted")

    last = run.history[-1] if run.history else None
    return {
        "run_id": run.run_id,
        "outcome": run.outcome.value if run.outcome else None,
        "stage": last.from_stage.value if last else run.current_stage.value,
        "verdict": last.verdict.value if last else None,
        "reason": last.reason if last else run.error,
        "failure_kind": last.failure_kind.value if last and last.failure_kind else None,
        "history": [record.model_dump(mode="json") for record in run.history],
    }
