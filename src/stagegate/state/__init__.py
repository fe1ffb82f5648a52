"""Pipeline state machine and persistence.

Runs move through a fixed stage order:
- intake → spec_validation → epic_draft → epic_approval → story_generation
- → technical_refinement → tech_lead_approval → subtask_breakdown
- → dev_review → dev_execution → code_review → doc_sync → final_approval
- → released

State is persisted in memory or in PostgreSQL, with optimistic locking
for concurrent update protection.
"""

from stagegate.state.models import (
    STAGE_ORDER,
    STAGE_SPECS,
    TRANSITION_TABLE,
    Artifact,
    FailureKind,
    PipelineRun,
    RunOutcome,
    Stage,
    StageResult,
    StageSpec,
    TransitionAction,
    TransitionRecord,
    Verdict,
    VerdictKind,
    abort_report,
    approval_origin,
    review_origin,
    is_terminal_stage,
    next_stage,
    requires_approval,
    requires_quality_gate,
)
from stagegate.state.machine import PipelineStateMachine, RunRepository
from stagegate.state.repository import InMemoryRunRepository, PostgresRunRepository

__all__ = [
    # Models
    "STAGE_ORDER",
    "STAGE_SPECS",
    "TRANSITION_TABLE",
    "Artifact",
    "FailureKind",
    "PipelineRun",
    "RunOutcome",
    "Stage",
    "StageResult",
    "StageSpec",
    "TransitionAction",
    "TransitionRecord",
    "Verdict",
    "VerdictKind",
    "abort_report",
    "approval_origin",
    "review_origin",
    "is_terminal_stage",
    "next_stage",
    "requires_approval",
    "requires_quality_gate",
    # State machine
    "PipelineStateMachine",
    "RunRepository",
    # Repositories
    "InMemoryRunRepository",
    "PostgresRunRepository",
]
