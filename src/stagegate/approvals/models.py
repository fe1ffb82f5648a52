"""Approval request and decision models.

An ApprovalRequest links a run and an approval stage to one pending human
decision. It is resolved exactly once and never re-opened; a rejection or a
regeneration request leads to a new request for the regenerated artifact.

Approval decision payload:
    {runId, stage, decision in {approved, rejected, regenerate_requested},
     feedback?, decidedBy}
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stagegate.state.models import FailureKind, Stage, Verdict, requires_approval


class Decision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REGENERATE_REQUESTED = "regenerate_requested"


class ApprovalRequest(BaseModel):
    """A human decision point for one artifact of one run."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(..., min_length=1)
    run_id: str = Field(..., min_length=1)
    stage: Stage
    artifact_ref: str = Field(..., min_length=1, description="Artifact under review")
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    decision: Decision = Decision.PENDING
    feedback: Optional[str] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    withdrawn_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.decision == Decision.PENDING and self.withdrawn_at is None

    @property
    def is_approved(self) -> bool:
        return self.decision == Decision.APPROVED


class ApprovalDecision(BaseModel):
    """Decision submitted by a reviewer."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., min_length=1, alias="runId")
    stage: Stage
    decision: Decision
    feedback: Optional[str] = None
    decided_by: str = Field(..., min_length=1, alias="decidedBy")

    @field_validator("decision")
    @classmethod
    def validate_decision(cls, v: Decision) -> Decision:
        if v == Decision.PENDING:
            raise ValueError("pending is not a valid decision")
        return v

    @field_validator("stage")
    @classmethod
    def validate_stage(cls, v: Stage) -> Stage:
        if not requires_approval(v):
            raise ValueError(f"{v.value} is not an approval stage")
        return v


def verdict_for_decision(request: ApprovalRequest) -> Verdict:
    """Map a resolved request to the verdict of its approval stage.

    Rejections and regeneration requests both send the reviewed stage back
    for regeneration with the reviewer's feedback; the gate's regeneration
    budget decides when a rejection aborts the run instead.

    Raises:
        ValueError: If the request is still pending.
    """
    feedback = request.feedback or ""
    if request.decision == Decision.APPROVED:
        return Verdict.passed()
    if request.decision == Decision.REJECTED:
        return Verdict.needs_regenerate(
            feedback or f"rejected by {request.decided_by}",
            FailureKind.APPROVAL_REJECTION,
        )
    if request.decision == Decision.REGENERATE_REQUESTED:
        return Verdict.needs_regenerate(
            feedback or f"regeneration requested by {request.decided_by}",
            FailureKind.APPROVAL_REJECTION,
        )
    raise ValueError(f"approval request {request.request_id} is not resolved")
