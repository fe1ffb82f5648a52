"""Pipeline event models for observability.

This module defines the data models for pipeline events, including:
- EventType: Enum of all event types emitted by the orchestrator
- PipelineEvent: Structured event with all required metadata

Events are emitted for monitoring, alerting, and debugging. Aborts carry
the full run history in their details.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the orchestrator.

    Attributes:
        RUN_STARTED: A run was created and scheduled.
        STAGE_TRANSITION: A run advanced, retried or aborted a stage.
        APPROVAL_REQUESTED: A run is parked on a human decision.
        APPROVAL_RESOLVED: A reviewer resolved an approval request.
        QUALITY_GATE: A quality-gate run finished for a task.
        COMMIT: A task commit landed.
        ABORT: A run ended aborted or abandoned.
        RELEASE: A run reached the released stage.
        ERROR: An unexpected error stopped a run's driver.
    """

    RUN_STARTED = "run_started"
    STAGE_TRANSITION = "stage_transition"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"
    QUALITY_GATE = "quality_gate"
    COMMIT = "commit"
    ABORT = "abort"
    RELEASE = "release"
    ERROR = "error"


class PipelineEvent(BaseModel):
    """Structured event emitted by the orchestrator.

    Attributes:
        event_type: The category of event.
        run_id: The run the event belongs to.
        stage: Stage the run was in, when relevant.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        STAGE_TRANSITION: from_stage, to_stage, action, verdict, failure_kind
        QUALITY_GATE: task_id, attempt, all_passed, checks [{name, status}]
        COMMIT: task_id, commit_sha, files
        ABORT: outcome, failure_kind, reason, history
        RELEASE: duration_seconds, history_length
        ERROR: error_type, error_message
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    run_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the run the event belongs to",
    )

    stage: Optional[str] = Field(
        default=None,
        description="Stage the run was in when the event occurred",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for structured logging.

        Example:
            >>> PipelineEvent(event_type=EventType.ERROR, run_id="r1").to_log_dict()["event_type"]
            'error'
        """
        return {
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "stage": self.stage,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
