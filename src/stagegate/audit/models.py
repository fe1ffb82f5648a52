"""Audit record models.

An audit record documents one mutation performed by the engine:
    {operation, actor {id, type} | null, occurredAt, before?, after?, metadata?}

Operations are named "domain.action" (e.g. "run.transitioned",
"task.committed"). Which optional fields are required depends on the
mutation kind and on whether the record is security-relevant; the rules
are enforced by AuditRecord's model validator.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ActorType(str, Enum):
    """Kind of principal that caused a mutation."""

    HUMAN = "human"
    AGENT = "agent"
    SYSTEM = "system"


class MutationKind(str, Enum):
    """Kind of mutation an audit record documents.

    Attributes:
        CREATE: A new entity was created; ``after`` is required.
        UPDATE: An existing entity changed; ``before`` and ``after`` are required.
        EVENT: Anything else (e.g. a commit landed); no snapshot required.
    """

    CREATE = "create"
    UPDATE = "update"
    EVENT = "event"


class Actor(BaseModel):
    """Principal responsible for a mutation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Actor identifier")
    type: ActorType = Field(..., description="Actor kind")


SYSTEM_ACTOR = Actor(id="stagegate", type=ActorType.SYSTEM)


class AuditRecord(BaseModel):
    """One append-only audit log entry."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    operation: str = Field(
        ...,
        pattern=r"^[a-z][a-z0-9_]*\.[a-z][a-z0-9_]*$",
        description='Operation name in "domain.action" form',
    )

    actor: Optional[Actor] = Field(
        default=None,
        description="Who caused the mutation; None when unattributed",
    )

    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="occurredAt",
        description="When the mutation occurred (UTC)",
    )

    kind: MutationKind = Field(
        default=MutationKind.EVENT,
        description="Kind of mutation; decides which snapshots are required",
    )

    before: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Snapshot before the mutation (required for updates)",
    )

    after: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Snapshot after the mutation (required for creates and updates)",
    )

    metadata: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional context (required for security-relevant records)",
    )

    security_relevant: bool = Field(
        default=False,
        description="Whether the record documents a security-relevant mutation",
    )

    @model_validator(mode="after")
    def _check_required_fields(self) -> "AuditRecord":
        if self.kind == MutationKind.UPDATE and self.before is None:
            raise ValueError("before is required for update records")
        if self.kind in (MutationKind.CREATE, MutationKind.UPDATE) and self.after is None:
            raise ValueError(f"after is required for {self.kind.value} records")
        if self.security_relevant and not self.metadata:
            raise ValueError("metadata is required for security-relevant records")
        return self

    def to_log_dict(self) -> Dict[str, Any]:
        """Render the record in its external schema (camelCase, ISO-8601)."""
        data: Dict[str, Any] = {
            "operation": self.operation,
            "actor": (
                {"id": self.actor.id, "type": self.actor.type.value}
                if self.actor
                else None
            ),
            "occurredAt": self.occurred_at.isoformat(),
        }
        if self.before is not None:
            data["before"] = self.before
        if self.after is not None:
            data["after"] = self.after
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data
