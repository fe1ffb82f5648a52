"""Append-only audit log and its record schema."""

from stagegate.audit.log import (
    AuditLog,
    AuditSink,
    InMemoryAuditSink,
    StructlogAuditSink,
)
from stagegate.audit.models import (
    SYSTEM_ACTOR,
    Actor,
    ActorType,
    AuditRecord,
    MutationKind,
)

__all__ = [
    "AuditLog",
    "AuditSink",
    "InMemoryAuditSink",
    "StructlogAuditSink",
    "SYSTEM_ACTOR",
    "Actor",
    "ActorType",
    "AuditRecord",
    "MutationKind",
]
