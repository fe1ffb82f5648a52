"""Append-only audit log.

AuditLog validates records and fans them out to one or more sinks. A sink
that fails is logged and skipped so that an unavailable log destination
never blocks the pipeline; an invalid record, on the other hand, is a
programming error and raises AuditRecordError.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import structlog
from pydantic import ValidationError

from stagegate.audit.models import Actor, AuditRecord, MutationKind
from stagegate.errors import AuditRecordError


logger = logging.getLogger(__name__)


class AuditSink(ABC):
    """Destination for audit records."""

    @abstractmethod
    def write(self, record: AuditRecord) -> None:
        """Persist one record."""
        pass


class InMemoryAuditSink(AuditSink):
    """Keeps records in a list. Used by tests and the local API."""

    def __init__(self) -> None:
        self.records: List[AuditRecord] = []

    def write(self, record: AuditRecord) -> None:
        self.records.append(record)

    def by_operation(self, operation: str) -> List[AuditRecord]:
        return [r for r in self.records if r.operation == operation]


class StructlogAuditSink(AuditSink):
    """Writes records as structured log lines on the ``stagegate.audit`` logger."""

    def __init__(self, logger_name: str = "stagegate.audit"):
        self._log = structlog.get_logger(logger_name)

    def write(self, record: AuditRecord) -> None:
        payload = record.to_log_dict()
        self._log.info("audit", security_relevant=record.security_relevant, **payload)


class AuditLog:
    """Validates audit records and appends them to every configured sink.

    Example:
        >>> audit = AuditLog([StructlogAuditSink()])
        >>> audit.record(
        ...     "run.created",
        ...     kind=MutationKind.CREATE,
        ...     after={"run_id": "abc"},
        ... )
    """

    def __init__(self, sinks: Optional[Sequence[AuditSink]] = None):
        self.sinks: List[AuditSink] = list(sinks) if sinks else []

    def record(
        self,
        operation: str,
        *,
        kind: MutationKind = MutationKind.EVENT,
        actor: Optional[Actor] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        security_relevant: bool = False,
    ) -> AuditRecord:
        """Build, validate and append one record.

        Returns:
            The appended record.

        Raises:
            AuditRecordError: If the record violates the schema.
        """
        try:
            record = AuditRecord(
                operation=operation,
                actor=actor,
                kind=kind,
                before=before,
                after=after,
                metadata=metadata,
                security_relevant=security_relevant,
            )
        except ValidationError as e:
            raise AuditRecordError(operation, str(e)) from e

        for sink in self.sinks:
            try:
                sink.write(record)
            except Exception:
                logger.exception(
                    "Audit sink failed",
                    extra={
                        "sink": type(sink).__name__,
                        "operation": operation,
                    },
                )

        return record
