"""Blocking human approval gates.

The gateway parks a run on an asyncio.Future until a reviewer resolves the
request. There is no polling: ``resolve`` completes the future directly.
Each request is resolved exactly once; abandoning a run withdraws its
pending requests and wakes the parked waiter with RunAbandonedError.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from stagegate.approvals.models import ApprovalDecision, ApprovalRequest, Decision
from stagegate.audit.log import AuditLog
from stagegate.audit.models import SYSTEM_ACTOR, Actor, ActorType, MutationKind
from stagegate.errors import AlreadyResolvedError, ApprovalNotFoundError, RunAbandonedError
from stagegate.state.models import Artifact, PipelineRun, Stage, requires_approval


logger = logging.getLogger(__name__)


def _snapshot(request: ApprovalRequest) -> Dict[str, object]:
    return request.model_dump(mode="json", exclude={"feedback"})


class ApprovalGateway:
    """In-process registry of approval requests and their waiters.

    Attributes:
        audit_log: Receives approval.requested / resolved / withdrawn records.
    """

    def __init__(self, audit_log: AuditLog):
        self.audit_log = audit_log
        self._requests: Dict[str, ApprovalRequest] = {}
        self._waiters: Dict[str, "asyncio.Future[ApprovalRequest]"] = {}

    def get(self, request_id: str) -> ApprovalRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise ApprovalNotFoundError(request_id)
        return request

    def pending(self, run_id: Optional[str] = None) -> List[ApprovalRequest]:
        """Pending requests, oldest first, optionally for one run."""
        return sorted(
            (
                r
                for r in self._requests.values()
                if r.is_pending and (run_id is None or r.run_id == run_id)
            ),
            key=lambda r: r.requested_at,
        )

    def history(self, run_id: str) -> List[ApprovalRequest]:
        """Every request ever opened for a run, oldest first."""
        return sorted(
            (r for r in self._requests.values() if r.run_id == run_id),
            key=lambda r: r.requested_at,
        )

    def open_request(self, run: PipelineRun, stage: Stage, artifact: Artifact) -> ApprovalRequest:
        """Open a pending request without waiting for it.

        Raises:
            ValueError: ``stage`` is not an approval stage, or a request for
                this run and stage is already pending.
        """
        if not requires_approval(stage):
            raise ValueError(f"{stage.value} is not an approval stage")
        for existing in self.pending(run.run_id):
            if existing.stage == stage:
                raise ValueError(
                    f"approval for {run.run_id}/{stage.value} already pending "
                    f"({existing.request_id})"
                )

        request = ApprovalRequest(
            request_id=uuid.uuid4().hex,
            run_id=run.run_id,
            stage=stage,
            artifact_ref=artifact.ref,
        )
        self._requests[request.request_id] = request

        logger.info(
            "Approval requested",
            extra={
                "run_id": run.run_id,
                "stage": stage.value,
                "request_id": request.request_id,
                "artifact_ref": artifact.ref,
            },
        )
        self.audit_log.record(
            "approval.requested",
            kind=MutationKind.CREATE,
            actor=SYSTEM_ACTOR,
            after=_snapshot(request),
        )
        return request

    async def wait_for_decision(self, request_id: str) -> ApprovalRequest:
        """Suspend until the request is resolved.

        Returns immediately if it already is.

        Raises:
            ApprovalNotFoundError: Unknown request.
            RunAbandonedError: The request was withdrawn.
        """
        request = self.get(request_id)
        if request.withdrawn_at is not None:
            raise RunAbandonedError(request.run_id, "approval withdrawn")
        if request.decision != Decision.PENDING:
            return request

        waiter = self._waiters.get(request_id)
        if waiter is None:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters[request_id] = waiter
        try:
            return await waiter
        finally:
            self._waiters.pop(request_id, None)

    async def request_approval(
        self,
        run: PipelineRun,
        stage: Stage,
        artifact: Artifact,
    ) -> ApprovalRequest:
        """Open a request and suspend until it is resolved.

        Returns:
            The resolved request.
        """
        request = self.open_request(run, stage, artifact)
        return await self.wait_for_decision(request.request_id)

    def resolve(
        self,
        request_id: str,
        decision: Decision,
        feedback: Optional[str] = None,
        decided_by: str = "",
    ) -> ApprovalRequest:
        """Resolve a pending request and wake its waiter.

        Raises:
            ApprovalNotFoundError: Unknown request.
            AlreadyResolvedError: The request was resolved or withdrawn.
            ValueError: ``decision`` is Pending or ``decided_by`` is empty.
        """
        if decision == Decision.PENDING:
            raise ValueError("pending is not a valid decision")
        if not decided_by:
            raise ValueError("decided_by is required")

        request = self.get(request_id)
        if request.withdrawn_at is not None:
            raise AlreadyResolvedError(request_id, "withdrawn")
        if request.decision != Decision.PENDING:
            raise AlreadyResolvedError(request_id, request.decision.value)

        resolved = request.model_copy(
            update={
                "decision": decision,
                "feedback": feedback,
                "decided_at": datetime.now(timezone.utc),
                "decided_by": decided_by,
            }
        )
        self._requests[request_id] = resolved

        waiter = self._waiters.get(request_id)
        if waiter is not None and not waiter.done():
            waiter.set_result(resolved)

        logger.info(
            "Approval resolved",
            extra={
                "run_id": resolved.run_id,
                "stage": resolved.stage.value,
                "request_id": request_id,
                "decision": decision.value,
                "decided_by": decided_by,
            },
        )
        self.audit_log.record(
            "approval.resolved",
            kind=MutationKind.UPDATE,
            actor=Actor(id=decided_by, type=ActorType.HUMAN),
            before=_snapshot(request),
            after=_snapshot(resolved),
            metadata={"decision": decision.value, "feedback": feedback},
            security_relevant=True,
        )
        return resolved

    def submit(self, decision: ApprovalDecision) -> ApprovalRequest:
        """Resolve the pending request for ``(decision.run_id, decision.stage)``.

        Raises:
            AlreadyResolvedError: The only requests for that run and stage
                are already resolved.
            ApprovalNotFoundError: No request exists for that run and stage.
        """
        for request in self.pending(decision.run_id):
            if request.stage == decision.stage:
                return self.resolve(
                    request.request_id,
                    decision.decision,
                    decision.feedback,
                    decision.decided_by,
                )

        previous = [r for r in self.history(decision.run_id) if r.stage == decision.stage]
        if previous:
            latest = previous[-1]
            state = "withdrawn" if latest.withdrawn_at else latest.decision.value
            raise AlreadyResolvedError(latest.request_id, state)
        raise ApprovalNotFoundError(f"{decision.run_id}/{decision.stage.value}")

    def withdraw(self, run_id: str, reason: str = "run abandoned") -> List[ApprovalRequest]:
        """Withdraw every pending request of a run.

        Parked waiters are woken with RunAbandonedError.

        Returns:
            The withdrawn requests.
        """
        withdrawn: List[ApprovalRequest] = []
        for request in self.pending(run_id):
            updated = request.model_copy(update={"withdrawn_at": datetime.now(timezone.utc)})
            self._requests[request.request_id] = updated
            withdrawn.append(updated)

            waiter = self._waiters.get(request.request_id)
            if waiter is not None and not waiter.done():
                waiter.set_exception(RunAbandonedError(run_id, reason))

            self.audit_log.record(
                "approval.withdrawn",
                kind=MutationKind.UPDATE,
                actor=SYSTEM_ACTOR,
                before=_snapshot(request),
                after=_snapshot(updated),
                metadata={"reason": reason},
            )

        if withdrawn:
            logger.info(
                "Withdrew pending approvals",
                extra={"run_id": run_id, "count": len(withdrawn)},
            )
        return withdrawn

    def discard(self, run_id: str) -> int:
        """Forget every request of a finished run.

        Pending requests are withdrawn first, so no waiter is left parked.

        Returns:
            Number of requests dropped.
        """
        self.withdraw(run_id, "run finished")
        dropped = [rid for rid, r in self._requests.items() if r.run_id == run_id]
        for request_id in dropped:
            del self._requests[request_id]
            self._waiters.pop(request_id, None)
        if dropped:
            logger.debug("Discarded approval requests", extra={"run_id": run_id, "count": len(dropped)})
        return len(dropped)
