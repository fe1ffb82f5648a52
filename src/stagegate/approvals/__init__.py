"""Human approval gates."""

from stagegate.approvals.gateway import ApprovalGateway
from stagegate.approvals.models import (
    ApprovalDecision,
    ApprovalRequest,
    Decision,
    verdict_for_decision,
)

__all__ = [
    "ApprovalGateway",
    "ApprovalDecision",
    "ApprovalRequest",
    "Decision",
    "verdict_for_decision",
]
