"""Quality gate: ordered, fail-fast external checks per task."""

from stagegate.quality.models import (
    DEFAULT_CHECKS,
    CheckResult,
    CheckStatus,
    QualityGateCheck,
    QualityGateRun,
)
from stagegate.quality.runner import QualityGateRunner

__all__ = [
    "DEFAULT_CHECKS",
    "CheckResult",
    "CheckStatus",
    "QualityGateCheck",
    "QualityGateRun",
    "QualityGateRunner",
]
