"""Quality-gate models.

A QualityGateCheck is one named external command. A QualityGateRun is the
ordered result of running every configured check against one task: results
are prefix-consistent, meaning that once a check fails every later check is
recorded as skipped.
"""

import shlex
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


FILES_TOKEN = "{files}"


class CheckStatus(str, Enum):
    """Outcome of one quality-gate check."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class QualityGateCheck(BaseModel):
    """One named, ordered command contract.

    The command is a shell-free argument string split with shell quoting
    rules, so quoted arguments may contain spaces. The ``{files}`` token is
    replaced by the task's file paths. Success is exit code 0.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Check name (e.g. lint)")
    command: str = Field(..., min_length=1, description="Command line with optional {files} token")

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        try:
            parts = shlex.split(v)
        except ValueError as e:
            raise ValueError(f"command cannot be parsed: {e}") from e
        if not parts:
            raise ValueError("command must contain a program name")
        return v

    def render(self, files: Iterable[str]) -> List[str]:
        """Build the argv for this check.

        A standalone ``{files}`` argument expands to one argument per file;
        an embedded token expands to the space-joined file list.

        Example:
            >>> QualityGateCheck(name="lint", command="ruff check {files}").render(["b.py", "a.py"])
            ['ruff', 'check', 'a.py', 'b.py']
        """
        ordered = sorted(files)
        argv: List[str] = []
        for part in shlex.split(self.command):
            if part == FILES_TOKEN:
                argv.extend(ordered)
            elif FILES_TOKEN in part:
                argv.append(part.replace(FILES_TOKEN, " ".join(ordered)))
            else:
                argv.append(part)
        return argv


DEFAULT_CHECKS: List[QualityGateCheck] = [
    QualityGateCheck(name="format", command="ruff format --check {files}"),
    QualityGateCheck(name="lint", command="ruff check {files}"),
    QualityGateCheck(name="design", command="pylint --disable=all --enable=design {files}"),
    QualityGateCheck(name="analysis", command="mypy {files}"),
]


class CheckResult(BaseModel):
    """Result of one check within a quality-gate run."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Name of the check")
    status: CheckStatus = Field(..., description="Passed, failed or skipped")
    exit_code: Optional[int] = Field(
        default=None,
        description="Process exit code; None when skipped, timed out or not started",
    )
    diagnostics: str = Field(default="", description="Captured stdout/stderr")
    duration_seconds: float = Field(default=0.0, ge=0, description="Wall-clock duration")


class QualityGateRun(BaseModel):
    """Ordered check results for one task attempt."""

    model_config = ConfigDict(frozen=True)

    task_id: str = Field(..., min_length=1, description="Task the checks ran against")
    run_id: Optional[str] = Field(default=None, description="Run the task belongs to")
    attempt: int = Field(default=1, ge=1, description="Task attempt number")
    checks: List[CheckResult] = Field(default_factory=list, description="Results in declared order")
    cancelled: bool = Field(
        default=False,
        description="True when the run was stopped before every check executed",
    )
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _check_prefix_consistency(self) -> "QualityGateRun":
        seen_failure = False
        stopped = False
        for result in self.checks:
            if stopped and result.status != CheckStatus.SKIPPED:
                raise ValueError(
                    f"check {result.name} ran after the sequence stopped"
                )
            if result.status == CheckStatus.FAILED:
                seen_failure = True
                stopped = True
            elif result.status == CheckStatus.SKIPPED:
                stopped = True
        if stopped and not seen_failure and not self.cancelled:
            raise ValueError("skipped checks require a prior failure or cancellation")
        return self

    @property
    def all_passed(self) -> bool:
        """True iff at least one check ran and every check passed."""
        return (
            bool(self.checks)
            and not self.cancelled
            and all(c.status == CheckStatus.PASSED for c in self.checks)
        )

    @property
    def first_failure(self) -> Optional[CheckResult]:
        for result in self.checks:
            if result.status == CheckStatus.FAILED:
                return result
        return None

    @property
    def statuses(self) -> List[CheckStatus]:
        return [c.status for c in self.checks]
