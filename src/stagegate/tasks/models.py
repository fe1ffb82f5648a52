"""Task, commit metadata and commit record models.

A Task is the atomic unit of implementation: one declared file set, one
quality-gate pass, one commit. Tasks are immutable; a retry is a new Task
with the next attempt number.

Commit metadata schema (agent-authored commits):
    {tool, toolName, model, taskRef|"N/A", planRef|"N/A",
     coverage|"N/A"|"Documentation"}
Every field is mandatory; the sentinels are explicit values, absence is not.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


NOT_APPLICABLE = "N/A"
DOCUMENTATION_COVERAGE = "Documentation"


class AuthorKind(str, Enum):
    """Who authors a task's change."""

    HUMAN = "human"
    AGENT = "agent"


class Task(BaseModel):
    """Atomic unit of implementation with a fixed file set.

    Attributes:
        task_id: Stable identifier assigned by the subtask breakdown.
        title: Short summary used as the commit subject.
        description: What the implementation agent should do.
        files: Declared file paths; fixed before execution, never empty.
        author_kind: Human or agent; agent commits require full metadata.
        attempt: Attempt number, starting at 1.
        plan_ref: Reference to the plan the task came from, if any.
        run_id: Run the task belongs to; task ids are only unique within a run.
    """

    model_config = ConfigDict(frozen=True)

    task_id: str = Field(..., min_length=1, description="Task identifier")
    title: str = Field(..., min_length=1, description="Short task summary")
    description: str = Field(default="", description="Implementation instructions")
    files: FrozenSet[str] = Field(..., min_length=1, description="Declared file paths")
    author_kind: AuthorKind = Field(default=AuthorKind.AGENT)
    attempt: int = Field(default=1, ge=1, description="Attempt number")
    plan_ref: Optional[str] = Field(default=None, description="Originating plan reference")
    run_id: Optional[str] = Field(default=None, description="Owning pipeline run")

    @field_validator("files")
    @classmethod
    def validate_files(cls, v: FrozenSet[str]) -> FrozenSet[str]:
        cleaned = frozenset(p.strip() for p in v)
        if "" in cleaned:
            raise ValueError("file paths cannot be blank")
        return cleaned

    @property
    def is_documentation_only(self) -> bool:
        return all(p.endswith((".md", ".rst", ".txt")) for p in self.files)

    def next_attempt(self) -> "Task":
        """Return a new Task instance for the next attempt."""
        return self.model_copy(update={"attempt": self.attempt + 1})


class CommitMetadata(BaseModel):
    """Metadata attached to a task commit.

    Fields are optional at the model level so that incomplete metadata can
    be represented and rejected by the commit coordinator with a precise
    list of what is missing.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tool: Optional[str] = Field(default=None, description="Tool family (e.g. agent)")
    tool_name: Optional[str] = Field(default=None, alias="toolName")
    model: Optional[str] = Field(default=None, description="Model that produced the change")
    task_ref: Optional[str] = Field(default=None, alias="taskRef")
    plan_ref: Optional[str] = Field(default=None, alias="planRef")
    coverage: Optional[str] = Field(
        default=None,
        description='Test coverage summary, "N/A", or "Documentation"',
    )

    def missing_fields(self) -> List[str]:
        """External names of fields that are absent or blank."""
        missing = []
        for name, field in type(self).model_fields.items():
            value = getattr(self, name)
            if value is None or not str(value).strip():
                missing.append(field.alias or name)
        return missing

    def to_schema(self) -> Dict[str, Optional[str]]:
        return self.model_dump(by_alias=True)

    def trailers(self) -> List[str]:
        """Git trailer lines for every present field, in schema order."""
        return [
            f"{key[0].upper()}{key[1:]}: {value}"
            for key, value in self.to_schema().items()
            if value
        ]


class CommitRecord(BaseModel):
    """Immutable record of one landed task commit."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    run_id: Optional[str] = None
    attempt: int = Field(default=1, ge=1)
    commit_sha: str = Field(..., min_length=1)
    files: FrozenSet[str]
    metadata: CommitMetadata
    message: str
    committed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
