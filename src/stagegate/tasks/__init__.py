"""Tasks and atomic per-task commits."""

from stagegate.tasks.coordinator import TaskCommitCoordinator, render_commit_message
from stagegate.tasks.models import (
    DOCUMENTATION_COVERAGE,
    NOT_APPLICABLE,
    AuthorKind,
    CommitMetadata,
    CommitRecord,
    Task,
)
from stagegate.tasks.vcs import GitVersionControl, VCSError, VersionControl, parse_porcelain
from stagegate.tasks.workspace import RunWorkspaces

__all__ = [
    "TaskCommitCoordinator",
    "render_commit_message",
    "DOCUMENTATION_COVERAGE",
    "NOT_APPLICABLE",
    "AuthorKind",
    "CommitMetadata",
    "CommitRecord",
    "Task",
    "GitVersionControl",
    "VCSError",
    "VersionControl",
    "parse_porcelain",
    "RunWorkspaces",
]
