"""Stage executors.

- Content stages delegate to a ContentGenerator and validate its artifact
- Dev execution implements, checks and commits each task
- Intake is evaluated directly with intake_result
"""

from stagegate.stages.base import ContentGenerator, StageExecutor, intake_result
from stagegate.stages.content import (
    CodeReviewExecutor,
    ContentStageExecutor,
    DocSyncExecutor,
    EpicDraftExecutor,
    SpecValidationExecutor,
    StoryGenerationExecutor,
    SubtaskBreakdownExecutor,
    TechnicalRefinementExecutor,
    tasks_from_payload,
)
from stagegate.stages.dev import DevExecutionExecutor

__all__ = [
    "ContentGenerator",
    "StageExecutor",
    "intake_result",
    "CodeReviewExecutor",
    "ContentStageExecutor",
    "DocSyncExecutor",
    "EpicDraftExecutor",
    "SpecValidationExecutor",
    "StoryGenerationExecutor",
    "SubtaskBreakdownExecutor",
    "TechnicalRefinementExecutor",
    "tasks_from_payload",
    "DevExecutionExecutor",
]
