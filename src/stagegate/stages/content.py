"""Content stage executors.

Each content stage asks the ContentGenerator for an artifact and validates
its payload:

- a malformed or invalid artifact yields NeedsRegenerate (validation)
- any other generator failure yields Fail (execution error)

Payload shapes:
    spec_validation:      {summary, requirements: [str, ...]}
    epic_draft:           {title, goals: [str, ...]}
    story_generation:     {stories: [{title, acceptance_criteria: [...]}, ...]}
    technical_refinement: {notes: [{story, approach}, ...]}
    subtask_breakdown:    {tasks: [{task_id, title, files: [...], ...}, ...]}
    code_review:          {approved: bool, findings: [str, ...]}
    doc_sync:             {updated_documents: [str, ...]}
"""

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from stagegate.errors import MalformedArtifactError
from stagegate.stages.base import ContentGenerator, StageExecutor
from stagegate.state.models import (
    Artifact,
    FailureKind,
    PipelineRun,
    Stage,
    StageResult,
    Verdict,
)
from stagegate.tasks.models import Task


logger = logging.getLogger(__name__)


def _non_empty_list(payload: Mapping[str, Any], key: str) -> bool:
    value = payload.get(key)
    return isinstance(value, list) and len(value) > 0


def _non_blank(payload: Mapping[str, Any], key: str) -> bool:
    value = payload.get(key)
    return isinstance(value, str) and bool(value.strip())


def tasks_from_payload(payload: Mapping[str, Any]) -> Tuple[List[Task], List[str]]:
    """Parse the subtask breakdown payload into Tasks.

    Returns:
        The parsed tasks and a list of problems; tasks are only meaningful
        when the problem list is empty.
    """
    raw_tasks = payload.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        return [], ["tasks must be a non-empty list"]

    tasks: List[Task] = []
    problems: List[str] = []
    for index, raw in enumerate(raw_tasks):
        try:
            tasks.append(Task.model_validate(raw))
        except ValidationError as e:
            problems.append(f"task {index}: {e.error_count()} invalid field(s)")

    ids = [t.task_id for t in tasks]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        problems.append("duplicate task ids: " + ", ".join(duplicates))
    return tasks, problems


class ContentStageExecutor(StageExecutor):
    """Generates and validates the artifact of one content stage.

    Subclasses set ``stage`` and ``inputs_from`` and implement ``validate``.

    Attributes:
        generator: Drafts the stage content.
        inputs_from: Stages whose artifacts are passed to the generator.
    """

    inputs_from: Tuple[Stage, ...] = ()

    def __init__(self, generator: ContentGenerator):
        self.generator = generator

    def validate(self, payload: Mapping[str, Any]) -> List[str]:
        """Return every problem with the payload; empty means valid."""
        return []

    def verdict_for(self, payload: Mapping[str, Any]) -> Verdict:
        problems = self.validate(payload)
        if problems:
            return Verdict.needs_regenerate("; ".join(problems), FailureKind.VALIDATION)
        return Verdict.passed()

    async def execute(
        self,
        run: PipelineRun,
        prior_results: Mapping[Stage, StageResult],
        feedback: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> StageResult:
        missing = [s.value for s in self.inputs_from if s not in prior_results]
        if missing:
            return self._result(
                run,
                Artifact(ref=f"{run.run_id}/{self.stage.value}/missing-inputs"),
                Verdict.failed(
                    "missing input artifacts: " + ", ".join(missing),
                    FailureKind.EXECUTION_ERROR,
                ),
            )

        inputs: Dict[Stage, Artifact] = {s: prior_results[s].artifact for s in self.inputs_from}

        try:
            artifact = await self.generator.generate(self.stage, run, inputs, feedback)
        except MalformedArtifactError as e:
            logger.warning(
                "Generated artifact is malformed",
                extra={"run_id": run.run_id, "stage": self.stage.value, "error": e.message},
            )
            return self._result(
                run,
                Artifact(ref=f"{run.run_id}/{self.stage.value}/malformed"),
                Verdict.needs_regenerate(e.message, FailureKind.VALIDATION),
            )
        except Exception as e:
            logger.exception(
                "Content generation failed",
                extra={"run_id": run.run_id, "stage": self.stage.value},
            )
            return self._result(
                run,
                Artifact(ref=f"{run.run_id}/{self.stage.value}/error"),
                Verdict.failed(f"content generation failed: {e}", FailureKind.EXECUTION_ERROR),
            )

        verdict = self.verdict_for(artifact.payload)
        logger.info(
            "Content stage executed",
            extra={
                "run_id": run.run_id,
                "stage": self.stage.value,
                "artifact_ref": artifact.ref,
                "verdict": verdict.kind.value,
            },
        )
        return self._result(run, artifact, verdict)

    def _result(self, run: PipelineRun, artifact: Artifact, verdict: Verdict) -> StageResult:
        return StageResult(stage=self.stage, artifact=artifact, verdict=verdict)


class SpecValidationExecutor(ContentStageExecutor):
    stage = Stage.SPEC_VALIDATION
    inputs_from = (Stage.INTAKE,)

    def validate(self, payload: Mapping[str, Any]) -> List[str]:
        problems = []
        if not _non_blank(payload, "summary"):
            problems.append("summary is required")
        if not _non_empty_list(payload, "requirements"):
            problems.append("requirements must be a non-empty list")
        return problems


class EpicDraftExecutor(ContentStageExecutor):
    stage = Stage.EPIC_DRAFT
    inputs_from = (Stage.SPEC_VALIDATION,)

    def validate(self, payload: Mapping[str, Any]) -> List[str]:
        problems = []
        if not _non_blank(payload, "title"):
            problems.append("title is required")
        if not _non_empty_list(payload, "goals"):
            problems.append("goals must be a non-empty list")
        return problems


class StoryGenerationExecutor(ContentStageExecutor):
    stage = Stage.STORY_GENERATION
    inputs_from = (Stage.EPIC_DRAFT,)

    def validate(self, payload: Mapping[str, Any]) -> List[str]:
        if not _non_empty_list(payload, "stories"):
            return ["stories must be a non-empty list"]
        problems = []
        for index, story in enumerate(payload["stories"]):
            if not isinstance(story, dict) or not _non_blank(story, "title"):
                problems.append(f"story {index} has no title")
            elif not _non_empty_list(story, "acceptance_criteria"):
                problems.append(f"story {index} has no acceptance criteria")
        return problems


class TechnicalRefinementExecutor(ContentStageExecutor):
    stage = Stage.TECHNICAL_REFINEMENT
    inputs_from = (Stage.STORY_GENERATION,)

    def validate(self, payload: Mapping[str, Any]) -> List[str]:
        if not _non_empty_list(payload, "notes"):
            return ["notes must be a non-empty list"]
        problems = []
        for index, note in enumerate(payload["notes"]):
            if not isinstance(note, dict):
                problems.append(f"note {index} is not an object")
                continue
            if not _non_blank(note, "story"):
                problems.append(f"note {index} does not reference a story")
            if not _non_blank(note, "approach"):
                problems.append(f"note {index} has no approach")
        return problems


class SubtaskBreakdownExecutor(ContentStageExecutor):
    stage = Stage.SUBTASK_BREAKDOWN
    inputs_from = (Stage.STORY_GENERATION, Stage.TECHNICAL_REFINEMENT)

    def validate(self, payload: Mapping[str, Any]) -> List[str]:
        _, problems = tasks_from_payload(payload)
        return problems


class CodeReviewExecutor(ContentStageExecutor):
    stage = Stage.CODE_REVIEW
    inputs_from = (Stage.STORY_GENERATION, Stage.DEV_EXECUTION)

    def validate(self, payload: Mapping[str, Any]) -> List[str]:
        if not isinstance(payload.get("approved"), bool):
            return ["approved flag is required"]
        return []

    def verdict_for(self, payload: Mapping[str, Any]) -> Verdict:
        verdict = super().verdict_for(payload)
        if not verdict.is_pass or payload["approved"]:
            return verdict
        findings = payload.get("findings") or []
        reason = "; ".join(str(f) for f in findings) or "review not approved"
        return Verdict.needs_regenerate(reason, FailureKind.REVIEW_REJECTION)


class DocSyncExecutor(ContentStageExecutor):
    stage = Stage.DOC_SYNC
    inputs_from = (
        Stage.EPIC_DRAFT,
        Stage.STORY_GENERATION,
        Stage.DEV_EXECUTION,
        Stage.CODE_REVIEW,
    )

    def validate(self, payload: Mapping[str, Any]) -> List[str]:
        if not isinstance(payload.get("updated_documents"), list):
            return ["updated_documents list is required"]
        return []
