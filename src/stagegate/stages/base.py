"""Stage executor interface.

Every non-approval stage (except intake) has a StageExecutor that turns the
run and the results of earlier stages into a new StageResult. Executors
report problems through the verdict; only infrastructure failures that the
pipeline cannot classify are raised.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional, Protocol, runtime_checkable

from stagegate.state.models import (
    Artifact,
    FailureKind,
    PipelineRun,
    Stage,
    StageResult,
    Verdict,
)


@runtime_checkable
class ContentGenerator(Protocol):
    """Opaque capability that drafts stage content (e.g. an LLM agent)."""

    async def generate(
        self,
        stage: Stage,
        run: PipelineRun,
        inputs: Dict[Stage, Artifact],
        feedback: Optional[str] = None,
    ) -> Artifact:
        """Produce the artifact for ``stage``.

        Raises:
            MalformedArtifactError: The generated content cannot be parsed.
        """
        ...


class StageExecutor(ABC):
    """Produces the StageResult of one stage.

    Attributes:
        stage: The stage this executor handles.
    """

    stage: Stage

    @abstractmethod
    async def execute(
        self,
        run: PipelineRun,
        prior_results: Mapping[Stage, StageResult],
        feedback: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> StageResult:
        """Execute the stage.

        Args:
            run: The run, at ``self.stage`` or at the stage reviewing it.
            prior_results: Latest result of every stage already executed.
            feedback: Reviewer or retry feedback for a regeneration.
            cancel_event: Set when the run is being abandoned.

        Returns:
            The stage result, with its verdict.
        """
        pass

    async def release(self, run_id: str) -> None:
        """Drop whatever the executor keeps for a finished run."""
        return None


def intake_result(run: PipelineRun, text: str) -> StageResult:
    """Evaluate the intake document. An empty document fails the run."""
    artifact = Artifact(ref=run.spec_ref, payload={"text": text})
    if not text or not text.strip():
        verdict = Verdict.failed("intake document is empty", FailureKind.VALIDATION)
    else:
        verdict = Verdict.passed()
    return StageResult(stage=Stage.INTAKE, artifact=artifact, verdict=verdict)
