"""LLM-backed content generator.

Drafts the artifact of every content stage with a chat model served by an
OpenAI-compatible endpoint (e.g. vLLM). Each stage has its own system
prompt describing the JSON payload it must return; the model's reply is
parsed into an Artifact. Unparseable replies raise MalformedArtifactError
so that the stage regenerates instead of failing.
"""

import json
import logging
import uuid
from typing import Any, Dict, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from stagegate.errors import MalformedArtifactError, StagegateError
from stagegate.state.models import Artifact, PipelineRun, Stage


logger = logging.getLogger(__name__)


class GenerationError(StagegateError):
    """Raised when the LLM cannot be invoked."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


_JSON_ONLY = (
    "You MUST respond with valid JSON only. Do not include any text before "
    "or after the JSON object."
)

STAGE_PROMPTS: Dict[Stage, str] = {
    Stage.SPEC_VALIDATION: (
        "You are a requirements analyst. Read the specification and restate it.\n"
        'Return {"summary": str, "requirements": [str, ...], "open_questions": [str, ...]}.'
    ),
    Stage.EPIC_DRAFT: (
        "You are a product owner. Turn the validated specification into one epic.\n"
        'Return {"title": str, "description": str, "goals": [str, ...]}.'
    ),
    Stage.STORY_GENERATION: (
        "You are a product owner. Split the epic into user stories with testable "
        "acceptance criteria.\n"
        'Return {"stories": [{"title": str, "acceptance_criteria": [str, ...]}, ...]}.'
    ),
    Stage.TECHNICAL_REFINEMENT: (
        "You are a tech lead. For each story describe the implementation approach.\n"
        'Return {"notes": [{"story": str, "approach": str, "risks": [str, ...]}, ...]}.'
    ),
    Stage.SUBTASK_BREAKDOWN: (
        "You are a tech lead. Break the refined stories into atomic tasks. Each task "
        "changes a fixed, explicit list of files and nothing else.\n"
        'Return {"tasks": [{"task_id": str, "title": str, "description": str, '
        '"files": [str, ...]}, ...]}. Task ids must be unique.'
    ),
    Stage.CODE_REVIEW: (
        "You are a senior reviewer. Check the committed changes against the stories' "
        "acceptance criteria.\n"
        'Return {"approved": bool, "findings": [str, ...]}.'
    ),
    Stage.DOC_SYNC: (
        "You are a technical writer. List the documents that must change to reflect "
        "the delivered work and summarise each change.\n"
        'Return {"updated_documents": [str, ...], "summary": str}.'
    ),
}


def _parse_llm_response(response_text: str) -> Dict[str, Any]:
    """Parse the reply into a dict, tolerating markdown code fences.

    Raises:
        json.JSONDecodeError: If the reply is not valid JSON.
        ValueError: If the reply is JSON but not an object.
    """
    text = response_text.strip()

    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]

    if text.endswith("```"):
        text = text[:-3]

    data = json.loads(text.strip())
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _build_user_prompt(
    run: PipelineRun,
    inputs: Dict[Stage, Artifact],
    feedback: Optional[str],
) -> str:
    sections = [f"Run: {run.run_id}", f"Specification: {run.spec_ref}", ""]
    for stage, artifact in inputs.items():
        sections.append(f"## {stage.value}")
        sections.append(json.dumps(artifact.payload, indent=2, sort_keys=True, default=str))
        sections.append("")
    if feedback:
        sections.append("## Reviewer feedback on the previous draft")
        sections.append(feedback)
    return "\n".join(sections)


class LLMContentGenerator:
    """ContentGenerator backed by a chat model.

    Attributes:
        llm_url: URL of the OpenAI-compatible endpoint.
        model_name: Name of the model to use for inference.
        timeout: Request timeout in seconds.
        temperature: Sampling temperature for the LLM.
    """

    def __init__(
        self,
        llm_url: str,
        model_name: str,
        timeout: float = 120.0,
        temperature: float = 0.2,
    ):
        self.llm_url = llm_url
        self.model_name = model_name
        self.timeout = timeout
        self.temperature = temperature
        self._llm: Optional[ChatOpenAI] = None

    @property
    def llm(self) -> ChatOpenAI:
        if self._llm is None:
            self._llm = ChatOpenAI(
                base_url=self.llm_url,
                model=self.model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                api_key="not-needed",
            )
        return self._llm

    async def generate(
        self,
        stage: Stage,
        run: PipelineRun,
        inputs: Dict[Stage, Artifact],
        feedback: Optional[str] = None,
    ) -> Artifact:
        """Draft the artifact for ``stage``.

        Raises:
            ValueError: No prompt is defined for ``stage``.
            GenerationError: The LLM call failed.
            MalformedArtifactError: The reply is not a JSON object.
        """
        system_prompt = STAGE_PROMPTS.get(stage)
        if system_prompt is None:
            raise ValueError(f"no content prompt for stage {stage.value}")

        messages = [
            SystemMessage(content=f"{system_prompt}\n\n{_JSON_ONLY}"),
            HumanMessage(content=_build_user_prompt(run, inputs, feedback)),
        ]

        try:
            response = await self.llm.ainvoke(messages)
            response_text = response.content
        except Exception as e:
            raise GenerationError(f"LLM invocation failed: {e}", cause=e) from e

        if not isinstance(response_text, str):
            raise MalformedArtifactError(
                stage.value, f"unexpected response type: {type(response_text).__name__}"
            )

        try:
            payload = _parse_llm_response(response_text)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(
                "Failed to parse LLM response as JSON",
                extra={
                    "stage": stage.value,
                    "response_preview": response_text[:200],
                    "error": str(e),
                },
            )
            raise MalformedArtifactError(stage.value, f"invalid JSON response: {e}", cause=e) from e

        ref = f"{run.run_id}/{stage.value}/{uuid.uuid4().hex[:12]}"
        logger.info(
            "Generated stage content",
            extra={"run_id": run.run_id, "stage": stage.value, "artifact_ref": ref},
        )
        return Artifact(ref=ref, payload=payload)

    async def health_check(self) -> bool:
        """Check if the LLM endpoint is reachable."""
        try:
            await self.llm.ainvoke([HumanMessage(content="Hello")])
            return True
        except Exception as e:
            logger.warning("LLM health check failed", extra={"error": str(e)})
            return False
