"""Content generation agents."""

from stagegate.agents.llm import STAGE_PROMPTS, GenerationError, LLMContentGenerator

__all__ = ["STAGE_PROMPTS", "GenerationError", "LLMContentGenerator"]
