"""Answer generation contract and the simulated generator used in demos."""
import asyncio
import random
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import structlog

from api.features.conversation.models import GeneratedAnswer, MessageModel, SourceModel
from api.features.profiles.models import ProfileModel
from api.features.system_prompts.models import SystemPromptModel

logger = structlog.get_logger("rag.conversation.generator")


class AnswerGenerator(ABC):
    """Produces an answer with citations for one query."""

    name: str = "answer-generator"

    @abstractmethod
    async def generate(
        self,
        query: str,
        profile: ProfileModel,
        system_prompt: SystemPromptModel,
        history: Sequence[MessageModel],
    ) -> GeneratedAnswer:
        """Return the answer; any exception counts as a generation failure."""


class SimulatedAnswerGenerator(AnswerGenerator):
    """Stands in for the retrieval + LLM pipeline.

    Waits ``delay_seconds`` and answers with a templated response citing one
    synthetic source.
    """

    name = "simulated"

    def __init__(self, delay_seconds: float = 2.0, rng: Optional[random.Random] = None):
        self.delay_seconds = delay_seconds
        self.rng = rng or random.Random()

    async def generate(
        self,
        query: str,
        profile: ProfileModel,
        system_prompt: SystemPromptModel,
        history: Sequence[MessageModel],
    ) -> GeneratedAnswer:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        content = (
            f'Based on your query about "{query}", here\'s a comprehensive response:\n\n'
            "This is a simulated response that would normally come from your RAG system. "
            f'The system would analyze the uploaded documents in your "{profile.name}" '
            "profile and provide contextually relevant information.\n\n"
            "The response would include:\n"
            "- Relevant information extracted from your documents\n"
            "- Proper citations and source references\n"
            "- Structured formatting for better readability\n"
            "- Context-aware insights based on the selected system prompt: "
            f'"{system_prompt.name}"'
        )
        source = SourceModel(
            id="1",
            title="Document Analysis Results",
            excerpt=f"Relevant excerpt from your uploaded documents related to: {query}",
            page=self.rng.randint(1, 100),
            confidence=min(0.85 + self.rng.random() * 0.15, 1.0),
        )
        logger.debug(
            "simulated_answer_generated",
            profile_id=profile.id,
            system_prompt_id=system_prompt.id,
            history_length=len(history),
        )
        return GeneratedAnswer(content=content, sources=[source])
