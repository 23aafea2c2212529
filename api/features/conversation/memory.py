"""In-process chat store.

Backs the ``memory`` storage backend and the test-suite. Writes can be made to
fail on demand to exercise recovery paths.
"""
from __future__ import annotations

from collections import Counter
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from api.features.conversation.exceptions import ProfileNotFoundError
from api.features.conversation.models import (
    ConversationModel,
    MessageModel,
    MessageRole,
    SourceModel,
)
from api.features.conversation.stores import ChatStore
from api.features.profiles.models import DocumentModel, ProfileModel
from api.features.system_prompts.models import SystemPromptModel
from api.shared.dtos import utc_now
from api.shared.exceptions import PersistenceFailure


class InMemoryChatStore(ChatStore):
    """Chat store holding everything in dictionaries."""

    def __init__(
        self,
        profiles: Iterable[ProfileModel] = (),
        system_prompts: Iterable[SystemPromptModel] = (),
        documents: Iterable[DocumentModel] = (),
    ):
        self._profiles: Dict[str, ProfileModel] = {p.id: p for p in profiles}
        self._system_prompts: List[SystemPromptModel] = list(system_prompts)
        self._documents: List[DocumentModel] = list(documents)
        self._conversations: List[ConversationModel] = []
        self._messages: Dict[str, List[MessageModel]] = {}
        self._pending_failures: Counter = Counter()
        self.write_calls: Counter = Counter()

    def fail_next(self, operation: str, times: int = 1) -> None:
        """Make the next ``times`` calls of a write operation raise ``PersistenceFailure``."""
        if operation not in ("create_conversation", "create_message"):
            raise ValueError(f"Unknown write operation: {operation}")
        self._pending_failures[operation] += times

    def _check_failure(self, operation: str) -> None:
        self.write_calls[operation] += 1
        if self._pending_failures[operation] > 0:
            self._pending_failures[operation] -= 1
            raise PersistenceFailure(
                f"Simulated write failure in {operation}", {"operation": operation}
            )

    def add_profile(self, profile: ProfileModel) -> ProfileModel:
        self._profiles[profile.id] = profile
        return profile

    def add_system_prompt(self, prompt: SystemPromptModel) -> SystemPromptModel:
        self._system_prompts.append(prompt)
        return prompt

    def add_document(self, document: DocumentModel) -> DocumentModel:
        self._documents.append(document)
        return document

    async def get_profile(self, profile_id: str) -> ProfileModel:
        profile = self._profiles.get(profile_id)
        if profile is None:
            raise ProfileNotFoundError(profile_id)
        count = sum(1 for d in self._documents if d.profile_id == profile_id)
        return profile.model_copy(update={"document_count": count})

    async def get_documents_by_profile(self, profile_id: str) -> List[DocumentModel]:
        return [d for d in self._documents if d.profile_id == profile_id]

    async def get_active_system_prompts(self) -> List[SystemPromptModel]:
        return [p for p in self._system_prompts if p.is_active]

    async def get_conversations_by_profile(self, profile_id: str) -> List[ConversationModel]:
        # Insertion order breaks created_at ties
        matching = [
            (index, c)
            for index, c in enumerate(self._conversations)
            if c.profile_id == profile_id
        ]
        matching.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [c for _, c in matching]

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationModel]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    async def get_messages_by_conversation(self, conversation_id: str) -> List[MessageModel]:
        return list(self._messages.get(conversation_id, []))

    async def create_conversation(
        self,
        profile_id: str,
        title: str,
        system_prompt_id: Optional[str],
        user_id: Optional[str] = None,
    ) -> ConversationModel:
        self._check_failure("create_conversation")
        if profile_id not in self._profiles:
            raise PersistenceFailure(
                "Cannot create conversation for unknown profile", {"profile_id": profile_id}
            )
        conversation = ConversationModel(
            id=str(uuid4()),
            profile_id=profile_id,
            title=title,
            system_prompt_id=system_prompt_id,
            user_id=user_id,
            created_at=utc_now(),
        )
        self._conversations.append(conversation)
        self._messages[conversation.id] = []
        return conversation

    async def create_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        system_prompt_id: Optional[str],
        sources: Sequence[SourceModel] = (),
    ) -> MessageModel:
        self._check_failure("create_message")
        if conversation_id not in self._messages:
            raise PersistenceFailure(
                "Cannot append to unknown conversation", {"conversation_id": conversation_id}
            )
        log = self._messages[conversation_id]
        message = MessageModel(
            id=str(uuid4()),
            conversation_id=conversation_id,
            role=MessageRole(role),
            content=content,
            created_at=utc_now(),
            sequence=len(log),
            system_prompt_id=system_prompt_id,
            sources=list(sources),
        )
        log.append(message)
        return message

    def seed_conversation(
        self,
        conversation: ConversationModel,
        messages: Iterable[MessageModel],
    ) -> None:
        self._conversations.append(conversation)
        self._messages[conversation.id] = [
            m.model_copy(update={"conversation_id": conversation.id, "sequence": index})
            for index, m in enumerate(messages)
        ]

    @classmethod
    def seeded(cls) -> "InMemoryChatStore":
        """Store pre-filled with demo profiles, prompts and one conversation."""
        profiles = [
            ProfileModel(
                id="1", name="Research Assistant",
                description="Academic research and analysis",
            ),
            ProfileModel(
                id="2", name="Technical Documentation",
                description="Software development and API docs",
            ),
            ProfileModel(
                id="3", name="Legal Analysis",
                description="Legal document review and analysis",
            ),
        ]
        prompts = [
            SystemPromptModel(
                id="1",
                name="General Assistant",
                description="Helpful, harmless, and honest responses for general queries",
                prompt_text=(
                    "You are a helpful AI assistant. Provide accurate, informative, and "
                    "well-structured responses based on the provided context. Be concise "
                    "yet comprehensive, and always cite your sources when referencing "
                    "specific documents."
                ),
            ),
            SystemPromptModel(
                id="2",
                name="Research Analyst",
                description="Academic and research-focused responses with citations",
                prompt_text=(
                    "You are a research analyst with expertise in academic writing and "
                    "analysis. Provide detailed, evidence-based analysis with proper "
                    "citations and academic rigor."
                ),
            ),
            SystemPromptModel(
                id="3",
                name="Technical Expert",
                description="Technical documentation and code assistance",
                prompt_text=(
                    "You are a technical expert specializing in software development and "
                    "system architecture. Provide precise, actionable technical guidance."
                ),
                is_active=False,
            ),
            SystemPromptModel(
                id="4",
                name="Legal Advisor",
                description="Legal document analysis and compliance guidance",
                prompt_text=(
                    "You are a legal advisor assistant. Analyze legal documents with "
                    "attention to compliance, risks, and regulatory requirements."
                ),
            ),
        ]
        documents = [
            DocumentModel(id=f"{profile_id}-{n}", profile_id=profile_id, filename=f"document-{n}.pdf")
            for profile_id, total in (("1", 15), ("2", 8), ("3", 23))
            for n in range(1, total + 1)
        ]
        store = cls(profiles=profiles, system_prompts=prompts, documents=documents)

        started = utc_now() - timedelta(hours=1)
        store.seed_conversation(
            ConversationModel(
                id=str(uuid4()),
                profile_id="1",
                title="What are the key principles of machine learning?",
                system_prompt_id="1",
                created_at=started,
            ),
            [
                MessageModel(
                    id=str(uuid4()),
                    role=MessageRole.USER,
                    content="What are the key principles of machine learning?",
                    created_at=started,
                    system_prompt_id="1",
                ),
                MessageModel(
                    id=str(uuid4()),
                    role=MessageRole.ASSISTANT,
                    content=(
                        "Machine learning is built on several fundamental principles:\n\n"
                        "**1. Data-Driven Learning**\nAlgorithms learn patterns from data "
                        "rather than being explicitly programmed.\n\n"
                        "**2. Generalization**\nModels should perform well on unseen data, "
                        "not just training data.\n\n"
                        "**3. Feature Engineering**\nSelecting and transforming relevant "
                        "features from raw data is crucial for model success.\n\n"
                        "**4. Iterative Improvement**\nML development cycles through data "
                        "collection, training, evaluation, and refinement."
                    ),
                    created_at=started + timedelta(seconds=10),
                    system_prompt_id="1",
                    sources=[
                        SourceModel(
                            id="1",
                            title="Introduction to Statistical Learning",
                            excerpt=(
                                "Statistical learning refers to a vast set of tools for "
                                "understanding data..."
                            ),
                            page=15,
                            confidence=0.92,
                        ),
                        SourceModel(
                            id="2",
                            title="Pattern Recognition and Machine Learning",
                            excerpt=(
                                "The goal of machine learning is to build computer systems "
                                "that can adapt and learn from their experience..."
                            ),
                            page=3,
                            confidence=0.88,
                        ),
                    ],
                ),
            ],
        )
        return store
