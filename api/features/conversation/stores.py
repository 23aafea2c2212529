"""Persistence contracts consumed by the conversation core.

``ChatStore`` bundles every collaborator the core reads from or writes to, so
one object can be injected. Implementations: ``SqlChatStore`` (PostgreSQL) and
``InMemoryChatStore`` (tests, local runs).
"""
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from api.features.conversation.models import (
    ConversationModel,
    MessageModel,
    MessageRole,
    SourceModel,
)
from api.features.profiles.models import DocumentModel, ProfileModel
from api.features.system_prompts.models import SystemPromptModel


class ProfileStore(ABC):
    @abstractmethod
    async def get_profile(self, profile_id: str) -> ProfileModel:
        """Return the profile or raise ``ProfileNotFoundError``."""


class DocumentStore(ABC):
    @abstractmethod
    async def get_documents_by_profile(self, profile_id: str) -> List[DocumentModel]:
        """Documents registered under a profile."""


class SystemPromptStore(ABC):
    @abstractmethod
    async def get_active_system_prompts(self) -> List[SystemPromptModel]:
        """Active prompts in display order."""


class ConversationStore(ABC):
    @abstractmethod
    async def get_conversations_by_profile(self, profile_id: str) -> List[ConversationModel]:
        """Conversations of a profile, most recent first."""

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[ConversationModel]:
        """Single conversation or None."""

    @abstractmethod
    async def get_messages_by_conversation(self, conversation_id: str) -> List[MessageModel]:
        """Messages in creation order."""

    @abstractmethod
    async def create_conversation(
        self,
        profile_id: str,
        title: str,
        system_prompt_id: Optional[str],
        user_id: Optional[str] = None,
    ) -> ConversationModel:
        """Create a conversation; raises ``PersistenceFailure`` on write errors."""

    @abstractmethod
    async def create_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        system_prompt_id: Optional[str],
        sources: Sequence[SourceModel] = (),
    ) -> MessageModel:
        """Append a message; raises ``PersistenceFailure`` on write errors."""


class ChatStore(ProfileStore, DocumentStore, SystemPromptStore, ConversationStore):
    """Every persistence collaborator of the chat service."""
