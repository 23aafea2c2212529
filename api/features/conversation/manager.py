"""Conversation lifecycle: profile resolution, resume, prompt selection, creation."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import structlog
from pydantic import BaseModel, Field

from api.features.conversation.exceptions import (
    ConversationNotFoundError,
    InactiveSystemPromptError,
    NoActiveSystemPromptError,
    ProfileMismatchError,
    ProfileNotFoundError,
    ProfileUnboundError,
    SystemPromptNotFoundError,
)
from api.features.conversation.message_log import MessageLog
from api.features.conversation.models import ConversationModel, MessageModel
from api.features.conversation.stores import ChatStore
from api.features.profiles.models import ProfileModel
from api.features.system_prompts.models import SystemPromptModel
from api.shared.auth import UserModel
from api.shared.exceptions import UnauthenticatedError
from api.shared.utils import truncate_text

logger = structlog.get_logger("rag.conversation.manager")


class SystemPromptSelection(BaseModel):
    """Active prompts on offer and the one chosen for new turns.

    Transitions return a new selection; nothing is persisted.
    """

    available: List[SystemPromptModel] = Field(default_factory=list)
    selected: Optional[SystemPromptModel] = None

    class Config:
        frozen = True

    @classmethod
    def from_prompts(
        cls, prompts: List[SystemPromptModel], preferred_id: Optional[str] = None
    ) -> "SystemPromptSelection":
        """Keep active prompts and auto-select ``preferred_id`` or the first one."""
        active = [p for p in prompts if p.is_active]
        selected = next((p for p in active if p.id == preferred_id), None)
        if selected is None and active:
            selected = active[0]
        return cls(available=active, selected=selected)

    @property
    def blocked(self) -> bool:
        """No prompt can be bound, so nothing can be sent."""
        return self.selected is None

    def select(self, prompt: SystemPromptModel) -> "SystemPromptSelection":
        if not prompt.is_active:
            raise InactiveSystemPromptError(prompt.id)
        match = next((p for p in self.available if p.id == prompt.id), None)
        if match is None:
            raise SystemPromptNotFoundError(prompt.id)
        return SystemPromptSelection(available=self.available, selected=match)

    def select_id(self, prompt_id: str) -> "SystemPromptSelection":
        match = next((p for p in self.available if p.id == str(prompt_id)), None)
        if match is None:
            raise SystemPromptNotFoundError(str(prompt_id))
        return self.select(match)


class ResumeResult(BaseModel):
    """Conversation to continue, if any, with its full history."""

    conversation: Optional[ConversationModel] = None
    messages: List[MessageModel] = Field(default_factory=list)


@dataclass
class ChatContext:
    """Everything a turn needs, passed explicitly instead of held as UI state."""

    user: Optional[UserModel]
    profile: Optional[ProfileModel]
    selection: SystemPromptSelection
    conversation: Optional[ConversationModel] = None
    log: MessageLog = field(default_factory=MessageLog)
    turn_in_flight: bool = False
    closed: bool = False

    @property
    def system_prompt(self) -> Optional[SystemPromptModel]:
        return self.selection.selected

    @property
    def conversation_id(self) -> Optional[str]:
        return self.conversation.id if self.conversation else None

    @property
    def can_send(self) -> bool:
        return (
            self.profile is not None
            and self.system_prompt is not None
            and not self.turn_in_flight
            and not self.closed
        )


class ConversationManager:
    """Owns conversation creation and selection for a profile."""

    def __init__(
        self,
        store: ChatStore,
        title_max_length: int = 50,
        title_suffix: str = "...",
    ):
        self.store = store
        self.title_max_length = title_max_length
        self.title_suffix = title_suffix

    async def resolve_profile(
        self, profile_id: str, user: Optional[UserModel]
    ) -> ProfileModel:
        """Load the profile for ``user``; hidden profiles read as missing."""
        if user is None:
            raise UnauthenticatedError()
        profile = await self.store.get_profile(profile_id)
        if not profile.is_accessible_to(user.id):
            logger.info("profile_access_denied", profile_id=profile_id, user_id=user.id)
            raise ProfileNotFoundError(profile_id)
        documents = await self.store.get_documents_by_profile(profile.id)
        return profile.model_copy(update={"document_count": len(documents)})

    async def list_conversations(self, profile_id: str) -> List[ConversationModel]:
        conversations = await self.store.get_conversations_by_profile(profile_id)
        return [c for c in conversations if c.profile_id == profile_id]

    async def load_messages(self, conversation: ConversationModel) -> List[MessageModel]:
        messages = await self.store.get_messages_by_conversation(conversation.id)
        ordered = sorted(messages, key=lambda m: m.sequence)
        violations = MessageLog(conversation.id, ordered).ordering_violations()
        if violations:
            logger.warning(
                "conversation_ordering_violation",
                conversation_id=conversation.id,
                message_ids=violations,
            )
        return ordered

    async def resume_or_start(self, profile_id: str) -> ResumeResult:
        """Most recent conversation of the profile, or nothing.

        Never creates a conversation; that happens on the first sent turn.
        """
        conversations = await self.list_conversations(profile_id)
        if not conversations:
            return ResumeResult()
        latest = conversations[0]
        return ResumeResult(conversation=latest, messages=await self.load_messages(latest))

    async def open_conversation(self, profile_id: str, conversation_id: str) -> ResumeResult:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None or conversation.profile_id != profile_id:
            raise ConversationNotFoundError(conversation_id)
        return ResumeResult(
            conversation=conversation, messages=await self.load_messages(conversation)
        )

    async def load_system_prompts(
        self, preferred_id: Optional[str] = None
    ) -> SystemPromptSelection:
        prompts = await self.store.get_active_system_prompts()
        selection = SystemPromptSelection.from_prompts(prompts, preferred_id)
        if selection.blocked:
            logger.warning("no_active_system_prompt")
        return selection

    @staticmethod
    def select_system_prompt(
        selection: SystemPromptSelection, prompt: SystemPromptModel
    ) -> SystemPromptSelection:
        return selection.select(prompt)

    def bind(
        self,
        user: Optional[UserModel],
        profile: ProfileModel,
        selection: SystemPromptSelection,
        resumed: ResumeResult,
    ) -> ChatContext:
        if resumed.conversation and resumed.conversation.profile_id != profile.id:
            raise ProfileMismatchError(resumed.conversation.id, profile.id)
        return ChatContext(
            user=user,
            profile=profile,
            selection=selection,
            conversation=resumed.conversation,
            log=MessageLog(resumed.conversation.id if resumed.conversation else None,
                           resumed.messages),
        )

    def make_title(self, query: str) -> str:
        return truncate_text(query.strip(), self.title_max_length, self.title_suffix)

    async def ensure_conversation(self, context: ChatContext, query: str) -> ConversationModel:
        """Return the bound conversation, creating it for the first turn.

        Raises ``PersistenceFailure`` when creation fails; the context is left
        untouched in that case.
        """
        if context.conversation is not None:
            return context.conversation
        if context.profile is None:
            raise ProfileUnboundError()
        if context.system_prompt is None:
            raise NoActiveSystemPromptError()

        conversation = await self.store.create_conversation(
            context.profile.id,
            self.make_title(query),
            context.system_prompt.id,
            context.user.id if context.user else None,
        )
        if conversation.profile_id != context.profile.id:
            raise ProfileMismatchError(conversation.id, context.profile.id)
        context.conversation = conversation
        context.log.bind(conversation.id)
        logger.info(
            "conversation_created",
            conversation_id=conversation.id,
            profile_id=conversation.profile_id,
            system_prompt_id=conversation.system_prompt_id,
        )
        return conversation
