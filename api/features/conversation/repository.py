"""Repositories for conversation persistence and the SQL-backed chat store."""
from __future__ import annotations

from typing import List, Optional, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from api.features.conversation.entities.conversation import Conversation, Message
from api.features.conversation.exceptions import ProfileNotFoundError
from api.features.conversation.models import (
    ConversationModel,
    MessageModel,
    MessageRole,
    SourceModel,
)
from api.features.conversation.stores import ChatStore
from api.features.profiles.models import DocumentModel, ProfileModel
from api.features.profiles.repository import (
    ProfileDocumentRepository,
    ProfileRepository,
)
from api.features.system_prompts.models import SystemPromptModel
from api.features.system_prompts.repository import SystemPromptRepository
from api.shared.base import BaseRepository
from api.shared.exceptions import PersistenceFailure
from api.shared.utils import is_valid_uuid
from infra.resources import DatabaseResource

logger = structlog.get_logger("rag.conversation.repository")


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for conversation entities."""

    model = Conversation

    async def get_by_profile(self, profile_id: str, limit: int = 200) -> List[Conversation]:
        entities, _ = await self.list(
            offset=0, limit=limit, order_by="-created_at,-id", profile_id=profile_id
        )
        return entities


class MessageRepository(BaseRepository[Message]):
    """Repository for message entities."""

    model = Message

    async def get_by_conversation(self, conversation_id: str) -> List[Message]:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.sequence.asc(), Message.created_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def next_sequence(self, conversation_id: str) -> int:
        stmt = select(func.max(Message.sequence)).where(
            Message.conversation_id == conversation_id
        )
        result = await self.session.execute(stmt)
        current = result.scalar()
        return 0 if current is None else int(current) + 1


class SqlChatStore(ChatStore):
    """Chat store on PostgreSQL; one short-lived session per operation."""

    def __init__(self, database: DatabaseResource):
        self.database = database

    async def get_profile(self, profile_id: str) -> ProfileModel:
        if not is_valid_uuid(profile_id):
            raise ProfileNotFoundError(profile_id)
        try:
            async with self.database.session_scope() as session:
                entity = await ProfileRepository(session).get_by_id(profile_id)
                if entity is None:
                    raise ProfileNotFoundError(profile_id)
                count = await ProfileDocumentRepository(session).count_by_profile(profile_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to load profile: {e}", {"profile_id": profile_id})
        return ProfileModel.from_entity(entity, document_count=count)

    async def get_documents_by_profile(self, profile_id: str) -> List[DocumentModel]:
        try:
            async with self.database.session_scope() as session:
                entities = await ProfileDocumentRepository(session).get_by_profile(profile_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to load documents: {e}", {"profile_id": profile_id})
        return [DocumentModel.from_entity(e) for e in entities]

    async def get_active_system_prompts(self) -> List[SystemPromptModel]:
        try:
            async with self.database.session_scope() as session:
                entities = await SystemPromptRepository(session).get_active()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to load system prompts: {e}")
        return [SystemPromptModel.from_entity(e) for e in entities]

    async def get_conversations_by_profile(self, profile_id: str) -> List[ConversationModel]:
        try:
            async with self.database.session_scope() as session:
                entities = await ConversationRepository(session).get_by_profile(profile_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(
                f"Failed to list conversations: {e}", {"profile_id": profile_id}
            )
        return [ConversationModel.from_entity(e) for e in entities]

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationModel]:
        if not is_valid_uuid(conversation_id):
            return None
        try:
            async with self.database.session_scope() as session:
                entity = await ConversationRepository(session).get_by_id(conversation_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(
                f"Failed to load conversation: {e}", {"conversation_id": conversation_id}
            )
        return ConversationModel.from_entity(entity) if entity else None

    async def get_messages_by_conversation(self, conversation_id: str) -> List[MessageModel]:
        try:
            async with self.database.session_scope() as session:
                entities = await MessageRepository(session).get_by_conversation(conversation_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(
                f"Failed to load messages: {e}", {"conversation_id": conversation_id}
            )
        return [MessageModel.from_entity(e) for e in entities]

    async def create_conversation(
        self,
        profile_id: str,
        title: str,
        system_prompt_id: Optional[str],
        user_id: Optional[str] = None,
    ) -> ConversationModel:
        try:
            async with self.database.session_scope(write=True) as session:
                entity = await ConversationRepository(session).create(
                    Conversation(
                        profile_id=profile_id,
                        title=title,
                        system_prompt_id=system_prompt_id,
                        user_id=user_id,
                    )
                )
        except SQLAlchemyError as e:
            logger.error("conversation_insert_failed", profile_id=profile_id, error=str(e))
            raise PersistenceFailure(
                f"Failed to create conversation: {e}", {"profile_id": profile_id}
            )
        return ConversationModel.from_entity(entity)

    async def create_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        system_prompt_id: Optional[str],
        sources: Sequence[SourceModel] = (),
    ) -> MessageModel:
        try:
            async with self.database.session_scope(write=True) as session:
                repository = MessageRepository(session)
                sequence = await repository.next_sequence(conversation_id)
                entity = await repository.create(
                    Message(
                        conversation_id=conversation_id,
                        sequence=sequence,
                        role=MessageRole(role).value,
                        content=content,
                        system_prompt_id=system_prompt_id,
                        sources=[s.model_dump() for s in sources],
                    )
                )
        except SQLAlchemyError as e:
            logger.error(
                "message_insert_failed", conversation_id=conversation_id, error=str(e)
            )
            raise PersistenceFailure(
                f"Failed to store message: {e}", {"conversation_id": conversation_id}
            )
        return MessageModel.from_entity(entity)
