"""Models for the Conversation feature."""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from api.features.conversation.entities.conversation import (
    Conversation as ConversationEntity,
    Message as MessageEntity,
)
from api.shared.dtos import utc_now
from api.shared.exceptions import ChatServiceException, ErrorKind


class MessageRole(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    """Lifecycle of a message in the in-memory log."""

    SENT = "sent"
    PENDING = "pending"
    FAILED = "failed"


class SourceModel(BaseModel):
    """Cited excerpt attached to an assistant message."""

    id: str = Field(description="Source identifier, stable across re-indexing")
    title: str = Field(description="Document title")
    excerpt: str = Field(default="", description="Cited passage")
    page: int = Field(default=0, ge=0, description="Page number in the document")
    confidence: float = Field(ge=0.0, le=1.0, description="Calibration score")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value)


class ConversationModel(BaseModel):
    """Domain model for Conversation."""

    id: str = Field(description="Conversation identifier")
    profile_id: str = Field(description="Profile the conversation is bound to")
    title: str = Field(description="Conversation title")
    system_prompt_id: Optional[str] = Field(default=None, description="Originating system prompt")
    user_id: Optional[str] = Field(default=None, description="User who started it")
    created_at: datetime = Field(default_factory=utc_now)

    class Config:
        from_attributes = True
        frozen = True

    @classmethod
    def from_entity(cls, entity: ConversationEntity) -> "ConversationModel":
        """Create model from database entity."""
        return cls(
            id=entity.id,
            profile_id=entity.profile_id,
            title=entity.title,
            system_prompt_id=entity.system_prompt_id,
            user_id=entity.user_id,
            created_at=entity.created_at,
        )


class TurnError(BaseModel):
    """Failure attached to a message or returned from a rejected turn."""

    kind: ErrorKind
    code: str
    message: str
    retryable: bool = False
    message_id: Optional[str] = Field(default=None, description="Message to retry")

    @classmethod
    def from_exception(
        cls, exc: ChatServiceException, retryable: bool = False
    ) -> "TurnError":
        return cls(
            kind=exc.kind, code=exc.error_code, message=exc.message, retryable=retryable
        )


class MessageModel(BaseModel):
    """Domain model for Message.

    Messages read from storage are ``sent`` and ``persisted``. Messages created
    during a turn start with a local id and are reconciled once stored.
    """

    id: str = Field(description="Message identifier (server id or local id)")
    conversation_id: Optional[str] = Field(default=None)
    role: MessageRole
    content: str = Field(default="")
    created_at: datetime = Field(default_factory=utc_now)
    sequence: int = Field(default=0, ge=0, description="Position inside the conversation")
    system_prompt_id: Optional[str] = Field(default=None)
    sources: List[SourceModel] = Field(default_factory=list)
    status: MessageStatus = Field(default=MessageStatus.SENT)
    persisted: bool = Field(default=True)
    error: Optional[TurnError] = Field(default=None)

    class Config:
        from_attributes = True
        frozen = True

    @classmethod
    def from_entity(cls, entity: MessageEntity) -> "MessageModel":
        """Create model from database entity."""
        return cls(
            id=entity.id,
            conversation_id=entity.conversation_id,
            role=MessageRole(entity.role),
            content=entity.content,
            created_at=entity.created_at,
            sequence=entity.sequence,
            system_prompt_id=entity.system_prompt_id,
            sources=[SourceModel.model_validate(s) for s in (entity.sources or [])],
        )

    @property
    def is_placeholder(self) -> bool:
        """Assistant slot without a settled answer (pending or failed)."""
        return self.role == MessageRole.ASSISTANT and self.status != MessageStatus.SENT

    @property
    def is_settled(self) -> bool:
        return self.status == MessageStatus.SENT


class GeneratedAnswer(BaseModel):
    """Output of the answer generator."""

    content: str
    sources: List[SourceModel] = Field(default_factory=list)


class TurnResult(BaseModel):
    """Outcome of one turn execution. Not persisted."""

    user_message: Optional[MessageModel] = None
    assistant_message: Optional[MessageModel] = None
    error: Optional[TurnError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.assistant_message is not None

    @property
    def rejected(self) -> bool:
        return self.error is not None and self.error.kind == ErrorKind.VALIDATION
