"""DTOs for the Conversation feature."""
from typing import List, Optional

from pydantic import Field, field_validator

from api.features.conversation.models import ConversationModel, MessageModel, TurnError
from api.features.conversation.session import SessionView
from api.features.conversation.sources import SourceEntry, SourceSummary
from api.shared.dtos import BaseDTO


class SelectSystemPromptRequest(BaseDTO):
    """Choose the system prompt for the next turns."""

    prompt_id: str = Field(description="Active system prompt identifier")

    @field_validator("prompt_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value)


class SendMessageRequest(BaseDTO):
    """Send a user query."""

    query: str = Field(description="User query; must not be blank")


class SwitchConversationRequest(BaseDTO):
    """Load another conversation of the session's profile."""

    conversation_id: str = Field(description="Conversation identifier")


class SessionDTO(BaseDTO):
    """Session identifier plus its current view."""

    session_id: Optional[str] = Field(
        default=None, description="Identifier for follow-up calls; absent on error"
    )
    view: SessionView = Field(description="Session snapshot")


class TurnResultDTO(BaseDTO):
    """Outcome of a sent or retried turn."""

    user_message: Optional[MessageModel] = Field(default=None)
    assistant_message: Optional[MessageModel] = Field(default=None)
    error: Optional[TurnError] = Field(default=None)
    can_send: bool = Field(description="Whether the session accepts a new turn")


class SourcesResponse(BaseDTO):
    """Distinct sources of the bound conversation."""

    items: List[SourceEntry] = Field(description="Sources in first-cited order")
    summary: SourceSummary = Field(description="Aggregates over the sources")


class ConversationListResponse(BaseDTO):
    """Conversations of a profile, most recent first."""

    items: List[ConversationModel] = Field(description="Conversations")
    total: int = Field(description="Number of conversations")
