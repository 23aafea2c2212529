"""Conversation and message entities."""
from typing import Any, Dict, List, Optional

from sqlalchemy import ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from api.shared.entities.base import BaseEntity


class Conversation(BaseEntity):
    """Thread bound to one profile and the system prompt it was started with."""

    profile_id: Mapped[str] = mapped_column(
        ForeignKey("profile.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    # Kept as a plain id: prompts may be edited or removed later
    system_prompt_id: Mapped[Optional[str]] = mapped_column(String(36))
    user_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)


class Message(BaseEntity):
    """One turn half. ``sequence`` orders messages inside a conversation."""

    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="uq_message_sequence"),
    )

    conversation_id: Mapped[str] = mapped_column(
        ForeignKey("conversation.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    system_prompt_id: Mapped[Optional[str]] = mapped_column(String(36))
    sources: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSONB)
