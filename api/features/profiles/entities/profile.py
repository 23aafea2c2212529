"""Profile entities: a named document scope and the documents it holds."""
from typing import Optional

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from api.shared.entities.base import BaseEntity


class Profile(BaseEntity):
    """Document scope a conversation is bound to."""

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # NULL means the profile is visible to every authenticated user
    owner_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)


class ProfileDocument(BaseEntity):
    """Document registered under a profile (only counted by the chat service)."""

    __tablename__ = "profile_document"

    profile_id: Mapped[str] = mapped_column(
        ForeignKey("profile.id", ondelete="CASCADE"), nullable=False, index=True
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
