"""Models for the Profiles feature."""
from typing import Optional

from pydantic import BaseModel, Field

from api.features.profiles.entities.profile import (
    Profile as ProfileEntity,
    ProfileDocument as ProfileDocumentEntity,
)


class ProfileModel(BaseModel):
    """Domain model for Profile."""

    id: str = Field(description="Profile identifier")
    name: str = Field(description="Profile name")
    description: str = Field(default="", description="Profile description")
    document_count: int = Field(default=0, ge=0, description="Documents in the profile")
    owner_id: Optional[str] = Field(default=None, description="Owning user, if restricted")

    class Config:
        from_attributes = True

    @classmethod
    def from_entity(cls, entity: ProfileEntity, document_count: int = 0) -> "ProfileModel":
        """Create model from database entity."""
        return cls(
            id=entity.id,
            name=entity.name,
            description=entity.description or "",
            document_count=document_count,
            owner_id=entity.owner_id,
        )

    def is_accessible_to(self, user_id: str) -> bool:
        return self.owner_id is None or self.owner_id == user_id


class DocumentModel(BaseModel):
    """Document registered under a profile."""

    id: str = Field(description="Document identifier")
    profile_id: str = Field(description="Owning profile")
    filename: str = Field(description="Stored filename")

    @classmethod
    def from_entity(cls, entity: ProfileDocumentEntity) -> "DocumentModel":
        return cls(id=entity.id, profile_id=entity.profile_id, filename=entity.filename)
