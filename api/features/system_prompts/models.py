"""Models for the System prompts feature."""
from pydantic import BaseModel, Field

from api.features.system_prompts.entities.system_prompt import (
    SystemPrompt as SystemPromptEntity,
)


class SystemPromptModel(BaseModel):
    """Domain model for SystemPrompt."""

    id: str = Field(description="System prompt identifier")
    name: str = Field(description="Display name")
    description: str = Field(default="", description="Short description")
    prompt_text: str = Field(description="Instruction text sent to the generator")
    is_active: bool = Field(default=True, description="Selectable for new conversations")

    class Config:
        from_attributes = True

    @classmethod
    def from_entity(cls, entity: SystemPromptEntity) -> "SystemPromptModel":
        """Create model from database entity."""
        return cls(
            id=entity.id,
            name=entity.name,
            description=entity.description or "",
            prompt_text=entity.prompt_text,
            is_active=entity.is_active,
        )
