"""System prompt repository."""
from typing import List

from api.features.system_prompts.entities.system_prompt import SystemPrompt
from api.shared.base import BaseRepository


class SystemPromptRepository(BaseRepository[SystemPrompt]):
    """Repository for system prompt entities."""

    model = SystemPrompt

    async def get_active(self) -> List[SystemPrompt]:
        entities, _ = await self.list(
            offset=0, limit=1000, order_by="created_at", is_active=True
        )
        return entities
