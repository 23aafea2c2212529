"""Profile repositories using base repository pattern."""
from typing import List

from api.features.profiles.entities.profile import Profile, ProfileDocument
from api.shared.base import BaseRepository


class ProfileRepository(BaseRepository[Profile]):
    """Repository for profile entities."""

    model = Profile


class ProfileDocumentRepository(BaseRepository[ProfileDocument]):
    """Repository for documents registered under a profile."""

    model = ProfileDocument

    async def get_by_profile(self, profile_id: str) -> List[ProfileDocument]:
        entities, _ = await self.list(
            offset=0, limit=10_000, order_by="created_at", profile_id=profile_id
        )
        return entities

    async def count_by_profile(self, profile_id: str) -> int:
        return await self.count(profile_id=profile_id)
