"""Caller identity as seen by the chat service.

Credentials are checked upstream; this module only answers "who is calling".
"""
from abc import ABC, abstractmethod
from typing import Mapping, Optional

from pydantic import BaseModel, Field


class UserModel(BaseModel):
    id: str = Field(description="User identifier")


class AuthProvider(ABC):
    """Source of the current user."""

    @abstractmethod
    async def get_current_user(self) -> Optional[UserModel]:
        """Return the current user, or None when nobody is signed in."""


class StaticAuthProvider(AuthProvider):
    """Provider with a fixed user, or no user at all."""

    def __init__(self, user_id: Optional[str]):
        self.user_id = user_id

    async def get_current_user(self) -> Optional[UserModel]:
        if not self.user_id:
            return None
        return UserModel(id=self.user_id)


class HeaderAuthProvider(StaticAuthProvider):
    """Reads the user id from a request header set by the gateway."""

    def __init__(
        self,
        headers: Mapping[str, str],
        header_name: str = "X-User-Id",
        default_user_id: Optional[str] = None,
    ):
        user_id = (headers.get(header_name) or "").strip() or default_user_id
        super().__init__(user_id)
