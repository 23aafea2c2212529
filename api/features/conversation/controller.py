"""Controller for the Conversation feature."""
import logging
from typing import Callable, Mapping, Optional

from api.features.conversation.dtos import (
    ConversationListResponse,
    SessionDTO,
    SourcesResponse,
    TurnResultDTO,
)
from api.features.conversation.exceptions import TurnRejectedError
from api.features.conversation.manager import ConversationManager
from api.features.conversation.models import TurnResult
from api.features.conversation.session import SessionController, SessionState
from api.features.conversation.session_registry import SessionRegistry
from api.shared.auth import AuthProvider, HeaderAuthProvider

logger = logging.getLogger("rag.conversation.controller")


class ConversationController:
    """Maps HTTP calls onto chat sessions owned by the calling user."""

    def __init__(
        self,
        manager: ConversationManager,
        session_registry: SessionRegistry,
        session_factory: Callable[..., SessionController],
        user_header: str = "X-User-Id",
        default_user_id: Optional[str] = None,
    ):
        self.manager = manager
        self.session_registry = session_registry
        self.session_factory = session_factory
        self.user_header = user_header
        self.default_user_id = default_user_id

    def auth_for(self, headers: Mapping[str, str]) -> AuthProvider:
        return HeaderAuthProvider(headers, self.user_header, self.default_user_id)

    async def _user_id(self, headers: Mapping[str, str]) -> Optional[str]:
        user = await self.auth_for(headers).get_current_user()
        return user.id if user else None

    async def _session(self, session_id: str, headers: Mapping[str, str]) -> SessionController:
        return self.session_registry.get(session_id, await self._user_id(headers))

    async def open_session(
        self, profile_id: Optional[str], headers: Mapping[str, str]
    ) -> SessionDTO:
        auth = self.auth_for(headers)
        session = self.session_factory(auth=auth)
        state = await session.open(profile_id)
        if state != SessionState.READY:
            logger.info("Session for profile %s not opened: %s", profile_id, session.error.code)
            return SessionDTO(view=session.view())

        user = await auth.get_current_user()
        session_id = self.session_registry.add(session, user.id)
        return SessionDTO(session_id=session_id, view=session.view())

    async def get_session(self, session_id: str, headers: Mapping[str, str]) -> SessionDTO:
        session = await self._session(session_id, headers)
        return SessionDTO(session_id=session_id, view=session.view())

    async def close_session(self, session_id: str, headers: Mapping[str, str]) -> None:
        self.session_registry.remove(session_id, await self._user_id(headers))

    async def select_system_prompt(
        self, session_id: str, prompt_id: str, headers: Mapping[str, str]
    ) -> SessionDTO:
        session = await self._session(session_id, headers)
        session.select_system_prompt(prompt_id)
        return SessionDTO(session_id=session_id, view=session.view())

    async def send_message(
        self, session_id: str, query: str, headers: Mapping[str, str]
    ) -> TurnResultDTO:
        session = await self._session(session_id, headers)
        result = await session.send_message(query)
        return self._turn_result(session, result)

    async def retry(
        self, session_id: str, message_id: str, headers: Mapping[str, str]
    ) -> TurnResultDTO:
        session = await self._session(session_id, headers)
        result = await session.retry(message_id)
        return self._turn_result(session, result)

    async def start_new_conversation(
        self, session_id: str, headers: Mapping[str, str]
    ) -> SessionDTO:
        session = await self._session(session_id, headers)
        session.start_new_conversation()
        return SessionDTO(session_id=session_id, view=session.view())

    async def switch_conversation(
        self, session_id: str, conversation_id: str, headers: Mapping[str, str]
    ) -> SessionDTO:
        session = await self._session(session_id, headers)
        await session.switch_conversation(conversation_id)
        return SessionDTO(session_id=session_id, view=session.view())

    async def get_sources(self, session_id: str, headers: Mapping[str, str]) -> SourcesResponse:
        session = await self._session(session_id, headers)
        registry = session.sources()
        return SourcesResponse(items=registry.entries, summary=registry.summary())

    async def list_conversations(
        self, profile_id: str, headers: Mapping[str, str]
    ) -> ConversationListResponse:
        user = await self.auth_for(headers).get_current_user()
        profile = await self.manager.resolve_profile(profile_id, user)
        items = await self.manager.list_conversations(profile.id)
        return ConversationListResponse(items=items, total=len(items))

    @staticmethod
    def _turn_result(session: SessionController, result: TurnResult) -> TurnResultDTO:
        if result.rejected:
            details = {"message_id": result.error.message_id} if result.error.message_id else None
            raise TurnRejectedError(result.error.code, result.error.message, details)
        return TurnResultDTO(
            user_message=result.user_message,
            assistant_message=result.assistant_message,
            error=result.error,
            can_send=session.can_send,
        )
