"""Chat session: launch parameter -> profile -> prompts -> resumed conversation."""
from __future__ import annotations

from enum import Enum
from typing import List, Optional
from urllib.parse import parse_qs

import structlog
from pydantic import BaseModel, Field

from api.features.conversation.exceptions import (
    ProfileNotSpecifiedError,
    SessionClosedError,
    SessionNotReadyError,
    TurnInFlightError,
)
from api.features.conversation.executor import TurnExecutor
from api.features.conversation.manager import ChatContext, ConversationManager
from api.features.conversation.message_log import MessageLog
from api.features.conversation.models import (
    ConversationModel,
    MessageModel,
    TurnError,
    TurnResult,
)
from api.features.conversation.sources import SourceEntry, SourceRegistry, SourceSummary
from api.features.profiles.models import ProfileModel
from api.features.system_prompts.models import SystemPromptModel
from api.shared.auth import AuthProvider
from api.shared.exceptions import (
    ChatServiceException,
    ErrorKind,
    UnauthenticatedError,
    ValidationError,
)

logger = structlog.get_logger("rag.conversation.session")


class SessionState(str, Enum):
    LOADING = "loading"
    ERROR = "error"
    READY = "ready"


class SessionError(BaseModel):
    """Why a session ended up in the error state."""

    kind: ErrorKind
    code: str
    message: str


class SessionView(BaseModel):
    """Point-in-time snapshot of a session."""

    state: SessionState
    error: Optional[SessionError] = None
    profile: Optional[ProfileModel] = None
    system_prompts: List[SystemPromptModel] = Field(default_factory=list)
    selected_system_prompt: Optional[SystemPromptModel] = None
    conversation: Optional[ConversationModel] = None
    messages: List[MessageModel] = Field(default_factory=list)
    sources: List[SourceEntry] = Field(default_factory=list)
    source_summary: SourceSummary = Field(default_factory=SourceSummary)
    can_send: bool = False
    blocked_reason: Optional[str] = None


def profile_id_from_query(query_string: str, parameter: str = "profile") -> Optional[str]:
    """First non-blank value of ``parameter`` in a URL query string."""
    values = parse_qs(query_string.lstrip("?"), keep_blank_values=True).get(parameter, [])
    for value in values:
        if value.strip():
            return value.strip()
    return None


class SessionController:
    """One user's view of the chat for one profile.

    ``open`` resolves, in order, the user, the profile, the active system
    prompts and the conversation to resume. The session is ``ready`` only
    once all of them are loaded; any failure leaves it in ``error``.
    """

    def __init__(
        self,
        manager: ConversationManager,
        executor: TurnExecutor,
        auth: AuthProvider,
        profile_query_param: str = "profile",
    ):
        self.manager = manager
        self.executor = executor
        self.auth = auth
        self.profile_query_param = profile_query_param
        self.state = SessionState.LOADING
        self.error: Optional[SessionError] = None
        self.context: Optional[ChatContext] = None
        self.closed = False

    async def open_from_query(self, query_string: str) -> SessionState:
        return await self.open(profile_id_from_query(query_string, self.profile_query_param))

    async def open(self, profile_id: Optional[str]) -> SessionState:
        if self.closed:
            raise SessionClosedError()
        self.state = SessionState.LOADING
        self.error = None
        self.context = None
        try:
            user = await self.auth.get_current_user()
            if user is None:
                raise UnauthenticatedError()
            if not profile_id:
                raise ProfileNotSpecifiedError(self.profile_query_param)
            profile = await self.manager.resolve_profile(profile_id, user)
            selection = await self.manager.load_system_prompts()
            resumed = await self.manager.resume_or_start(profile.id)
            context = self.manager.bind(user, profile, selection, resumed)
        except ChatServiceException as e:
            self.state = SessionState.ERROR
            self.error = SessionError(kind=e.kind, code=e.error_code, message=e.message)
            logger.info("session_error", code=e.error_code, profile_id=profile_id)
            return self.state

        if self.closed:
            return self.state
        self.context = context
        self.state = SessionState.READY
        logger.info(
            "session_ready",
            profile_id=context.profile.id,
            conversation_id=context.conversation_id,
            message_count=len(context.log),
            system_prompt_id=context.system_prompt.id if context.system_prompt else None,
        )
        return self.state

    def _ready_context(self) -> ChatContext:
        if self.closed:
            raise SessionClosedError()
        if self.state != SessionState.READY or self.context is None:
            raise SessionNotReadyError(self.state.value)
        return self.context

    @property
    def busy(self) -> bool:
        """A turn of this session is still running."""
        return self.context is not None and self.context.turn_in_flight

    @property
    def can_send(self) -> bool:
        return self.blocked_reason is None

    @property
    def blocked_reason(self) -> Optional[str]:
        """Error code explaining why sending is disabled, None when it is enabled."""
        try:
            self.executor.check_ready(self._ready_context())
        except ValidationError as e:
            return e.error_code
        return None

    @property
    def system_prompts(self) -> List[SystemPromptModel]:
        return list(self.context.selection.available) if self.context else []

    @property
    def selected_system_prompt(self) -> Optional[SystemPromptModel]:
        return self.context.system_prompt if self.context else None

    @property
    def conversation(self) -> Optional[ConversationModel]:
        return self.context.conversation if self.context else None

    @property
    def messages(self) -> List[MessageModel]:
        return self.context.log.messages if self.context else []

    def select_system_prompt(self, prompt_id: str) -> SystemPromptModel:
        """Choose the prompt used for the next turns of this session."""
        context = self._ready_context()
        context.selection = context.selection.select_id(prompt_id)
        logger.info("system_prompt_selected", system_prompt_id=context.system_prompt.id)
        return context.system_prompt

    async def refresh_system_prompts(self) -> List[SystemPromptModel]:
        """Reload active prompts, keeping the current choice while it stays active."""
        context = self._ready_context()
        current = context.system_prompt.id if context.system_prompt else None
        context.selection = await self.manager.load_system_prompts(preferred_id=current)
        return list(context.selection.available)

    async def send_message(self, query: str) -> TurnResult:
        try:
            context = self._ready_context()
        except ValidationError as e:
            return TurnResult(error=TurnError.from_exception(e))
        return await self.executor.send_message(context, query)

    async def retry(self, message_id: str) -> TurnResult:
        try:
            context = self._ready_context()
        except ValidationError as e:
            return TurnResult(error=TurnError.from_exception(e))
        return await self.executor.retry(context, message_id)

    def start_new_conversation(self) -> None:
        """Unbind the conversation; the next sent turn creates a new one."""
        context = self._ready_context()
        if context.turn_in_flight:
            raise TurnInFlightError(context.conversation_id)
        self.executor.abandon(context)
        context.conversation = None
        context.log = MessageLog()

    async def switch_conversation(self, conversation_id: str) -> ConversationModel:
        context = self._ready_context()
        if context.turn_in_flight:
            raise TurnInFlightError(context.conversation_id)
        resumed = await self.manager.open_conversation(context.profile.id, conversation_id)
        if context.turn_in_flight:
            raise TurnInFlightError(context.conversation_id)
        self.executor.abandon(context)
        context.conversation = resumed.conversation
        context.log = MessageLog(resumed.conversation.id, resumed.messages)
        return resumed.conversation

    def sources(self) -> SourceRegistry:
        if self.context is None:
            return SourceRegistry()
        return self.context.log.source_registry()

    def close(self) -> None:
        """Tear the session down; turns still running resolve as no-ops."""
        self.closed = True
        if self.context is not None:
            self.executor.abandon(self.context)
            self.context.closed = True
        logger.info("session_closed")

    def view(self) -> SessionView:
        registry = self.sources()
        context = self.context
        return SessionView(
            state=self.state,
            error=self.error,
            profile=context.profile if context else None,
            system_prompts=self.system_prompts,
            selected_system_prompt=self.selected_system_prompt,
            conversation=self.conversation,
            messages=self.messages,
            sources=registry.entries,
            source_summary=registry.summary(),
            can_send=self.can_send,
            blocked_reason=self.blocked_reason,
        )
