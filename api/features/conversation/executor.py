"""Turn execution: one user query and its answer, with failure recovery."""
from __future__ import annotations

import asyncio
from typing import Dict, Optional, Set, Tuple

import structlog

from api.features.conversation.exceptions import (
    EmptyQueryError,
    InvalidTurnOrderError,
    NoActiveSystemPromptError,
    ProfileUnboundError,
    RetryRejectedError,
    SessionClosedError,
    TurnInFlightError,
    UnresolvedTurnError,
)
from api.features.conversation.generator import AnswerGenerator
from api.features.conversation.manager import ChatContext, ConversationManager
from api.features.conversation.models import (
    GeneratedAnswer,
    MessageModel,
    MessageRole,
    MessageStatus,
    TurnError,
    TurnResult,
)
from api.shared.exceptions import (
    ErrorKind,
    GenerationFailure,
    PersistenceFailure,
    ValidationError,
)

logger = structlog.get_logger("rag.conversation.executor")


class TurnGuard:
    """Per-conversation turn state shared by every executor of the process.

    Sessions resuming the same conversation each hold their own context, so
    the in-flight flag and the unresolved failures are tracked here by
    conversation id. Only touched between awaits of a single event loop.
    """

    def __init__(self):
        self._running: Set[str] = set()
        self._failed: Dict[str, Set[str]] = {}

    def is_running(self, conversation_id: Optional[str]) -> bool:
        return conversation_id is not None and conversation_id in self._running

    def claim(self, conversation_id: Optional[str]) -> Optional[str]:
        if conversation_id is None:
            return None
        if conversation_id in self._running:
            raise TurnInFlightError(conversation_id)
        self._running.add(conversation_id)
        return conversation_id

    def release(self, conversation_id: Optional[str]) -> None:
        if conversation_id is not None:
            self._running.discard(conversation_id)

    def failed_message(self, conversation_id: Optional[str]) -> Optional[str]:
        ids = self._failed.get(conversation_id) if conversation_id else None
        return min(ids) if ids else None

    def mark_failed(self, conversation_id: Optional[str], message_id: str) -> None:
        if conversation_id is not None:
            self._failed.setdefault(conversation_id, set()).add(message_id)

    def resolve(self, conversation_id: Optional[str], message_id: str) -> None:
        ids = self._failed.get(conversation_id) if conversation_id else None
        if ids is None:
            return
        ids.discard(message_id)
        if not ids:
            del self._failed[conversation_id]


class TurnExecutor:
    """Runs turns against a ``ChatContext``.

    A turn appends the user message and a pending assistant placeholder right
    away, calls the generator, then stores both messages. Failures are
    recorded on the placeholder:

    - generation failure: placeholder ``failed`` with kind ``generation``;
      retry generates again from the preceding user message.
    - persistence failure: placeholder ``failed`` with kind ``persistence``;
      the generated answer is kept and retry only stores it.

    Only one turn may run per conversation, across every executor sharing the
    ``guard``. New sends are also rejected while the conversation has a
    failed answer, so the retried answer is stored right after its question.
    """

    def __init__(
        self,
        manager: ConversationManager,
        generator: AnswerGenerator,
        generation_timeout: Optional[float] = 60.0,
        history_window: int = 20,
        guard: Optional[TurnGuard] = None,
    ):
        self.manager = manager
        self.generator = generator
        self.generation_timeout = generation_timeout
        self.history_window = history_window
        self.guard = guard or TurnGuard()
        # Answers generated but not stored yet, keyed by placeholder id
        self._drafts: Dict[str, GeneratedAnswer] = {}

    def check_ready(
        self, context: ChatContext, query: Optional[str] = None, retrying: bool = False
    ) -> None:
        """Raise the ``ValidationError`` that blocks a send, if any."""
        if context.closed:
            raise SessionClosedError()
        if query is not None and not query.strip():
            raise EmptyQueryError()
        if context.turn_in_flight or self.guard.is_running(context.conversation_id):
            raise TurnInFlightError(context.conversation_id)
        if context.profile is None:
            raise ProfileUnboundError()
        if context.system_prompt is None:
            raise NoActiveSystemPromptError()
        if not retrying:
            failed = context.log.failed_placeholder()
            failed_id = failed.id if failed else self.guard.failed_message(context.conversation_id)
            if failed_id is not None:
                raise UnresolvedTurnError(context.conversation_id, failed_id)

    def abandon(self, context: ChatContext) -> None:
        """Forget drafts and failures of a conversation the session is leaving."""
        for message in context.log.placeholders():
            self._drafts.pop(message.id, None)
            self.guard.resolve(context.conversation_id, message.id)

    def _reject(self, context: ChatContext, error: ValidationError) -> TurnResult:
        logger.info(
            "turn_rejected",
            code=error.error_code,
            conversation_id=context.conversation_id,
        )
        result = TurnError.from_exception(error)
        if isinstance(error, UnresolvedTurnError):
            result = result.model_copy(update={"message_id": error.details["message_id"]})
        return TurnResult(error=result)

    async def send_message(self, context: ChatContext, query: str) -> TurnResult:
        try:
            self.check_ready(context, query)
        except ValidationError as e:
            return self._reject(context, e)

        context.turn_in_flight = True
        claimed = self.guard.claim(context.conversation_id)
        try:
            try:
                await self.manager.ensure_conversation(context, query)
            except PersistenceFailure as e:
                logger.error(
                    "conversation_create_failed",
                    profile_id=context.profile.id,
                    error=e.message,
                )
                return TurnResult(error=TurnError.from_exception(e))
            if claimed is None:
                # Freshly created, nobody else can hold it yet
                claimed = self.guard.claim(context.conversation_id)

            prompt_id = context.system_prompt.id
            user = context.log.append(
                MessageRole.USER, query, system_prompt_id=prompt_id
            )
            placeholder = context.log.append(
                MessageRole.ASSISTANT,
                status=MessageStatus.PENDING,
                system_prompt_id=prompt_id,
            )
            logger.info(
                "turn_started",
                conversation_id=context.conversation_id,
                user_message_id=user.id,
            )
            return await self._run_turn(context, user.id, placeholder.id, query)
        finally:
            context.turn_in_flight = False
            self.guard.release(claimed)

    async def retry(self, context: ChatContext, message_id: str) -> TurnResult:
        """Re-run the turn whose answer ``message_id`` failed.

        Raises ``MessageNotFoundError`` for unknown ids and
        ``InvalidTurnOrderError`` when the failed answer does not directly
        follow a user message.
        """
        try:
            self.check_ready(context, retrying=True)
        except ValidationError as e:
            return self._reject(context, e)

        target = context.log.get(message_id)
        if target.role != MessageRole.ASSISTANT or target.status != MessageStatus.FAILED:
            return self._reject(context, RetryRejectedError(message_id, target.status.value))
        previous = context.log.preceding(message_id)
        if previous is None or previous.role != MessageRole.USER:
            raise InvalidTurnOrderError(message_id, previous.role.value if previous else None)

        draft = None
        if target.error is not None and target.error.kind == ErrorKind.PERSISTENCE:
            draft = self._drafts.get(message_id)

        context.turn_in_flight = True
        claimed = self.guard.claim(context.conversation_id)
        try:
            context.log.mark_pending(message_id)
            logger.info(
                "turn_retry_started",
                conversation_id=context.conversation_id,
                message_id=message_id,
                regenerate=draft is None,
            )
            return await self._run_turn(
                context, previous.id, message_id, previous.content, draft
            )
        finally:
            context.turn_in_flight = False
            self.guard.release(claimed)

    async def _generate(self, context: ChatContext, user_id: str, query: str) -> GeneratedAnswer:
        history = context.log.settled_before(user_id)
        if self.history_window:
            history = history[-self.history_window:]
        else:
            history = []
        call = self.generator.generate(query, context.profile, context.system_prompt, history)
        try:
            if self.generation_timeout:
                return await asyncio.wait_for(call, timeout=self.generation_timeout)
            return await call
        except asyncio.TimeoutError:
            raise GenerationFailure(
                self.generator.name, f"timed out after {self.generation_timeout}s"
            )
        except GenerationFailure:
            raise
        except Exception as e:
            raise GenerationFailure(self.generator.name, str(e) or type(e).__name__)

    async def _run_turn(
        self,
        context: ChatContext,
        user_id: str,
        placeholder_id: str,
        query: str,
        draft: Optional[GeneratedAnswer] = None,
    ) -> TurnResult:
        if draft is None:
            try:
                draft = await self._generate(context, user_id, query)
            except GenerationFailure as e:
                if context.closed:
                    return self._discarded(context)
                logger.warning(
                    "turn_generation_failed",
                    conversation_id=context.conversation_id,
                    message_id=placeholder_id,
                    error=e.message,
                )
                error = TurnError.from_exception(e, retryable=True)
                self._mark_failed(context, placeholder_id, error)
                user, _ = await self._persist_user(context, user_id)
                return TurnResult(
                    user_message=user,
                    error=error.model_copy(update={"message_id": placeholder_id}),
                )
            except asyncio.CancelledError:
                if not context.closed:
                    self._mark_failed(
                        context,
                        placeholder_id,
                        TurnError.from_exception(
                            GenerationFailure(self.generator.name, "cancelled"), retryable=True
                        ),
                    )
                raise

        if context.closed:
            return self._discarded(context)

        user, user_error = await self._persist_user(context, user_id)
        if user_error is not None:
            return self._persistence_failed(context, user, placeholder_id, draft, user_error)

        try:
            stored = await self.manager.store.create_message(
                context.conversation_id,
                MessageRole.ASSISTANT,
                draft.content,
                context.log.get(placeholder_id).system_prompt_id,
                draft.sources,
            )
        except PersistenceFailure as e:
            return self._persistence_failed(
                context, user, placeholder_id, draft, TurnError.from_exception(e, retryable=True)
            )

        self._drafts.pop(placeholder_id, None)
        self.guard.resolve(context.conversation_id, placeholder_id)
        assistant = context.log.reconcile(placeholder_id, stored)
        logger.info(
            "turn_completed",
            conversation_id=context.conversation_id,
            assistant_message_id=assistant.id,
            source_count=len(assistant.sources),
        )
        return TurnResult(user_message=user, assistant_message=assistant)

    async def _persist_user(
        self, context: ChatContext, user_id: str
    ) -> Tuple[MessageModel, Optional[TurnError]]:
        """Store the user message unless it already is; keep it in memory on failure."""
        user = context.log.get(user_id)
        if user.persisted:
            return user, None
        try:
            stored = await self.manager.store.create_message(
                context.conversation_id,
                MessageRole.USER,
                user.content,
                user.system_prompt_id,
            )
        except PersistenceFailure as e:
            error = TurnError.from_exception(e, retryable=True)
            return context.log.annotate(user_id, error), error
        return context.log.reconcile(user_id, stored), None

    def _persistence_failed(
        self,
        context: ChatContext,
        user: MessageModel,
        placeholder_id: str,
        draft: GeneratedAnswer,
        error: TurnError,
    ) -> TurnResult:
        logger.error(
            "turn_persistence_failed",
            conversation_id=context.conversation_id,
            message_id=placeholder_id,
            error=error.message,
        )
        self._drafts[placeholder_id] = draft
        self._mark_failed(context, placeholder_id, error)
        return TurnResult(
            user_message=user,
            error=error.model_copy(update={"message_id": placeholder_id}),
        )

    def _mark_failed(self, context: ChatContext, placeholder_id: str, error: TurnError) -> None:
        context.log.mark_failed(placeholder_id, error)
        if not context.closed:
            self.guard.mark_failed(context.conversation_id, placeholder_id)

    def _discarded(self, context: ChatContext) -> TurnResult:
        logger.info("turn_discarded_after_close", conversation_id=context.conversation_id)
        return TurnResult(error=TurnError.from_exception(SessionClosedError()))
