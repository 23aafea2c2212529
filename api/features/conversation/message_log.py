"""Ordered in-memory log of one conversation's messages."""
from __future__ import annotations

from typing import Iterable, Iterator, List, Optional, Sequence

from api.features.conversation.exceptions import MessageNotFoundError
from api.features.conversation.models import (
    MessageModel,
    MessageRole,
    MessageStatus,
    SourceModel,
    TurnError,
)
from api.features.conversation.sources import SourceRegistry
from api.shared.dtos import utc_now
from api.shared.exceptions import ConversationStateError
from api.shared.utils import generate_local_id


class MessageLog:
    """Append-only sequence of messages in causal order.

    Entries are never reordered. Optimistic entries carry a local id until
    ``reconcile`` swaps in the stored message, keeping their slot. Assistant
    placeholders (pending or failed) occupy the slot the answer will take.
    """

    def __init__(
        self,
        conversation_id: Optional[str] = None,
        messages: Iterable[MessageModel] = (),
    ):
        self.conversation_id = conversation_id
        self._messages: List[MessageModel] = sorted(messages, key=lambda m: m.sequence)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[MessageModel]:
        return iter(list(self._messages))

    @property
    def messages(self) -> List[MessageModel]:
        return list(self._messages)

    def bind(self, conversation_id: str) -> None:
        if self.conversation_id is not None and self.conversation_id != conversation_id:
            raise ConversationStateError(
                "Message log already belongs to another conversation",
                {"bound": self.conversation_id, "requested": conversation_id},
            )
        self.conversation_id = conversation_id
        self._messages = [
            m if m.conversation_id else m.model_copy(update={"conversation_id": conversation_id})
            for m in self._messages
        ]

    def _next_sequence(self) -> int:
        return self._messages[-1].sequence + 1 if self._messages else 0

    def append(
        self,
        role: MessageRole,
        content: str = "",
        *,
        status: MessageStatus = MessageStatus.SENT,
        system_prompt_id: Optional[str] = None,
        sources: Sequence[SourceModel] = (),
    ) -> MessageModel:
        """Append an optimistic, not yet persisted, entry with a local id."""
        message = MessageModel(
            id=generate_local_id(),
            conversation_id=self.conversation_id,
            role=role,
            content=content,
            created_at=utc_now(),
            sequence=self._next_sequence(),
            system_prompt_id=system_prompt_id,
            sources=list(sources),
            status=status,
            persisted=False,
        )
        self._messages.append(message)
        return message

    def index_of(self, message_id: str) -> int:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        raise MessageNotFoundError(message_id)

    def get(self, message_id: str) -> MessageModel:
        return self._messages[self.index_of(message_id)]

    def __contains__(self, message_id: object) -> bool:
        return any(m.id == message_id for m in self._messages)

    def preceding(self, message_id: str) -> Optional[MessageModel]:
        index = self.index_of(message_id)
        return self._messages[index - 1] if index > 0 else None

    def following(self, message_id: str) -> Optional[MessageModel]:
        index = self.index_of(message_id)
        return self._messages[index + 1] if index + 1 < len(self._messages) else None

    def replace(self, message_id: str, message: MessageModel) -> MessageModel:
        """Put ``message`` in the slot of ``message_id``.

        Any other entry already carrying ``message.id`` is dropped so a
        reconciled message is never listed twice.
        """
        index = self.index_of(message_id)
        if message.conversation_id and self.conversation_id and (
            message.conversation_id != self.conversation_id
        ):
            raise ConversationStateError(
                "Message belongs to another conversation",
                {"message_id": message.id, "conversation_id": message.conversation_id},
            )
        duplicates = [
            i for i, m in enumerate(self._messages) if m.id == message.id and i != index
        ]
        self._messages[index] = message
        for i in reversed(duplicates):
            del self._messages[i]
        return message

    def reconcile(self, local_id: str, stored: MessageModel) -> MessageModel:
        """Swap an optimistic entry for its stored counterpart."""
        return self.replace(
            local_id,
            stored.model_copy(update={"status": MessageStatus.SENT, "persisted": True, "error": None}),
        )

    def mark_failed(self, message_id: str, error: TurnError) -> MessageModel:
        current = self.get(message_id)
        return self.replace(
            message_id,
            current.model_copy(update={"status": MessageStatus.FAILED, "error": error}),
        )

    def mark_pending(self, message_id: str) -> MessageModel:
        current = self.get(message_id)
        return self.replace(
            message_id,
            current.model_copy(update={"status": MessageStatus.PENDING, "error": None}),
        )

    def annotate(self, message_id: str, error: Optional[TurnError]) -> MessageModel:
        """Attach or clear an error without changing the message status."""
        current = self.get(message_id)
        return self.replace(message_id, current.model_copy(update={"error": error}))

    def failed_placeholder(self) -> Optional[MessageModel]:
        """First assistant slot whose answer failed and was not retried yet."""
        return next(
            (
                m for m in self._messages
                if m.role == MessageRole.ASSISTANT and m.status == MessageStatus.FAILED
            ),
            None,
        )

    def placeholders(self) -> List[MessageModel]:
        return [m for m in self._messages if m.is_placeholder]

    def settled_before(self, message_id: str) -> List[MessageModel]:
        index = self.index_of(message_id)
        return [m for m in self._messages[:index] if m.is_settled]

    def ordering_violations(self) -> List[str]:
        """Ids of settled assistant messages with no earlier user message."""
        seen_user = False
        violations = []
        for message in self._messages:
            if message.role == MessageRole.USER:
                seen_user = True
            elif not message.is_placeholder and not seen_user:
                violations.append(message.id)
        return violations

    def source_registry(self) -> SourceRegistry:
        return SourceRegistry.from_messages(self._messages)
