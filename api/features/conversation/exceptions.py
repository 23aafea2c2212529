"""Exceptions for the Conversation feature."""
from typing import Any, Dict, Optional

from api.shared.exceptions import (
    ChatServiceException,
    ConversationStateError,
    ErrorKind,
    NotFoundError,
    ValidationError,
)


class ProfileNotFoundError(NotFoundError):
    """Raised when a profile is missing or not accessible to the caller."""

    def __init__(self, profile_id: str):
        super().__init__("Profile", profile_id, "PROFILE_NOT_FOUND")


class ProfileNotSpecifiedError(ChatServiceException):
    """Raised when a session is opened without a profile parameter."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, parameter: str = "profile"):
        super().__init__(
            f"No profile specified: missing '{parameter}' parameter",
            "PROFILE_NOT_SPECIFIED",
            {"parameter": parameter},
        )


class ConversationNotFoundError(NotFoundError):
    """Raised when a conversation is missing or belongs to another profile."""

    def __init__(self, conversation_id: str):
        super().__init__("Conversation", conversation_id, "CONVERSATION_NOT_FOUND")


class MessageNotFoundError(NotFoundError):
    """Raised when a message id is not present in the conversation."""

    def __init__(self, message_id: str):
        super().__init__("Message", message_id, "MESSAGE_NOT_FOUND")


class SystemPromptNotFoundError(NotFoundError):
    """Raised when selecting a prompt id that is not in the active list."""

    def __init__(self, prompt_id: str):
        super().__init__("System prompt", prompt_id, "SYSTEM_PROMPT_NOT_FOUND")


class SessionNotFoundError(NotFoundError):
    """Raised when a chat session id is unknown."""

    def __init__(self, session_id: str):
        super().__init__("Session", session_id, "SESSION_NOT_FOUND")


class EmptyQueryError(ValidationError):
    """Raised when the query is empty or whitespace only."""

    def __init__(self):
        super().__init__("Query must not be empty", error_code="EMPTY_QUERY")


class TurnInFlightError(ValidationError):
    """Raised when a turn is already running for the conversation."""

    def __init__(self, conversation_id: Optional[str]):
        super().__init__(
            "A message is already being answered",
            {"conversation_id": conversation_id},
            "TURN_IN_FLIGHT",
        )


class UnresolvedTurnError(ValidationError):
    """Raised when sending while an earlier answer of the conversation failed.

    The failed answer must be retried, or the conversation left, first.
    Stored messages are appended in order, so a later turn would otherwise
    end up before the retried answer.
    """

    def __init__(self, conversation_id: Optional[str], message_id: Optional[str]):
        super().__init__(
            "Retry the failed answer or start a new conversation before sending",
            {"conversation_id": conversation_id, "message_id": message_id},
            "UNRESOLVED_FAILED_TURN",
        )


class NoActiveSystemPromptError(ValidationError):
    """Raised when no active system prompt is available or bound."""

    def __init__(self):
        super().__init__(
            "No active system prompt is available", error_code="NO_ACTIVE_SYSTEM_PROMPT"
        )


class InactiveSystemPromptError(ValidationError):
    """Raised when trying to select a prompt that is not active."""

    def __init__(self, prompt_id: str):
        super().__init__(
            f"System prompt '{prompt_id}' is not active",
            {"prompt_id": prompt_id},
            "INACTIVE_SYSTEM_PROMPT",
        )


class ProfileUnboundError(ValidationError):
    """Raised when a turn is attempted without a resolved profile."""

    def __init__(self):
        super().__init__("No profile is bound to the session", error_code="PROFILE_UNBOUND")


class SessionNotReadyError(ValidationError):
    """Raised when an operation needs a ready session."""

    def __init__(self, state: str):
        super().__init__(
            f"Session is not ready (state '{state}')",
            {"state": state},
            "SESSION_NOT_READY",
        )


class SessionClosedError(ValidationError):
    """Raised when using a session after it was closed."""

    def __init__(self):
        super().__init__("Session has been closed", error_code="SESSION_CLOSED")


class RetryRejectedError(ValidationError):
    """Raised when retrying a message that has not failed."""

    def __init__(self, message_id: str, status: str):
        super().__init__(
            f"Message '{message_id}' cannot be retried (status '{status}')",
            {"message_id": message_id, "status": status},
            "RETRY_REJECTED",
        )


class InvalidTurnOrderError(ConversationStateError):
    """Raised when a failed answer is not preceded by its user message."""

    def __init__(self, message_id: str, found_role: Optional[str]):
        super().__init__(
            f"Message '{message_id}' is not preceded by a user message",
            {"message_id": message_id, "found_role": found_role},
            "INVALID_TURN_ORDER",
        )


class ProfileMismatchError(ConversationStateError):
    """Raised when a conversation would be rebound to another profile."""

    def __init__(self, conversation_id: str, profile_id: str):
        super().__init__(
            f"Conversation '{conversation_id}' is not bound to profile '{profile_id}'",
            {"conversation_id": conversation_id, "profile_id": profile_id},
            "PROFILE_MISMATCH",
        )


class TurnRejectedError(ValidationError):
    """Raised at the HTTP boundary for a turn rejected before it started."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code)
