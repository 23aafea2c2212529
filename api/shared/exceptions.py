"""Shared exceptions for the RAG chat API."""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Coarse error category exposed to clients next to the error code."""

    NOT_FOUND = "not_found"
    UNAUTHENTICATED = "unauthenticated"
    VALIDATION = "validation"
    GENERATION = "generation"
    PERSISTENCE = "persistence"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class ChatServiceException(Exception):
    """Base exception for the RAG chat API."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(ChatServiceException):
    """Raised when input validation fails."""

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: str = "VALIDATION_ERROR",
    ):
        super().__init__(message, error_code, details)


class NotFoundError(ChatServiceException):
    """Raised when a resource is not found."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, identifier: str, error_code: str = "NOT_FOUND"):
        message = f"{resource} with identifier '{identifier}' not found"
        super().__init__(message, error_code, {"resource": resource, "identifier": identifier})


class UnauthenticatedError(ChatServiceException):
    """Raised when there is no current user."""

    kind = ErrorKind.UNAUTHENTICATED

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message, "UNAUTHENTICATED")


class ConversationStateError(ChatServiceException):
    """Raised when in-memory conversation state violates its ordering rules."""

    kind = ErrorKind.CONFLICT

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: str = "CONVERSATION_STATE_ERROR",
    ):
        super().__init__(message, error_code, details)


class GenerationFailure(ChatServiceException):
    """Raised when the answer generator fails."""

    kind = ErrorKind.GENERATION

    def __init__(self, service: str, message: str, details: Optional[Dict[str, Any]] = None):
        full_message = f"{service} service error: {message}"
        super().__init__(full_message, "GENERATION_FAILURE", details)


class PersistenceFailure(ChatServiceException):
    """Raised when a write to durable storage fails."""

    kind = ErrorKind.PERSISTENCE

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PERSISTENCE_FAILURE", details)
