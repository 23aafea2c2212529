"""Common utility functions following DRY and KISS principles."""
import secrets
import time
from uuid import UUID

LOCAL_ID_PREFIX = "local-"


def truncate_text(text: str, max_length: int, suffix: str = "...") -> str:
    """Keep the first ``max_length`` characters, appending ``suffix`` when cut."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + suffix


def is_valid_uuid(uuid_string: str) -> bool:
    """Check if string is valid UUID."""
    try:
        UUID(uuid_string)
        return True
    except (ValueError, TypeError, AttributeError):
        return False


def generate_local_id() -> str:
    """Client-side message id: time based with a random suffix.

    The prefix keeps these ids disjoint from server-issued UUIDs.
    """
    return f"{LOCAL_ID_PREFIX}{time.time_ns()}-{secrets.token_hex(4)}"


def is_local_id(identifier: str) -> bool:
    return identifier.startswith(LOCAL_ID_PREFIX)
