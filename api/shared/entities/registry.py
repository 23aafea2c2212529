"""Entity registry to ensure SQLAlchemy loads all table metadata.

Import all entity modules here so ``BaseEntity.metadata`` is complete before
the schema is created.
"""
# Import base first to expose BaseEntity.metadata
from api.shared.entities.base import BaseEntity  # noqa: F401

# Feature: Profiles
from api.features.profiles.entities.profile import Profile, ProfileDocument  # noqa: F401

# Feature: System prompts
from api.features.system_prompts.entities.system_prompt import SystemPrompt  # noqa: F401

# Feature: Conversation
from api.features.conversation.entities.conversation import Conversation, Message  # noqa: F401
