"""Conversation feature: chat sessions bound to a document profile.

A session resolves the caller, the profile and the active system prompts,
resumes the profile's latest conversation, and runs turns against an answer
generator. Messages and conversations are stored through a ``ChatStore``
(PostgreSQL or in-process).
"""
