"""Session controller and registry."""
import asyncio

import pytest

from api.features.conversation.exceptions import (
    ConversationNotFoundError,
    SessionNotFoundError,
    SystemPromptNotFoundError,
    TurnInFlightError,
)
from api.features.conversation.manager import ConversationManager
from api.features.conversation.memory import InMemoryChatStore
from api.features.conversation.models import MessageRole
from api.features.conversation.session import (
    SessionController,
    SessionState,
    profile_id_from_query,
)
from api.features.conversation.session_registry import SessionRegistry
from api.features.conversation.executor import TurnExecutor, TurnGuard
from api.shared.auth import StaticAuthProvider
from api.shared.exceptions import ErrorKind, UnauthenticatedError
from tests.conftest import basic_profiles, basic_prompts, make_answer, make_source


@pytest.mark.parametrize(
    "query_string, expected",
    [
        ("?profile=1", "1"),
        ("profile=abc&x=2", "abc"),
        ("profile=&profile=2", "2"),
        ("profile=%20", None),
        ("other=1", None),
        ("", None),
    ],
)
def test_profile_id_from_query(query_string, expected):
    assert profile_id_from_query(query_string) == expected


async def test_open_resolves_profile_prompts_and_history(seeded_store, generator):
    manager = ConversationManager(seeded_store)
    session = SessionController(manager, TurnExecutor(manager, generator), StaticAuthProvider("u"))

    state = await session.open_from_query("?profile=1")

    assert state == SessionState.READY
    view = session.view()
    assert view.profile.name == "Research Assistant"
    assert view.profile.document_count == 15
    assert [p.name for p in view.system_prompts] == [
        "General Assistant", "Research Analyst", "Legal Advisor"
    ]
    assert view.selected_system_prompt.id == "1"
    assert len(view.messages) == 2
    assert view.source_summary.total_sources == 2
    assert view.source_summary.average_confidence == pytest.approx(0.90)
    assert view.can_send
    assert view.blocked_reason is None


async def test_missing_profile_parameter_is_an_error_state(session):
    state = await session.open_from_query("?x=1")

    assert state == SessionState.ERROR
    assert session.error.code == "PROFILE_NOT_SPECIFIED"
    assert session.error.kind == ErrorKind.NOT_FOUND
    assert not session.can_send


async def test_unknown_profile_is_an_error_state(session):
    assert await session.open("missing") == SessionState.ERROR
    assert session.error.code == "PROFILE_NOT_FOUND"


async def test_no_user_is_checked_before_profile(manager, executor):
    session = SessionController(manager, executor, StaticAuthProvider(None))

    assert await session.open(None) == SessionState.ERROR
    assert session.error.kind == ErrorKind.UNAUTHENTICATED


async def test_no_active_prompts_leaves_session_blocked(generator):
    store = InMemoryChatStore(profiles=basic_profiles(), system_prompts=basic_prompts(active=False))
    manager = ConversationManager(store)
    session = SessionController(manager, TurnExecutor(manager, generator), StaticAuthProvider("u"))

    assert await session.open("p1") == SessionState.READY
    assert session.selected_system_prompt is None
    assert not session.can_send
    assert session.blocked_reason == "NO_ACTIVE_SYSTEM_PROMPT"
    with pytest.raises(SystemPromptNotFoundError):
        session.select_system_prompt("sp1")

    result = await session.send_message("hello")
    assert result.rejected
    assert generator.calls == []


async def test_select_system_prompt_applies_to_next_turn(ready_session, generator):
    ready_session.select_system_prompt("sp2")
    generator.queue(make_answer())

    result = await ready_session.send_message("hi")

    assert generator.calls[0].system_prompt.id == "sp2"
    assert result.user_message.system_prompt_id == "sp2"
    assert ready_session.conversation.system_prompt_id == "sp2"


async def test_send_before_open_is_rejected(session):
    result = await session.send_message("hello")
    assert result.rejected
    assert result.error.code == "SESSION_NOT_READY"


async def test_start_new_conversation_then_send_creates_another(ready_session, store, generator):
    generator.queue(make_answer("a"), make_answer("b"))
    await ready_session.send_message("first conversation")
    first_id = ready_session.conversation.id

    ready_session.start_new_conversation()
    assert ready_session.conversation is None
    assert ready_session.messages == []

    await ready_session.send_message("second conversation")
    conversations = await store.get_conversations_by_profile("p1")
    assert len(conversations) == 2
    assert ready_session.conversation.id != first_id


async def test_switch_conversation(ready_session, store, generator):
    other = await store.create_conversation("p1", "other", "sp1")
    await store.create_message(other.id, MessageRole.USER, "old q", "sp1")

    conversation = await ready_session.switch_conversation(other.id)

    assert conversation.id == other.id
    assert [m.content for m in ready_session.messages] == ["old q"]

    legal = await store.create_conversation("p2", "legal", "sp1")
    with pytest.raises(ConversationNotFoundError):
        await ready_session.switch_conversation(legal.id)


async def test_switch_rejected_while_turn_in_flight(ready_session, store, generator):
    other = await store.create_conversation("p1", "other", "sp1")
    task = asyncio.create_task(ready_session.send_message("pending"))
    await generator.wait_for_call()

    with pytest.raises(TurnInFlightError):
        await ready_session.switch_conversation(other.id)
    with pytest.raises(TurnInFlightError):
        ready_session.start_new_conversation()

    generator.pending[0].set_result(make_answer())
    assert (await task).ok


async def test_sources_accumulate_over_turns(ready_session, generator):
    generator.queue(
        make_answer("one", [make_source("A", 0.92, page=4), make_source("B", 0.88)]),
        make_answer("two", [make_source("A", 0.92, page=4)]),
    )
    await ready_session.send_message("q1")
    await ready_session.send_message("q2")

    registry = ready_session.sources()

    assert len(registry) == 2
    assert registry.get("A").citation_count == 2
    assert registry.summary().high_confidence_count == 2


async def test_close_turns_late_answer_into_no_op(ready_session, store, generator):
    task = asyncio.create_task(ready_session.send_message("late"))
    await generator.wait_for_call()

    ready_session.close()
    generator.pending[0].set_result(make_answer())
    result = await task

    assert result.error.code == "SESSION_CLOSED"
    assert store.write_calls["create_message"] == 0
    assert not ready_session.can_send
    assert (await ready_session.send_message("again")).error.code == "SESSION_CLOSED"


async def test_refresh_keeps_current_prompt(ready_session, store):
    ready_session.select_system_prompt("sp2")
    await ready_session.refresh_system_prompts()
    assert ready_session.selected_system_prompt.id == "sp2"


def test_registry_scopes_sessions_to_owner(session):
    registry = SessionRegistry()
    session_id = registry.add(session, "user-1")

    assert registry.get(session_id, "user-1") is session
    with pytest.raises(SessionNotFoundError):
        registry.get(session_id, "user-2")
    with pytest.raises(UnauthenticatedError):
        registry.get(session_id, None)

    registry.remove(session_id, "user-1")
    assert session.closed
    assert len(registry) == 0


def test_registry_evicts_oldest_when_full(manager, executor):
    registry = SessionRegistry(max_sessions=2)
    sessions = [SessionController(manager, executor, StaticAuthProvider("u")) for _ in range(3)]
    ids = [registry.add(s, "u") for s in sessions]

    assert len(registry) == 2
    assert sessions[0].closed
    with pytest.raises(SessionNotFoundError):
        registry.get(ids[0], "u")
    assert registry.sessions_of("u") == ids[1:]


@pytest.fixture
async def twin_sessions(store, generator):
    """Two sessions of one user resuming the same stored conversation."""
    conversation = await store.create_conversation("p1", "shared", "sp1")
    await store.create_message(conversation.id, MessageRole.USER, "earlier", "sp1")
    await store.create_message(conversation.id, MessageRole.ASSISTANT, "reply", "sp1")
    guard = TurnGuard()
    sessions = []
    for _ in range(2):
        manager = ConversationManager(store)
        executor = TurnExecutor(manager, generator, generation_timeout=None, guard=guard)
        session = SessionController(manager, executor, StaticAuthProvider("user-1"))
        await session.open("p1")
        sessions.append(session)
    assert sessions[0].conversation.id == sessions[1].conversation.id == conversation.id
    return sessions


async def test_one_turn_in_flight_per_conversation_across_sessions(twin_sessions, generator):
    first, second = twin_sessions
    task = asyncio.create_task(first.send_message("x"))
    await generator.wait_for_call()

    assert second.blocked_reason == "TURN_IN_FLIGHT"
    assert not second.can_send
    rejected = await second.send_message("y")

    assert rejected.error.code == "TURN_IN_FLIGHT"
    assert len(generator.pending) == 1
    assert len(generator.calls) == 1

    generator.pending[0].set_result(make_answer())
    assert (await task).ok
    assert second.can_send


async def test_failed_turn_in_one_session_blocks_the_other_until_left(
    twin_sessions, store, generator
):
    first, second = twin_sessions
    generator.queue(RuntimeError("model offline"), make_answer("from second"))
    failed = await first.send_message("x")
    assert failed.error.kind == ErrorKind.GENERATION

    blocked = await second.send_message("y")
    assert blocked.error.code == "UNRESOLVED_FAILED_TURN"
    assert second.blocked_reason == "UNRESOLVED_FAILED_TURN"

    first.start_new_conversation()

    assert (await second.send_message("y")).ok
    stored = await store.get_messages_by_conversation(second.conversation.id)
    assert [m.content for m in stored] == ["earlier", "reply", "x", "y", "from second"]


async def test_closing_a_session_releases_its_failed_turn(twin_sessions, generator):
    first, second = twin_sessions
    generator.queue(RuntimeError("model offline"))
    await first.send_message("x")

    first.close()

    assert second.blocked_reason is None


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_registry_expires_idle_and_closed_sessions(manager, executor):
    clock = FakeClock()
    registry = SessionRegistry(idle_timeout=60, clock=clock)
    idle, active, closed = [
        SessionController(manager, executor, StaticAuthProvider("u")) for _ in range(3)
    ]
    idle_id = registry.add(idle, "u")
    active_id = registry.add(active, "u")
    registry.add(closed, "u")
    closed.close()

    clock.now = 50
    registry.get(active_id, "u")
    clock.now = 100

    with pytest.raises(SessionNotFoundError):
        registry.get(idle_id, "u")
    assert registry.get(active_id, "u") is active
    assert idle.closed
    assert registry.sessions_of("u") == [active_id]


async def test_registry_eviction_spares_busy_and_recent_sessions(
    ready_session, manager, executor, generator
):
    registry = SessionRegistry(max_sessions=3)
    busy_id = registry.add(ready_session, "u")
    stale = SessionController(manager, executor, StaticAuthProvider("u"))
    stale_id = registry.add(stale, "u")
    recent = SessionController(manager, executor, StaticAuthProvider("u"))
    recent_id = registry.add(recent, "u")
    registry.get(stale_id, "u")
    registry.get(recent_id, "u")

    task = asyncio.create_task(ready_session.send_message("running"))
    await generator.wait_for_call()
    registry.add(SessionController(manager, executor, StaticAuthProvider("u")), "u")

    # The busy session is the least recently used but keeps running
    assert not ready_session.closed
    assert stale.closed
    assert registry.get(busy_id, "u") is ready_session
    assert registry.get(recent_id, "u") is recent

    generator.pending[0].set_result(make_answer())
    assert (await task).ok
