"""Turn executor: sending, in-flight guard, failures and retry."""
import asyncio

import pytest

from api.features.conversation.exceptions import InvalidTurnOrderError
from api.features.conversation.executor import TurnExecutor
from api.features.conversation.manager import ChatContext
from api.features.conversation.message_log import MessageLog
from api.features.conversation.models import MessageRole, MessageStatus
from api.shared.auth import UserModel
from api.shared.exceptions import ErrorKind, PersistenceFailure
from tests.conftest import make_answer, make_source

USER = UserModel(id="user-1")


@pytest.fixture
async def context(manager):
    profile = await manager.resolve_profile("p1", USER)
    return manager.bind(
        USER, profile, await manager.load_system_prompts(), await manager.resume_or_start("p1")
    )


def roles(context):
    return [m.role for m in context.log]


async def test_first_message_creates_conversation_and_stores_turn(
    store, executor, generator, context
):
    generator.queue(make_answer("Answer", [make_source("1", 0.9)]))
    query = "Why is the sky blue? " * 3

    result = await executor.send_message(context, query)

    assert result.ok
    assert context.conversation.title == query.strip()[:50] + "..."
    conversations = await store.get_conversations_by_profile("p1")
    assert len(conversations) == 1
    stored = await store.get_messages_by_conversation(context.conversation_id)
    assert [m.role for m in stored] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert [m.id for m in context.log] == [m.id for m in stored]
    assert all(m.status == MessageStatus.SENT and m.persisted for m in context.log)
    assert result.assistant_message.sources[0].id == "1"
    assert generator.calls[0].query == query
    assert generator.calls[0].system_prompt.id == "sp1"


async def test_second_turn_reuses_conversation_and_passes_history(
    store, executor, generator, context
):
    generator.queue(make_answer("first"), make_answer("second"))

    await executor.send_message(context, "one")
    await executor.send_message(context, "two")

    assert len(await store.get_conversations_by_profile("p1")) == 1
    assert roles(context) == [
        MessageRole.USER, MessageRole.ASSISTANT, MessageRole.USER, MessageRole.ASSISTANT
    ]
    assert [m.content for m in generator.calls[1].history] == ["one", "first"]
    sequences = [m.sequence for m in await store.get_messages_by_conversation(context.conversation_id)]
    assert sequences == sorted(sequences) == [0, 1, 2, 3]


@pytest.mark.parametrize("query", ["", "   ", "\n\t"])
async def test_blank_query_is_a_no_op(executor, generator, context, query):
    result = await executor.send_message(context, query)

    assert result.rejected
    assert result.error.code == "EMPTY_QUERY"
    assert len(context.log) == 0
    assert generator.calls == []


async def test_send_while_in_flight_is_rejected(executor, generator, context):
    first = asyncio.create_task(executor.send_message(context, "first"))
    await generator.wait_for_call()

    assert [m.status for m in context.log] == [MessageStatus.SENT, MessageStatus.PENDING]
    assert not context.can_send

    second = await executor.send_message(context, "second")
    assert second.rejected
    assert second.error.code == "TURN_IN_FLIGHT"
    assert [m.content for m in context.log if m.role == MessageRole.USER] == ["first"]

    generator.pending[0].set_result(make_answer())
    result = await first
    assert result.ok
    assert context.can_send
    assert len(generator.calls) == 1


async def test_generation_failure_marks_placeholder_and_keeps_query(
    store, executor, generator, context
):
    generator.queue(RuntimeError("model unavailable"))

    result = await executor.send_message(context, "What is X?")

    assert not result.ok
    assert result.error.kind == ErrorKind.GENERATION
    assert result.error.retryable
    failed = context.log.get(result.error.message_id)
    assert failed.status == MessageStatus.FAILED
    assert failed.content == ""
    stored = await store.get_messages_by_conversation(context.conversation_id)
    assert [(m.role, m.content) for m in stored] == [(MessageRole.USER, "What is X?")]
    assert context.can_send


async def test_retry_after_generation_failure(store, executor, generator, context):
    generator.queue(RuntimeError("boom"), make_answer("recovered"))
    failed = await executor.send_message(context, "What is X?")

    result = await executor.retry(context, failed.error.message_id)

    assert result.ok
    assert generator.calls[1].query == "What is X?"
    assert [(m.role, m.status) for m in context.log] == [
        (MessageRole.USER, MessageStatus.SENT),
        (MessageRole.ASSISTANT, MessageStatus.SENT),
    ]
    stored = await store.get_messages_by_conversation(context.conversation_id)
    assert [m.role for m in stored] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert stored[1].content == "recovered"


async def test_retry_failed_answer_loaded_after_user_message(store, executor, generator, context):
    conversation = await store.create_conversation("p1", "What is X?", "sp1")
    user = await store.create_message(conversation.id, MessageRole.USER, "What is X?", "sp1")
    context.conversation = conversation
    context.log = MessageLog(conversation.id, [user])
    failed = context.log.append(MessageRole.ASSISTANT, status=MessageStatus.FAILED,
                                system_prompt_id="sp1")
    generator.queue(make_answer("X is a letter."))

    result = await executor.retry(context, failed.id)

    assert result.ok
    assert generator.calls[0].query == "What is X?"
    stored = await store.get_messages_by_conversation(conversation.id)
    assert [m.role for m in stored] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert [m.role for m in context.log] == [MessageRole.USER, MessageRole.ASSISTANT]


async def test_assistant_write_failure_keeps_draft_for_retry(
    store, executor, generator, context, monkeypatch
):
    original = store.create_message
    failures = [PersistenceFailure("disk full")]

    async def flaky_create_message(conversation_id, role, *args, **kwargs):
        if role == MessageRole.ASSISTANT and failures:
            raise failures.pop()
        return await original(conversation_id, role, *args, **kwargs)

    monkeypatch.setattr(store, "create_message", flaky_create_message)
    generator.queue(make_answer("drafted", [make_source("7", 0.7)]))

    result = await executor.send_message(context, "question")

    assert result.error.kind == ErrorKind.PERSISTENCE
    assert context.log.get(result.error.message_id).status == MessageStatus.FAILED

    retried = await executor.retry(context, result.error.message_id)

    assert retried.ok
    assert len(generator.calls) == 1
    assert retried.assistant_message.content == "drafted"
    assert retried.assistant_message.sources[0].id == "7"


async def test_user_write_failure_is_written_on_retry(store, executor, generator, context):
    store.fail_next("create_message")
    generator.queue(make_answer("answer"))

    result = await executor.send_message(context, "question")

    assert result.error.kind == ErrorKind.PERSISTENCE
    user = context.log.messages[0]
    assert not user.persisted
    assert user.error is not None

    retried = await executor.retry(context, result.error.message_id)

    assert retried.ok
    assert len(generator.calls) == 1
    assert retried.user_message.persisted
    stored = await store.get_messages_by_conversation(context.conversation_id)
    assert [(m.role, m.content) for m in stored] == [
        (MessageRole.USER, "question"), (MessageRole.ASSISTANT, "answer")
    ]


async def test_conversation_create_failure_appends_nothing(store, executor, generator, context):
    store.fail_next("create_conversation")

    result = await executor.send_message(context, "hello")

    assert result.error.kind == ErrorKind.PERSISTENCE
    assert len(context.log) == 0
    assert context.conversation is None
    assert generator.calls == []
    assert context.can_send


async def test_close_during_generation_discards_answer(store, executor, generator, context):
    task = asyncio.create_task(executor.send_message(context, "late"))
    await generator.wait_for_call()

    context.closed = True
    generator.pending[0].set_result(make_answer("too late"))
    result = await task

    assert result.error.code == "SESSION_CLOSED"
    assert store.write_calls["create_message"] == 0


async def test_generation_timeout_is_a_generation_failure(manager, generator, context):
    executor = TurnExecutor(manager, generator, generation_timeout=0.01)

    result = await executor.send_message(context, "slow")

    assert result.error.kind == ErrorKind.GENERATION
    assert "timed out" in result.error.message


async def test_no_active_prompt_rejects_send(executor, generator, manager):
    profile = await manager.resolve_profile("p1", USER)
    context = ChatContext(user=USER, profile=profile,
                          selection=(await manager.load_system_prompts()).model_copy(
                              update={"available": [], "selected": None}))

    result = await executor.send_message(context, "hello")

    assert result.error.code == "NO_ACTIVE_SYSTEM_PROMPT"
    assert not context.can_send
    assert generator.calls == []


async def test_retry_of_settled_message_is_rejected(executor, generator, context):
    generator.queue(make_answer())
    result = await executor.send_message(context, "q")

    rejected = await executor.retry(context, result.assistant_message.id)

    assert rejected.rejected
    assert rejected.error.code == "RETRY_REJECTED"


async def test_retry_requires_preceding_user_message(executor, context):
    failed = context.log.append(MessageRole.ASSISTANT, status=MessageStatus.FAILED)
    with pytest.raises(InvalidTurnOrderError):
        await executor.retry(context, failed.id)


async def test_failed_turn_must_be_retried_before_the_next_send(
    store, manager, executor, generator, context
):
    generator.queue(RuntimeError("model offline"), make_answer("a1"), make_answer("a2"))
    failed = await executor.send_message(context, "q1")

    blocked = await executor.send_message(context, "q2")

    assert blocked.rejected
    assert blocked.error.code == "UNRESOLVED_FAILED_TURN"
    assert len(generator.calls) == 1
    assert [m.content for m in context.log if m.role == MessageRole.USER] == ["q1"]

    assert (await executor.retry(context, failed.error.message_id)).ok
    assert (await executor.send_message(context, "q2")).ok

    live = [m.content for m in context.log]
    stored = await store.get_messages_by_conversation(context.conversation_id)
    resumed = await manager.resume_or_start("p1")
    assert live == ["q1", "a1", "q2", "a2"]
    assert [m.content for m in stored] == live
    assert [m.content for m in resumed.messages] == live
    assert [m.sequence for m in context.log] == [0, 1, 2, 3]


async def test_persistence_failure_also_blocks_the_next_send(
    store, executor, generator, context
):
    generator.queue(make_answer("a1"))
    store.fail_next("create_message")
    failed = await executor.send_message(context, "q1")
    assert failed.error.kind == ErrorKind.PERSISTENCE

    blocked = await executor.send_message(context, "q2")

    assert blocked.error.code == "UNRESOLVED_FAILED_TURN"
    assert blocked.error.message_id == failed.error.message_id
    assert (await executor.retry(context, failed.error.message_id)).ok
    stored = await store.get_messages_by_conversation(context.conversation_id)
    assert [m.content for m in stored] == ["q1", "a1"]
