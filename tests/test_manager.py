"""Conversation manager: profile access, resume, prompt selection and creation."""
import pytest

from api.features.conversation.exceptions import (
    ConversationNotFoundError,
    InactiveSystemPromptError,
    ProfileNotFoundError,
    SystemPromptNotFoundError,
)
from api.features.conversation.manager import (
    ChatContext,
    ConversationManager,
    SystemPromptSelection,
)
from api.features.conversation.memory import InMemoryChatStore
from api.features.conversation.models import MessageRole
from api.features.profiles.models import DocumentModel
from api.shared.auth import UserModel
from api.shared.exceptions import PersistenceFailure, UnauthenticatedError
from tests.conftest import basic_profiles, basic_prompts

USER = UserModel(id="user-1")


async def test_resolve_profile_counts_documents(store, manager):
    store.add_document(DocumentModel(id="d1", profile_id="p1", filename="a.pdf"))
    store.add_document(DocumentModel(id="d2", profile_id="p1", filename="b.pdf"))

    profile = await manager.resolve_profile("p1", USER)

    assert profile.name == "Research"
    assert profile.document_count == 2


async def test_resolve_profile_requires_user(manager):
    with pytest.raises(UnauthenticatedError):
        await manager.resolve_profile("p1", None)


async def test_unknown_profile_is_not_found(manager):
    with pytest.raises(ProfileNotFoundError):
        await manager.resolve_profile("nope", USER)


async def test_profile_owned_by_someone_else_reads_as_missing(manager):
    with pytest.raises(ProfileNotFoundError):
        await manager.resolve_profile("private", USER)
    profile = await manager.resolve_profile("private", UserModel(id="someone-else"))
    assert profile.id == "private"


async def test_resume_without_history_creates_nothing(store, manager):
    resumed = await manager.resume_or_start("p1")

    assert resumed.conversation is None
    assert resumed.messages == []
    assert store.write_calls["create_conversation"] == 0


async def test_resume_picks_most_recent_and_is_idempotent(store, manager):
    older = await store.create_conversation("p1", "older", "sp1")
    newer = await store.create_conversation("p1", "newer", "sp1")
    await store.create_message(newer.id, MessageRole.USER, "q", "sp1")
    await store.create_message(newer.id, MessageRole.ASSISTANT, "a", "sp1")

    first = await manager.resume_or_start("p1")
    second = await manager.resume_or_start("p1")

    assert first.conversation.id == newer.id != older.id
    assert first == second
    assert [m.role for m in first.messages] == [MessageRole.USER, MessageRole.ASSISTANT]


async def test_resume_ignores_other_profiles(store, manager):
    await store.create_conversation("p2", "legal", "sp1")
    resumed = await manager.resume_or_start("p1")
    assert resumed.conversation is None


async def test_seeded_conversation_is_resumed(seeded_store):
    manager = ConversationManager(seeded_store)

    resumed = await manager.resume_or_start("1")

    assert resumed.conversation.title == "What are the key principles of machine learning?"
    assert [m.role for m in resumed.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert [s.id for s in resumed.messages[1].sources] == ["1", "2"]


async def test_open_conversation_of_other_profile_is_not_found(store, manager):
    legal = await store.create_conversation("p2", "legal", "sp1")
    with pytest.raises(ConversationNotFoundError):
        await manager.open_conversation("p1", legal.id)


async def test_load_system_prompts_selects_first_active(manager):
    selection = await manager.load_system_prompts()

    assert [p.id for p in selection.available] == ["sp1", "sp2"]
    assert selection.selected.id == "sp1"
    assert not selection.blocked


async def test_preferred_prompt_kept_when_active(manager):
    selection = await manager.load_system_prompts(preferred_id="sp2")
    assert selection.selected.id == "sp2"


async def test_no_active_prompts_blocks_selection():
    store = InMemoryChatStore(profiles=basic_profiles(), system_prompts=basic_prompts(active=False))
    selection = await ConversationManager(store).load_system_prompts()

    assert selection.available == []
    assert selection.selected is None
    assert selection.blocked


def test_select_rejects_inactive_and_unknown_prompts():
    prompts = basic_prompts()
    selection = SystemPromptSelection.from_prompts(prompts)

    with pytest.raises(InactiveSystemPromptError):
        selection.select(prompts[2])
    with pytest.raises(SystemPromptNotFoundError):
        selection.select_id("missing")
    assert selection.select_id("sp2").selected.id == "sp2"


@pytest.mark.parametrize(
    "query, title",
    [
        ("Short question", "Short question"),
        ("x" * 50, "x" * 50),
        ("  padded question  ", "padded question"),
    ],
)
def test_make_title(manager, query, title):
    assert manager.make_title(query) == title


def test_long_query_title_is_truncated_with_ellipsis(manager):
    title = manager.make_title("q" * 60)
    assert len(title) == 53
    assert title.endswith("...")
    assert title[:50] == "q" * 50


async def test_ensure_conversation_creates_once(store, manager):
    profile = await manager.resolve_profile("p1", USER)
    context = manager.bind(USER, profile, await manager.load_system_prompts(),
                           await manager.resume_or_start("p1"))

    first = await manager.ensure_conversation(context, "q" * 60)
    second = await manager.ensure_conversation(context, "another")

    assert first.id == second.id
    assert first.title == "q" * 50 + "..."
    assert first.system_prompt_id == "sp1"
    assert first.user_id == "user-1"
    assert store.write_calls["create_conversation"] == 1
    assert context.log.conversation_id == first.id


async def test_ensure_conversation_failure_leaves_context_unbound(store, manager):
    profile = await manager.resolve_profile("p1", USER)
    context = ChatContext(user=USER, profile=profile,
                          selection=await manager.load_system_prompts())
    store.fail_next("create_conversation")

    with pytest.raises(PersistenceFailure):
        await manager.ensure_conversation(context, "hello")

    assert context.conversation is None
    assert context.log.conversation_id is None
