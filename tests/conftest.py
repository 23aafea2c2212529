import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import List, Sequence

import pytest

from api.features.conversation.executor import TurnExecutor
from api.features.conversation.generator import AnswerGenerator
from api.features.conversation.manager import ConversationManager
from api.features.conversation.memory import InMemoryChatStore
from api.features.conversation.models import GeneratedAnswer, MessageModel, SourceModel
from api.features.conversation.session import SessionController
from api.features.profiles.models import ProfileModel
from api.features.system_prompts.models import SystemPromptModel
from api.shared.auth import StaticAuthProvider


def make_answer(content: str = "Here is the answer.", sources=()) -> GeneratedAnswer:
    return GeneratedAnswer(content=content, sources=list(sources))


def make_source(source_id: str, confidence: float, page: int = 1, title: str = None) -> SourceModel:
    return SourceModel(
        id=source_id,
        title=title or f"Document {source_id}",
        excerpt=f"Excerpt from {source_id}",
        page=page,
        confidence=confidence,
    )


@dataclass
class GenerateCall:
    query: str
    profile: ProfileModel
    system_prompt: SystemPromptModel
    history: List[MessageModel] = field(default_factory=list)


class ScriptedGenerator(AnswerGenerator):
    """Answer generator driven by the test.

    Queued answers (or exceptions) are returned immediately. Without a queued
    item each call waits on a future the test resolves.
    """

    name = "scripted"

    def __init__(self):
        self.calls: List[GenerateCall] = []
        self.pending: List[asyncio.Future] = []
        self._queued = deque()

    def queue(self, *items) -> None:
        self._queued.extend(items)

    async def generate(
        self,
        query: str,
        profile: ProfileModel,
        system_prompt: SystemPromptModel,
        history: Sequence[MessageModel],
    ) -> GeneratedAnswer:
        self.calls.append(GenerateCall(query, profile, system_prompt, list(history)))
        if self._queued:
            item = self._queued.popleft()
            if isinstance(item, BaseException):
                raise item
            return item
        future = asyncio.get_running_loop().create_future()
        self.pending.append(future)
        return await future

    async def wait_for_call(self, count: int = 1) -> None:
        """Yield to the event loop until ``count`` calls are waiting."""
        for _ in range(1000):
            if len(self.pending) >= count:
                return
            await asyncio.sleep(0)
        raise AssertionError(f"expected {count} pending generate calls, got {len(self.pending)}")


def basic_profiles() -> List[ProfileModel]:
    return [
        ProfileModel(id="p1", name="Research"),
        ProfileModel(id="p2", name="Legal"),
        ProfileModel(id="private", name="Private", owner_id="someone-else"),
    ]


def basic_prompts(active: bool = True) -> List[SystemPromptModel]:
    return [
        SystemPromptModel(id="sp1", name="General", prompt_text="Be helpful.", is_active=active),
        SystemPromptModel(id="sp2", name="Analyst", prompt_text="Be rigorous.", is_active=active),
        SystemPromptModel(id="sp3", name="Retired", prompt_text="Old.", is_active=False),
    ]


@pytest.fixture
def store():
    return InMemoryChatStore(profiles=basic_profiles(), system_prompts=basic_prompts())


@pytest.fixture
def seeded_store():
    return InMemoryChatStore.seeded()


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def manager(store):
    return ConversationManager(store)


@pytest.fixture
def executor(manager, generator):
    return TurnExecutor(manager, generator, generation_timeout=None)


@pytest.fixture
def auth():
    return StaticAuthProvider("user-1")


@pytest.fixture
def session(manager, executor, auth):
    return SessionController(manager, executor, auth)


@pytest.fixture
async def ready_session(session):
    await session.open("p1")
    return session
