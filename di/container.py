from __future__ import annotations

import structlog
from dependency_injector import containers, providers

from core.settings import SETTINGS
from infra.resources import DatabaseResource


logger = structlog.get_logger("rag")


def build_memory_store(seed_demo_data: bool):
    from api.features.conversation.memory import InMemoryChatStore

    return InMemoryChatStore.seeded() if seed_demo_data else InMemoryChatStore()


class InfrastructureContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    settings = providers.Object(SETTINGS)
    logger = providers.Object(logger)

    # Database
    database = providers.Resource(
        DatabaseResource,
        database_url=config.DATABASE.DATABASE_URL,
    )

    # Chat storage, selected by APP.STORAGE_BACKEND
    memory_store = providers.Singleton(
        build_memory_store,
        seed_demo_data=config.APP.SEED_DEMO_DATA,
    )

    sql_store = providers.Singleton(
        "api.features.conversation.repository.SqlChatStore",
        database=database,
    )

    chat_store = providers.Selector(
        config.APP.STORAGE_BACKEND,
        memory=memory_store,
        postgres=sql_store,
    )


class ServiceContainer(containers.DeclarativeContainer):
    """Application services - depends on infrastructure."""

    config = providers.Configuration()
    infrastructure = providers.DependenciesContainer()

    answer_generator = providers.Singleton(
        "api.features.conversation.generator.SimulatedAnswerGenerator",
        delay_seconds=config.CHAT.SIMULATED_DELAY_SECONDS,
    )

    conversation_manager = providers.Factory(
        "api.features.conversation.manager.ConversationManager",
        store=infrastructure.chat_store,
        title_max_length=config.CHAT.TITLE_MAX_LENGTH,
        title_suffix=config.CHAT.TITLE_SUFFIX,
    )

    # Shared by every executor: one running turn per conversation id
    turn_guard = providers.Singleton("api.features.conversation.executor.TurnGuard")

    # One executor per session; it holds unsaved answers awaiting retry
    turn_executor = providers.Factory(
        "api.features.conversation.executor.TurnExecutor",
        manager=conversation_manager,
        generator=answer_generator,
        generation_timeout=config.CHAT.GENERATION_TIMEOUT_SECONDS,
        history_window=config.CHAT.HISTORY_WINDOW,
        guard=turn_guard,
    )

    # ``auth`` is supplied per call
    chat_session = providers.Factory(
        "api.features.conversation.session.SessionController",
        manager=conversation_manager,
        executor=turn_executor,
        profile_query_param=config.CHAT.PROFILE_QUERY_PARAM,
    )

    session_registry = providers.Singleton(
        "api.features.conversation.session_registry.SessionRegistry",
        max_sessions=config.CHAT.MAX_SESSIONS,
        idle_timeout=config.CHAT.SESSION_IDLE_SECONDS,
    )


class ControllerContainer(containers.DeclarativeContainer):
    """Controller-specific dependencies."""

    config = providers.Configuration()
    services = providers.DependenciesContainer()

    # Controllers
    conversation_controller = providers.Factory(
        "api.features.conversation.controller.ConversationController",
        manager=services.conversation_manager,
        session_registry=services.session_registry,
        session_factory=services.chat_session.provider,
        user_header=config.AUTH.USER_HEADER,
        default_user_id=config.AUTH.DEFAULT_USER_ID,
    )


class ApplicationContainer(containers.DeclarativeContainer):
    """Main application container composing all sub-containers."""

    wiring_config = containers.WiringConfiguration(
        modules=[
            "api.features.conversation.router",
        ]
    )

    config = providers.Configuration()

    infrastructure = providers.Container(InfrastructureContainer, config=config)
    services = providers.Container(
        ServiceContainer, config=config, infrastructure=infrastructure
    )
    controllers = providers.Container(
        ControllerContainer, config=config, services=services
    )
