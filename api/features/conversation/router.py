"""Router for the Conversation feature."""
import logging
from typing import Optional

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from di.container import ApplicationContainer as DependencyContainer
from api.features.conversation.controller import ConversationController
from api.features.conversation.dtos import (
    ConversationListResponse,
    SelectSystemPromptRequest,
    SendMessageRequest,
    SessionDTO,
    SourcesResponse,
    SwitchConversationRequest,
    TurnResultDTO,
)
from api.shared.dtos import ErrorResponse
from api.shared.exceptions import ChatServiceException, ErrorKind
from api.shared.response import ResponseModel

router = APIRouter()
logger = logging.getLogger("rag.conversation.router")

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.VALIDATION: 422,
    ErrorKind.CONFLICT: 409,
}


def to_http_exception(exc: ChatServiceException) -> HTTPException:
    """Translate a service exception into an HTTPException with an ErrorResponse body."""
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    if status_code == 500:
        logger.exception("Conversation request failed")
    body = ErrorResponse(
        error_code=exc.error_code,
        kind=exc.kind.value,
        message=exc.message,
        details=exc.details or None,
    )
    return HTTPException(status_code=status_code, detail=body.model_dump(mode="json"))


@router.post("/sessions", response_model=ResponseModel[SessionDTO])
@inject
async def open_session(
    request: Request,
    profile: Optional[str] = Query(None, description="Profile to chat with"),
    controller: ConversationController = Depends(
        Provide[DependencyContainer.controllers.conversation_controller]
    ),
):
    """Open a chat session for a profile.

    Failures to resolve the user or the profile are reported in the view
    (``state=error``) rather than as an HTTP error.
    """
    try:
        result = await controller.open_session(profile, request.headers)
    except ChatServiceException as e:
        raise to_http_exception(e)
    if result.session_id is None:
        return ResponseModel.error(
            message=result.view.error.message, data=result, error_code=result.view.error.code
        )
    return ResponseModel.success(data=result, message="Session opened")


@router.get("/sessions/{session_id}", response_model=ResponseModel[SessionDTO])
@inject
async def get_session(
    session_id: str,
    request: Request,
    controller: ConversationController = Depends(
        Provide[DependencyContainer.controllers.conversation_controller]
    ),
):
    try:
        result = await controller.get_session(session_id, request.headers)
        return ResponseModel.success(data=result, message="Session retrieved")
    except ChatServiceException as e:
        raise to_http_exception(e)


@router.delete("/sessions/{session_id}", response_model=ResponseModel[None])
@inject
async def close_session(
    session_id: str,
    request: Request,
    controller: ConversationController = Depends(
        Provide[DependencyContainer.controllers.conversation_controller]
    ),
):
    try:
        await controller.close_session(session_id, request.headers)
        return ResponseModel.success(message="Session closed")
    except ChatServiceException as e:
        raise to_http_exception(e)


@router.put("/sessions/{session_id}/system-prompt", response_model=ResponseModel[SessionDTO])
@inject
async def select_system_prompt(
    session_id: str,
    body: SelectSystemPromptRequest,
    request: Request,
    controller: ConversationController = Depends(
        Provide[DependencyContainer.controllers.conversation_controller]
    ),
):
    try:
        result = await controller.select_system_prompt(
            session_id, body.prompt_id, request.headers
        )
        return ResponseModel.success(data=result, message="System prompt selected")
    except ChatServiceException as e:
        raise to_http_exception(e)


@router.post("/sessions/{session_id}/messages", response_model=ResponseModel[TurnResultDTO])
@inject
async def send_message(
    session_id: str,
    body: SendMessageRequest,
    request: Request,
    controller: ConversationController = Depends(
        Provide[DependencyContainer.controllers.conversation_controller]
    ),
):
    """Run one turn. Generation and storage failures come back as a retryable error."""
    try:
        result = await controller.send_message(session_id, body.query, request.headers)
    except ChatServiceException as e:
        raise to_http_exception(e)
    if result.error is not None:
        return ResponseModel.error(
            message=result.error.message, data=result, error_code=result.error.code
        )
    return ResponseModel.success(data=result, message="Message answered")


@router.post(
    "/sessions/{session_id}/messages/{message_id}/retry",
    response_model=ResponseModel[TurnResultDTO],
)
@inject
async def retry_message(
    session_id: str,
    message_id: str,
    request: Request,
    controller: ConversationController = Depends(
        Provide[DependencyContainer.controllers.conversation_controller]
    ),
):
    try:
        result = await controller.retry(session_id, message_id, request.headers)
    except ChatServiceException as e:
        raise to_http_exception(e)
    if result.error is not None:
        return ResponseModel.error(
            message=result.error.message, data=result, error_code=result.error.code
        )
    return ResponseModel.success(data=result, message="Message answered")


@router.post("/sessions/{session_id}/conversations", response_model=ResponseModel[SessionDTO])
@inject
async def start_new_conversation(
    session_id: str,
    request: Request,
    controller: ConversationController = Depends(
        Provide[DependencyContainer.controllers.conversation_controller]
    ),
):
    try:
        result = await controller.start_new_conversation(session_id, request.headers)
        return ResponseModel.success(data=result, message="New conversation started")
    except ChatServiceException as e:
        raise to_http_exception(e)


@router.put("/sessions/{session_id}/conversation", response_model=ResponseModel[SessionDTO])
@inject
async def switch_conversation(
    session_id: str,
    body: SwitchConversationRequest,
    request: Request,
    controller: ConversationController = Depends(
        Provide[DependencyContainer.controllers.conversation_controller]
    ),
):
    try:
        result = await controller.switch_conversation(
            session_id, body.conversation_id, request.headers
        )
        return ResponseModel.success(data=result, message="Conversation switched")
    except ChatServiceException as e:
        raise to_http_exception(e)


@router.get("/sessions/{session_id}/sources", response_model=ResponseModel[SourcesResponse])
@inject
async def get_sources(
    session_id: str,
    request: Request,
    controller: ConversationController = Depends(
        Provide[DependencyContainer.controllers.conversation_controller]
    ),
):
    try:
        result = await controller.get_sources(session_id, request.headers)
        return ResponseModel.success(data=result, message="Sources retrieved")
    except ChatServiceException as e:
        raise to_http_exception(e)


@router.get(
    "/profiles/{profile_id}/conversations",
    response_model=ResponseModel[ConversationListResponse],
)
@inject
async def list_conversations(
    profile_id: str,
    request: Request,
    controller: ConversationController = Depends(
        Provide[DependencyContainer.controllers.conversation_controller]
    ),
):
    try:
        result = await controller.list_conversations(profile_id, request.headers)
        return ResponseModel.success(data=result, message="Conversations listed")
    except ChatServiceException as e:
        raise to_http_exception(e)
