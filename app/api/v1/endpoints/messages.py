import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.v1.endpoints.auth import get_current_user
from app.core.exceptions import AppException, ErrorCode, NotFoundError, ValidationError
from app.core.security import user_id_from_token
from app.database import get_db, get_session_factory
from app.schemas.message import (
    ConversationResponse,
    MarkReadResponse,
    MessageCreate,
    MessageResponse,
    UnreadCountResponse,
)
from app.schemas.messaging import SessionCommand, SessionError
from app.schemas.user import UserResponse
from app.services import conversation_service, message_service, user_service
from app.services.messaging_session import MessagingSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["messages"])

# Close code sent when a WebSocket presents no valid token
WS_CLOSE_UNAUTHORIZED = 4401


async def _get_counterparty(db: AsyncSession, counterparty_id: UUID, current_user: UserResponse):
    if counterparty_id == current_user.id:
        raise ValidationError("You cannot message yourself", field="counterparty_id")
    counterparty = await user_service.get_user_by_id(db, counterparty_id)
    if counterparty is None:
        raise NotFoundError("User not found", resource="user")
    return counterparty


@router.get("/conversations", response_model=list[ConversationResponse])
async def get_conversations(
    current_user: Annotated[UserResponse, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    q: str | None = Query(None, max_length=100),
) -> list[ConversationResponse]:
    """Get the current user's conversations, most recent first."""
    return await conversation_service.get_conversations(db, current_user.id, q)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    current_user: Annotated[UserResponse, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> UnreadCountResponse:
    count = await message_service.count_unread(db, current_user.id)
    return UnreadCountResponse(count=count)


# NOTE: The WebSocket route MUST be defined before /{counterparty_id}
@router.websocket("/ws")
async def messaging_socket(
    websocket: WebSocket,
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> None:
    """
    Live messaging session.

    Authenticates with ``?token=<access token>``. After every command and
    every incoming message the server pushes the full view state.
    """
    viewer_id = user_id_from_token(websocket.query_params.get("token"))
    if viewer_id is not None:
        async with session_factory() as db:
            if await user_service.get_user_by_id(db, viewer_id) is None:
                viewer_id = None
    if viewer_id is None:
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
        return

    await websocket.accept()

    async def push_state() -> None:
        await websocket.send_json(session.snapshot().model_dump(mode="json"))

    async def push_error(code: str, detail: str, field: str | None = None) -> None:
        error = SessionError(code=code, detail=detail, field=field)
        await websocket.send_json(error.model_dump(mode="json"))

    session = MessagingSession(viewer_id, session_factory, on_change=push_state)
    await session.start()
    logger.info("Messaging session opened for %s", viewer_id)

    try:
        await push_state()
        while True:
            raw = await websocket.receive_text()
            try:
                command = SessionCommand.model_validate_json(raw)
                await _run_command(session, command)
            except PydanticValidationError as e:
                await push_error(ErrorCode.VALIDATION_ERROR.value, str(e.errors()[0]["msg"]))
            except AppException as e:
                await push_error(e.code.value, e.message, e.field)
            else:
                await push_state()
    except WebSocketDisconnect:
        logger.info("Messaging session closed for %s", viewer_id)
    finally:
        await session.stop()


async def _run_command(session: MessagingSession, command: SessionCommand) -> None:
    if command.type == "open":
        if command.counterparty_id is None:
            raise ValidationError("counterparty_id is required", field="counterparty_id")
        await session.open_thread(command.counterparty_id)
    elif command.type == "close":
        session.close_thread()
    elif command.type == "send":
        await session.send(command.content or "")
    elif command.type == "retry":
        await session.retry(command.local_id or "")
    elif command.type == "refresh":
        await session.refresh()


@router.get("/{counterparty_id}", response_model=list[MessageResponse])
async def get_thread(
    counterparty_id: UUID,
    current_user: Annotated[UserResponse, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> list[MessageResponse]:
    """Get messages exchanged with a counterparty, oldest first."""
    messages = await message_service.fetch_between(db, current_user.id, counterparty_id)
    return [MessageResponse.model_validate(m) for m in reversed(messages)]


@router.post(
    "/{counterparty_id}",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    counterparty_id: UUID,
    data: MessageCreate,
    current_user: Annotated[UserResponse, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> MessageResponse:
    """Send a message to a counterparty."""
    await _get_counterparty(db, counterparty_id, current_user)
    message = await message_service.send_message(
        db, current_user.id, counterparty_id, data.content
    )
    return MessageResponse.model_validate(message)


@router.post("/{counterparty_id}/read", response_model=MarkReadResponse)
async def mark_thread_read(
    counterparty_id: UUID,
    current_user: Annotated[UserResponse, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> MarkReadResponse:
    """Mark everything the counterparty sent to the current user as read."""
    success = await message_service.mark_read(db, current_user.id, counterparty_id)
    return MarkReadResponse(success=success)
