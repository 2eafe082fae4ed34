"""Message store accessor: translates messaging intents into datastore queries."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import RequiredFieldError, StoreUnavailableError, ValidationError
from app.models.message import Message
from app.schemas.message import MessageEvent, MessageResponse
from app.services.realtime_service import MessageEventHub, message_hub

logger = logging.getLogger(__name__)


async def _store_call(operation: str, call: Awaitable[Any]) -> Any:
    """Await a datastore call, mapping backend failures and timeouts to StoreUnavailableError."""
    try:
        return await asyncio.wait_for(call, timeout=settings.STORE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError as e:
        logger.error("Store call %s timed out after %ss", operation, settings.STORE_TIMEOUT_SECONDS)
        raise StoreUnavailableError(operation=operation) from e
    except (SQLAlchemyError, OSError) as e:
        logger.error("Store call %s failed: %s", operation, e)
        raise StoreUnavailableError(operation=operation) from e


async def _safe_rollback(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except SQLAlchemyError as e:
        logger.warning("Rollback after store failure also failed: %s", e)


def _newest_first(query):
    return query.order_by(Message.created_at.desc(), Message.id.desc())


async def fetch_between(
    db: AsyncSession,
    user_a: UUID,
    user_b: UUID,
    limit: int | None = None,
) -> list[Message]:
    """
    Get messages exchanged between two users, newest first.

    Callers reverse the list for chronological display.
    """
    query = _newest_first(
        select(Message).where(
            or_(
                and_(Message.sender_id == user_a, Message.recipient_id == user_b),
                and_(Message.sender_id == user_b, Message.recipient_id == user_a),
            )
        )
    ).limit(limit or settings.MESSAGE_HISTORY_LIMIT)

    result = await _store_call("fetch_between", db.execute(query))
    return list(result.scalars().all())


async def fetch_involving(db: AsyncSession, user_id: UUID) -> list[Message]:
    """Get every message the user sent or received, newest first."""
    query = _newest_first(
        select(Message).where(
            or_(Message.sender_id == user_id, Message.recipient_id == user_id)
        )
    )
    result = await _store_call("fetch_involving", db.execute(query))
    return list(result.scalars().all())


def clean_content(content: str | None) -> str:
    """Trimmed message body; raises when it is blank or over the length limit."""
    content = (content or "").strip()
    if not content:
        raise RequiredFieldError("Message content cannot be empty", field="content")
    if len(content) > settings.MESSAGE_MAX_LENGTH:
        raise ValidationError(
            f"Message content cannot exceed {settings.MESSAGE_MAX_LENGTH} characters",
            field="content",
        )
    return content


async def send_message(
    db: AsyncSession,
    sender_id: UUID,
    recipient_id: UUID,
    content: str,
    hub: MessageEventHub | None = None,
) -> Message:
    """Persist a message and notify the recipient's realtime subscriptions."""
    content = clean_content(content)

    message = Message(
        sender_id=sender_id,
        recipient_id=recipient_id,
        content=content,
        read=False,
    )
    db.add(message)
    try:
        await _store_call("send_message", db.commit())
        await _store_call("send_message", db.refresh(message))
    except StoreUnavailableError:
        await _safe_rollback(db)
        raise

    event = MessageEvent(message=MessageResponse.model_validate(message))
    delivered = (hub or message_hub).publish(event)
    logger.debug("Message %s sent to %s (%d live subscribers)", message.id, recipient_id, delivered)
    return message


async def mark_read(db: AsyncSession, recipient_id: UUID, sender_id: UUID) -> bool:
    """
    Mark every unread message from sender to recipient as read.

    Idempotent set-based update. Failures are logged and reported
    as False so callers can carry on.
    """
    statement = (
        update(Message)
        .where(
            and_(
                Message.recipient_id == recipient_id,
                Message.sender_id == sender_id,
                Message.read.is_(False),
            )
        )
        .values(read=True, read_at=datetime.now(timezone.utc))
    )
    try:
        result = await _store_call("mark_read", db.execute(statement))
        await _store_call("mark_read", db.commit())
    except StoreUnavailableError:
        logger.warning("Could not mark messages from %s to %s as read", sender_id, recipient_id)
        await _safe_rollback(db)
        return False

    logger.debug("Marked %s messages from %s to %s as read", result.rowcount, sender_id, recipient_id)
    return True


async def count_unread(db: AsyncSession, user_id: UUID) -> int:
    """Get total unread messages count for a user."""
    result = await _store_call(
        "count_unread",
        db.execute(
            select(func.count(Message.id)).where(
                and_(
                    Message.recipient_id == user_id,
                    Message.read.is_(False),
                )
            )
        ),
    )
    return result.scalar() or 0
