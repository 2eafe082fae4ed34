"""Message and conversation schemas for API requests and responses."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.config import settings


class MessageCreate(BaseModel):
    """Send a message to a counterparty."""
    content: str = Field(..., min_length=1, max_length=settings.MESSAGE_MAX_LENGTH)


class MessageResponse(BaseModel):
    """A persisted message."""
    id: UUID
    sender_id: UUID
    recipient_id: UUID
    content: str
    read: bool
    read_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ContactBrief(BaseModel):
    """Display information for the other party of a conversation."""
    id: UUID
    display_name: str
    role: str | None = None
    email: str | None = None


class ConversationResponse(BaseModel):
    """Summary of all messages between the viewer and one counterparty."""
    counterparty_id: UUID
    display_name: str
    counterparty_role: str | None = None
    last_message: str
    last_message_at: datetime
    last_message_id: UUID
    last_message_sender_id: UUID
    unread_count: int = 0


class MarkReadResponse(BaseModel):
    success: bool


class UnreadCountResponse(BaseModel):
    """Unread messages count."""
    count: int


class MessageEvent(BaseModel):
    """Change-feed notification for a newly inserted message."""
    event_type: Literal["insert"] = "insert"
    message: MessageResponse
