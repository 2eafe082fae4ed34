"""View state pushed to messaging WebSocket clients, and the commands they send."""

from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel

from app.schemas.message import ContactBrief, ConversationResponse


class ThreadStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class ThreadMessage(BaseModel):
    """A message as shown in the open thread.

    Optimistic entries carry only a ``local_id`` until the store
    answers; ``id`` and ``created_at`` are then taken from the
    persisted row.
    """
    local_id: str
    id: UUID | None = None
    sender_id: UUID
    recipient_id: UUID
    content: str
    read: bool = False
    created_at: datetime
    status: DeliveryStatus = DeliveryStatus.SENT


class ThreadSnapshot(BaseModel):
    status: ThreadStatus = ThreadStatus.IDLE
    counterparty: ContactBrief | None = None
    messages: list[ThreadMessage] = []
    error: str | None = None


class MessagingSnapshot(BaseModel):
    type: Literal["state"] = "state"
    viewer_id: UUID
    conversations: list[ConversationResponse]
    unread_total: int
    conversations_error: str | None = None
    initial_load_failed: bool = False
    realtime_connected: bool = False
    thread: ThreadSnapshot


class SessionCommand(BaseModel):
    """A command sent by a WebSocket client."""
    type: Literal["open", "close", "send", "retry", "refresh"]
    counterparty_id: UUID | None = None
    content: str | None = None
    local_id: str | None = None


class SessionError(BaseModel):
    type: Literal["error"] = "error"
    code: str
    detail: str
    field: str | None = None
