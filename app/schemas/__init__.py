from app.schemas.message import (
    ContactBrief,
    ConversationResponse,
    MarkReadResponse,
    MessageCreate,
    MessageEvent,
    MessageResponse,
    UnreadCountResponse,
)
from app.schemas.messaging import (
    DeliveryStatus,
    MessagingSnapshot,
    SessionCommand,
    SessionError,
    ThreadMessage,
    ThreadSnapshot,
    ThreadStatus,
)
from app.schemas.user import Token, TokenPayload, UserCreate, UserResponse

__all__ = [
    "UserCreate",
    "UserResponse",
    "Token",
    "TokenPayload",
    "MessageCreate",
    "MessageResponse",
    "MessageEvent",
    "ContactBrief",
    "ConversationResponse",
    "MarkReadResponse",
    "UnreadCountResponse",
    "DeliveryStatus",
    "ThreadStatus",
    "ThreadMessage",
    "ThreadSnapshot",
    "MessagingSnapshot",
    "SessionCommand",
    "SessionError",
]
