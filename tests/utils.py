from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.message import Message
from app.models.user import User
from app.schemas.user import UserCreate
from app.services import user_service

BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def make_message(
    sender_id: UUID,
    recipient_id: UUID,
    content: str = "hello",
    minutes: int = 0,
    read: bool = False,
    message_id: UUID | None = None,
) -> Message:
    """Unsaved message with a deterministic timestamp."""
    return Message(
        id=message_id or uuid4(),
        sender_id=sender_id,
        recipient_id=recipient_id,
        content=content,
        read=read,
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


async def create_user(
    db: AsyncSession,
    email: str,
    name: str | None = None,
    role: str = "client",
) -> User:
    """Create a user directly through the service layer."""
    return await user_service.create_user(
        db,
        UserCreate(email=email, password="password123", name=name, role=role),
    )


async def register_and_login(
    client: AsyncClient,
    email: str,
    name: str | None = None,
    role: str = "client",
) -> tuple[str, str]:
    """Register through the API, log in. Returns (token, user_id)."""
    register_response = await client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": "password123", "name": name, "role": role},
    )
    user_id = register_response.json()["id"]

    login_response = await client.post(
        "/api/v1/auth/login",
        data={"username": email, "password": "password123"},
    )
    return login_response.json()["access_token"], user_id


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
