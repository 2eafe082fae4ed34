"""Profile lookups used to decorate conversations with names and roles."""

import logging
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User
from app.schemas.message import ContactBrief
from app.schemas.user import UserResponse

logger = logging.getLogger(__name__)

# Trainers start conversations with clients and vice versa
CONTACT_ROLE = {"trainer": "client", "client": "trainer"}


def placeholder_name(user_id: UUID) -> str:
    """Label used when a user's profile cannot be resolved."""
    return f"User {str(user_id)[:8]}"


def to_contact(user: User) -> ContactBrief:
    return ContactBrief(
        id=user.id,
        display_name=user.name or placeholder_name(user.id),
        role=user.role,
        email=user.email,
    )


async def get_contacts(db: AsyncSession, user_ids: set[UUID]) -> dict[UUID, ContactBrief]:
    """
    Bulk lookup of contact info.

    Lookup failures are not fatal for callers: they are logged and
    an empty mapping is returned so that labels fall back to placeholders.
    """
    if not user_ids:
        return {}
    try:
        result = await db.execute(select(User).where(User.id.in_(list(user_ids))))
    except SQLAlchemyError as e:
        logger.warning("Profile lookup failed for %d users: %s", len(user_ids), e)
        return {}
    return {user.id: to_contact(user) for user in result.scalars().all()}


async def get_contact(db: AsyncSession, user_id: UUID) -> ContactBrief:
    """Contact info for one user, falling back to a placeholder."""
    contacts = await get_contacts(db, {user_id})
    contact = contacts.get(user_id)
    if contact is None:
        logger.info("Profile not found for user %s, using placeholder", user_id)
        return ContactBrief(id=user_id, display_name=placeholder_name(user_id))
    return contact


async def list_contacts(
    db: AsyncSession,
    viewer: UserResponse,
    search: str | None = None,
) -> list[ContactBrief]:
    """People the viewer can start a conversation with, ordered by name."""
    role = CONTACT_ROLE.get(viewer.role)
    if role is None:
        return []

    query = select(User).where(User.role == role, User.id != viewer.id)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(or_(User.name.ilike(pattern), User.email.ilike(pattern)))

    result = await db.execute(query.order_by(User.name, User.email))
    return [to_contact(user) for user in result.scalars().all()]
