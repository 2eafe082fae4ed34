from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.endpoints.auth import get_current_user
from app.database import get_db
from app.schemas.message import ContactBrief
from app.schemas.user import UserResponse
from app.services import profile_service

router = APIRouter(prefix="", tags=["contacts"])


@router.get("/", response_model=list[ContactBrief])
async def get_contacts(
    current_user: Annotated[UserResponse, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    q: str | None = Query(None, max_length=100),
) -> list[ContactBrief]:
    """
    People the current user can start a conversation with.

    Trainers see their clients, clients see trainers.
    """
    return await profile_service.list_contacts(db, current_user, q)
