from fastapi import APIRouter

from app.api.v1.endpoints import auth, contacts, messages

router = APIRouter()

router.include_router(auth.router, prefix="/auth")
router.include_router(contacts.router, prefix="/contacts")
router.include_router(messages.router, prefix="/messages")
