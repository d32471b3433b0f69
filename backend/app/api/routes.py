from fastapi import APIRouter

from app.api.conversations import router as conversations_router
from app.api.notifications import router as notifications_router

router = APIRouter()

router.include_router(conversations_router)
router.include_router(notifications_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Chirp API"}
