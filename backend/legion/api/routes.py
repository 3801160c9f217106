from fastapi import APIRouter

from legion.api.mentions import router as mentions_router
from legion.api.moderation import router as moderation_router
from legion.api.permissions import router as permissions_router
from legion.api.ranks import router as ranks_router
from legion.api.session import router as session_router

router = APIRouter()

router.include_router(ranks_router)
router.include_router(permissions_router)
router.include_router(mentions_router)
router.include_router(moderation_router)
router.include_router(session_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Legion chat gateway"}
