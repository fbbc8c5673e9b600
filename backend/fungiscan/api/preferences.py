from fastapi import APIRouter, Depends

from ..entities.preferences import UserPreferences
from ..services.repository import SyncRepository
from .deps import get_repository

router = APIRouter(prefix="/preferences", tags=["preferences"])


@router.get("/")
async def get_preferences(repo: SyncRepository = Depends(get_repository)) -> dict:
    return (await repo.get_user_preferences()).to_wire()


@router.put("/")
async def update_preferences(
    preferences: UserPreferences, repo: SyncRepository = Depends(get_repository)
) -> dict:
    saved = await repo.update_user_preferences(preferences)
    return saved.to_wire()
