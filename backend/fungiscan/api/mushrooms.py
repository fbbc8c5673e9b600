from fastapi import APIRouter, Depends, Query
from typing import List

from ..core.errors import NotFound
from ..services.repository import SyncRepository
from .deps import get_repository

router = APIRouter(prefix="/mushrooms", tags=["mushrooms"])


@router.get("/")
async def list_mushrooms(repo: SyncRepository = Depends(get_repository)) -> List[dict]:
    return [m.to_wire() for m in await repo.get_all_mushrooms()]


@router.get("/search")
async def search_mushrooms(
    traits: str = Query(..., description="Comma-separated trait names, e.g. 'gills,ring'"),
    repo: SyncRepository = Depends(get_repository),
) -> List[dict]:
    """Species having any of the given traits. Served from cache when it has enough hits."""
    found = await repo.search_mushrooms(traits.split(","))
    return [m.to_wire() for m in found]


@router.get("/{mushroom_id}")
async def get_mushroom(mushroom_id: str, repo: SyncRepository = Depends(get_repository)) -> dict:
    mushroom = await repo.get_mushroom(mushroom_id)
    if mushroom is None:
        raise NotFound("Mushroom not found", {"mushroom_id": mushroom_id})
    return mushroom.to_wire()


@router.get("/{mushroom_id}/lookalikes/dangerous")
async def get_dangerous_lookalikes(
    mushroom_id: str, repo: SyncRepository = Depends(get_repository)
) -> List[dict]:
    return [l.to_wire() for l in await repo.get_dangerous_lookalikes(mushroom_id)]
