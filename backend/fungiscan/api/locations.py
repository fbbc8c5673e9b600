from fastapi import APIRouter, Depends, Response, status
from typing import List, Optional

from ..core.errors import NotFound
from ..entities.base import Coordinates
from ..services.repository import SyncRepository
from .deps import ApiModel, get_repository

router = APIRouter(prefix="/locations", tags=["locations"])


class LocationCreate(ApiModel):
    name: str
    notes: str = ""
    coordinates: Coordinates
    path: Optional[List[Coordinates]] = None
    species: Optional[List[str]] = None
    photos: Optional[List[str]] = None


class LocationUpdate(ApiModel):
    name: Optional[str] = None
    notes: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    path: Optional[List[Coordinates]] = None
    species: Optional[List[str]] = None
    photos: Optional[List[str]] = None


class SpeciesSighting(ApiModel):
    species_name: str
    photo_path: Optional[str] = None


@router.get("/")
async def list_locations(repo: SyncRepository = Depends(get_repository)) -> List[dict]:
    return [l.to_wire() for l in await repo.get_all_saved_locations()]


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_location(body: LocationCreate, repo: SyncRepository = Depends(get_repository)) -> dict:
    location = await repo.save_location(**body.model_dump())
    return location.to_wire()


@router.get("/{location_id}")
async def get_location(location_id: str, repo: SyncRepository = Depends(get_repository)) -> dict:
    location = await repo.get_saved_location(location_id)
    if location is None:
        raise NotFound("Location not found", {"location_id": location_id})
    return location.to_wire()


@router.patch("/{location_id}")
async def update_location(
    location_id: str, body: LocationUpdate, repo: SyncRepository = Depends(get_repository)
) -> dict:
    location = await repo.update_location(location_id, **body.model_dump(exclude_unset=True))
    return location.to_wire()


@router.post("/{location_id}/species")
async def add_species(
    location_id: str, body: SpeciesSighting, repo: SyncRepository = Depends(get_repository)
) -> dict:
    location = await repo.add_species_to_location(location_id, body.species_name, body.photo_path)
    return location.to_wire()


@router.delete("/{location_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_location(location_id: str, repo: SyncRepository = Depends(get_repository)):
    await repo.delete_location(location_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
