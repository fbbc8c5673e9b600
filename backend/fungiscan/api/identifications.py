from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional

from ..entities.base import Coordinates
from ..entities.identification import IdentificationResult, Prediction
from ..services.repository import SyncRepository
from .deps import ApiModel, get_repository

router = APIRouter(prefix="/identifications", tags=["identifications"])


class IdentifyRequest(ApiModel):
    predictions: List[Prediction]
    image_url: str
    location: Optional[Coordinates] = None


class VerificationRequest(ApiModel):
    user_query: str


@router.get("/")
async def get_history(repo: SyncRepository = Depends(get_repository)) -> List[dict]:
    return [r.to_wire() for r in await repo.get_identification_history()]


@router.get("/recent")
async def get_recent(
    limit: int = Query(10, ge=1, le=100),
    repo: SyncRepository = Depends(get_repository),
) -> List[dict]:
    return [r.to_wire() for r in await repo.get_recent_identifications(limit)]


@router.post("/", status_code=status.HTTP_201_CREATED)
async def save_result(
    result: IdentificationResult, repo: SyncRepository = Depends(get_repository)
) -> dict:
    saved = await repo.save_identification_result(result)
    return saved.to_wire()


@router.post("/identify", status_code=status.HTTP_201_CREATED)
async def identify(body: IdentifyRequest, repo: SyncRepository = Depends(get_repository)) -> dict:
    """Map ranked ML predictions to a catalogued species and save the result."""
    result = await repo.identify_from_predictions(body.predictions, body.image_url, body.location)
    return result.to_wire()


@router.post("/{identification_id}/verify", status_code=status.HTTP_202_ACCEPTED)
async def request_verification(
    identification_id: str,
    body: VerificationRequest,
    repo: SyncRepository = Depends(get_repository),
) -> dict:
    request = await repo.request_expert_verification(identification_id, body.user_query)
    return request.to_wire()
