"""Sync housekeeping endpoints: queue status, manual reconcile, cache and user-data management."""
import os
from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from ..core.config import Settings
from ..core.errors import ValidationError
from ..services.data_export import default_export_path
from ..services.repository import SyncRepository
from .deps import ApiModel, get_repository, get_settings

router = APIRouter(prefix="/sync", tags=["sync"])


class ExportRequest(ApiModel):
    filename: Optional[str] = None  # Written inside EXPORT_DIR


@router.get("/status")
async def sync_status(repo: SyncRepository = Depends(get_repository)) -> dict:
    return await repo.sync_status()


@router.get("/pending")
async def pending_mutations(repo: SyncRepository = Depends(get_repository)) -> List[dict]:
    entries = await repo.pending_mutations()
    return [
        {
            "entity_type": e.entity_type.value,
            "entity_id": e.entity_id,
            "kind": e.kind,
            "enqueued_at": e.enqueued_at.isoformat(),
            "attempts": e.attempts,
            "last_error": e.last_error,
            "status": repo.reconciler.status_of(e).value,
        }
        for e in entries
    ]


@router.post("/reconcile")
async def reconcile(
    force: bool = Query(False, description="Also retry parked and backing-off items"),
    repo: SyncRepository = Depends(get_repository),
) -> dict:
    report = await repo.reconcile(force=force)
    return report.to_dict()


@router.post("/evict")
async def evict_expired(
    retention_days: Optional[int] = Query(None, ge=1),
    repo: SyncRepository = Depends(get_repository),
) -> dict:
    evicted = await repo.evict_expired_cache(retention_days)
    return {"evicted": evicted}


@router.delete("/cache")
async def clear_cache(repo: SyncRepository = Depends(get_repository)) -> dict:
    await repo.clear_cache()
    return {"cleared": True}


@router.get("/storage")
async def storage_usage(repo: SyncRepository = Depends(get_repository)) -> dict:
    return {"bytes": await repo.storage_usage()}


@router.post("/export")
async def export_user_data(
    body: ExportRequest,
    repo: SyncRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> dict:
    if body.filename:
        filename = os.path.basename(body.filename)
        if not filename or filename in (".", ".."):
            raise ValidationError("Invalid export filename", {"filename": body.filename})
        path = os.path.join(settings.EXPORT_DIR, filename)
    else:
        path = default_export_path(settings.EXPORT_DIR)
    return await repo.export_user_data(path)


@router.delete("/user-data")
async def delete_all_user_data(repo: SyncRepository = Depends(get_repository)) -> dict:
    """Erase all user data locally and, when reachable, on the backend."""
    remote_erased = await repo.delete_all_user_data()
    return {"local_erased": True, "remote_erased": remote_erased}
