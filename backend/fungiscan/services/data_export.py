"""
User data export (GDPR data portability).
Bundles identification history, saved locations and preferences into one JSON file.
"""
import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.clock import utcnow
from ..core.config import settings
from ..core.errors import RemoteError, StorageError

logger = logging.getLogger(__name__)


def default_export_path(export_dir: Optional[str] = None) -> str:
    ts = utcnow().strftime("%Y%m%d%H%M%S")
    return os.path.join(export_dir or settings.EXPORT_DIR, f"fungiscan_export_{ts}.json")


async def _collect(read: Callable[[], Awaitable[Any]], empty: Any) -> Any:
    # An unreachable backend with nothing cached exports as empty, not as an error
    try:
        return await read()
    except RemoteError as exc:
        logger.warning("Export continuing without remote data: %s", exc)
        return empty


def _write_json(path: str, document: Dict[str, Any]) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(document, fh, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


async def export_user_data(repository, path: Optional[str] = None) -> Dict[str, Any]:
    """Write the export document to ``path``; returns a summary of what was written."""
    identifications: List = await _collect(repository.get_identification_history, [])
    locations: List = await _collect(repository.get_all_saved_locations, [])
    preferences = await repository.get_user_preferences()

    document = {
        "identifications": [i.to_wire() for i in identifications],
        "locations": [l.to_wire() for l in locations],
        "preferences": preferences.to_wire(),
        "exportDate": utcnow().isoformat(),
    }
    path = os.fspath(path) if path is not None else default_export_path()
    try:
        await asyncio.to_thread(_write_json, path, document)
    except OSError as exc:
        raise StorageError("Could not write export file", {"path": path, "cause": str(exc)}) from exc

    logger.info(
        "Exported %d identifications and %d locations to %s",
        len(identifications), len(locations), path,
    )
    return {
        "path": path,
        "identifications": len(identifications),
        "locations": len(locations),
        "exportDate": document["exportDate"],
    }
