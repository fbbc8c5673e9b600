"""
"Pending sync" indicator middleware.
Stamps every response with the number of local mutations not yet on the backend,
so the UI can show a non-blocking sync badge without polling a separate endpoint.
"""
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from .errors import StorageError

logger = logging.getLogger(__name__)

PENDING_SYNC_HEADER = "X-Pending-Sync"


class PendingSyncMiddleware(BaseHTTPMiddleware):
    """Adds ``X-Pending-Sync: <count>`` to every response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        repository = getattr(request.app.state, "repository", None)
        if repository is None:
            return response

        try:
            pending = await repository.store.pending_count()
        except StorageError as exc:
            logger.warning(
                "Pending-sync count unavailable for %s %s: %s",
                request.method, request.url.path, exc,
            )
            return response

        response.headers[PENDING_SYNC_HEADER] = str(pending)
        return response
