"""
FungiScan - offline-first sync service.
Serves the app UI from a local cache and keeps it in sync with the FungiScan backend.
"""
from contextlib import asynccontextmanager
from typing import Dict, Optional, Type

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import identifications, locations, mushrooms, preferences, sync
from .core.config import Settings, settings as default_settings
from .core.errors import (
    FungiScanError,
    NetworkError,
    NotFound,
    ServerError,
    StorageError,
    Unauthorized,
    ValidationError,
)
from .core.logging_config import configure_logging
from .core.sync_middleware import PendingSyncMiddleware
from .services.connectivity import ConnectivityOracle, HostResolver, NetworkReachability
from .services.local_store import LocalStore
from .services.offline_sync import Reconciler
from .services.remote_client import RemoteClient
from .services.repository import SyncRepository
from .services.scheduler import SyncScheduler

ERROR_STATUS: Dict[Type[FungiScanError], int] = {
    NotFound: 404,
    ValidationError: 422,
    Unauthorized: 401,
    ServerError: 502,
    NetworkError: 503,
    StorageError: 500,
}


def status_for(exc: FungiScanError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return 500


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    reachability: Optional[NetworkReachability] = None,
) -> FastAPI:
    """Build the service. ``transport`` and ``reachability`` replace the network in tests."""
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = LocalStore(settings.DATABASE_URL)
        await store.create_schema()
        remote = RemoteClient(
            base_url=settings.API_BASE_URL,
            api_key=settings.API_KEY,
            timeout=settings.REQUEST_TIMEOUT,
            health_timeout=settings.HEALTH_CHECK_TIMEOUT,
            transport=transport,
        )
        oracle = ConnectivityOracle(
            probe=remote,
            reachability=reachability or HostResolver(remote.host),
            window_seconds=settings.CONNECTIVITY_CACHE_SECONDS,
        )
        reconciler = Reconciler(
            store, remote, oracle,
            max_attempts=settings.MAX_SYNC_ATTEMPTS,
            retry_base_seconds=settings.RETRY_BASE_SECONDS,
            retry_max_seconds=settings.RETRY_MAX_SECONDS,
        )
        repository = SyncRepository(
            store, remote, oracle, reconciler, search_threshold=settings.SEARCH_LOCAL_THRESHOLD
        )
        scheduler = SyncScheduler(
            repository,
            reconcile_interval=settings.RECONCILE_INTERVAL_SECONDS,
            eviction_interval=settings.EVICTION_INTERVAL_SECONDS,
        )
        app.state.repository = repository
        scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()
            await repository.aclose()
            await remote.aclose()
            await store.close()
            app.state.repository = None

    app = FastAPI(
        title="FungiScan Sync API",
        description=(
            "Offline-first data layer for the FungiScan mushroom app. "
            "Reads degrade to the local cache; writes are queued until the backend is reachable."
        ),
        version=settings.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Pending-Sync"],
    )
    app.add_middleware(PendingSyncMiddleware)

    @app.exception_handler(FungiScanError)
    async def fungiscan_error_handler(request: Request, exc: FungiScanError):
        return JSONResponse(status_code=status_for(exc), content=exc.to_dict())

    app.include_router(mushrooms.router, prefix="/api/v1")
    app.include_router(identifications.router, prefix="/api/v1")
    app.include_router(locations.router, prefix="/api/v1")
    app.include_router(preferences.router, prefix="/api/v1")
    app.include_router(sync.router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": settings.APP_NAME, "version": settings.VERSION}

    return app


app = create_app()
