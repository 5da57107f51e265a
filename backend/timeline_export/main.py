import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from timeline_export.api import export, storage
from timeline_export.config import get_settings
from timeline_export.exceptions import ExportError, TimelineValidationError
from timeline_export.services.export_orchestrator import ExportOrchestrator
from timeline_export.services.job_store import create_job_store
from timeline_export.services.storage_service import get_storage_service

settings = get_settings()
logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def create_app(
    orchestrator: ExportOrchestrator | None = None,
    storage_service=None,
    run_sweeper: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # Startup
        backend = storage_service or get_storage_service()
        app.state.storage = backend
        app.state.orchestrator = orchestrator or ExportOrchestrator(
            create_job_store(settings.database_url, settings.database_echo),
            backend,
            settings,
        )
        await app.state.orchestrator.startup(run_sweeper=run_sweeper)
        yield
        # Shutdown
        await app.state.orchestrator.shutdown()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ExportError)
    async def export_error_handler(request: Request, exc: ExportError) -> JSONResponse:
        if isinstance(exc, TimelineValidationError):
            logger.info(f"[VALIDATE] {request.url.path}: {exc.message}")
        elif exc.status_code >= 500:
            logger.error(f"{request.url.path}: {exc.code} {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "detail": jsonable_encoder(exc.to_error_info())},
        )

    # Global exception handler to ensure errors return proper JSON
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(status_code=500, content={"success": False, "detail": "Internal server error"})

    # Routers
    app.include_router(export.router, prefix="/api/export", tags=["export"])
    app.include_router(storage.router, prefix="/api/storage", tags=["storage"])

    @app.get("/health")
    async def health_check(request: Request) -> dict:
        jobs = await request.app.state.orchestrator.job_counts()
        return {
            "status": "healthy",
            "version": settings.app_version,
            "git_hash": settings.git_hash,
            "jobs": jobs,
        }

    return app


app = create_app()
