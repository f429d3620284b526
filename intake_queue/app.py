"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from intake_queue.config import AppConfig
from intake_queue.db.engine import Database
from intake_queue.errors import (
    ConfigurationError,
    IntakeError,
    RunNotCancelable,
    RunNotFound,
)
from intake_queue.service import ImportService

logger = structlog.get_logger()

_ERROR_STATUS: list[tuple[type[IntakeError], int]] = [
    (RunNotFound, status.HTTP_404_NOT_FOUND),
    (RunNotCancelable, status.HTTP_409_CONFLICT),
    (ConfigurationError, status.HTTP_422_UNPROCESSABLE_CONTENT),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create the DB engine and the import service. Shutdown: dispose."""
    config: AppConfig = app.state.config
    db = Database(config.database)
    app.state.db = db
    service = ImportService(config, db.session)
    await service.start()
    app.state.service = service
    logger.info("import_service_started")
    yield
    await service.close()
    await db.close()
    logger.info("shutdown_complete")


async def _intake_error_handler(request: Request, exc: IntakeError) -> JSONResponse:
    code = status.HTTP_400_BAD_REQUEST
    for exc_type, mapped in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            code = mapped
            break
    logger.info("request_rejected", path=request.url.path, status_code=code, error=str(exc))
    return JSONResponse(status_code=code, content={"detail": str(exc)})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_failed", path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


def create_app(config: AppConfig | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if config is None:
        config = AppConfig()

    app = FastAPI(
        title="Intake Queue",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config

    app.add_exception_handler(IntakeError, _intake_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    from intake_queue.routers.dispatch import router as dispatch_router
    from intake_queue.routers.runs import router as runs_router

    app.include_router(runs_router)
    app.include_router(dispatch_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "intake-queue"}

    return app
