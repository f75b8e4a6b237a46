"""FastAPI application factory.

Creates the FastAPI app with lifespan management, exception handlers,
and OpenAPI metadata.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from takeout_import.core.background import task_runner
from takeout_import.core.config import get_settings
from takeout_import.core.database import dispose_engine, get_session_factory, init_engine
from takeout_import.core.logging import setup_logging
from takeout_import.services.orchestrator import build_orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifecycle: engine and orchestrator on startup, drain and dispose on shutdown."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_dir)
    init_engine(settings.database_url, echo=False)

    orchestrator = build_orchestrator(settings, get_session_factory(), task_runner)
    app.state.orchestrator = orchestrator
    if not orchestrator.provisioner.is_configured:
        logger.warning("FLY_API_TOKEN is not set; worker imports are disabled")

    yield

    # Let in-flight cleanups finish before the Fly client and engine go away
    if task_runner.pending_count:
        logger.info(f"Waiting for {task_runner.pending_count} background task(s)")
    await task_runner.join()
    await orchestrator.provisioner.close()
    await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Takeout Import API",
        description="Google Takeout bulk import through ephemeral Fly.io workers",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Register exception handlers
    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc)},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": jsonable_encoder(exc.errors())},
        )

    # Register middleware and routers
    from takeout_import.api.router import create_router, setup_middleware

    setup_middleware(app, settings)
    app.include_router(create_router(settings))

    return app
