"""Root API router with /api/v1 prefix and middleware registration."""

from fastapi import APIRouter, FastAPI

from takeout_import.api.middleware import SecurityHeadersMiddleware, setup_cors
from takeout_import.core.config import Settings


def create_router(settings: Settings) -> APIRouter:
    """Create the root API router with all sub-routers included.

    Args:
        settings: Application settings.

    Returns:
        Configured API router.
    """
    from takeout_import.api.v1.imports import router as imports_router

    root_router = APIRouter(prefix=settings.api_v1_prefix)
    root_router.include_router(imports_router)

    return root_router


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware on the FastAPI app.

    Args:
        app: The FastAPI application.
        settings: Application settings.
    """
    setup_cors(app, settings)
    app.add_middleware(SecurityHeadersMiddleware)
