"""Worker import API endpoints.

POST /imports/worker (start a worker), POST /imports/worker-webhook (worker
progress callback), GET /imports/{job_id}/progress, DELETE /imports/{job_id}.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from loguru import logger

from takeout_import.core.dependencies import get_current_owner, get_orchestrator
from takeout_import.lib.jobs import AuthenticationError, ConfigurationError, NotFoundError
from takeout_import.lib.provisioning import ProvisioningError
from takeout_import.schemas.imports import (
    ImportProgressResponse,
    StartImportRequest,
    StartImportResponse,
    WebhookAck,
)
from takeout_import.services.orchestrator import ImportJobOrchestrator

router = APIRouter(prefix="/imports", tags=["imports"])


@router.post("/worker", response_model=StartImportResponse, status_code=201)
async def start_worker_import(
    body: StartImportRequest,
    owner_id: Annotated[str, Depends(get_current_owner)],
    orchestrator: Annotated[ImportJobOrchestrator, Depends(get_orchestrator)],
) -> StartImportResponse:
    """Start a remote worker that imports the given Takeout archives from Google Drive."""
    try:
        started = await orchestrator.start_job(owner_id, body)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ProvisioningError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return StartImportResponse(id=started.job_id, machine_id=started.machine_ref, volume_id=started.volume_ref)


@router.post("/worker-webhook", response_model=WebhookAck)
async def worker_webhook(
    request: Request,
    orchestrator: Annotated[ImportJobOrchestrator, Depends(get_orchestrator)],
    x_webhook_signature: Annotated[str | None, Header()] = None,
) -> WebhookAck:
    """Receive a signed progress update from a worker."""
    raw_body = await request.body()
    try:
        await orchestrator.receive_webhook(x_webhook_signature, raw_body)
    except AuthenticationError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        logger.warning(f"Rejected malformed worker webhook: {exc}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return WebhookAck()


@router.get("/{job_id}/progress", response_model=ImportProgressResponse)
async def get_import_progress(
    job_id: str,
    owner_id: Annotated[str, Depends(get_current_owner)],
    orchestrator: Annotated[ImportJobOrchestrator, Depends(get_orchestrator)],
) -> ImportProgressResponse:
    """Get the progress and activity timeline of a worker import."""
    progress = await orchestrator.get_progress(job_id, owner_id=owner_id)
    if progress is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Import job not found")
    return progress


@router.delete("/{job_id}", status_code=204)
async def cancel_import(
    job_id: str,
    owner_id: Annotated[str, Depends(get_current_owner)],
    orchestrator: Annotated[ImportJobOrchestrator, Depends(get_orchestrator)],
) -> Response:
    """Cancel a worker import and release its resources."""
    await orchestrator.cancel_job(job_id, owner_id=owner_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
