"""Worker import Pydantic v2 request/response schemas."""

from typing import Literal

from pydantic import BaseModel

from takeout_import.lib.jobs.models import ImportProgress, ImportWorkload

# Request body of POST /imports/worker
StartImportRequest = ImportWorkload

# Response body of GET /imports/{job_id}/progress
ImportProgressResponse = ImportProgress


class StartImportResponse(BaseModel):
    """Identifiers of a newly started worker import."""

    id: str
    machine_id: str
    volume_id: str


class WebhookAck(BaseModel):
    """Acknowledgement returned to the worker."""

    status: Literal["ok"] = "ok"
