"""Worker import job records and the worker webhook wire format.

``ImportJobRecord`` is the single persisted document per job.  It is tagged
with ``record_type`` and ``schema_version`` so the store can reject payloads
written by anything else.
"""

import secrets
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, model_validator
from pydantic.alias_generators import to_camel

from takeout_import.lib.jobs.timeline import ActivityEvent


class JobStatus(StrEnum):
    """Lifecycle status of a worker import job."""

    PENDING = "pending"
    CREATING = "creating"
    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    CLEANUP = "cleanup"


class ProgressPhase(StrEnum):
    """Phase reported by the worker; mirrors a subset of ``JobStatus``."""

    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class ImportProgress(BaseModel):
    """User-visible progress of an import job."""

    phase: ProgressPhase = ProgressPhase.DOWNLOADING
    current: NonNegativeInt = 0
    total: NonNegativeInt = 0
    current_file: str | None = None
    bytes_downloaded: NonNegativeInt | None = None
    total_bytes: NonNegativeInt | None = None
    photos_imported: NonNegativeInt = 0
    albums_found: NonNegativeInt = 0
    errors: list[str] = Field(default_factory=list)
    events: list[ActivityEvent] = Field(default_factory=list)


class ImportJobRecord(BaseModel):
    """Persisted state of one worker import job."""

    record_type: Literal["worker_import"] = "worker_import"
    schema_version: Literal[1] = 1

    id: str
    owner_id: str
    status: JobStatus = JobStatus.PENDING

    # Fly resources, each assigned at most once
    machine_ref: str = ""
    volume_ref: str = ""

    progress: ImportProgress = Field(default_factory=ImportProgress)

    # Never returned to clients
    webhook_secret: str = Field(repr=False, min_length=32)
    temporary_credential_ref: str = ""
    credential_revoked: bool = False

    created_at: datetime
    updated_at: datetime

    @classmethod
    def new(cls, owner_id: str, *, total: int, now: datetime | None = None) -> "ImportJobRecord":
        """Create a fresh ``pending`` record with a new id and webhook secret."""
        now = now or datetime.now(UTC)
        return cls(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            progress=ImportProgress(total=total),
            webhook_secret=secrets.token_hex(32),
            created_at=now,
            updated_at=now,
        )

    def touch(self, now: datetime | None = None) -> None:
        """Mark the record as modified."""
        self.updated_at = now or datetime.now(UTC)

    def assign_resources(self, machine_ref: str, volume_ref: str) -> None:
        """Record the provisioned machine and volume.

        Raises:
            ValueError: If a different resource was already recorded.
        """
        for attr, value in (("machine_ref", machine_ref), ("volume_ref", volume_ref)):
            existing = getattr(self, attr)
            if existing and existing != value:
                msg = f"{attr} already set to {existing!r} for job {self.id}"
                raise ValueError(msg)
            setattr(self, attr, value)


class ImportWorkload(BaseModel):
    """Files a worker should download from Google Drive and import."""

    file_ids: list[str] = Field(min_length=1, description="Google Drive file IDs of the Takeout archives")
    file_sizes: list[NonNegativeInt] = Field(
        min_length=1,
        description="Size in bytes of each file, in the same order as file_ids",
    )

    @model_validator(mode="after")
    def check_matching_lengths(self) -> "ImportWorkload":
        if len(self.file_ids) != len(self.file_sizes):
            msg = "file_ids and file_sizes must have the same length"
            raise ValueError(msg)
        return self


class WorkerProgress(BaseModel):
    """Counter block of a worker webhook."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    current: NonNegativeInt
    total: NonNegativeInt
    current_file: str | None = None


class WebhookPayload(BaseModel):
    """Progress update posted by the worker (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    phase: ProgressPhase
    progress: WorkerProgress
    bytes_downloaded: NonNegativeInt | None = None
    total_bytes: NonNegativeInt | None = None
    photos_imported: NonNegativeInt | None = None
    albums_found: NonNegativeInt | None = None
    errors: list[str] | None = None
