"""Ephemeral worker job orchestrator.

Starts a Fly machine plus volume per Google Takeout import, folds the
worker's signed progress webhooks into the persisted job record, and
releases the machine, volume and temporary credential once the job ends.

All job state lives in the job store.  Every read-modify-write of one job
runs under that job's lock; provisioning and teardown calls happen outside
it so a slow Fly API never blocks webhooks for the same job.
"""

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from loguru import logger
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from takeout_import.core.background import BackgroundTaskRunner
from takeout_import.core.config import Settings
from takeout_import.lib.jobs import (
    ActivityKind,
    CleanupError,
    ConfigurationError,
    ImportJobRecord,
    ImportProgress,
    ImportWorkload,
    JobStatus,
    NotFoundError,
    ProgressPhase,
    WebhookPayload,
    advance,
    append_event,
    is_terminal,
    status_for_phase,
    transition,
)
from takeout_import.lib.provisioning import (
    BaseProvisioningClient,
    FlyMachinesClient,
    MachineResources,
    calculate_volume_size_gb,
)
from takeout_import.lib.webhook import CANONICALIZATION_VERSION, parse_signature_header, verify_signature
from takeout_import.services.credential_service import WORKER_SCOPES, ApiKeyCredentialIssuer, IssuedCredential
from takeout_import.services.drive_token_service import DriveTokens, DriveTokenStore
from takeout_import.services.job_store import JobStore, SqlMetadataStore

# Machine metadata key linking a Fly machine back to its job
JOB_ID_METADATA_KEY = "import_job_id"

_PHASE_EVENTS: dict[ProgressPhase, tuple[ActivityKind, str]] = {
    ProgressPhase.DOWNLOADING: (ActivityKind.INFO, "Starting file downloads from Google Drive..."),
    ProgressPhase.PROCESSING: (ActivityKind.INFO, "Downloads finished, importing photos..."),
    ProgressPhase.FAILED: (ActivityKind.ERROR, "Import failed"),
}


class JobRecordStore(Protocol):
    async def get(self, job_id: str) -> ImportJobRecord | None: ...

    async def save(self, record: ImportJobRecord) -> None: ...


class CredentialIssuer(Protocol):
    async def issue(self, owner_id: str, scopes: Iterable[str]) -> IssuedCredential: ...

    async def revoke(self, owner_id: str, credential_id: str) -> bool: ...


class TokenSupplier(Protocol):
    async def get(self, owner_id: str) -> DriveTokens | None: ...


@dataclass(frozen=True)
class StartedJob:
    """Identifiers returned to the caller once a worker is running."""

    job_id: str
    machine_ref: str
    volume_ref: str


def _now() -> datetime:
    return datetime.now(UTC)


def _event(record: ImportJobRecord, kind: ActivityKind, message: str) -> None:
    append_event(record.progress.events, kind, message)


class ImportJobOrchestrator:
    """Runs worker import jobs end to end.

    Args:
        settings: Application settings (sizing, URLs, OAuth app, settle delay).
        job_store: Durable job record store.
        provisioner: Machine and volume provider.
        credentials: Issues and revokes the worker's temporary API key.
        tokens: Supplies the owner's Google Drive tokens.
        task_runner: Runs cleanup dispatched from webhooks.
    """

    def __init__(
        self,
        settings: Settings,
        job_store: JobRecordStore,
        provisioner: BaseProvisioningClient,
        credentials: CredentialIssuer,
        tokens: TokenSupplier,
        task_runner: BackgroundTaskRunner,
    ) -> None:
        self._settings = settings
        self._store = job_store
        self._provisioner = provisioner
        self._credentials = credentials
        self._tokens = tokens
        self._task_runner = task_runner
        # Per-job lock plus the number of holders and waiters; dropped at zero
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @property
    def provisioner(self) -> BaseProvisioningClient:
        return self._provisioner

    @asynccontextmanager
    async def _locked(self, job_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(job_id) or (asyncio.Lock(), 0)
        self._locks[job_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[job_id]
            if users == 1:
                del self._locks[job_id]
            else:
                self._locks[job_id] = (lock, users - 1)

    async def _require(self, job_id: str) -> ImportJobRecord:
        record = await self._store.get(job_id)
        if record is None:
            raise NotFoundError(job_id)
        return record

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_job(self, owner_id: str, workload: ImportWorkload) -> StartedJob:
        """Provision a worker for ``workload`` and return once it is running.

        Raises:
            ConfigurationError: If a prerequisite is missing (nothing is created).
            ProvisioningError: If the volume or machine could not be created.
                The job is left ``failed`` with its credential revoked.
        """
        tokens = await self._tokens.get(owner_id)
        if tokens is None:
            msg = "Google Drive is not connected"
            raise ConfigurationError(msg)
        if not (self._settings.google_client_id and self._settings.google_client_secret):
            msg = "Google OAuth client is not configured"
            raise ConfigurationError(msg)
        webhook_url = self._settings.webhook_url
        if webhook_url is None:
            msg = "PUBLIC_BASE_URL is not configured"
            raise ConfigurationError(msg)
        if not self._provisioner.is_configured:
            msg = "Fly API token is not configured"
            raise ConfigurationError(msg)

        record = ImportJobRecord.new(owner_id, total=len(workload.file_ids))
        job_id = record.id
        credential = await self._credentials.issue(owner_id, [scope.value for scope in WORKER_SCOPES])
        record.temporary_credential_ref = credential.id
        transition(record, JobStatus.CREATING)
        _event(record, ActivityKind.INFO, "Starting import job...")
        try:
            async with self._locked(job_id):
                await self._store.save(record)
        except Exception:
            await self._credentials.revoke(owner_id, credential.id)
            raise
        logger.info(f"Import job {job_id} created for owner {owner_id} with {len(workload.file_ids)} file(s)")

        env = self._worker_env(record, workload, tokens, credential, webhook_url)
        try:
            machine_ref, volume_ref = await self._provision_worker(job_id, workload, env)
        except Exception as exc:
            logger.error(f"Failed to create worker for job {job_id}: {exc}")
            await self._fail_start(job_id, exc)
            raise

        teardown = False
        async with self._locked(job_id):
            current = await self._require(job_id)
            current.assign_resources(machine_ref, volume_ref)
            if not is_terminal(current.status):
                # An early webhook may already have moved the job past creating
                advance(current, JobStatus.DOWNLOADING)
                _event(current, ActivityKind.SUCCESS, "Worker started successfully")
                _event(current, ActivityKind.INFO, f"Preparing to download {len(workload.file_ids)} files...")
            else:
                # Cancelled while provisioning; a cleanup that already ran saw no refs
                teardown = current.status == JobStatus.CLEANUP
                current.touch()
            await self._store.save(current)

        if teardown:
            logger.warning(f"Job {job_id} was cancelled during provisioning, releasing new resources")
            await self._release_late_resources(job_id, machine_ref, volume_ref)
        else:
            logger.info(f"Worker machine {machine_ref} with volume {volume_ref} started for job {job_id}")

        return StartedJob(job_id=job_id, machine_ref=machine_ref, volume_ref=volume_ref)

    def _worker_env(
        self,
        record: ImportJobRecord,
        workload: ImportWorkload,
        tokens: DriveTokens,
        credential: IssuedCredential,
        webhook_url: str,
    ) -> dict[str, str]:
        settings = self._settings
        return {
            "WORKER_JOB_ID": record.id,
            "WORKER_FILE_IDS": json.dumps(workload.file_ids),
            "WORKER_ACCESS_TOKEN": tokens.access_token,
            "WORKER_REFRESH_TOKEN": tokens.refresh_token or "",
            "GOOGLE_CLIENT_ID": settings.google_client_id or "",
            "GOOGLE_CLIENT_SECRET": settings.google_client_secret or "",
            "IMPORT_SERVER_URL": settings.public_base_url or "",
            "IMPORT_API_KEY": credential.secret,
            "WEBHOOK_URL": webhook_url,
            "WEBHOOK_SECRET": record.webhook_secret,
            "WEBHOOK_SIGNATURE_VERSION": CANONICALIZATION_VERSION,
            "VOLUME_PATH": settings.worker_volume_path,
        }

    async def _provision_worker(self, job_id: str, workload: ImportWorkload, env: dict[str, str]) -> tuple[str, str]:
        settings = self._settings
        size_gb = calculate_volume_size_gb(
            workload.file_sizes,
            buffer_gb=settings.volume_buffer_gb,
            min_gb=settings.volume_min_gb,
            max_gb=settings.volume_max_gb,
        )
        logger.info(f"Job {job_id}: provisioning {size_gb}GB volume for {sum(workload.file_sizes)} bytes")
        volume_ref = await self._provisioner.create_volume(size_gb, name=f"import_{job_id.replace('-', '')[:16]}")
        try:
            machine_ref = await self._provisioner.create_machine(
                volume_ref,
                env,
                MachineResources(cpus=settings.worker_cpus, memory_mb=settings.worker_memory_mb),
                name=f"import-{job_id[:8]}",
                metadata={JOB_ID_METADATA_KEY: job_id},
            )
        except Exception:
            try:
                await self._provisioner.destroy_volume(volume_ref)
            except Exception as cleanup_exc:
                logger.error(f"Failed to delete volume {volume_ref} after machine creation failed: {cleanup_exc}")
            raise
        return machine_ref, volume_ref

    async def _fail_start(self, job_id: str, exc: Exception) -> None:
        async with self._locked(job_id):
            record = await self._require(job_id)
            if not is_terminal(record.status):
                transition(record, JobStatus.FAILED)
                record.progress.phase = ProgressPhase.FAILED
            message = f"Failed to create worker: {exc}"
            record.progress.errors.append(message)
            _event(record, ActivityKind.ERROR, message)
            if record.temporary_credential_ref and not record.credential_revoked:
                try:
                    await self._credentials.revoke(record.owner_id, record.temporary_credential_ref)
                    record.credential_revoked = True
                except Exception as revoke_exc:
                    logger.error(f"Failed to revoke credential for job {job_id}: {revoke_exc}")
            record.touch()
            await self._store.save(record)

    async def _release_late_resources(self, job_id: str, machine_ref: str, volume_ref: str) -> None:
        failures = await self._teardown(job_id, None, machine_ref, volume_ref)
        async with self._locked(job_id):
            record = await self._require(job_id)
            for failure in failures:
                _event(record, ActivityKind.ERROR, f"Cleanup step failed: {failure}")
            _event(record, ActivityKind.INFO, "Released worker started after cancellation")
            record.touch()
            await self._store.save(record)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def receive_webhook(self, signature_header: str | None, raw_body: bytes) -> None:
        """Authenticate and apply a raw worker webhook.

        Raises:
            ValueError: If the body is not a JSON object with a ``jobId``.
            AuthenticationError: If the signature is missing or wrong.
            NotFoundError: If the job does not exist.
        """
        try:
            data = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            msg = f"Webhook body is not valid JSON: {exc}"
            raise ValueError(msg) from exc
        if not isinstance(data, dict):
            msg = "Webhook body must be a JSON object"
            raise ValueError(msg)
        job_id = data.get("jobId")
        if not isinstance(job_id, str) or not job_id:
            msg = "Webhook body has no jobId"
            raise ValueError(msg)
        await self.handle_webhook(job_id, signature_header, data)

    async def handle_webhook(self, job_id: str, signature: str | None, payload: dict[str, Any]) -> None:
        """Verify ``payload`` against the job's secret and merge it into the record.

        Nothing is persisted unless the signature matches and the payload
        validates.  A terminal phase dispatches cleanup in the background.
        """
        parse_signature_header(signature)
        async with self._locked(job_id):
            record = await self._require(job_id)
            verify_signature(record.webhook_secret, payload, signature, job_id=job_id)
            try:
                update = WebhookPayload.model_validate(payload)
            except ValidationError as exc:
                msg = f"Invalid webhook payload for job {job_id}: {exc.error_count()} error(s)"
                raise ValueError(msg) from exc
            if update.job_id != job_id:
                msg = f"Webhook jobId {update.job_id} does not match job {job_id}"
                raise ValueError(msg)
            self._merge(record, update)
            await self._store.save(record)
            status = record.status

        logger.debug(f"Job {job_id}: webhook phase={update.phase} status={status}")
        if update.phase in (ProgressPhase.COMPLETE, ProgressPhase.FAILED):
            self._task_runner.submit_task(self.cleanup_job(job_id), name=f"cleanup-{job_id}")

    @staticmethod
    def _merge(record: ImportJobRecord, update: WebhookPayload) -> None:
        progress = record.progress
        previous_phase = progress.phase
        previous_file = progress.current_file
        previous_albums = progress.albums_found

        progress.current = update.progress.current
        progress.total = update.progress.total
        progress.current_file = update.progress.current_file
        if update.bytes_downloaded is not None:
            progress.bytes_downloaded = update.bytes_downloaded
        if update.total_bytes is not None:
            progress.total_bytes = update.total_bytes
        if update.photos_imported is not None:
            progress.photos_imported = update.photos_imported
        if update.albums_found is not None:
            progress.albums_found = update.albums_found

        for error in update.errors or []:
            progress.errors.append(error)
            _event(record, ActivityKind.ERROR, error)

        entered = advance(record, status_for_phase(update.phase))
        if entered:
            progress.phase = update.phase

        if progress.phase != previous_phase:
            if progress.phase == ProgressPhase.COMPLETE:
                _event(
                    record,
                    ActivityKind.SUCCESS,
                    f"Import complete! {progress.photos_imported} photos imported.",
                )
            else:
                kind, message = _PHASE_EVENTS[progress.phase]
                _event(record, kind, message)

        if (
            progress.phase == ProgressPhase.DOWNLOADING
            and progress.current_file
            and progress.current_file != previous_file
        ):
            _event(record, ActivityKind.DOWNLOAD, f"Downloading {progress.current_file}")

        if progress.albums_found > previous_albums:
            _event(record, ActivityKind.ALBUM, f"Found {progress.albums_found} albums")

        record.touch()

    # ------------------------------------------------------------------
    # Queries and cancellation
    # ------------------------------------------------------------------

    async def get_progress(self, job_id: str, *, owner_id: str | None = None) -> ImportProgress | None:
        """Return the job's progress, or ``None`` if unknown (or owned by someone else)."""
        record = await self._store.get(job_id)
        if record is None or (owner_id is not None and record.owner_id != owner_id):
            return None
        return record.progress

    async def cancel_job(self, job_id: str, *, owner_id: str | None = None) -> None:
        """Stop a running job and release its resources. Unknown or finished jobs are left alone."""
        async with self._locked(job_id):
            record = await self._store.get(job_id)
            if record is None or (owner_id is not None and record.owner_id != owner_id):
                return
            if is_terminal(record.status):
                return
            record.progress.errors.append("Cancelled by user")
            transition(record, JobStatus.FAILED)
            record.progress.phase = ProgressPhase.FAILED
            _event(record, ActivityKind.ERROR, "Import cancelled by user")
            await self._store.save(record)

        logger.info(f"Import job {job_id} cancelled")
        await self.cleanup_job(job_id)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def cleanup_job(self, job_id: str) -> None:
        """Release the job's machine, volume and credential.

        Safe to call any number of times; only the first call on a finished
        job does anything.  Step failures are logged and recorded on the
        timeline, never raised.
        """
        async with self._locked(job_id):
            record = await self._store.get(job_id)
            if record is None or record.status == JobStatus.CLEANUP:
                return
            if not is_terminal(record.status):
                logger.warning(f"Refusing to clean up job {job_id} in status {record.status}")
                return
            transition(record, JobStatus.CLEANUP)
            _event(record, ActivityKind.INFO, "Releasing worker resources...")
            await self._store.save(record)
            credential_ref = None if record.credential_revoked else record.temporary_credential_ref
            owner_id = record.owner_id
            machine_ref = record.machine_ref
            volume_ref = record.volume_ref

        logger.info(f"Cleaning up job {job_id}")
        failures = await self._teardown(
            job_id,
            (owner_id, credential_ref) if credential_ref else None,
            machine_ref,
            volume_ref,
        )

        async with self._locked(job_id):
            record = await self._require(job_id)
            if credential_ref and not any(f.step == "revoke_credential" for f in failures):
                record.credential_revoked = True
            for failure in failures:
                _event(record, ActivityKind.ERROR, f"Cleanup step failed: {failure}")
            if failures:
                _event(record, ActivityKind.INFO, f"Cleanup finished with {len(failures)} error(s)")
            else:
                _event(record, ActivityKind.SUCCESS, "Worker resources released")
            record.touch()
            await self._store.save(record)
        logger.bind(
            json_output=True,
            job_id=job_id,
            machine_ref=machine_ref,
            volume_ref=volume_ref,
            failed_steps=[failure.step for failure in failures],
        ).info(f"Cleanup of job {job_id} finished with {len(failures)} failure(s)")

    async def _teardown(
        self,
        job_id: str,
        credential: tuple[str, str] | None,
        machine_ref: str,
        volume_ref: str,
    ) -> list[CleanupError]:
        failures: list[CleanupError] = []

        async def _step(step: str, action: Awaitable[Any]) -> None:
            try:
                await action
            except Exception as exc:
                failure = CleanupError(step, str(exc))
                logger.warning(f"Cleanup of job {job_id}: {failure}")
                failures.append(failure)

        if credential is not None:
            await _step("revoke_credential", self._credentials.revoke(*credential))
        if machine_ref:
            await _step("destroy_machine", self._provisioner.destroy_machine(machine_ref))
            if volume_ref and self._settings.cleanup_settle_seconds > 0:
                await asyncio.sleep(self._settings.cleanup_settle_seconds)
        if volume_ref:
            await _step("destroy_volume", self._provisioner.destroy_volume(volume_ref))
        return failures


def build_orchestrator(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    task_runner: BackgroundTaskRunner,
) -> ImportJobOrchestrator:
    """Wire the orchestrator with the SQL-backed stores and the Fly client."""
    provisioner = FlyMachinesClient(
        settings.fly_api_token,
        settings.fly_worker_app_name,
        settings.fly_worker_image,
        region=settings.fly_worker_region,
        volume_path=settings.worker_volume_path,
        base_url=settings.fly_api_base_url,
        timeout=settings.fly_api_timeout,
    )
    return ImportJobOrchestrator(
        settings=settings,
        job_store=JobStore(SqlMetadataStore(session_factory)),
        provisioner=provisioner,
        credentials=ApiKeyCredentialIssuer(session_factory),
        tokens=DriveTokenStore(session_factory),
        task_runner=task_runner,
    )
