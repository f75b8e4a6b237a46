"""Unit tests for the worker import job orchestrator."""

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock

import pytest
from loguru import logger

from takeout_import.core.background import InProcessTaskRunner
from takeout_import.core.config import Settings
from takeout_import.lib.jobs import (
    MAX_TIMELINE_EVENTS,
    ActivityKind,
    AuthenticationError,
    ConfigurationError,
    ImportJobRecord,
    ImportWorkload,
    JobStatus,
    NotFoundError,
    ProgressPhase,
)
from takeout_import.lib.provisioning import BaseProvisioningClient, ProvisioningError
from takeout_import.lib.provisioning.sizing import GIB
from takeout_import.lib.webhook import compute_signature, format_signature_header
from takeout_import.services.credential_service import WORKER_SCOPES, IssuedCredential
from takeout_import.services.drive_token_service import DriveTokens
from takeout_import.services.orchestrator import JOB_ID_METADATA_KEY, ImportJobOrchestrator

OWNER = "user-123"


class InMemoryJobStore:
    """Job store keeping serialized records, so every read re-validates."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}

    async def get(self, job_id: str) -> ImportJobRecord | None:
        data = self.records.get(job_id)
        return ImportJobRecord.model_validate(data) if data is not None else None

    async def save(self, record: ImportJobRecord) -> None:
        self.records[record.id] = record.model_dump(mode="json")


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def provisioner() -> AsyncMock:
    mock = AsyncMock(spec=BaseProvisioningClient)
    mock.is_configured = True
    mock.create_volume.return_value = "vol_1"
    mock.create_machine.return_value = "mach_1"
    return mock


@pytest.fixture
def credentials() -> AsyncMock:
    mock = AsyncMock()
    mock.issue.return_value = IssuedCredential(id="key-1", secret="worker-api-key-secret")
    mock.revoke.return_value = True
    return mock


@pytest.fixture
def tokens() -> AsyncMock:
    mock = AsyncMock()
    mock.get.return_value = DriveTokens(access_token="drive-access", refresh_token="drive-refresh")
    return mock


@pytest.fixture
def runner() -> InProcessTaskRunner:
    return InProcessTaskRunner()


@pytest.fixture
def orchestrator(
    settings: Settings,
    store: InMemoryJobStore,
    provisioner: AsyncMock,
    credentials: AsyncMock,
    tokens: AsyncMock,
    runner: InProcessTaskRunner,
) -> ImportJobOrchestrator:
    return ImportJobOrchestrator(
        settings=settings,
        job_store=store,
        provisioner=provisioner,
        credentials=credentials,
        tokens=tokens,
        task_runner=runner,
    )


def _workload() -> ImportWorkload:
    return ImportWorkload(file_ids=["file-a", "file-b"], file_sizes=[20 * GIB, 1])


def _messages(record: ImportJobRecord) -> list[str]:
    return [event.message for event in record.progress.events]


def _webhook(job_id: str, phase: str, current: int = 0, total: int = 2, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"jobId": job_id, "phase": phase, "progress": {"current": current, "total": total}}
    if "current_file" in extra:
        payload["progress"]["currentFile"] = extra.pop("current_file")
    payload.update(extra)
    return payload


async def _send(orchestrator: ImportJobOrchestrator, store: InMemoryJobStore, payload: dict[str, Any]) -> None:
    record = await store.get(payload["jobId"])
    assert record is not None
    signature = format_signature_header(record.webhook_secret, payload)
    await orchestrator.receive_webhook(signature, json.dumps(payload).encode())


async def _started_job(orchestrator: ImportJobOrchestrator) -> str:
    started = await orchestrator.start_job(OWNER, _workload())
    return started.job_id


class TestStartJob:
    """Tests for start_job()."""

    @pytest.mark.asyncio
    async def test_provisions_worker_and_records_downloading(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        provisioner: AsyncMock,
    ) -> None:
        started = await orchestrator.start_job(OWNER, _workload())

        assert (started.machine_ref, started.volume_ref) == ("mach_1", "vol_1")
        record = await store.get(started.job_id)
        assert record is not None
        assert record.status == JobStatus.DOWNLOADING
        assert (record.machine_ref, record.volume_ref) == ("mach_1", "vol_1")
        assert record.owner_id == OWNER
        assert record.progress.total == 2
        assert record.temporary_credential_ref == "key-1"
        assert _messages(record) == [
            "Starting import job...",
            "Worker started successfully",
            "Preparing to download 2 files...",
        ]

    @pytest.mark.asyncio
    async def test_volume_sized_from_workload(
        self, orchestrator: ImportJobOrchestrator, provisioner: AsyncMock
    ) -> None:
        started = await orchestrator.start_job(OWNER, _workload())

        # 20 GiB + 1 byte rounds up to 21, plus the 5 GB buffer
        assert provisioner.create_volume.call_args.args == (26,)
        assert provisioner.create_volume.call_args.kwargs["name"] == f"import_{started.job_id.replace('-', '')[:16]}"

    @pytest.mark.asyncio
    async def test_worker_environment(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        provisioner: AsyncMock,
    ) -> None:
        started = await orchestrator.start_job(OWNER, _workload())
        record = await store.get(started.job_id)
        assert record is not None

        volume_ref, env, resources = provisioner.create_machine.call_args.args
        kwargs = provisioner.create_machine.call_args.kwargs
        assert volume_ref == "vol_1"
        assert env == {
            "WORKER_JOB_ID": started.job_id,
            "WORKER_FILE_IDS": '["file-a", "file-b"]',
            "WORKER_ACCESS_TOKEN": "drive-access",
            "WORKER_REFRESH_TOKEN": "drive-refresh",
            "GOOGLE_CLIENT_ID": "google-client-id",
            "GOOGLE_CLIENT_SECRET": "google-client-secret",
            "IMPORT_SERVER_URL": "https://photos.example.com",
            "IMPORT_API_KEY": "worker-api-key-secret",
            "WEBHOOK_URL": "https://photos.example.com/api/v1/imports/worker-webhook",
            "WEBHOOK_SECRET": record.webhook_secret,
            "WEBHOOK_SIGNATURE_VERSION": "v1",
            "VOLUME_PATH": "/data",
        }
        assert (resources.cpus, resources.memory_mb) == (2, 2048)
        assert kwargs["name"] == f"import-{started.job_id[:8]}"
        assert kwargs["metadata"] == {JOB_ID_METADATA_KEY: started.job_id}

    @pytest.mark.asyncio
    async def test_credential_has_only_worker_scopes(
        self, orchestrator: ImportJobOrchestrator, credentials: AsyncMock
    ) -> None:
        await orchestrator.start_job(OWNER, _workload())

        owner, scopes = credentials.issue.call_args.args
        assert owner == OWNER
        assert scopes == [
            "user.read",
            "asset.upload",
            "asset.read",
            "album.create",
            "album.read",
            "album.update",
            "albumAsset.create",
        ]
        assert [s.value for s in WORKER_SCOPES] == scopes

    @pytest.mark.asyncio
    async def test_credential_secret_not_persisted(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        started = await orchestrator.start_job(OWNER, _workload())
        assert "worker-api-key-secret" not in json.dumps(store.records[started.job_id])


class TestStartJobPrerequisites:
    """start_job() refuses to start without its prerequisites and creates nothing."""

    @pytest.mark.asyncio
    async def test_drive_not_connected(
        self,
        orchestrator: ImportJobOrchestrator,
        tokens: AsyncMock,
        credentials: AsyncMock,
        provisioner: AsyncMock,
        store: InMemoryJobStore,
    ) -> None:
        tokens.get.return_value = None
        with pytest.raises(ConfigurationError, match="Google Drive"):
            await orchestrator.start_job(OWNER, _workload())
        credentials.issue.assert_not_called()
        provisioner.create_volume.assert_not_called()
        assert store.records == {}

    @pytest.mark.asyncio
    async def test_oauth_client_missing(self, orchestrator: ImportJobOrchestrator, settings: Settings) -> None:
        settings.google_client_secret = None
        with pytest.raises(ConfigurationError, match="OAuth"):
            await orchestrator.start_job(OWNER, _workload())

    @pytest.mark.asyncio
    async def test_public_url_missing(self, orchestrator: ImportJobOrchestrator, settings: Settings) -> None:
        settings.public_base_url = None
        with pytest.raises(ConfigurationError, match="PUBLIC_BASE_URL"):
            await orchestrator.start_job(OWNER, _workload())

    @pytest.mark.asyncio
    async def test_fly_not_configured(self, orchestrator: ImportJobOrchestrator, provisioner: AsyncMock) -> None:
        provisioner.is_configured = False
        with pytest.raises(ConfigurationError, match="Fly"):
            await orchestrator.start_job(OWNER, _workload())
        provisioner.create_volume.assert_not_called()


class TestStartJobFailures:
    """Provisioning failures roll back and leave the job failed."""

    @pytest.mark.asyncio
    async def test_machine_failure_destroys_volume_and_revokes_credential(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        provisioner: AsyncMock,
        credentials: AsyncMock,
    ) -> None:
        provisioner.create_machine.side_effect = ProvisioningError("Fly API error: 422 no capacity", status_code=422)

        with pytest.raises(ProvisioningError, match="no capacity"):
            await orchestrator.start_job(OWNER, _workload())

        provisioner.destroy_volume.assert_awaited_once_with("vol_1")
        credentials.revoke.assert_awaited_once_with(OWNER, "key-1")
        (record_data,) = store.records.values()
        record = ImportJobRecord.model_validate(record_data)
        assert record.status == JobStatus.FAILED
        assert record.progress.phase == ProgressPhase.FAILED
        assert record.progress.errors == ["Failed to create worker: Fly API error: 422 no capacity"]
        assert record.credential_revoked
        assert record.machine_ref == ""
        assert record.progress.events[-1].kind == ActivityKind.ERROR

    @pytest.mark.asyncio
    async def test_volume_rollback_failure_still_reports_machine_error(
        self,
        orchestrator: ImportJobOrchestrator,
        provisioner: AsyncMock,
    ) -> None:
        provisioner.create_machine.side_effect = ProvisioningError("machine failed")
        provisioner.destroy_volume.side_effect = ProvisioningError("volume busy")

        with pytest.raises(ProvisioningError, match="machine failed"):
            await orchestrator.start_job(OWNER, _workload())

    @pytest.mark.asyncio
    async def test_volume_failure_creates_no_machine(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        provisioner: AsyncMock,
    ) -> None:
        provisioner.create_volume.side_effect = ProvisioningError("quota exceeded")

        with pytest.raises(ProvisioningError):
            await orchestrator.start_job(OWNER, _workload())

        provisioner.create_machine.assert_not_called()
        provisioner.destroy_volume.assert_not_called()
        (record_data,) = store.records.values()
        assert record_data["status"] == "failed"

    @pytest.mark.asyncio
    async def test_cancel_during_provisioning_releases_new_resources(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        provisioner: AsyncMock,
    ) -> None:
        async def create_machine_then_cancel(volume_ref: str, env: dict[str, str], *args: Any, **kwargs: Any) -> str:
            await orchestrator.cancel_job(env["WORKER_JOB_ID"])
            return "mach_1"

        provisioner.create_machine.side_effect = create_machine_then_cancel

        started = await orchestrator.start_job(OWNER, _workload())

        record = await store.get(started.job_id)
        assert record is not None
        assert record.status == JobStatus.CLEANUP
        assert (record.machine_ref, record.volume_ref) == ("mach_1", "vol_1")
        provisioner.destroy_machine.assert_awaited_once_with("mach_1")
        provisioner.destroy_volume.assert_awaited_once_with("vol_1")


class TestWebhooks:
    """Tests for receive_webhook() and handle_webhook()."""

    @pytest.mark.asyncio
    async def test_progress_update_merged(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)

        await _send(
            orchestrator,
            store,
            _webhook(job_id, "downloading", current=1, current_file="takeout-001.zip", bytesDownloaded=1024),
        )

        record = await store.get(job_id)
        assert record is not None
        assert record.progress.current == 1
        assert record.progress.current_file == "takeout-001.zip"
        assert record.progress.bytes_downloaded == 1024
        assert record.status == JobStatus.DOWNLOADING
        assert _messages(record)[-1] == "Downloading takeout-001.zip"
        assert record.progress.events[-1].kind == ActivityKind.DOWNLOAD

    @pytest.mark.asyncio
    async def test_download_event_only_when_file_changes(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)

        for current in (0, 0, 1):
            await _send(orchestrator, store, _webhook(job_id, "downloading", current=current, current_file="a.zip"))

        record = await store.get(job_id)
        assert record is not None
        assert _messages(record).count("Downloading a.zip") == 1

    @pytest.mark.asyncio
    async def test_phase_jump_walks_intermediate_states(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)

        await _send(orchestrator, store, _webhook(job_id, "processing", current=2, photosImported=5))

        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.PROCESSING
        assert record.progress.phase == ProgressPhase.PROCESSING
        assert record.progress.photos_imported == 5
        assert _messages(record)[-1] == "Downloads finished, importing photos..."

    @pytest.mark.asyncio
    async def test_stale_phase_does_not_move_status_back(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)
        await _send(orchestrator, store, _webhook(job_id, "processing", current=2, photosImported=5))

        await _send(orchestrator, store, _webhook(job_id, "downloading", current=1, bytesDownloaded=10))

        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.PROCESSING
        assert record.progress.phase == ProgressPhase.PROCESSING
        # Counters are last-write-wins
        assert record.progress.current == 1
        assert record.progress.bytes_downloaded == 10
        assert record.progress.photos_imported == 5

    @pytest.mark.asyncio
    async def test_lower_counter_in_same_phase_overwrites(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)

        await _send(orchestrator, store, _webhook(job_id, "downloading", current=5, total=10))
        await _send(orchestrator, store, _webhook(job_id, "downloading", current=3, total=10))

        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.DOWNLOADING
        assert record.progress.current == 3
        assert record.progress.total == 10

    @pytest.mark.asyncio
    async def test_errors_appended_with_events(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)

        await _send(orchestrator, store, _webhook(job_id, "downloading", errors=["a.zip: corrupt"]))
        await _send(orchestrator, store, _webhook(job_id, "downloading", errors=["b.zip: corrupt"]))

        record = await store.get(job_id)
        assert record is not None
        assert record.progress.errors == ["a.zip: corrupt", "b.zip: corrupt"]
        error_events = [e.message for e in record.progress.events if e.kind == ActivityKind.ERROR]
        assert error_events == ["a.zip: corrupt", "b.zip: corrupt"]

    @pytest.mark.asyncio
    async def test_album_event_when_count_increases(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)

        await _send(orchestrator, store, _webhook(job_id, "processing", albumsFound=3))
        await _send(orchestrator, store, _webhook(job_id, "processing", albumsFound=3))

        record = await store.get(job_id)
        assert record is not None
        assert _messages(record).count("Found 3 albums") == 1

    @pytest.mark.asyncio
    async def test_timeline_stays_bounded(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)

        for i in range(MAX_TIMELINE_EVENTS + 20):
            await _send(orchestrator, store, _webhook(job_id, "downloading", current=i, current_file=f"f{i}.zip"))

        record = await store.get(job_id)
        assert record is not None
        assert len(record.progress.events) == MAX_TIMELINE_EVENTS
        assert _messages(record)[-1] == f"Downloading f{MAX_TIMELINE_EVENTS + 19}.zip"

    @pytest.mark.asyncio
    async def test_signature_for_other_payload_rejected_without_mutation(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)
        before = dict(store.records[job_id])
        record = await store.get(job_id)
        assert record is not None

        signed = _webhook(job_id, "downloading", current=1)
        sent = _webhook(job_id, "complete", current=2)
        signature = compute_signature(record.webhook_secret, signed)

        with pytest.raises(AuthenticationError):
            await orchestrator.receive_webhook(signature, json.dumps(sent).encode())

        assert store.records[job_id] == before

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)
        with pytest.raises(AuthenticationError, match="Missing"):
            await orchestrator.receive_webhook(None, json.dumps(_webhook(job_id, "downloading")).encode())

    @pytest.mark.asyncio
    async def test_unknown_job(self, orchestrator: ImportJobOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.receive_webhook("v1=" + "0" * 64, json.dumps(_webhook("nope", "downloading")).encode())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'{"phase": "downloading"}', b"\xff\xfe"])
    async def test_malformed_body(self, orchestrator: ImportJobOrchestrator, body: bytes) -> None:
        with pytest.raises(ValueError):
            await orchestrator.receive_webhook("v1=" + "0" * 64, body)

    @pytest.mark.asyncio
    async def test_invalid_payload_rejected_without_mutation(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)
        before = dict(store.records[job_id])

        with pytest.raises(ValueError, match="Invalid webhook payload"):
            await _send(orchestrator, store, {"jobId": job_id, "phase": "teleporting", "progress": {}})

        assert store.records[job_id] == before

    @pytest.mark.asyncio
    async def test_complete_dispatches_cleanup(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        provisioner: AsyncMock,
        credentials: AsyncMock,
        runner: InProcessTaskRunner,
    ) -> None:
        job_id = await _started_job(orchestrator)

        await _send(orchestrator, store, _webhook(job_id, "complete", current=2, photosImported=42))

        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.COMPLETE
        assert "Import complete! 42 photos imported." in _messages(record)
        assert runner.pending_count == 1

        await runner.join()

        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.CLEANUP
        assert record.credential_revoked
        provisioner.destroy_machine.assert_awaited_once_with("mach_1")
        provisioner.destroy_volume.assert_awaited_once_with("vol_1")
        credentials.revoke.assert_awaited_once_with(OWNER, "key-1")

    @pytest.mark.asyncio
    async def test_failed_phase_dispatches_cleanup(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        runner: InProcessTaskRunner,
    ) -> None:
        job_id = await _started_job(orchestrator)

        await _send(orchestrator, store, _webhook(job_id, "failed", errors=["Drive quota exceeded"]))
        await runner.join()

        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.CLEANUP
        assert record.progress.phase == ProgressPhase.FAILED
        assert "Import failed" in _messages(record)


class TestCancelJob:
    """Tests for cancel_job()."""

    @pytest.mark.asyncio
    async def test_cancel_running_job(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        provisioner: AsyncMock,
        credentials: AsyncMock,
    ) -> None:
        job_id = await _started_job(orchestrator)

        await orchestrator.cancel_job(job_id)

        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.CLEANUP
        assert record.progress.errors == ["Cancelled by user"]
        assert record.progress.phase == ProgressPhase.FAILED
        provisioner.destroy_machine.assert_awaited_once_with("mach_1")
        provisioner.destroy_volume.assert_awaited_once_with("vol_1")
        credentials.revoke.assert_awaited_once_with(OWNER, "key-1")

    @pytest.mark.asyncio
    async def test_cancel_unknown_job_is_noop(self, orchestrator: ImportJobOrchestrator) -> None:
        await orchestrator.cancel_job("missing")

    @pytest.mark.asyncio
    async def test_cancel_terminal_job_is_noop(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        provisioner: AsyncMock,
    ) -> None:
        job_id = await _started_job(orchestrator)
        await orchestrator.cancel_job(job_id)
        provisioner.destroy_machine.reset_mock()

        await orchestrator.cancel_job(job_id)

        record = await store.get(job_id)
        assert record is not None
        assert record.progress.errors == ["Cancelled by user"]
        provisioner.destroy_machine.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_by_other_owner_is_noop(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)

        await orchestrator.cancel_job(job_id, owner_id="someone-else")

        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.DOWNLOADING


class TestCleanupJob:
    """Tests for cleanup_job()."""

    @pytest.mark.asyncio
    async def test_idempotent_without_double_revocation(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        provisioner: AsyncMock,
        credentials: AsyncMock,
    ) -> None:
        job_id = await _started_job(orchestrator)
        await _send(orchestrator, store, _webhook(job_id, "complete", current=2))

        await orchestrator.cleanup_job(job_id)
        await orchestrator.cleanup_job(job_id)

        assert credentials.revoke.await_count == 1
        assert provisioner.destroy_machine.await_count == 1
        assert provisioner.destroy_volume.await_count == 1

    @pytest.mark.asyncio
    async def test_non_terminal_job_left_alone(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        provisioner: AsyncMock,
    ) -> None:
        job_id = await _started_job(orchestrator)

        await orchestrator.cleanup_job(job_id)

        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.DOWNLOADING
        provisioner.destroy_machine.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_job_is_noop(self, orchestrator: ImportJobOrchestrator, provisioner: AsyncMock) -> None:
        await orchestrator.cleanup_job("missing")
        provisioner.destroy_machine.assert_not_called()

    @pytest.mark.asyncio
    async def test_step_failures_recorded_not_raised(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        provisioner: AsyncMock,
        credentials: AsyncMock,
    ) -> None:
        job_id = await _started_job(orchestrator)
        provisioner.destroy_machine.side_effect = ProvisioningError("Fly API error: 500 boom")

        await orchestrator.cancel_job(job_id)

        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.CLEANUP
        assert record.credential_revoked
        provisioner.destroy_volume.assert_awaited_once_with("vol_1")
        messages = _messages(record)
        assert "Cleanup step failed: destroy_machine: Fly API error: 500 boom" in messages
        assert messages[-1] == "Cleanup finished with 1 error(s)"

    @pytest.mark.asyncio
    async def test_failed_revocation_not_marked_revoked(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        credentials: AsyncMock,
    ) -> None:
        job_id = await _started_job(orchestrator)
        credentials.revoke.side_effect = RuntimeError("database unavailable")

        await orchestrator.cancel_job(job_id)

        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.CLEANUP
        assert not record.credential_revoked

    @pytest.mark.asyncio
    async def test_failed_start_not_revoked_twice(
        self,
        orchestrator: ImportJobOrchestrator,
        store: InMemoryJobStore,
        provisioner: AsyncMock,
        credentials: AsyncMock,
    ) -> None:
        provisioner.create_machine.side_effect = ProvisioningError("no capacity")
        with pytest.raises(ProvisioningError):
            await orchestrator.start_job(OWNER, _workload())
        (job_id,) = store.records

        await orchestrator.cleanup_job(job_id)

        assert credentials.revoke.await_count == 1
        provisioner.destroy_machine.assert_not_called()
        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.CLEANUP


class TestGetProgress:
    """Tests for get_progress()."""

    @pytest.mark.asyncio
    async def test_returns_progress(self, orchestrator: ImportJobOrchestrator) -> None:
        job_id = await _started_job(orchestrator)
        progress = await orchestrator.get_progress(job_id, owner_id=OWNER)
        assert progress is not None
        assert progress.total == 2

    @pytest.mark.asyncio
    async def test_unknown_job(self, orchestrator: ImportJobOrchestrator) -> None:
        assert await orchestrator.get_progress("missing") is None

    @pytest.mark.asyncio
    async def test_other_owner_sees_nothing(self, orchestrator: ImportJobOrchestrator) -> None:
        job_id = await _started_job(orchestrator)
        assert await orchestrator.get_progress(job_id, owner_id="someone-else") is None


class YieldingJobStore(InMemoryJobStore):
    """Job store that hands control back to the event loop on every call."""

    async def get(self, job_id: str) -> ImportJobRecord | None:
        await asyncio.sleep(0)
        record = await super().get(job_id)
        await asyncio.sleep(0)
        return record

    async def save(self, record: ImportJobRecord) -> None:
        await asyncio.sleep(0)
        await super().save(record)


class TestPerJobLocking:
    """Tests for the per-job lock around read-modify-write cycles."""

    @pytest.fixture
    def yielding_orchestrator(
        self,
        settings: Settings,
        provisioner: AsyncMock,
        credentials: AsyncMock,
        tokens: AsyncMock,
        runner: InProcessTaskRunner,
    ) -> tuple[ImportJobOrchestrator, YieldingJobStore]:
        store = YieldingJobStore()
        orchestrator = ImportJobOrchestrator(
            settings=settings,
            job_store=store,
            provisioner=provisioner,
            credentials=credentials,
            tokens=tokens,
            task_runner=runner,
        )
        return orchestrator, store

    @pytest.mark.asyncio
    async def test_concurrent_updates_all_survive(
        self,
        yielding_orchestrator: tuple[ImportJobOrchestrator, YieldingJobStore],
        provisioner: AsyncMock,
    ) -> None:
        orchestrator, store = yielding_orchestrator
        job_id = await _started_job(orchestrator)
        record = await store.get(job_id)
        assert record is not None

        payloads = [
            _webhook(job_id, "downloading", current=i, total=20, errors=[f"file-{i}.zip: corrupt"]) for i in range(20)
        ]
        webhooks = [
            orchestrator.handle_webhook(job_id, format_signature_header(record.webhook_secret, payload), payload)
            for payload in payloads
        ]

        await asyncio.gather(*webhooks, orchestrator.cancel_job(job_id))

        record = await store.get(job_id)
        assert record is not None
        assert record.status == JobStatus.CLEANUP
        expected = {f"file-{i}.zip: corrupt" for i in range(20)} | {"Cancelled by user"}
        assert set(record.progress.errors) == expected
        assert len(record.progress.errors) == 21
        provisioner.destroy_machine.assert_awaited_once_with("mach_1")
        assert orchestrator._locks == {}

    @pytest.mark.asyncio
    async def test_unknown_jobs_leave_no_locks(self, orchestrator: ImportJobOrchestrator) -> None:
        for i in range(50):
            body = json.dumps({"jobId": f"unknown-{i}", "phase": "downloading"}).encode()
            with pytest.raises(NotFoundError):
                await orchestrator.receive_webhook("v1=" + "0" * 64, body)
            await orchestrator.cancel_job(f"unknown-cancel-{i}")
            await orchestrator.cleanup_job(f"unknown-cleanup-{i}")

        assert orchestrator._locks == {}

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(
        self, orchestrator: ImportJobOrchestrator, store: InMemoryJobStore
    ) -> None:
        job_id = await _started_job(orchestrator)
        payload = _webhook(job_id, "downloading", current=1)

        with pytest.raises(AuthenticationError):
            await orchestrator.handle_webhook(job_id, "v1=" + "0" * 64, payload)

        assert orchestrator._locks == {}
        await _send(orchestrator, store, payload)
        record = await store.get(job_id)
        assert record is not None
        assert record.progress.current == 1


class TestCleanupAuditLog:
    """Tests for the structured cleanup log record."""

    @pytest.mark.asyncio
    async def test_cleanup_emits_json_record(
        self, orchestrator: ImportJobOrchestrator, provisioner: AsyncMock
    ) -> None:
        records: list[dict[str, Any]] = []
        sink_id = logger.add(
            lambda message: records.append(message.record["extra"]),
            filter=lambda record: record["extra"].get("json_output", False),
        )
        provisioner.destroy_volume.side_effect = ProvisioningError("409 attached")
        try:
            job_id = await _started_job(orchestrator)
            await orchestrator.cancel_job(job_id)
        finally:
            logger.remove(sink_id)

        (extra,) = records
        assert extra["job_id"] == job_id
        assert extra["machine_ref"] == "mach_1"
        assert extra["volume_ref"] == "vol_1"
        assert extra["failed_steps"] == ["destroy_volume"]
