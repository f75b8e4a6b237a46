"""Orphan sweep for worker machines and volumes.

A process restart between provisioning and cleanup, or a cleanup step that
failed, can leave Fly resources behind.  The sweep lists what exists in the
worker app and compares it against the job store.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from loguru import logger

from takeout_import.lib.jobs import is_terminal
from takeout_import.lib.provisioning import BaseProvisioningClient, MachineInfo, VolumeInfo
from takeout_import.services.orchestrator import JOB_ID_METADATA_KEY, JobRecordStore


@dataclass
class OrphanReport:
    """Resources no live job accounts for."""

    machines: list[MachineInfo] = field(default_factory=list)
    volumes: list[VolumeInfo] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.machines and not self.volumes


@dataclass
class SweepResult:
    """Outcome of a sweep."""

    report: OrphanReport
    dry_run: bool
    machines_destroyed: int = 0
    volumes_destroyed: int = 0
    failures: int = 0


async def find_orphans(
    provisioner: BaseProvisioningClient,
    job_store: JobRecordStore,
    *,
    grace: timedelta,
    now: datetime | None = None,
) -> OrphanReport:
    """Identify orphaned machines and volumes.

    A machine is orphaned when it is tagged with a job id whose record is
    missing or finished.  Untagged machines are never touched.  A volume is
    orphaned when it is attached to an orphaned machine, or unattached and
    older than ``grace``.
    """
    now = now or datetime.now(UTC)
    report = OrphanReport()

    machines = await provisioner.list_machines()
    for machine in machines:
        job_id = machine.metadata.get(JOB_ID_METADATA_KEY)
        if not job_id:
            continue
        try:
            record = await job_store.get(job_id)
        except ValueError as exc:
            logger.warning(f"Skipping machine {machine.id}: {exc}")
            continue
        if record is None or is_terminal(record.status):
            report.machines.append(machine)

    orphan_machine_ids = {m.id for m in report.machines}
    volumes = await provisioner.list_volumes()
    for volume in volumes:
        if volume.attached_machine_id:
            if volume.attached_machine_id in orphan_machine_ids:
                report.volumes.append(volume)
            continue
        # Age unknown: leave it for a later sweep
        if volume.created_at is not None and now - volume.created_at >= grace:
            report.volumes.append(volume)

    logger.info(
        f"Orphan scan: {len(report.machines)}/{len(machines)} machines, {len(report.volumes)}/{len(volumes)} volumes"
    )
    return report


async def sweep_orphans(
    provisioner: BaseProvisioningClient,
    job_store: JobRecordStore,
    *,
    grace: timedelta,
    dry_run: bool = True,
    settle_seconds: float = 0.0,
    now: datetime | None = None,
) -> SweepResult:
    """Find orphans and, unless ``dry_run``, destroy them (machines first)."""
    report = await find_orphans(provisioner, job_store, grace=grace, now=now)
    result = SweepResult(report=report, dry_run=dry_run)
    if dry_run or report.is_empty:
        for machine in report.machines:
            logger.info(f"[dry-run] Would destroy machine {machine.id} ({machine.name})")
        for volume in report.volumes:
            logger.info(f"[dry-run] Would delete volume {volume.id} ({volume.name})")
        return result

    for machine in report.machines:
        try:
            await provisioner.destroy_machine(machine.id)
            result.machines_destroyed += 1
        except Exception as exc:
            logger.error(f"Failed to destroy orphaned machine {machine.id}: {exc}")
            result.failures += 1

    if report.machines and report.volumes and settle_seconds > 0:
        await asyncio.sleep(settle_seconds)

    for volume in report.volumes:
        try:
            await provisioner.destroy_volume(volume.id)
            result.volumes_destroyed += 1
        except Exception as exc:
            logger.error(f"Failed to delete orphaned volume {volume.id}: {exc}")
            result.failures += 1

    logger.info(
        f"Sweep finished: {result.machines_destroyed} machines, "
        f"{result.volumes_destroyed} volumes destroyed, {result.failures} failure(s)"
    )
    return result
