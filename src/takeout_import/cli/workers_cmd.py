"""CLI commands for inspecting and sweeping Fly worker resources.

list-machines / list-volumes / machine-state are read-only.  sweep finds
machines and volumes that no running job accounts for and, with
``--execute``, destroys them.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING, Annotated

import typer
from loguru import logger

if TYPE_CHECKING:
    from takeout_import.core.config import Settings
    from takeout_import.lib.provisioning import FlyMachinesClient

workers_app = typer.Typer()


def _create_client(settings: Settings) -> FlyMachinesClient:
    """Build a Fly client from settings, exiting when no token is configured."""
    from takeout_import.lib.provisioning import FlyMachinesClient

    if not settings.fly_api_token:
        typer.echo("FLY_API_TOKEN is not configured", err=True)
        raise typer.Exit(code=1)
    return FlyMachinesClient(
        settings.fly_api_token,
        settings.fly_worker_app_name,
        settings.fly_worker_image,
        region=settings.fly_worker_region,
        volume_path=settings.worker_volume_path,
        base_url=settings.fly_api_base_url,
        timeout=settings.fly_api_timeout,
    )


@workers_app.command("list-machines")
def list_machines() -> None:
    """List machines in the worker app."""
    asyncio.run(_list_machines_impl())


async def _list_machines_impl() -> None:
    from takeout_import.core.config import get_settings
    from takeout_import.services.orchestrator import JOB_ID_METADATA_KEY

    client = _create_client(get_settings())
    try:
        machines = await client.list_machines()
    finally:
        await client.close()

    if not machines:
        typer.echo("No machines")
        return
    for machine in machines:
        job_id = machine.metadata.get(JOB_ID_METADATA_KEY, "-")
        typer.echo(f"{machine.id}  {machine.state:<10} {machine.region:<5} {machine.name}  job={job_id}")


@workers_app.command("list-volumes")
def list_volumes() -> None:
    """List volumes in the worker app."""
    asyncio.run(_list_volumes_impl())


async def _list_volumes_impl() -> None:
    from takeout_import.core.config import get_settings

    client = _create_client(get_settings())
    try:
        volumes = await client.list_volumes()
    finally:
        await client.close()

    if not volumes:
        typer.echo("No volumes")
        return
    for volume in volumes:
        attached = volume.attached_machine_id or "unattached"
        typer.echo(f"{volume.id}  {volume.size_gb}GB {volume.region:<5} {volume.name}  {attached}")


@workers_app.command("machine-state")
def machine_state(
    machine_id: Annotated[str, typer.Argument(help="Fly machine ID")],
) -> None:
    """Show the current state of one machine."""
    asyncio.run(_machine_state_impl(machine_id))


async def _machine_state_impl(machine_id: str) -> None:
    from takeout_import.core.config import get_settings

    client = _create_client(get_settings())
    try:
        state = await client.get_machine_state(machine_id)
    finally:
        await client.close()
    typer.echo(state or "unknown")


@workers_app.command("sweep")
def sweep(
    execute: Annotated[bool, typer.Option("--execute", help="Destroy orphans instead of only listing them")] = False,
    grace_minutes: Annotated[
        int | None,
        typer.Option("--grace-minutes", help="Minimum age of unattached volumes (defaults to ORPHAN_GRACE_MINUTES)"),
    ] = None,
) -> None:
    """Find (and optionally destroy) machines and volumes left behind by finished jobs."""
    asyncio.run(_sweep_impl(execute, grace_minutes))


async def _sweep_impl(execute: bool, grace_minutes: int | None) -> None:
    from takeout_import.core.config import get_settings
    from takeout_import.core.database import dispose_engine, get_session_factory, init_engine
    from takeout_import.services.job_store import JobStore, SqlMetadataStore
    from takeout_import.services.reconcile_service import sweep_orphans

    settings = get_settings()
    client = _create_client(settings)
    init_engine(settings.database_url, echo=False)
    try:
        job_store = JobStore(SqlMetadataStore(get_session_factory()))
        result = await sweep_orphans(
            client,
            job_store,
            grace=timedelta(minutes=grace_minutes or settings.orphan_grace_minutes),
            dry_run=not execute,
            settle_seconds=settings.cleanup_settle_seconds,
        )
    finally:
        await client.close()
        await dispose_engine()

    report = result.report
    for machine in report.machines:
        typer.echo(f"machine {machine.id}  {machine.state}  {machine.name}")
    for volume in report.volumes:
        typer.echo(f"volume  {volume.id}  {volume.size_gb}GB  {volume.name}")

    if result.dry_run:
        typer.echo(
            f"Found {len(report.machines)} orphaned machine(s) and {len(report.volumes)} orphaned volume(s)"
            + (" (re-run with --execute to destroy)" if not report.is_empty else "")
        )
        return

    typer.echo(
        f"Destroyed {result.machines_destroyed} machine(s) and {result.volumes_destroyed} volume(s), "
        f"{result.failures} failure(s)"
    )
    if result.failures:
        logger.error(f"Sweep finished with {result.failures} failure(s)")
        raise typer.Exit(code=1)
