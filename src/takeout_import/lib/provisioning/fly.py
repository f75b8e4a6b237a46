"""Fly Machines API provisioning client.

Docs: https://fly.io/docs/machines/api/
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any

import httpx
from loguru import logger

from takeout_import.lib.provisioning.base import (
    BaseProvisioningClient,
    MachineInfo,
    MachineResources,
    ProvisioningError,
    VolumeInfo,
)

DEFAULT_BASE_URL = "https://api.machines.dev/v1"
DEFAULT_TIMEOUT = 30.0


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.debug(f"Unparseable Fly timestamp {value!r}")
        return None


class FlyMachinesClient(BaseProvisioningClient):
    """Manages worker machines and volumes inside one Fly app.

    Args:
        api_token: Fly API token (``None`` leaves the client unconfigured).
        app_name: Fly app that hosts the workers.
        image: Container image for worker machines.
        region: Default region for machines and volumes.
        volume_path: Mount path of the volume inside the machine.
        base_url: Machines API base URL.
        timeout: Request timeout in seconds.
        http_client: Pre-built client (tests); created from the above when omitted.
    """

    def __init__(
        self,
        api_token: str | None,
        app_name: str,
        image: str,
        *,
        region: str = "ord",
        volume_path: str = "/data",
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_token = api_token
        self._app_name = app_name
        self._image = image
        self._region = region
        self._volume_path = volume_path
        headers = {"Content-Type": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._api_token)

    @property
    def app_name(self) -> str:
        return self._app_name

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    async def create_volume(self, size_gb: int, *, name: str | None = None, region: str | None = None) -> str:
        name = name or f"vol_{int(time.time() * 1000)}"
        region = region or self._region
        logger.info(f"Creating volume {name} with {size_gb}GB in {region}")

        volume = await self._request(
            "POST",
            f"/apps/{self._app_name}/volumes",
            body={
                "name": name,
                "size_gb": size_gb,
                "region": region,
                "auto_backup_enabled": False,
            },
        )
        volume_id = self._require_id(volume, "volume")
        logger.info(f"Created volume {volume_id}")
        return volume_id

    async def destroy_volume(self, volume_ref: str) -> None:
        logger.info(f"Deleting volume {volume_ref}")
        await self._request("DELETE", f"/apps/{self._app_name}/volumes/{volume_ref}")
        logger.info(f"Deleted volume {volume_ref}")

    async def list_volumes(self) -> list[VolumeInfo]:
        data = await self._request("GET", f"/apps/{self._app_name}/volumes")
        return [self._map_volume(v) for v in data or [] if isinstance(v, dict)]

    # ------------------------------------------------------------------
    # Machines
    # ------------------------------------------------------------------

    async def create_machine(
        self,
        volume_ref: str,
        env: dict[str, str],
        resources: MachineResources | None = None,
        *,
        name: str | None = None,
        metadata: dict[str, str] | None = None,
        region: str | None = None,
    ) -> str:
        resources = resources or MachineResources()
        region = region or self._region
        logger.info(f"Creating machine {name or '(unnamed)'} in {region}")

        body: dict[str, Any] = {
            "region": region,
            "config": {
                "image": self._image,
                "env": env,
                "mounts": [{"volume": volume_ref, "path": self._volume_path}],
                "guest": {
                    "cpu_kind": resources.cpu_kind,
                    "cpus": resources.cpus,
                    "memory_mb": resources.memory_mb,
                },
                # The worker holds single-use credentials: exit means done.
                "auto_destroy": True,
                "restart": {"policy": "no"},
                "metadata": metadata or {},
            },
        }
        if name:
            body["name"] = name

        machine = await self._request("POST", f"/apps/{self._app_name}/machines", body=body)
        machine_id = self._require_id(machine, "machine")
        logger.info(f"Created machine {machine_id}")
        return machine_id

    async def destroy_machine(self, machine_ref: str) -> None:
        logger.info(f"Destroying machine {machine_ref}")
        try:
            await self._request("POST", f"/apps/{self._app_name}/machines/{machine_ref}/stop")
        except ProvisioningError as exc:
            # Already stopped or already gone; the delete below decides.
            logger.debug(f"Stop failed for machine {machine_ref} (may be already stopped): {exc}")

        try:
            await self._request(
                "DELETE",
                f"/apps/{self._app_name}/machines/{machine_ref}",
                params={"force": "true"},
            )
        except ProvisioningError as exc:
            logger.warning(f"Failed to destroy machine {machine_ref}: {exc}")
            raise
        logger.info(f"Destroyed machine {machine_ref}")

    async def get_machine_state(self, machine_ref: str) -> str:
        machine = await self._request("GET", f"/apps/{self._app_name}/machines/{machine_ref}")
        return str(machine.get("state", "")) if isinstance(machine, dict) else ""

    async def list_machines(self) -> list[MachineInfo]:
        data = await self._request("GET", f"/apps/{self._app_name}/machines")
        return [self._map_machine(m) for m in data or [] if isinstance(m, dict)]

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        """Make an authenticated request and return the decoded JSON body."""
        if not self.is_configured:
            msg = "Fly API token is not configured"
            raise ProvisioningError(msg)

        logger.debug(f"Fly API {method} {path}")
        try:
            response = await self._client.request(method, path, json=body, params=params)
        except httpx.RequestError as exc:
            logger.error(f"Fly API request failed: {method} {path}: {exc}")
            raise ProvisioningError(f"Fly API request failed: {exc}") from exc

        if response.is_error:
            text = response.text
            logger.error(f"Fly API error: {response.status_code} {text}")
            raise ProvisioningError(
                f"Fly API error: {response.status_code} {text}",
                status_code=response.status_code,
                body=text,
            )

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            logger.error(f"Fly API returned non-JSON response for {method} {path}")
            raise ProvisioningError(
                f"Invalid JSON response for {method} {path}",
                status_code=response.status_code,
                body=response.text,
            ) from exc

    @staticmethod
    def _require_id(data: Any, kind: str) -> str:
        resource_id = data.get("id") if isinstance(data, dict) else None
        if not resource_id:
            msg = f"Fly API response for new {kind} has no id"
            raise ProvisioningError(msg)
        return str(resource_id)

    @staticmethod
    def _map_machine(data: dict[str, Any]) -> MachineInfo:
        config = data.get("config") or {}
        metadata = config.get("metadata") or {}
        return MachineInfo(
            id=str(data.get("id", "")),
            name=data.get("name") or "",
            state=data.get("state") or "",
            region=data.get("region") or "",
            metadata={str(k): str(v) for k, v in metadata.items()},
            created_at=_parse_timestamp(data.get("created_at")),
        )

    @staticmethod
    def _map_volume(data: dict[str, Any]) -> VolumeInfo:
        return VolumeInfo(
            id=str(data.get("id", "")),
            name=data.get("name") or "",
            size_gb=int(data.get("size_gb") or 0),
            region=data.get("region") or "",
            state=data.get("state") or "",
            attached_machine_id=data.get("attached_machine_id") or None,
            created_at=_parse_timestamp(data.get("created_at")),
        )
