"""Abstract interface for remote worker provisioning backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class MachineResources:
    """Guest size of a worker machine."""

    cpus: int = 2
    memory_mb: int = 2048
    cpu_kind: str = "shared"


@dataclass
class MachineInfo:
    """Summary of a provisioned machine as reported by the provider."""

    id: str
    name: str = ""
    state: str = ""
    region: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class VolumeInfo:
    """Summary of a provisioned volume as reported by the provider."""

    id: str
    name: str = ""
    size_gb: int = 0
    region: str = ""
    state: str = ""
    attached_machine_id: str | None = None
    created_at: datetime | None = None


class ProvisioningError(Exception):
    """Raised when the provisioning API fails or rejects a request.

    Args:
        message: Human-readable error description, including the HTTP
            status and response body when there was one.
        status_code: Optional HTTP status code from the provider.
        body: Optional raw response body.
    """

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None) -> None:
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class BaseProvisioningClient(ABC):
    """Creates and destroys the machine + volume pair backing one import job.

    Implementations hold no job state; every call maps to one or two
    provider API requests.
    """

    @property
    def is_configured(self) -> bool:
        """Whether the client has the credentials it needs to make calls."""
        return True

    @abstractmethod
    async def create_volume(self, size_gb: int, *, name: str | None = None, region: str | None = None) -> str:
        """Create a volume and return its id.

        Raises:
            ProvisioningError: On quota or API failure. Nothing is left behind.
        """

    @abstractmethod
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
        """Create and start a machine with ``volume_ref`` mounted; return its id.

        The machine must destroy itself when its process exits and must
        never be restarted.

        Raises:
            ProvisioningError: On API failure.
        """

    @abstractmethod
    async def destroy_machine(self, machine_ref: str) -> None:
        """Stop (best effort) then force-delete a machine.

        Raises:
            ProvisioningError: If the delete itself fails.
        """

    @abstractmethod
    async def destroy_volume(self, volume_ref: str) -> None:
        """Delete a volume. Fails while the volume is still attached.

        Raises:
            ProvisioningError: On API failure.
        """

    @abstractmethod
    async def get_machine_state(self, machine_ref: str) -> str:
        """Return the provider's state string for a machine."""

    @abstractmethod
    async def list_machines(self) -> list[MachineInfo]:
        """List every machine in the worker app."""

    @abstractmethod
    async def list_volumes(self) -> list[VolumeInfo]:
        """List every volume in the worker app."""

    async def close(self) -> None:  # noqa: B027
        """Release any underlying connections."""
