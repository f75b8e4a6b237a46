"""Provisioning library: ephemeral worker machines and volumes.

Public API:
    - BaseProvisioningClient: Abstract provider interface
    - FlyMachinesClient: Fly.io Machines API implementation
    - ProvisioningError: Provider-level error
    - MachineResources / MachineInfo / VolumeInfo: Value types
    - calculate_volume_size_gb: Volume sizing
"""

from takeout_import.lib.provisioning.base import (
    BaseProvisioningClient,
    MachineInfo,
    MachineResources,
    ProvisioningError,
    VolumeInfo,
)
from takeout_import.lib.provisioning.fly import FlyMachinesClient
from takeout_import.lib.provisioning.sizing import calculate_volume_size_gb

__all__ = [
    "BaseProvisioningClient",
    "FlyMachinesClient",
    "MachineInfo",
    "MachineResources",
    "ProvisioningError",
    "VolumeInfo",
    "calculate_volume_size_gb",
]
