"""Collaborator interfaces consumed by the reconcilers.

Implementations own transport concerns: authentication, serialization of
SDK models into REST-shaped dicts, and transparent retries of idempotent
reads. Not-found is reported as ``None``, never raised.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from stratus.identity import NetworkInterfaceId, PublicIpAddressId, VirtualMachineExtensionId, VirtualMachineId
from stratus.models import Json


@runtime_checkable
class Operation(Protocol):
    """Handle to a long-running remote mutation."""

    async def wait_for_completion(self, deadline: float | None = None) -> Json | None:
        """Poll until the operation reaches a terminal state.

        Parameters
        ----------
        deadline
            Event-loop time after which waiting is abandoned. None waits
            until the operation finishes.

        Returns
        -------
        Json | None
            The operation result payload, if the operation has one.

        Raises
        ------
        TimeoutError
            The deadline passed before the operation finished.
        Exception
            Whatever the transport raised for a failed operation.
        """
        ...


@runtime_checkable
class ComputeClient(Protocol):
    """Virtual machine and extension surface of the compute API."""

    subscription_id: str

    async def get(self, vm_id: VirtualMachineId) -> Json | None: ...

    async def create_or_update(self, vm_id: VirtualMachineId, body: Json) -> Operation: ...

    async def update(self, vm_id: VirtualMachineId, body: Json) -> Operation:
        """Apply a partial update. Sections missing from ``body`` are left untouched."""
        ...

    async def delete(self, vm_id: VirtualMachineId) -> Operation: ...

    async def power_off(self, vm_id: VirtualMachineId, force: bool = False) -> Operation:
        """Stop the machine.

        Parameters
        ----------
        vm_id
            Target machine.
        force
            Skip the graceful OS shutdown.
        """
        ...

    async def start(self, vm_id: VirtualMachineId) -> Operation: ...

    async def list_available_sizes(self, vm_id: VirtualMachineId) -> Sequence[str]:
        """Sizes the machine can be resized to without leaving its current host."""
        ...

    async def get_instance_view(self, vm_id: VirtualMachineId) -> Sequence[str | None] | None:
        """Runtime status codes, e.g. ``PowerState/running``. None when not found."""
        ...

    async def get_extension(self, ext_id: VirtualMachineExtensionId) -> Json | None: ...

    async def create_or_update_extension(self, ext_id: VirtualMachineExtensionId, body: Json) -> Operation: ...

    async def delete_extension(self, ext_id: VirtualMachineExtensionId) -> Operation: ...


@runtime_checkable
class NetworkClient(Protocol):
    """Read-only network graph lookups."""

    async def get_interface(self, nic_id: NetworkInterfaceId) -> Json | None: ...

    async def get_public_ip(self, pip_id: PublicIpAddressId) -> Json | None: ...
