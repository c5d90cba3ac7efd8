"""Compute client backed by ``azure-mgmt-compute``."""

from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from stratus.identity import VirtualMachineExtensionId, VirtualMachineId
from stratus.models import Json

from .config import Azure
from .sdk import AzureOperation, SdkRunner, _collect_pager, log, to_json

if TYPE_CHECKING:
    from azure.mgmt.compute import ComputeManagementClient


class AzureComputeClient(SdkRunner):
    """Virtual machine and extension operations, as REST-shaped dicts."""

    def __init__(
        self,
        sdk: ComputeManagementClient,
        config: Azure,
        thread_pool: ThreadPoolExecutor,
    ) -> None:
        super().__init__(config, thread_pool)
        self._sdk = sdk
        self.subscription_id = config.resolved_subscription_id()

    async def get(self, vm_id: VirtualMachineId) -> Json | None:
        model = await self._get(self._sdk.virtual_machines.get, vm_id.resource_group, vm_id.name)
        return to_json(model)

    async def create_or_update(self, vm_id: VirtualMachineId, body: Json) -> AzureOperation:
        poller = await self._run(
            self._sdk.virtual_machines.begin_create_or_update,
            vm_id.resource_group, vm_id.name, body,
        )
        return self._operation(poller, f"create of {vm_id}")

    async def update(self, vm_id: VirtualMachineId, body: Json) -> AzureOperation:
        poller = await self._run(
            self._sdk.virtual_machines.begin_update,
            vm_id.resource_group, vm_id.name, body,
        )
        return self._operation(poller, f"update of {vm_id}")

    async def delete(self, vm_id: VirtualMachineId) -> AzureOperation:
        poller = await self._run(
            self._sdk.virtual_machines.begin_delete,
            vm_id.resource_group, vm_id.name,
        )
        return self._operation(poller, f"deletion of {vm_id}")

    async def power_off(self, vm_id: VirtualMachineId, force: bool = False) -> AzureOperation:
        log.debug("Powering off {vm} (skip_shutdown={force})", vm=vm_id, force=force)
        poller = await self._run(
            self._sdk.virtual_machines.begin_power_off,
            vm_id.resource_group, vm_id.name, skip_shutdown=force,
        )
        return self._operation(poller, f"power-off of {vm_id}")

    async def start(self, vm_id: VirtualMachineId) -> AzureOperation:
        poller = await self._run(
            self._sdk.virtual_machines.begin_start,
            vm_id.resource_group, vm_id.name,
        )
        return self._operation(poller, f"start of {vm_id}")

    async def list_available_sizes(self, vm_id: VirtualMachineId) -> Sequence[str]:
        # ItemPaged only hits the network while iterating
        sizes = await self._get(
            _collect_pager, self._sdk.virtual_machines.list_available_sizes, vm_id.resource_group, vm_id.name,
        )
        if sizes is None:
            return []
        return [s.name for s in sizes if s.name]

    async def get_instance_view(self, vm_id: VirtualMachineId) -> Sequence[str | None] | None:
        view = await self._get(self._sdk.virtual_machines.instance_view, vm_id.resource_group, vm_id.name)
        if view is None:
            return None
        return [status.code for status in view.statuses or []]

    async def get_extension(self, ext_id: VirtualMachineExtensionId) -> Json | None:
        model = await self._get(
            self._sdk.virtual_machine_extensions.get,
            ext_id.resource_group, ext_id.virtual_machine_name, ext_id.name,
        )
        return to_json(model)

    async def create_or_update_extension(self, ext_id: VirtualMachineExtensionId, body: Json) -> AzureOperation:
        poller = await self._run(
            self._sdk.virtual_machine_extensions.begin_create_or_update,
            ext_id.resource_group, ext_id.virtual_machine_name, ext_id.name, body,
        )
        return self._operation(poller, f"create/update of {ext_id}")

    async def delete_extension(self, ext_id: VirtualMachineExtensionId) -> AzureOperation:
        poller = await self._run(
            self._sdk.virtual_machine_extensions.begin_delete,
            ext_id.resource_group, ext_id.virtual_machine_name, ext_id.name,
        )
        return self._operation(poller, f"deletion of {ext_id}")
