"""Network graph lookups backed by ``azure-mgmt-network``."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from stratus.identity import NetworkInterfaceId, PublicIpAddressId
from stratus.models import Json

from .config import Azure
from .sdk import SdkRunner, to_json

if TYPE_CHECKING:
    from azure.mgmt.network import NetworkManagementClient


class AzureNetworkClient(SdkRunner):
    def __init__(
        self,
        sdk: NetworkManagementClient,
        config: Azure,
        thread_pool: ThreadPoolExecutor,
    ) -> None:
        super().__init__(config, thread_pool)
        self._sdk = sdk

    async def get_interface(self, nic_id: NetworkInterfaceId) -> Json | None:
        model = await self._get(self._sdk.network_interfaces.get, nic_id.resource_group, nic_id.name)
        return to_json(model)

    async def get_public_ip(self, pip_id: PublicIpAddressId) -> Json | None:
        model = await self._get(self._sdk.public_ip_addresses.get, pip_id.resource_group, pip_id.name)
        return to_json(model)
