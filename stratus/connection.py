"""Best-effort connection info resolution.

Walks virtual machine -> network interfaces -> public IP addresses and
collects every address it can find. A broken edge (malformed ID, missing
resource, failed lookup, public IP not yet allocated) drops that edge's
contribution and nothing else.
"""

from __future__ import annotations

from loguru import logger

from stratus.core.exceptions import MalformedPathError
from stratus.identity import NetworkInterfaceId, PublicIpAddressId
from stratus.models import ConnectionInfo, Json
from stratus.protocols import NetworkClient

log = logger.bind(component="connection")


class ConnectionResolver:
    def __init__(self, network: NetworkClient) -> None:
        self._network = network

    async def resolve(self, network_profile: Json | None) -> ConnectionInfo:
        """Collect private and public addresses, preserving interface order.

        Never raises (cancellation excepted).
        """
        private: list[str] = []
        public: list[str] = []

        for ref in (network_profile or {}).get("networkInterfaces") or []:
            nic = await self._interface(ref.get("id"))
            if nic is None:
                continue

            for ip_config in (nic.get("properties") or {}).get("ipConfigurations") or []:
                props = ip_config.get("properties") or {}
                if address := props.get("privateIPAddress"):
                    private.append(address)

                pip_ref = props.get("publicIPAddress") or {}
                if address := await self._public_address(pip_ref.get("id")):
                    public.append(address)

        info = ConnectionInfo.from_addresses(private, public)
        log.debug(
            "Resolved {n_private} private / {n_public} public address(es), host={host!r}",
            n_private=len(private), n_public=len(public), host=info.host,
        )
        return info

    async def _interface(self, raw_id: str | None) -> Json | None:
        if not raw_id:
            return None
        try:
            nic_id = NetworkInterfaceId.parse(raw_id)
        except MalformedPathError as e:
            log.warning("Skipping network interface: {err}", err=e)
            return None
        try:
            nic = await self._network.get_interface(nic_id)
        except Exception as e:
            log.warning("Lookup of {nic} failed, skipping: {err}", nic=nic_id, err=e)
            return None
        if nic is None:
            log.debug("{nic} was not found, skipping", nic=nic_id)
        return nic

    async def _public_address(self, raw_id: str | None) -> str | None:
        if not raw_id:
            return None
        try:
            pip_id = PublicIpAddressId.parse(raw_id)
        except MalformedPathError as e:
            log.warning("Skipping public IP: {err}", err=e)
            return None
        try:
            pip = await self._network.get_public_ip(pip_id)
        except Exception as e:
            log.warning("Lookup of {pip} failed, skipping: {err}", pip=pip_id, err=e)
            return None
        if pip is None:
            log.debug("{pip} was not found, skipping", pip=pip_id)
            return None
        # Dynamic addresses aren't allocated until the machine is running
        return (pip.get("properties") or {}).get("ipAddress") or None
