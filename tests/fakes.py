"""In-memory compute and network clients for reconciler tests."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from stratus.identity import (
    NetworkInterfaceId,
    PublicIpAddressId,
    VirtualMachineExtensionId,
    VirtualMachineId,
)
from stratus.models import (
    Json,
    LinuxConfiguration,
    OsDisk,
    SshKey,
    VirtualMachineConfig,
)

SUBSCRIPTION = "00000000-0000-0000-0000-000000000000"
RG = "acctestRG"

MUTATING = frozenset({
    "create_or_update", "update", "delete", "power_off", "start",
    "create_or_update_extension", "delete_extension",
})


def nic_id(name: str, rg: str = RG) -> str:
    return (
        f"/subscriptions/{SUBSCRIPTION}/resourceGroups/{rg}"
        f"/providers/Microsoft.Network/networkInterfaces/{name}"
    )


def pip_id(name: str, rg: str = RG) -> str:
    return (
        f"/subscriptions/{SUBSCRIPTION}/resourceGroups/{rg}"
        f"/providers/Microsoft.Network/publicIPAddresses/{name}"
    )


def vm_id(name: str = "web-01", rg: str = RG) -> VirtualMachineId:
    return VirtualMachineId(subscription_id=SUBSCRIPTION, resource_group=rg, name=name)


def make_config(name: str = "web-01", **overrides: Any) -> VirtualMachineConfig:
    defaults: dict[str, Any] = {
        "name": name,
        "resource_group": RG,
        "location": "West Europe",
        "size": "Standard_F2",
        "admin_username": "adminuser",
        "network_interface_ids": (nic_id(f"{name}-nic"),),
        "os_disk": OsDisk(caching="ReadWrite", storage_account_type="Standard_LRS", disk_size_gb=30),
        "os": LinuxConfiguration(admin_ssh_keys=(SshKey("adminuser", "ssh-rsa AAAAB3Nza"),)),
        "source_image_id": (
            f"/subscriptions/{SUBSCRIPTION}/resourceGroups/{RG}"
            "/providers/Microsoft.Compute/images/base"
        ),
    }
    defaults.update(overrides)
    return VirtualMachineConfig(**defaults)


def _merge(base: Json, override: Json) -> Json:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _strip_write_only(payload: Json) -> Json:
    os_profile = payload.get("properties", {}).get("osProfile", {})
    os_profile.pop("adminPassword", None)
    os_profile.pop("customData", None)
    return payload


@dataclass
class Call:
    op: str
    name: str
    body: Json | None = None
    force: bool | None = None


@dataclass
class FakeOperation:
    """Completes after ``delay`` seconds by applying ``effect``."""

    name: str
    effect: Callable[[], None] | None = None
    error: Exception | None = None
    delay: float = 0.0
    completed: bool = field(default=False, init=False)

    async def wait_for_completion(self, deadline: float | None = None) -> Json | None:
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.effect is not None:
            self.effect()
        self.completed = True
        return None


class FakeCompute:
    def __init__(self, *, available_sizes: list[str] | None = None, delay: float = 0.0) -> None:
        self.subscription_id = SUBSCRIPTION
        self.vms: dict[str, Json] = {}
        self.power: dict[str, str] = {}
        self.extensions: dict[tuple[str, str], Json] = {}
        self.available_sizes = available_sizes if available_sizes is not None else ["Standard_F2", "Standard_F4"]
        self.delay = delay
        self.calls: list[Call] = []
        self.failures: dict[str, Exception] = {}
        self.wait_failures: dict[str, Exception] = {}

    # -- test helpers -------------------------------------------------------

    def seed(self, config: VirtualMachineConfig, power: str = "running") -> Json:
        self._store(vm_id(config.name, config.resource_group), config.to_create_request())
        self.power[config.name] = power
        return self.vms[config.name]

    @property
    def mutations(self) -> list[Call]:
        return [c for c in self.calls if c.op in MUTATING]

    def ops(self, *, mutating_only: bool = True) -> list[str]:
        calls = self.mutations if mutating_only else self.calls
        return [c.op for c in calls]

    def _store(self, target: VirtualMachineId, body: Json) -> None:
        payload = copy.deepcopy(body)
        payload["id"] = target.resource_id
        payload["name"] = target.name
        payload.setdefault("properties", {})
        payload["properties"]["provisioningState"] = "Succeeded"
        payload["properties"]["vmId"] = f"vm-{target.name}"
        self.vms[target.name] = _strip_write_only(payload)

    def _record(self, op: str, name: str, body: Json | None = None, force: bool | None = None) -> None:
        self.calls.append(Call(op=op, name=name, body=copy.deepcopy(body), force=force))
        if op in self.failures:
            raise self.failures[op]

    def _operation(self, op: str, name: str, effect: Callable[[], None]) -> FakeOperation:
        return FakeOperation(
            name=f"{op}:{name}",
            effect=effect,
            error=self.wait_failures.get(op),
            delay=self.delay,
        )

    # -- ComputeClient --------------------------------------------------------

    async def get(self, target: VirtualMachineId) -> Json | None:
        self._record("get", target.name)
        vm = self.vms.get(target.name)
        return copy.deepcopy(vm) if vm is not None else None

    async def create_or_update(self, target: VirtualMachineId, body: Json) -> FakeOperation:
        self._record("create_or_update", target.name, body)

        def effect() -> None:
            self._store(target, body)
            self.power[target.name] = "running"

        return self._operation("create_or_update", target.name, effect)

    async def update(self, target: VirtualMachineId, body: Json) -> FakeOperation:
        self._record("update", target.name, body)

        def effect() -> None:
            current = self.vms[target.name]
            merged = dict(current)
            if "tags" in body:
                merged["tags"] = dict(body["tags"])
            if "identity" in body:
                merged["identity"] = dict(body["identity"])
            merged["properties"] = _merge(current.get("properties", {}), body.get("properties", {}))
            self.vms[target.name] = _strip_write_only(merged)

        return self._operation("update", target.name, effect)

    async def delete(self, target: VirtualMachineId) -> FakeOperation:
        self._record("delete", target.name)

        def effect() -> None:
            self.vms.pop(target.name, None)
            self.power.pop(target.name, None)

        return self._operation("delete", target.name, effect)

    async def power_off(self, target: VirtualMachineId, force: bool = False) -> FakeOperation:
        self._record("power_off", target.name, force=force)
        return self._operation("power_off", target.name, lambda: self.power.__setitem__(target.name, "stopped"))

    async def start(self, target: VirtualMachineId) -> FakeOperation:
        self._record("start", target.name)
        return self._operation("start", target.name, lambda: self.power.__setitem__(target.name, "running"))

    async def list_available_sizes(self, target: VirtualMachineId) -> list[str]:
        self._record("list_available_sizes", target.name)
        return list(self.available_sizes)

    async def get_instance_view(self, target: VirtualMachineId) -> list[str | None] | None:
        self._record("get_instance_view", target.name)
        if target.name not in self.vms:
            return None
        return ["ProvisioningState/succeeded", f"PowerState/{self.power[target.name]}"]

    async def get_extension(self, ext: VirtualMachineExtensionId) -> Json | None:
        self._record("get_extension", ext.name)
        found = self.extensions.get((ext.virtual_machine_name, ext.name))
        return copy.deepcopy(found) if found is not None else None

    async def create_or_update_extension(self, ext: VirtualMachineExtensionId, body: Json) -> FakeOperation:
        self._record("create_or_update_extension", ext.name, body)

        def effect() -> None:
            payload = copy.deepcopy(body)
            payload["id"] = ext.resource_id
            payload["name"] = ext.name
            payload["properties"].pop("protectedSettings", None)
            payload["properties"]["provisioningState"] = "Succeeded"
            self.extensions[(ext.virtual_machine_name, ext.name)] = payload

        return self._operation("create_or_update_extension", ext.name, effect)

    async def delete_extension(self, ext: VirtualMachineExtensionId) -> FakeOperation:
        self._record("delete_extension", ext.name)
        return self._operation(
            "delete_extension", ext.name,
            lambda: self.extensions.pop((ext.virtual_machine_name, ext.name), None),
        )


class FakeNetwork:
    def __init__(self) -> None:
        self.interfaces: dict[str, Json] = {}
        self.public_ips: dict[str, Json] = {}
        self.broken: set[str] = set()
        self.lookups: list[str] = []

    def add_interface(self, name: str, *ip_configs: tuple[str | None, str | None]) -> str:
        """Register a NIC; each ip config is (private address, public IP id)."""
        configs = []
        for i, (private, public) in enumerate(ip_configs):
            props: Json = {"primary": i == 0}
            if private:
                props["privateIPAddress"] = private
            if public:
                props["publicIPAddress"] = {"id": public}
            configs.append({"name": f"ipconfig{i}", "properties": props})
        self.interfaces[name] = {"name": name, "properties": {"ipConfigurations": configs}}
        return nic_id(name)

    def add_public_ip(self, name: str, address: str | None, allocation: str = "Static") -> str:
        props: Json = {"publicIPAllocationMethod": allocation}
        if address:
            props["ipAddress"] = address
        self.public_ips[name] = {"name": name, "properties": props}
        return pip_id(name)

    async def get_interface(self, target: NetworkInterfaceId) -> Json | None:
        self.lookups.append(f"nic:{target.name}")
        if target.name in self.broken:
            raise ConnectionError(f"lookup of {target.name} failed")
        return self.interfaces.get(target.name)

    async def get_public_ip(self, target: PublicIpAddressId) -> Json | None:
        self.lookups.append(f"pip:{target.name}")
        if target.name in self.broken:
            raise ConnectionError(f"lookup of {target.name} failed")
        return self.public_ips.get(target.name)
