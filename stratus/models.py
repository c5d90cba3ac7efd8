"""Data model for virtual machine reconciliation.

Everything here is an immutable value. Desired configurations are owned by
the caller for the duration of one reconciliation; remote state is rebuilt
from REST payloads (ARM JSON, camelCase keys) on every read.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields
from enum import StrEnum
from typing import Any, ClassVar, Literal

from stratus.core.exceptions import InvalidConfigurationError
from stratus.identity import VirtualMachineExtensionId, VirtualMachineId, same_resource_id

type Json = dict[str, Any]


def normalize_location(location: str) -> str:
    """``West Europe`` and ``westeurope`` are the same region."""
    return location.replace(" ", "").lower()


# =============================================================================
# Enumerations
# =============================================================================


class PowerState(StrEnum):
    RUNNING = "running"
    STOPPED = "stopped"
    DEALLOCATING = "deallocating"
    DEALLOCATED = "deallocated"
    UNKNOWN = "unknown"

    @property
    def is_stopped(self) -> bool:
        """Stopped, deallocated or on its way to deallocation."""
        return self in (PowerState.STOPPED, PowerState.DEALLOCATED, PowerState.DEALLOCATING)

    @classmethod
    def from_statuses(cls, codes: Iterable[str | None]) -> PowerState:
        """Derive the power state from instance view status codes.

        Looks for the first ``PowerState/<state>`` entry (case-insensitive);
        other entries (provisioning state etc.) are ignored. A machine that
        reports no power state at all is assumed to be running.
        """
        for code in codes:
            if not code:
                continue
            lowered = code.lower()
            if not lowered.startswith("powerstate/"):
                continue
            match lowered.removeprefix("powerstate/"):
                case "running" | "starting":
                    return cls.RUNNING
                case "stopped" | "stopping":
                    return cls.STOPPED
                case "deallocating":
                    return cls.DEALLOCATING
                case "deallocated":
                    return cls.DEALLOCATED
                case _:
                    return cls.UNKNOWN
        return cls.RUNNING


class Priority(StrEnum):
    REGULAR = "Regular"
    SPOT = "Spot"
    LOW = "Low"


class EvictionPolicy(StrEnum):
    DEALLOCATE = "Deallocate"
    DELETE = "Delete"


# =============================================================================
# OS configuration (tagged union)
# =============================================================================


@dataclass(frozen=True, slots=True)
class SshKey:
    username: str
    public_key: str

    def to_request(self) -> Json:
        return {
            "path": f"/home/{self.username}/.ssh/authorized_keys",
            "keyData": self.public_key,
        }

    @classmethod
    def from_request(cls, data: Json) -> SshKey:
        path = data.get("path") or ""
        # /home/{username}/.ssh/authorized_keys
        parts = path.strip("/").split("/")
        username = parts[1] if len(parts) > 2 and parts[0] == "home" else ""
        return cls(username=username, public_key=data.get("keyData") or "")


@dataclass(frozen=True, slots=True)
class LinuxConfiguration:
    """Linux-specific OS profile settings."""

    kind: ClassVar[Literal["linux"]] = "linux"
    connection_type: ClassVar[str] = "ssh"
    MUTABLE: ClassVar[frozenset[str]] = frozenset({"admin_ssh_keys", "disable_password_authentication"})

    admin_ssh_keys: tuple[SshKey, ...] = ()
    disable_password_authentication: bool = True
    provision_vm_agent: bool = True

    def validate(self, admin_password: str | None) -> None:
        # "Authentication using either SSH or by user name and password must be enabled in Linux profile."
        if self.disable_password_authentication and not self.admin_ssh_keys:
            raise InvalidConfigurationError(
                "At least one `admin_ssh_key` must be specified when "
                "`disable_password_authentication` is set to `true`"
            )
        if not self.disable_password_authentication and not admin_password:
            raise InvalidConfigurationError(
                "An `admin_password` must be specified if "
                "`disable_password_authentication` is set to `false`"
            )

    def changed_fields(self, other: OsConfiguration) -> frozenset[str]:
        if not isinstance(other, LinuxConfiguration):
            return frozenset({"os"})
        changed: set[str] = set()
        if set(self.admin_ssh_keys) != set(other.admin_ssh_keys):
            changed.add("admin_ssh_keys")
        if self.disable_password_authentication != other.disable_password_authentication:
            changed.add("disable_password_authentication")
        if self.provision_vm_agent != other.provision_vm_agent:
            changed.add("provision_vm_agent")
        return frozenset(changed)

    def to_request_fragment(self, only: frozenset[str] | None = None) -> Json:
        """Build the ``linuxConfiguration`` section.

        With ``only``, emits just the named fields (partial updates).
        """
        config: Json = {}
        if only is None or "admin_ssh_keys" in only:
            config["ssh"] = {"publicKeys": [k.to_request() for k in self.admin_ssh_keys]}
        if only is None or "disable_password_authentication" in only:
            config["disablePasswordAuthentication"] = self.disable_password_authentication
        if only is None:
            config["provisionVMAgent"] = self.provision_vm_agent
        return {"linuxConfiguration": config}

    @classmethod
    def from_request(cls, data: Json) -> LinuxConfiguration:
        keys = ((data.get("ssh") or {}).get("publicKeys")) or []
        return cls(
            admin_ssh_keys=tuple(SshKey.from_request(k) for k in keys),
            disable_password_authentication=bool(data.get("disablePasswordAuthentication", True)),
            provision_vm_agent=bool(data.get("provisionVMAgent", True)),
        )


@dataclass(frozen=True, slots=True)
class WindowsConfiguration:
    """Windows-specific OS profile settings."""

    kind: ClassVar[Literal["windows"]] = "windows"
    connection_type: ClassVar[str] = "winrm"
    MUTABLE: ClassVar[frozenset[str]] = frozenset({"enable_automatic_updates"})

    enable_automatic_updates: bool = True
    provision_vm_agent: bool = True
    timezone: str | None = None

    def validate(self, admin_password: str | None) -> None:
        if not admin_password:
            raise InvalidConfigurationError("An `admin_password` must be specified for Windows machines")

    def changed_fields(self, other: OsConfiguration) -> frozenset[str]:
        if not isinstance(other, WindowsConfiguration):
            return frozenset({"os"})
        changed: set[str] = set()
        if self.enable_automatic_updates != other.enable_automatic_updates:
            changed.add("enable_automatic_updates")
        if self.provision_vm_agent != other.provision_vm_agent:
            changed.add("provision_vm_agent")
        if (self.timezone or "") != (other.timezone or ""):
            changed.add("timezone")
        return frozenset(changed)

    def to_request_fragment(self, only: frozenset[str] | None = None) -> Json:
        config: Json = {}
        if only is None or "enable_automatic_updates" in only:
            config["enableAutomaticUpdates"] = self.enable_automatic_updates
        if only is None:
            config["provisionVMAgent"] = self.provision_vm_agent
            if self.timezone:
                config["timeZone"] = self.timezone
        return {"windowsConfiguration": config}

    @classmethod
    def from_request(cls, data: Json) -> WindowsConfiguration:
        return cls(
            enable_automatic_updates=bool(data.get("enableAutomaticUpdates", True)),
            provision_vm_agent=bool(data.get("provisionVMAgent", True)),
            timezone=data.get("timeZone"),
        )


type OsConfiguration = LinuxConfiguration | WindowsConfiguration


# =============================================================================
# Profiles
# =============================================================================


@dataclass(frozen=True, slots=True)
class VaultCertificate:
    url: str
    store: str | None = None


@dataclass(frozen=True, slots=True)
class VaultSecret:
    key_vault_id: str
    certificates: tuple[VaultCertificate, ...] = ()

    def to_request(self) -> Json:
        certs: list[Json] = []
        for c in self.certificates:
            cert: Json = {"certificateUrl": c.url}
            if c.store:
                cert["certificateStore"] = c.store
            certs.append(cert)
        return {"sourceVault": {"id": self.key_vault_id}, "vaultCertificates": certs}

    @classmethod
    def from_request(cls, data: Json) -> VaultSecret:
        return cls(
            key_vault_id=(data.get("sourceVault") or {}).get("id") or "",
            certificates=tuple(
                VaultCertificate(url=c.get("certificateUrl") or "", store=c.get("certificateStore"))
                for c in data.get("vaultCertificates") or []
            ),
        )


@dataclass(frozen=True, slots=True)
class OsDisk:
    caching: str = "ReadWrite"
    storage_account_type: str = "Standard_LRS"
    disk_size_gb: int | None = None
    name: str | None = None
    write_accelerator_enabled: bool = False
    disk_encryption_set_id: str | None = None

    def to_request(self) -> Json:
        managed: Json = {"storageAccountType": self.storage_account_type}
        if self.disk_encryption_set_id:
            managed["diskEncryptionSet"] = {"id": self.disk_encryption_set_id}
        disk: Json = {
            "caching": self.caching,
            "createOption": "FromImage",
            "managedDisk": managed,
            "writeAcceleratorEnabled": self.write_accelerator_enabled,
        }
        if self.disk_size_gb is not None:
            disk["diskSizeGB"] = self.disk_size_gb
        if self.name:
            disk["name"] = self.name
        return disk

    @classmethod
    def from_request(cls, data: Json) -> OsDisk:
        managed = data.get("managedDisk") or {}
        return cls(
            caching=data.get("caching") or "None",
            storage_account_type=managed.get("storageAccountType") or "",
            disk_size_gb=data.get("diskSizeGB"),
            name=data.get("name"),
            write_accelerator_enabled=bool(data.get("writeAcceleratorEnabled", False)),
            disk_encryption_set_id=(managed.get("diskEncryptionSet") or {}).get("id"),
        )


@dataclass(frozen=True, slots=True)
class ImageReference:
    publisher: str
    offer: str
    sku: str
    version: str = "latest"

    def to_request(self) -> Json:
        return {"publisher": self.publisher, "offer": self.offer, "sku": self.sku, "version": self.version}


@dataclass(frozen=True, slots=True)
class ManagedIdentity:
    type: Literal["SystemAssigned", "UserAssigned", "SystemAssigned, UserAssigned"]
    identity_ids: tuple[str, ...] = ()
    principal_id: str | None = field(default=None, compare=False)

    def validate(self) -> None:
        user_assigned = "UserAssigned" in self.type
        if user_assigned and not self.identity_ids:
            raise InvalidConfigurationError(
                "`identity_ids` must be specified when `type` includes `UserAssigned`"
            )
        if not user_assigned and self.identity_ids:
            raise InvalidConfigurationError(
                "`identity_ids` can only be specified when `type` includes `UserAssigned`"
            )

    def to_request(self) -> Json:
        body: Json = {"type": self.type}
        if self.identity_ids:
            body["userAssignedIdentities"] = {i: {} for i in self.identity_ids}
        return body

    @classmethod
    def from_request(cls, data: Json | None) -> ManagedIdentity | None:
        if not data or data.get("type") in (None, "None"):
            return None
        return cls(
            type=data["type"],
            identity_ids=tuple((data.get("userAssignedIdentities") or {}).keys()),
            principal_id=data.get("principalId"),
        )


@dataclass(frozen=True, slots=True)
class BootDiagnostics:
    storage_account_uri: str

    @staticmethod
    def to_request(diag: BootDiagnostics | None) -> Json:
        if diag is None:
            return {"bootDiagnostics": {"enabled": False}}
        return {"bootDiagnostics": {"enabled": True, "storageUri": diag.storage_account_uri}}

    @classmethod
    def from_request(cls, data: Json | None) -> BootDiagnostics | None:
        boot = (data or {}).get("bootDiagnostics") or {}
        if not boot.get("enabled"):
            return None
        return cls(storage_account_uri=boot.get("storageUri") or "")


# =============================================================================
# Desired configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class VirtualMachineConfig:
    """Immutable snapshot of a virtual machine's user-declared fields.

    ``max_bid_price`` of -1 means "no cap" (pay up to the on-demand price).
    ``admin_password`` and ``custom_data`` are never returned by the API, so
    configs rebuilt from a remote payload carry None for them.
    """

    name: str
    resource_group: str
    location: str
    size: str
    admin_username: str
    network_interface_ids: tuple[str, ...]
    os_disk: OsDisk = field(default_factory=OsDisk)
    os: OsConfiguration = field(default_factory=LinuxConfiguration)
    admin_password: str | None = field(default=None, repr=False)
    computer_name: str | None = None
    custom_data: str | None = field(default=None, repr=False)
    secrets: tuple[VaultSecret, ...] = ()
    identity: ManagedIdentity | None = None
    tags: dict[str, str] = field(default_factory=dict)
    boot_diagnostics: BootDiagnostics | None = None
    priority: Priority = Priority.REGULAR
    eviction_policy: EvictionPolicy | None = None
    max_bid_price: float = -1.0
    allow_extension_operations: bool = True
    availability_set_id: str | None = None
    proximity_placement_group_id: str | None = None
    dedicated_host_id: str | None = None
    zone: str | None = None
    source_image_id: str | None = None
    source_image_reference: ImageReference | None = None

    @property
    def effective_computer_name(self) -> str:
        return self.computer_name or self.name

    def identity_for(self, subscription_id: str) -> VirtualMachineId:
        return VirtualMachineId(
            subscription_id=subscription_id,
            resource_group=self.resource_group,
            name=self.name,
        )

    def os_profile(self) -> Json:
        profile: Json = {
            "adminUsername": self.admin_username,
            "computerName": self.effective_computer_name,
            "allowExtensionOperations": self.allow_extension_operations,
            "secrets": [s.to_request() for s in self.secrets],
            **self.os.to_request_fragment(),
        }
        if self.admin_password:
            profile["adminPassword"] = self.admin_password
        if self.custom_data:
            profile["customData"] = self.custom_data
        return profile

    def to_create_request(self) -> Json:
        """Build the full create-or-update body."""
        image: Json = (
            {"id": self.source_image_id}
            if self.source_image_id
            else self.source_image_reference.to_request() if self.source_image_reference else {}
        )
        properties: Json = {
            "hardwareProfile": {"vmSize": self.size},
            "osProfile": self.os_profile(),
            "networkProfile": {
                "networkInterfaces": [
                    {"id": nic, "properties": {"primary": i == 0}}
                    for i, nic in enumerate(self.network_interface_ids)
                ]
            },
            "storageProfile": {
                "imageReference": image,
                "osDisk": self.os_disk.to_request(),
                # Data disks are attached separately; an empty list on create only
                "dataDisks": [],
            },
            "diagnosticsProfile": BootDiagnostics.to_request(self.boot_diagnostics),
            "priority": self.priority.value,
        }
        if self.eviction_policy is not None:
            properties["evictionPolicy"] = self.eviction_policy.value
        if self.max_bid_price > 0:
            properties["billingProfile"] = {"maxPrice": self.max_bid_price}
        if self.availability_set_id:
            properties["availabilitySet"] = {"id": self.availability_set_id}
        if self.proximity_placement_group_id:
            properties["proximityPlacementGroup"] = {"id": self.proximity_placement_group_id}
        if self.dedicated_host_id:
            properties["host"] = {"id": self.dedicated_host_id}

        body: Json = {
            "location": normalize_location(self.location),
            "tags": dict(self.tags),
            "properties": properties,
        }
        if self.identity is not None:
            body["identity"] = self.identity.to_request()
        if self.zone:
            body["zones"] = [self.zone]
        return body

    @classmethod
    def from_remote(cls, payload: Json) -> VirtualMachineConfig:
        """Rebuild the observable part of a config from a GET payload."""
        props = payload.get("properties") or {}
        os_profile = props.get("osProfile") or {}
        storage = props.get("storageProfile") or {}
        image = storage.get("imageReference") or {}

        os_config: OsConfiguration
        if windows := os_profile.get("windowsConfiguration"):
            os_config = WindowsConfiguration.from_request(windows)
        else:
            os_config = LinuxConfiguration.from_request(os_profile.get("linuxConfiguration") or {})

        image_reference = None
        if image.get("publisher"):
            image_reference = ImageReference(
                publisher=image["publisher"],
                offer=image.get("offer") or "",
                sku=image.get("sku") or "",
                version=image.get("version") or "latest",
            )

        billing = props.get("billingProfile") or {}
        max_price = billing.get("maxPrice")
        eviction = props.get("evictionPolicy")
        zones = payload.get("zones") or []

        return cls(
            name=payload.get("name") or "",
            resource_group=_resource_group_of(payload.get("id")),
            location=normalize_location(payload.get("location") or ""),
            size=(props.get("hardwareProfile") or {}).get("vmSize") or "",
            admin_username=os_profile.get("adminUsername") or "",
            network_interface_ids=tuple(
                nic["id"] for nic in (props.get("networkProfile") or {}).get("networkInterfaces") or []
                if nic.get("id")
            ),
            os_disk=OsDisk.from_request(storage.get("osDisk") or {}),
            os=os_config,
            computer_name=os_profile.get("computerName"),
            secrets=tuple(VaultSecret.from_request(s) for s in os_profile.get("secrets") or []),
            identity=ManagedIdentity.from_request(payload.get("identity")),
            tags=dict(payload.get("tags") or {}),
            boot_diagnostics=BootDiagnostics.from_request(props.get("diagnosticsProfile")),
            priority=Priority(props.get("priority") or Priority.REGULAR),
            eviction_policy=EvictionPolicy(eviction) if eviction else None,
            # BillingProfile isn't returned when it's unset
            max_bid_price=float(max_price) if max_price is not None else -1.0,
            allow_extension_operations=bool(os_profile.get("allowExtensionOperations", True)),
            availability_set_id=(props.get("availabilitySet") or {}).get("id"),
            proximity_placement_group_id=(props.get("proximityPlacementGroup") or {}).get("id"),
            dedicated_host_id=(props.get("host") or {}).get("id"),
            zone=zones[0] if zones else None,
            source_image_id=image.get("id"),
            source_image_reference=image_reference,
        )

    @classmethod
    def field_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls))


def _resource_group_of(resource_id: str | None) -> str:
    if not resource_id:
        return ""
    parts = resource_id.strip("/").split("/")
    for i, part in enumerate(parts[:-1]):
        if part.lower() == "resourcegroups":
            return parts[i + 1]
    return ""


# =============================================================================
# Derived values
# =============================================================================


@dataclass(frozen=True, slots=True)
class ConnectionInfo:
    """Addresses a machine can be reached on. Empty means "no address yet"."""

    primary_private_address: str = ""
    private_addresses: tuple[str, ...] = ()
    primary_public_address: str = ""
    public_addresses: tuple[str, ...] = ()

    @classmethod
    def from_addresses(cls, private: Iterable[str], public: Iterable[str]) -> ConnectionInfo:
        private_addresses = tuple(private)
        public_addresses = tuple(public)
        return cls(
            primary_private_address=private_addresses[0] if private_addresses else "",
            private_addresses=private_addresses,
            primary_public_address=public_addresses[0] if public_addresses else "",
            public_addresses=public_addresses,
        )

    @property
    def host(self) -> str:
        """Public address if there is one, else private, else "" (unreachable)."""
        return self.primary_public_address or self.primary_private_address

    def connection_details(self, os: OsConfiguration) -> dict[str, str]:
        """Connection block for provisioners (ssh for Linux, winrm for Windows)."""
        return {"type": os.connection_type, "host": self.host}


@dataclass(frozen=True, slots=True)
class RemoteState:
    """Last-fetched representation of a virtual machine."""

    id: VirtualMachineId
    config: VirtualMachineConfig
    power_state: PowerState = PowerState.UNKNOWN
    provisioning_state: str | None = None
    vm_id: str | None = None
    connection: ConnectionInfo = field(default_factory=ConnectionInfo)
    raw: Json = field(default_factory=dict, compare=False, repr=False)

    @property
    def network_profile(self) -> Json:
        return (self.raw.get("properties") or {}).get("networkProfile") or {
            "networkInterfaces": [{"id": nic} for nic in self.config.network_interface_ids]
        }

    @classmethod
    def from_remote(
        cls,
        vm_id: VirtualMachineId,
        payload: Json,
        statuses: Iterable[str | None] = (),
    ) -> RemoteState:
        props = payload.get("properties") or {}
        if not statuses:
            statuses = [s.get("code") for s in (props.get("instanceView") or {}).get("statuses") or []]
        return cls(
            id=vm_id,
            config=VirtualMachineConfig.from_remote(payload),
            power_state=PowerState.from_statuses(statuses),
            provisioning_state=props.get("provisioningState"),
            vm_id=props.get("vmId"),
            raw=payload,
        )


@dataclass(frozen=True, slots=True)
class UpdatePlan:
    """What a reconciliation has to do. Created fresh per call, never persisted.

    ``pending_size_check`` holds a new size whose availability on the current
    host still has to be checked remotely; ``spot_price_changed`` marks a bid
    price change that forces a shutdown when the machine is running.
    """

    fields_changed: frozenset[str] = frozenset()
    requires_shutdown: bool = False
    requires_restart: bool = False
    pending_size_check: str | None = None
    spot_price_changed: bool = False

    @property
    def needs_update(self) -> bool:
        return bool(self.fields_changed)

    @property
    def needs_power_cycle(self) -> bool:
        return self.requires_shutdown


# =============================================================================
# Extensions
# =============================================================================


@dataclass(frozen=True, slots=True)
class ExtensionConfig:
    """Desired state of a virtual machine extension.

    ``settings`` and ``protected_settings`` accept either a mapping or a
    JSON string. Protected settings are never returned by the API.
    """

    name: str
    virtual_machine_id: str
    publisher: str
    type: str
    type_handler_version: str
    auto_upgrade_minor_version: bool = False
    force_update_tag: str | None = None
    settings: Mapping[str, Any] | str | None = None
    protected_settings: Mapping[str, Any] | str | None = field(default=None, repr=False)
    tags: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def _expand(value: Mapping[str, Any] | str | None, key: str) -> dict[str, Any] | None:
        match value:
            case None | "":
                return None
            case str():
                try:
                    parsed = json.loads(value)
                except json.JSONDecodeError as e:
                    raise InvalidConfigurationError(f"unable to parse {key}: {e}") from e
                if not isinstance(parsed, dict):
                    raise InvalidConfigurationError(f"{key} must be a JSON object")
                return parsed
            case _:
                return dict(value)

    def validate(self) -> None:
        """Parse both settings fields, raising InvalidConfigurationError on bad JSON."""
        self._expand(self.settings, "settings")
        self._expand(self.protected_settings, "protected_settings")

    def to_request(self, location: str) -> Json:
        properties: Json = {
            "autoUpgradeMinorVersion": self.auto_upgrade_minor_version,
            "forceUpdateTag": self.force_update_tag or "",
            "publisher": self.publisher,
            "type": self.type,
            "typeHandlerVersion": self.type_handler_version,
        }
        if (settings := self._expand(self.settings, "settings")) is not None:
            properties["settings"] = settings
        if (protected := self._expand(self.protected_settings, "protected_settings")) is not None:
            properties["protectedSettings"] = protected
        return {
            "location": normalize_location(location),
            "tags": dict(self.tags),
            "properties": properties,
        }


@dataclass(frozen=True, slots=True)
class ExtensionState:
    id: VirtualMachineExtensionId
    location: str
    virtual_machine_id: str
    publisher: str
    type: str
    type_handler_version: str
    auto_upgrade_minor_version: bool = False
    force_update_tag: str | None = None
    settings: dict[str, Any] | None = None
    provisioning_state: str | None = None
    tags: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_remote(
        cls,
        ext_id: VirtualMachineExtensionId,
        payload: Json,
        virtual_machine_id: str,
    ) -> ExtensionState:
        props = payload.get("properties") or {}
        return cls(
            id=ext_id,
            location=normalize_location(payload.get("location") or ""),
            virtual_machine_id=virtual_machine_id,
            publisher=props.get("publisher") or "",
            type=props.get("type") or "",
            type_handler_version=props.get("typeHandlerVersion") or "",
            auto_upgrade_minor_version=bool(props.get("autoUpgradeMinorVersion", False)),
            force_update_tag=props.get("forceUpdateTag"),
            settings=props.get("settings"),
            provisioning_state=props.get("provisioningState"),
            tags=dict(payload.get("tags") or {}),
        )


def same_ids(a: Iterable[str], b: Iterable[str]) -> bool:
    """Order-sensitive, case-insensitive comparison of resource ID lists."""
    left, right = list(a), list(b)
    return len(left) == len(right) and all(same_resource_id(x, y) for x, y in zip(left, right, strict=True))
