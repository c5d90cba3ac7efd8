"""Stratus - reconcile cloud virtual machines toward a desired configuration.

Example:

    from stratus import VirtualMachineConfig, VirtualMachineId, LinuxConfiguration, SshKey
    from stratus.providers.azure import Azure, create_injector
    from stratus.reconciler import VirtualMachineReconciler

    reconciler = create_injector(Azure()).get(VirtualMachineReconciler)

    vm_id = VirtualMachineId.parse(
        "/subscriptions/.../resourceGroups/web/providers/Microsoft.Compute/virtualMachines/web-01"
    )
    desired = VirtualMachineConfig(
        name="web-01",
        resource_group="web",
        location="westeurope",
        size="Standard_F4",
        admin_username="ops",
        network_interface_ids=(nic_id,),
        os=LinuxConfiguration(admin_ssh_keys=(SshKey("ops", public_key),)),
    )

    state = await reconciler.reconcile_update(vm_id, desired)
    print(state.power_state, state.connection.host)
"""

# Configuration
from stratus.config import ReconcilerSettings, Timeouts, load_config, load_settings

# Connection info
from stratus.connection import ConnectionResolver

# Errors
from stratus.core.exceptions import (
    ConfigurationError,
    ImmutableFieldError,
    InvalidConfigurationError,
    LockLoopError,
    MalformedPathError,
    NotFoundError,
    ReconciliationCancelled,
    RemoteOperationFailed,
    ResourceExistsError,
    StratusError,
)

# Identities
from stratus.identity import (
    NetworkInterfaceId,
    PublicIpAddressId,
    ResourceId,
    VirtualMachineExtensionId,
    VirtualMachineId,
    parse_resource_id,
    validate_virtual_machine_id,
)

# Locks
from stratus.locks import LockEvent, ResourceLocks

# Model
from stratus.models import (
    BootDiagnostics,
    ConnectionInfo,
    EvictionPolicy,
    ExtensionConfig,
    ExtensionState,
    ImageReference,
    LinuxConfiguration,
    ManagedIdentity,
    OsDisk,
    PowerState,
    Priority,
    RemoteState,
    SshKey,
    UpdatePlan,
    VaultCertificate,
    VaultSecret,
    VirtualMachineConfig,
    WindowsConfiguration,
)

# Logging
from stratus.observability import LogConfig, setup_logging, teardown_logging

# Reconcilers
from stratus.reconciler import ExtensionReconciler, ReconcileStep, VirtualMachineReconciler

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "ReconcilerSettings",
    "Timeouts",
    "load_config",
    "load_settings",
    # Connection info
    "ConnectionResolver",
    # Errors
    "ConfigurationError",
    "ImmutableFieldError",
    "InvalidConfigurationError",
    "LockLoopError",
    "MalformedPathError",
    "NotFoundError",
    "ReconciliationCancelled",
    "RemoteOperationFailed",
    "ResourceExistsError",
    "StratusError",
    # Identities
    "NetworkInterfaceId",
    "PublicIpAddressId",
    "ResourceId",
    "VirtualMachineExtensionId",
    "VirtualMachineId",
    "parse_resource_id",
    "validate_virtual_machine_id",
    # Locks
    "LockEvent",
    "ResourceLocks",
    # Model
    "BootDiagnostics",
    "ConnectionInfo",
    "EvictionPolicy",
    "ExtensionConfig",
    "ExtensionState",
    "ImageReference",
    "LinuxConfiguration",
    "ManagedIdentity",
    "OsDisk",
    "PowerState",
    "Priority",
    "RemoteState",
    "SshKey",
    "UpdatePlan",
    "VaultCertificate",
    "VaultSecret",
    "VirtualMachineConfig",
    "WindowsConfiguration",
    # Logging
    "LogConfig",
    "setup_logging",
    "teardown_logging",
    # Reconcilers
    "ExtensionReconciler",
    "ReconcileStep",
    "VirtualMachineReconciler",
]
