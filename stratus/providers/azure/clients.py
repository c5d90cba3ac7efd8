"""Azure client factories with dependency injection.

Provides the SDK clients, the REST adapters and the reconcilers built on
them as injectable singletons.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from azure.core.credentials import TokenCredential
from azure.identity import DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from injector import Injector, Module, provider, singleton

from stratus.config import ReconcilerSettings, load_settings
from stratus.locks import ResourceLocks
from stratus.reconciler import ExtensionReconciler, VirtualMachineReconciler

from .compute import AzureComputeClient
from .config import Azure
from .network import AzureNetworkClient

# =============================================================================
# Azure Module
# =============================================================================


class AzureModule(Module):
    """DI module that provides Azure clients and reconcilers.

    Usage:
        >>> from injector import Injector
        >>> from stratus.providers.azure import AzureModule, Azure
        >>>
        >>> injector = Injector([AzureModule()])
        >>> injector.binder.bind(Azure, to=Azure(subscription_id="..."))
        >>>
        >>> reconciler = injector.get(VirtualMachineReconciler)
        >>> state = await reconciler.read(vm_id)

    Both reconcilers share one ResourceLocks, so an extension change never
    runs concurrently with a power cycle of its machine.
    """

    @singleton
    @provider
    def provide_credential(self) -> TokenCredential:
        """Provide singleton credential chain."""
        return DefaultAzureCredential()

    @singleton
    @provider
    def provide_thread_pool(self, config: Azure) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=config.thread_pool_size,
            thread_name_prefix="azure-io",
        )

    @singleton
    @provider
    def provide_compute_sdk(self, credential: TokenCredential, config: Azure) -> ComputeManagementClient:
        return ComputeManagementClient(credential, config.resolved_subscription_id())

    @singleton
    @provider
    def provide_network_sdk(self, credential: TokenCredential, config: Azure) -> NetworkManagementClient:
        return NetworkManagementClient(credential, config.resolved_subscription_id())

    @singleton
    @provider
    def provide_compute(
        self, sdk: ComputeManagementClient, config: Azure, pool: ThreadPoolExecutor,
    ) -> AzureComputeClient:
        return AzureComputeClient(sdk, config, pool)

    @singleton
    @provider
    def provide_network(
        self, sdk: NetworkManagementClient, config: Azure, pool: ThreadPoolExecutor,
    ) -> AzureNetworkClient:
        return AzureNetworkClient(sdk, config, pool)

    @singleton
    @provider
    def provide_locks(self) -> ResourceLocks:
        return ResourceLocks()

    @singleton
    @provider
    def provide_settings(self) -> ReconcilerSettings:
        """Provide reconciler settings from stratus.toml / defaults.toml."""
        return load_settings()

    @singleton
    @provider
    def provide_vm_reconciler(
        self,
        compute: AzureComputeClient,
        network: AzureNetworkClient,
        locks: ResourceLocks,
        settings: ReconcilerSettings,
    ) -> VirtualMachineReconciler:
        return VirtualMachineReconciler(compute, network, locks=locks, settings=settings)

    @singleton
    @provider
    def provide_extension_reconciler(
        self,
        compute: AzureComputeClient,
        locks: ResourceLocks,
        settings: ReconcilerSettings,
    ) -> ExtensionReconciler:
        return ExtensionReconciler(compute, locks=locks, settings=settings)


def create_injector(config: Azure, settings: ReconcilerSettings | None = None) -> Injector:
    """Build an injector bound to ``config`` (and ``settings``, when given)."""
    injector = Injector([AzureModule()])
    injector.binder.bind(Azure, to=config)
    if settings is not None:
        injector.binder.bind(ReconcilerSettings, to=settings)
    return injector


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "AzureModule",
    "create_injector",
]
