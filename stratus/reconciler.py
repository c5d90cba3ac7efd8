"""Power-state aware reconciliation of virtual machines and their extensions.

One reconciliation call walks::

    Idle -> Locked -> Inspecting -> (Shutdown) -> Updating -> (Restart) -> Done

with Failed reachable from every state. The named-resource lock is held
from Locked until the last mutating call has completed, and released on
every exit path. Mutating calls are never retried here; a failure aborts
the remaining steps and surfaces as RemoteOperationFailed tagged with the
operation name and the resource identity.

Create and delete are shortened versions of the same walk: create skips
inspection and power cycling, delete always forces the machine off first.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any

from loguru import logger

from stratus import planner
from stratus.config import ReconcilerSettings
from stratus.connection import ConnectionResolver
from stratus.core.exceptions import (
    NotFoundError,
    ReconciliationCancelled,
    RemoteOperationFailed,
    ResourceExistsError,
    StratusError,
)
from stratus.identity import VirtualMachineExtensionId, VirtualMachineId
from stratus.locks import ResourceLocks
from stratus.models import (
    ConnectionInfo,
    ExtensionConfig,
    ExtensionState,
    Json,
    PowerState,
    RemoteState,
    UpdatePlan,
    VirtualMachineConfig,
)
from stratus.protocols import ComputeClient, NetworkClient, Operation

log = logger.bind(component="reconciler")

VM_LOCK_KIND = "virtualMachines"


@dataclass(frozen=True, slots=True)
class ReconcileStep:
    """One remote call, as issued.

    Handed to the reconciler's ``listener``; reconcilers keep no trace
    of their own.
    """

    op: str
    resource: str
    force: bool | None = None

    @property
    def mutating(self) -> bool:
        return self.op in MUTATING_OPS


MUTATING_OPS = frozenset({
    "create", "update", "delete", "power-off", "start",
    "create-extension", "delete-extension",
})

type StepListener = Callable[[ReconcileStep], None]


class _Reconciler:
    """Remote call plumbing shared by the VM and extension reconcilers."""

    def __init__(
        self,
        compute: ComputeClient,
        locks: ResourceLocks | None,
        settings: ReconcilerSettings | None,
        listener: StepListener | None,
    ) -> None:
        self._compute = compute
        self._locks = locks if locks is not None else ResourceLocks()
        self._settings = settings or ReconcilerSettings()
        self._listener = listener

    @property
    def locks(self) -> ResourceLocks:
        return self._locks

    @asynccontextmanager
    async def _deadline(self, identity: Any, op: str, timeout: float | None) -> AsyncIterator[float | None]:
        """Bound the block by ``timeout`` seconds, yielding the absolute deadline."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        try:
            async with asyncio.timeout_at(deadline):
                yield deadline
        except TimeoutError as e:
            log.warning("{op} of {identity} hit its deadline", op=op, identity=identity)
            raise ReconciliationCancelled(identity, op) from e

    async def _call[T](
        self,
        op: str,
        identity: Any,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        force: bool | None = None,
    ) -> T:
        step = ReconcileStep(op=op, resource=str(identity), force=force)
        log.trace("{op} {resource}", op=step.op, resource=step.resource)
        if self._listener is not None:
            self._listener(step)
        try:
            return await fn(*args)
        except StratusError:
            raise
        except Exception as e:
            raise RemoteOperationFailed(op, identity, e) from e

    async def _mutate(
        self,
        op: str,
        identity: Any,
        deadline: float | None,
        fn: Callable[..., Awaitable[Operation]],
        *args: Any,
        force: bool | None = None,
    ) -> Json | None:
        """Issue a long-running mutation and wait for it to finish."""
        log.info("{op} {identity}", op=op, identity=identity)
        operation = await self._call(op, identity, fn, *args, force=force)
        try:
            return await operation.wait_for_completion(deadline)
        except TimeoutError as e:
            # only an expired deadline cancels; transport timeouts are remote failures
            if deadline is not None and asyncio.get_running_loop().time() >= deadline:
                raise ReconciliationCancelled(identity, op) from e
            raise RemoteOperationFailed(op, identity, e) from e
        except StratusError:
            raise
        except Exception as e:
            raise RemoteOperationFailed(op, identity, e) from e


class VirtualMachineReconciler(_Reconciler):
    """Converges a virtual machine toward a desired configuration.

    Example:
        reconciler = VirtualMachineReconciler(compute, network)
        state = await reconciler.reconcile_update(vm_id, desired)
        print(state.power_state, state.connection.host)
    """

    def __init__(
        self,
        compute: ComputeClient,
        network: NetworkClient,
        locks: ResourceLocks | None = None,
        settings: ReconcilerSettings | None = None,
        *,
        listener: StepListener | None = None,
    ) -> None:
        super().__init__(compute, locks, settings, listener)
        self._resolver = ConnectionResolver(network)

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def reconcile_create(
        self,
        desired: VirtualMachineConfig,
        *,
        timeout: float | None = None,
    ) -> RemoteState:
        """Create the machine and return its refreshed state.

        Raises:
            InvalidConfigurationError: ``desired`` fails validation.
            ResourceExistsError: The machine already exists and
                ``check_existing`` is enabled.
            RemoteOperationFailed: The create call or its wait failed.
            ReconciliationCancelled: The deadline expired.
        """
        planner.validate(desired, for_create=True)
        vm_id = desired.identity_for(self._compute.subscription_id)
        timeout = timeout if timeout is not None else self._settings.timeouts.create

        async with self._deadline(vm_id, "create", timeout) as deadline:
            async with self._locks.hold(vm_id.name, VM_LOCK_KIND):
                if self._settings.check_existing:
                    existing = await self._call("get", vm_id, self._compute.get, vm_id)
                    if existing is not None:
                        raise ResourceExistsError(vm_id)

                await self._mutate(
                    "create", vm_id, deadline,
                    self._compute.create_or_update, vm_id, desired.to_create_request(),
                )

            state = await self._read(vm_id)

        if state is None:
            raise NotFoundError(vm_id)
        return state

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    async def reconcile_update(
        self,
        vm_id: VirtualMachineId,
        desired: VirtualMachineConfig,
        *,
        previous: VirtualMachineConfig | None = None,
        timeout: float | None = None,
    ) -> RemoteState:
        """Converge an existing machine toward ``desired``.

        Args:
            vm_id: Machine to update.
            desired: Target configuration.
            previous: Last-known configuration. When omitted it is fetched.
            timeout: Overall deadline in seconds; defaults to the configured
                update timeout.

        Raises:
            InvalidConfigurationError: ``desired`` fails validation (raised
                before any remote call).
            ImmutableFieldError: A creation-only field changed.
            NotFoundError: The machine doesn't exist.
            RemoteOperationFailed: A power-off/update/start call failed.
            ReconciliationCancelled: The deadline expired.
        """
        planner.validate(desired)
        timeout = timeout if timeout is not None else self._settings.timeouts.update

        async with self._deadline(vm_id, "update", timeout) as deadline:
            async with self._locks.hold(vm_id.name, VM_LOCK_KIND):
                observed = previous if previous is not None else await self._observe(vm_id)
                update_plan = planner.plan(desired, observed)

                if update_plan.needs_update:
                    await self._apply(vm_id, desired, update_plan, deadline)
                else:
                    log.info("{vm} is up to date", vm=vm_id)

            state = await self._read(vm_id)

        if state is None:
            raise NotFoundError(vm_id)
        return state

    async def _observe(self, vm_id: VirtualMachineId) -> VirtualMachineConfig:
        payload = await self._call("get", vm_id, self._compute.get, vm_id)
        if payload is None:
            raise NotFoundError(vm_id)
        if not payload.get("properties"):
            raise RemoteOperationFailed(
                "get", vm_id, ValueError("response is missing `properties`"),
            )
        return VirtualMachineConfig.from_remote(payload)

    async def _apply(
        self,
        vm_id: VirtualMachineId,
        desired: VirtualMachineConfig,
        update_plan: UpdatePlan,
        deadline: float | None,
    ) -> None:
        statuses = await self._call("instance-view", vm_id, self._compute.get_instance_view, vm_id)
        if statuses is None:
            raise NotFoundError(vm_id)
        power_state = PowerState.from_statuses(statuses)

        sizes = None
        if update_plan.pending_size_check is not None and not power_state.is_stopped:
            sizes = await self._call("list-sizes", vm_id, self._compute.list_available_sizes, vm_id)

        final = planner.finalize(update_plan, power_state, sizes)
        log.debug(
            "Plan for {vm}: changed={fields} power_state={state} shutdown={shutdown} restart={restart}",
            vm=vm_id,
            fields=sorted(final.fields_changed),
            state=power_state,
            shutdown=final.requires_shutdown,
            restart=final.requires_restart,
        )

        shut_down = False
        if final.requires_shutdown and not power_state.is_stopped:
            await self._mutate(
                "power-off", vm_id, deadline,
                self._compute.power_off, vm_id, False, force=False,
            )
            shut_down = True

        await self._mutate(
            "update", vm_id, deadline,
            self._compute.update, vm_id, planner.build_update_request(desired, final),
        )

        if shut_down and final.requires_restart:
            await self._mutate("start", vm_id, deadline, self._compute.start, vm_id)

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def reconcile_delete(
        self,
        vm_id: VirtualMachineId,
        *,
        timeout: float | None = None,
        missing_ok: bool = False,
    ) -> None:
        """Force the machine off (skipping graceful shutdown), then delete it.

        Raises:
            NotFoundError: The machine doesn't exist (unless ``missing_ok``).
        """
        timeout = timeout if timeout is not None else self._settings.timeouts.delete

        async with self._deadline(vm_id, "delete", timeout) as deadline:
            async with self._locks.hold(vm_id.name, VM_LOCK_KIND):
                existing = await self._call("get", vm_id, self._compute.get, vm_id)
                if existing is None:
                    if missing_ok:
                        log.info("{vm} is already gone", vm=vm_id)
                        return
                    raise NotFoundError(vm_id)

                await self._mutate(
                    "power-off", vm_id, deadline,
                    self._compute.power_off, vm_id, True, force=True,
                )
                await self._mutate("delete", vm_id, deadline, self._compute.delete, vm_id)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    async def read(self, vm_id: VirtualMachineId, *, timeout: float | None = None) -> RemoteState | None:
        """Fetch the machine's state. None means it no longer exists."""
        timeout = timeout if timeout is not None else self._settings.timeouts.read
        async with self._deadline(vm_id, "read", timeout):
            return await self._read(vm_id)

    async def _read(self, vm_id: VirtualMachineId) -> RemoteState | None:
        payload = await self._call("get", vm_id, self._compute.get, vm_id)
        if payload is None:
            log.info("{vm} was not found - treating as deleted", vm=vm_id)
            return None

        statuses = await self._call("instance-view", vm_id, self._compute.get_instance_view, vm_id)
        state = RemoteState.from_remote(vm_id, payload, statuses or ())
        connection = await self.resolve_connection_info(state)
        return replace(state, connection=connection)

    async def resolve_connection_info(self, state: RemoteState) -> ConnectionInfo:
        return await self._resolver.resolve(state.network_profile)


class ExtensionReconciler(_Reconciler):
    """Create, read, update and delete virtual machine extensions.

    Extensions share the parent machine's lock, so an extension change never
    races a power cycle of the machine it runs on.
    """

    def __init__(
        self,
        compute: ComputeClient,
        locks: ResourceLocks | None = None,
        settings: ReconcilerSettings | None = None,
        *,
        listener: StepListener | None = None,
    ) -> None:
        super().__init__(compute, locks, settings, listener)

    def _identity(self, config: ExtensionConfig) -> VirtualMachineExtensionId:
        vm_id = VirtualMachineId.parse(config.virtual_machine_id)
        return VirtualMachineExtensionId(
            subscription_id=vm_id.subscription_id,
            resource_group=vm_id.resource_group,
            virtual_machine_name=vm_id.name,
            name=config.name,
        )

    async def reconcile_create(self, config: ExtensionConfig, *, timeout: float | None = None) -> ExtensionState:
        return await self._put(config, "create", timeout, self._settings.check_existing)

    async def reconcile_update(self, config: ExtensionConfig, *, timeout: float | None = None) -> ExtensionState:
        return await self._put(config, "update", timeout, False)

    async def _put(
        self,
        config: ExtensionConfig,
        op: str,
        timeout: float | None,
        check_existing: bool,
    ) -> ExtensionState:
        config.validate()
        ext_id = self._identity(config)
        vm_id = ext_id.virtual_machine
        timeout = timeout if timeout is not None else getattr(self._settings.timeouts, op)

        async with self._deadline(ext_id, op, timeout) as deadline:
            async with self._locks.hold(vm_id.name, VM_LOCK_KIND):
                vm = await self._call("get", vm_id, self._compute.get, vm_id)
                if vm is None:
                    raise NotFoundError(vm_id)

                if check_existing:
                    existing = await self._call("get-extension", ext_id, self._compute.get_extension, ext_id)
                    if existing is not None:
                        raise ResourceExistsError(ext_id)

                # Extensions always live in their machine's region
                body = config.to_request(vm.get("location") or "")
                await self._mutate(
                    "create-extension", ext_id, deadline,
                    self._compute.create_or_update_extension, ext_id, body,
                )

            state = await self._read(ext_id)

        if state is None:
            raise NotFoundError(ext_id)
        return state

    async def read(self, ext_id: VirtualMachineExtensionId, *, timeout: float | None = None) -> ExtensionState | None:
        """Fetch the extension. None when either it or its machine is gone."""
        timeout = timeout if timeout is not None else self._settings.timeouts.read
        async with self._deadline(ext_id, "read", timeout):
            return await self._read(ext_id)

    async def _read(self, ext_id: VirtualMachineExtensionId) -> ExtensionState | None:
        vm_id = ext_id.virtual_machine
        vm = await self._call("get", vm_id, self._compute.get, vm_id)
        if vm is None:
            log.info("{vm} was not found - removing {ext} from state", vm=vm_id, ext=ext_id)
            return None

        payload = await self._call("get-extension", ext_id, self._compute.get_extension, ext_id)
        if payload is None:
            log.info("{ext} was not found - removing from state", ext=ext_id)
            return None
        return ExtensionState.from_remote(ext_id, payload, vm.get("id") or vm_id.resource_id)

    async def reconcile_delete(
        self,
        ext_id: VirtualMachineExtensionId,
        *,
        timeout: float | None = None,
        missing_ok: bool = False,
    ) -> None:
        timeout = timeout if timeout is not None else self._settings.timeouts.delete

        async with self._deadline(ext_id, "delete", timeout) as deadline:
            async with self._locks.hold(ext_id.virtual_machine_name, VM_LOCK_KIND):
                existing = await self._call("get-extension", ext_id, self._compute.get_extension, ext_id)
                if existing is None:
                    if missing_ok:
                        return
                    raise NotFoundError(ext_id)
                await self._mutate(
                    "delete-extension", ext_id, deadline,
                    self._compute.delete_extension, ext_id,
                )
