from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from stratus.config import ReconcilerSettings
from stratus.core.exceptions import (
    ImmutableFieldError,
    InvalidConfigurationError,
    NotFoundError,
    ReconciliationCancelled,
    RemoteOperationFailed,
    ResourceExistsError,
)
from stratus.locks import LockEvent, ResourceLocks
from stratus.models import EvictionPolicy, LinuxConfiguration, PowerState, Priority, VirtualMachineConfig
from stratus.reconciler import ReconcileStep, VirtualMachineReconciler
from tests.fakes import FakeCompute, FakeNetwork, make_config, nic_id, vm_id

pytestmark = [pytest.mark.unit]


@pytest.fixture
def compute() -> FakeCompute:
    return FakeCompute(available_sizes=["Standard_F2", "Standard_F4"])


@pytest.fixture
def network() -> FakeNetwork:
    net = FakeNetwork()
    net.add_interface("web-01-nic", ("10.0.0.4", net.add_public_ip("web-01-pip", "52.1.2.3")))
    return net


@pytest.fixture
def reconciler(compute, network) -> VirtualMachineReconciler:
    return VirtualMachineReconciler(compute, network)


class TestReconcileUpdate:
    @pytest.mark.asyncio
    async def test_resize_off_host_power_cycles_running_machine(self, compute, reconciler):
        current = make_config()
        compute.seed(current, power="running")

        state = await reconciler.reconcile_update(vm_id(), replace(current, size="Standard_F8"))

        assert compute.ops() == ["power_off", "update", "start"]
        assert compute.mutations[0].force is False
        assert compute.mutations[1].body == {"properties": {"hardwareProfile": {"vmSize": "Standard_F8"}}}
        assert state.power_state is PowerState.RUNNING
        assert state.config.size == "Standard_F8"

    @pytest.mark.asyncio
    async def test_deallocated_machine_is_updated_in_place(self, compute, reconciler):
        current = make_config()
        compute.seed(current, power="deallocated")
        desired = replace(current, network_interface_ids=(nic_id("web-01-nic-2"),))

        state = await reconciler.reconcile_update(vm_id(), desired)

        assert compute.ops() == ["update"]
        assert state.power_state is PowerState.DEALLOCATED
        assert state.config.network_interface_ids == (nic_id("web-01-nic-2"),)

    @pytest.mark.asyncio
    async def test_resize_on_host_skips_power_cycle(self, compute, reconciler):
        current = make_config()
        compute.seed(current)

        await reconciler.reconcile_update(vm_id(), replace(current, size="Standard_F4"))

        assert compute.ops() == ["update"]

    @pytest.mark.asyncio
    async def test_stopped_machine_skips_size_lookup(self, compute, reconciler):
        current = make_config()
        compute.seed(current, power="stopped")

        await reconciler.reconcile_update(vm_id(), replace(current, size="Standard_F8"))

        assert "list_available_sizes" not in compute.ops(mutating_only=False)
        assert compute.ops() == ["update"]
        assert compute.power["web-01"] == "stopped"

    @pytest.mark.asyncio
    async def test_tags_only_never_power_cycles(self, compute, reconciler):
        current = make_config()
        compute.seed(current)

        await reconciler.reconcile_update(vm_id(), replace(current, tags={"env": "prod"}))

        assert compute.ops() == ["update"]
        assert compute.mutations[0].body == {"tags": {"env": "prod"}}

    @pytest.mark.asyncio
    async def test_spot_bid_price_change_power_cycles(self, compute, reconciler):
        current = make_config(priority=Priority.SPOT, eviction_policy=EvictionPolicy.DEALLOCATE)
        compute.seed(current)

        await reconciler.reconcile_update(vm_id(), replace(current, max_bid_price=0.2))

        assert compute.ops() == ["power_off", "update", "start"]

    @pytest.mark.asyncio
    async def test_no_changes_issues_no_mutations(self, compute, reconciler):
        current = make_config()
        compute.seed(current)

        state = await reconciler.reconcile_update(vm_id(), current)

        assert compute.ops() == []
        assert state.power_state is PowerState.RUNNING

    @pytest.mark.asyncio
    async def test_rerun_after_success_is_a_no_op(self, compute, reconciler):
        current = make_config()
        compute.seed(current)
        desired = replace(current, size="Standard_F8")

        await reconciler.reconcile_update(vm_id(), desired)
        await reconciler.reconcile_update(vm_id(), desired)

        assert compute.ops() == ["power_off", "update", "start"]

    @pytest.mark.asyncio
    async def test_previous_config_skips_fetch(self, compute, reconciler):
        current = make_config()
        compute.seed(current)

        await reconciler.reconcile_update(vm_id(), replace(current, tags={"a": "b"}), previous=current)

        assert compute.ops(mutating_only=False)[0] == "get_instance_view"

    @pytest.mark.asyncio
    async def test_read_back_resolves_connection_info(self, compute, reconciler):
        current = make_config()
        compute.seed(current)

        state = await reconciler.reconcile_update(vm_id(), replace(current, tags={"a": "b"}))

        assert state.connection.host == "52.1.2.3"
        assert state.connection.private_addresses == ("10.0.0.4",)

    @pytest.mark.asyncio
    async def test_listener_receives_remote_calls(self, compute, network):
        steps: list[ReconcileStep] = []
        reconciler = VirtualMachineReconciler(compute, network, listener=steps.append)
        current = make_config()
        compute.seed(current)

        await reconciler.reconcile_update(vm_id(), replace(current, size="Standard_F8"))

        mutating = [s for s in steps if s.mutating]
        assert [(s.op, s.force) for s in mutating] == [("power-off", False), ("update", None), ("start", None)]

    @pytest.mark.asyncio
    async def test_repeated_calls_keep_no_trace(self, compute, reconciler):
        current = make_config()
        compute.seed(current)
        before = dict(vars(reconciler))

        for run in range(3):
            await reconciler.reconcile_update(vm_id(), replace(current, tags={"run": str(run)}))

        assert vars(reconciler) == before


class TestReconcileUpdateFailures:
    @pytest.mark.asyncio
    async def test_invalid_config_makes_no_remote_calls(self, compute, reconciler):
        compute.seed(make_config())

        with pytest.raises(InvalidConfigurationError):
            await reconciler.reconcile_update(vm_id(), make_config(priority=Priority.SPOT))

        assert compute.calls == []

    @pytest.mark.asyncio
    async def test_immutable_change_makes_no_mutations(self, compute, reconciler):
        current = make_config()
        compute.seed(current)

        with pytest.raises(ImmutableFieldError):
            await reconciler.reconcile_update(vm_id(), replace(current, admin_username="root"))

        assert compute.ops() == []
        assert not reconciler.locks.locked("web-01")

    @pytest.mark.asyncio
    async def test_missing_machine(self, reconciler):
        with pytest.raises(NotFoundError):
            await reconciler.reconcile_update(vm_id(), make_config())
        assert not reconciler.locks.locked("web-01")

    @pytest.mark.asyncio
    async def test_update_failure_aborts_restart(self, compute, reconciler):
        current = make_config()
        compute.seed(current)
        boom = RuntimeError("conflict")
        compute.failures["update"] = boom

        with pytest.raises(RemoteOperationFailed) as exc_info:
            await reconciler.reconcile_update(vm_id(), replace(current, size="Standard_F8"))

        assert exc_info.value.op == "update"
        assert exc_info.value.identity == vm_id()
        assert exc_info.value.cause is boom
        assert compute.ops() == ["power_off", "update"]
        assert not reconciler.locks.locked("web-01")

    @pytest.mark.asyncio
    async def test_power_off_wait_failure(self, compute, reconciler):
        current = make_config()
        compute.seed(current)
        compute.wait_failures["power_off"] = RuntimeError("operation failed")

        with pytest.raises(RemoteOperationFailed) as exc_info:
            await reconciler.reconcile_update(vm_id(), replace(current, size="Standard_F8"))

        assert exc_info.value.op == "power-off"
        assert compute.ops() == ["power_off"]

    @pytest.mark.asyncio
    async def test_transport_timeout_before_deadline_is_a_remote_failure(self, compute, reconciler):
        current = make_config()
        compute.seed(current)
        read_timeout = TimeoutError("read timed out")
        compute.wait_failures["update"] = read_timeout

        with pytest.raises(RemoteOperationFailed) as exc_info:
            await reconciler.reconcile_update(vm_id(), replace(current, tags={"env": "prod"}), timeout=60)

        assert exc_info.value.op == "update"
        assert exc_info.value.cause is read_timeout
        assert not reconciler.locks.locked("web-01")

    @pytest.mark.asyncio
    async def test_failed_read_is_tagged(self, compute, reconciler):
        compute.seed(make_config())
        compute.failures["get_instance_view"] = ConnectionError("reset")

        with pytest.raises(RemoteOperationFailed) as exc_info:
            await reconciler.reconcile_update(vm_id(), replace(make_config(), size="Standard_F4"))

        assert exc_info.value.op == "instance-view"

    @pytest.mark.asyncio
    async def test_deadline_cancels_and_releases_lock(self, network):
        compute = FakeCompute(available_sizes=[], delay=5)
        reconciler = VirtualMachineReconciler(compute, network)
        current = make_config()
        compute.seed(current)

        with pytest.raises(ReconciliationCancelled):
            await reconciler.reconcile_update(vm_id(), replace(current, size="Standard_F8"), timeout=0.05)

        assert compute.ops() == ["power_off"]
        assert not reconciler.locks.locked("web-01")

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self, network):
        compute = FakeCompute(available_sizes=[], delay=5)
        reconciler = VirtualMachineReconciler(compute, network)
        current = make_config()
        compute.seed(current)

        task = asyncio.create_task(reconciler.reconcile_update(vm_id(), replace(current, size="Standard_F8")))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert not reconciler.locks.locked("web-01")


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_name_never_interleaves(self, network):
        compute = FakeCompute(available_sizes=["Standard_F2"], delay=0.01)
        events: list[LockEvent] = []
        reconciler = VirtualMachineReconciler(compute, network, locks=ResourceLocks(listener=events.append))
        current = make_config()
        compute.seed(current)

        await asyncio.gather(
            reconciler.reconcile_update(vm_id(), replace(current, size="Standard_F8")),
            reconciler.reconcile_update(vm_id(), replace(current, size="Standard_F16")),
        )

        assert compute.ops() == ["power_off", "update", "start", "power_off", "update", "start"]
        sizes = [c.body["properties"]["hardwareProfile"]["vmSize"] for c in compute.mutations if c.op == "update"]
        assert sorted(sizes) == ["Standard_F16", "Standard_F8"]
        assert [e.action for e in events] == ["acquire", "release", "acquire", "release"]

    @pytest.mark.asyncio
    async def test_different_names_interleave(self, network):
        compute = FakeCompute(available_sizes=["Standard_F2"], delay=0.01)
        reconciler = VirtualMachineReconciler(compute, network)
        first, second = make_config("web-01"), make_config("web-02")
        compute.seed(first)
        compute.seed(second)

        await asyncio.gather(
            reconciler.reconcile_update(vm_id("web-01"), replace(first, size="Standard_F8")),
            reconciler.reconcile_update(vm_id("web-02"), replace(second, size="Standard_F8")),
        )

        head = compute.mutations[:2]
        assert [(c.op, c.name) for c in head] == [("power_off", "web-01"), ("power_off", "web-02")]
        assert len(compute.mutations) == 6


class TestReconcileCreate:
    @pytest.mark.asyncio
    async def test_create(self, compute, reconciler):
        state = await reconciler.reconcile_create(make_config())

        assert compute.ops() == ["create_or_update"]
        assert state.id == vm_id()
        assert state.power_state is PowerState.RUNNING
        assert state.provisioning_state == "Succeeded"
        assert state.connection.host == "52.1.2.3"

    @pytest.mark.asyncio
    async def test_create_sends_password_but_never_stores_it(self, compute, reconciler):
        desired = make_config(
            os=LinuxConfiguration(disable_password_authentication=False),
            admin_password="P@ssw0rd1234!",
        )
        state = await reconciler.reconcile_create(desired)

        assert compute.mutations[0].body["properties"]["osProfile"]["adminPassword"] == "P@ssw0rd1234!"
        assert state.config.admin_password is None

    @pytest.mark.asyncio
    async def test_existing_machine_is_refused(self, compute, reconciler):
        compute.seed(make_config())

        with pytest.raises(ResourceExistsError):
            await reconciler.reconcile_create(make_config())

        assert compute.ops() == []

    @pytest.mark.asyncio
    async def test_existence_check_can_be_disabled(self, compute, network):
        compute.seed(make_config())
        reconciler = VirtualMachineReconciler(
            compute, network, settings=ReconcilerSettings(check_existing=False),
        )

        await reconciler.reconcile_create(make_config())

        assert compute.ops(mutating_only=False)[0] == "create_or_update"

    @pytest.mark.asyncio
    async def test_create_failure(self, compute, reconciler):
        compute.wait_failures["create_or_update"] = RuntimeError("quota exceeded")

        with pytest.raises(RemoteOperationFailed, match="quota exceeded") as exc_info:
            await reconciler.reconcile_create(make_config())

        assert exc_info.value.op == "create"
        assert not reconciler.locks.locked("web-01")


class TestReconcileDelete:
    @pytest.mark.asyncio
    async def test_running_machine_is_forced_off_then_deleted(self, compute, reconciler):
        compute.seed(make_config(), power="running")

        await reconciler.reconcile_delete(vm_id())

        assert compute.ops() == ["power_off", "delete"]
        assert compute.mutations[0].force is True
        assert "web-01" not in compute.vms

    @pytest.mark.asyncio
    async def test_missing_machine(self, compute, reconciler):
        with pytest.raises(NotFoundError):
            await reconciler.reconcile_delete(vm_id())
        assert compute.ops() == []

    @pytest.mark.asyncio
    async def test_missing_ok(self, compute, reconciler):
        await reconciler.reconcile_delete(vm_id(), missing_ok=True)
        assert compute.ops() == []
        assert not reconciler.locks.locked("web-01")

    @pytest.mark.asyncio
    async def test_power_off_failure_skips_delete(self, compute, reconciler):
        compute.seed(make_config())
        compute.failures["power_off"] = RuntimeError("busy")

        with pytest.raises(RemoteOperationFailed) as exc_info:
            await reconciler.reconcile_delete(vm_id())

        assert exc_info.value.op == "power-off"
        assert "delete" not in compute.ops()


class TestRead:
    @pytest.mark.asyncio
    async def test_missing_machine_reads_as_none(self, reconciler):
        assert await reconciler.read(vm_id()) is None

    @pytest.mark.asyncio
    async def test_read(self, compute, reconciler):
        compute.seed(make_config(), power="deallocated")

        state = await reconciler.read(vm_id())

        assert state is not None
        assert state.power_state is PowerState.DEALLOCATED
        assert isinstance(state.config, VirtualMachineConfig)
        assert state.connection.primary_public_address == "52.1.2.3"

    @pytest.mark.asyncio
    async def test_resolve_connection_info_for_unreachable_machine(self, compute, network):
        compute.seed(make_config(network_interface_ids=(nic_id("detached"),)))
        reconciler = VirtualMachineReconciler(compute, network)

        state = await reconciler.read(vm_id())

        assert state is not None
        info = await reconciler.resolve_connection_info(state)
        assert info.host == ""
