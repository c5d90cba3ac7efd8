"""Change planning: desired vs. observed configuration.

Three pure steps, none of which touch the network:

1. ``validate`` rejects desired configurations that break cross-field
   rules (spot/eviction coupling, authentication, placement conflicts).
2. ``plan`` diffs desired against observed, rejecting changes to fields
   that can only be set at creation time, and seeds shutdown flags from
   ``SHUTDOWN_POLICY``.
3. ``finalize`` folds in what only the remote side knows (current power
   state, sizes available on the current host) and decides whether the
   machine has to be stopped and started again.

``build_update_request`` then turns a finalized plan into a single partial
update body holding only the sections that changed.
"""

from __future__ import annotations

from collections.abc import Callable, Collection
from dataclasses import replace
from enum import Enum, auto

from stratus.core.exceptions import ImmutableFieldError, InvalidConfigurationError
from stratus.identity import NetworkInterfaceId, same_resource_id
from stratus.models import (
    BootDiagnostics,
    Json,
    ManagedIdentity,
    OsDisk,
    PowerState,
    Priority,
    UpdatePlan,
    VirtualMachineConfig,
    normalize_location,
    same_ids,
)


class ShutdownRule(Enum):
    NEVER = auto()
    ALWAYS = auto()
    IF_SIZE_UNAVAILABLE = auto()
    IF_RUNNING_SPOT = auto()


SHUTDOWN_POLICY: dict[str, ShutdownRule] = {
    # The platform auto-reboots in place when the new size fits the current host
    "size": ShutdownRule.IF_SIZE_UNAVAILABLE,
    "max_bid_price": ShutdownRule.IF_RUNNING_SPOT,
    # Disk resizes and storage tier changes need the machine deallocated
    "os_disk": ShutdownRule.ALWAYS,
    "network_interface_ids": ShutdownRule.ALWAYS,
}


def shutdown_rule(field: str) -> ShutdownRule:
    return SHUTDOWN_POLICY.get(field, ShutdownRule.NEVER)


# Fields that can only be set at creation time.
IMMUTABLE_FIELDS: frozenset[str] = frozenset({
    "name",
    "resource_group",
    "location",
    "admin_username",
    "admin_password",
    "allow_extension_operations",
    "availability_set_id",
    "computer_name",
    "dedicated_host_id",
    "eviction_policy",
    "priority",
    "provision_vm_agent",
    "proximity_placement_group_id",
    "source_image_id",
    "source_image_reference",
    "zone",
    "timezone",
    "os",
    "os_disk.name",
})

# Partial update section -> fields that live in it.
SECTIONS: dict[str, frozenset[str]] = {
    "osProfile": frozenset({
        "admin_ssh_keys",
        "disable_password_authentication",
        "enable_automatic_updates",
        "custom_data",
        "secrets",
    }),
    "identity": frozenset({"identity"}),
    "networkProfile": frozenset({"network_interface_ids"}),
    "storageProfile": frozenset({"os_disk"}),
    "hardwareProfile": frozenset({"size"}),
    "billingProfile": frozenset({"max_bid_price"}),
    "diagnosticsProfile": frozenset({"boot_diagnostics"}),
    "tags": frozenset({"tags"}),
}


# =============================================================================
# Validation
# =============================================================================


def validate(desired: VirtualMachineConfig, *, for_create: bool = False) -> None:
    """Check cross-field rules on a desired configuration.

    Raises:
        InvalidConfigurationError: On the first violated rule.
        MalformedPathError: A network interface ID can't be parsed.
    """
    if not desired.size:
        raise InvalidConfigurationError("`size` must be specified")
    if not desired.network_interface_ids:
        raise InvalidConfigurationError("At least one `network_interface_ids` entry must be specified")
    for nic in desired.network_interface_ids:
        NetworkInterfaceId.parse(nic)

    if desired.priority is Priority.SPOT:
        if desired.eviction_policy is None:
            raise InvalidConfigurationError(
                "An `eviction_policy` must be specified when `priority` is set to `Spot`"
            )
    else:
        if desired.eviction_policy is not None:
            raise InvalidConfigurationError(
                "An `eviction_policy` can only be specified when `priority` is set to `Spot`"
            )
        if desired.max_bid_price > 0:
            raise InvalidConfigurationError(
                "`max_bid_price` can only be configured when `priority` is set to `Spot`"
            )

    if desired.max_bid_price != -1 and desired.max_bid_price <= 0:
        raise InvalidConfigurationError("`max_bid_price` must be -1 or greater than 0")

    if desired.allow_extension_operations and not desired.os.provision_vm_agent:
        raise InvalidConfigurationError(
            "`allow_extension_operations` cannot be set to `true` when `provision_vm_agent` is set to `false`"
        )

    desired.os.validate(desired.admin_password)

    if desired.identity is not None:
        desired.identity.validate()

    if desired.availability_set_id and desired.zone:
        raise InvalidConfigurationError("`availability_set_id` conflicts with `zone`")

    if desired.source_image_id and desired.source_image_reference is not None:
        raise InvalidConfigurationError("`source_image_id` conflicts with `source_image_reference`")
    if for_create and not desired.source_image_id and desired.source_image_reference is None:
        raise InvalidConfigurationError(
            "One of either `source_image_id` or `source_image_reference` must be specified"
        )


# =============================================================================
# Diffing
# =============================================================================


def _text(a: str | None, b: str | None) -> bool:
    return (a or "") == (b or "")


def _same_identity(a: ManagedIdentity | None, b: ManagedIdentity | None) -> bool:
    if a is None or b is None:
        return a is b
    return a.type.replace(" ", "").lower() == b.type.replace(" ", "").lower() and (
        {i.lower() for i in a.identity_ids} == {i.lower() for i in b.identity_ids}
    )


def _same_os_disk(desired: OsDisk, observed: OsDisk) -> bool:
    return (
        desired.caching.lower() == observed.caching.lower()
        and desired.storage_account_type.lower() == observed.storage_account_type.lower()
        and desired.write_accelerator_enabled == observed.write_accelerator_enabled
        and (desired.disk_size_gb is None or desired.disk_size_gb == observed.disk_size_gb)
        and (
            desired.disk_encryption_set_id is None
            or same_resource_id(desired.disk_encryption_set_id, observed.disk_encryption_set_id)
        )
    )


def _same_boot_diagnostics(a: BootDiagnostics | None, b: BootDiagnostics | None) -> bool:
    if a is None or b is None:
        return a is b
    return a.storage_account_uri.rstrip("/").lower() == b.storage_account_uri.rstrip("/").lower()


type _Comparator = Callable[[VirtualMachineConfig, VirtualMachineConfig], bool]

# field -> "unchanged?" predicate
_COMPARATORS: dict[str, _Comparator] = {
    "name": lambda d, o: d.name == o.name,
    "resource_group": lambda d, o: d.resource_group.lower() == o.resource_group.lower(),
    "location": lambda d, o: normalize_location(d.location) == normalize_location(o.location),
    "size": lambda d, o: d.size.lower() == o.size.lower(),
    "admin_username": lambda d, o: d.admin_username == o.admin_username,
    "network_interface_ids": lambda d, o: same_ids(d.network_interface_ids, o.network_interface_ids),
    "os_disk": lambda d, o: _same_os_disk(d.os_disk, o.os_disk),
    "computer_name": lambda d, o: d.effective_computer_name == o.effective_computer_name,
    "secrets": lambda d, o: d.secrets == o.secrets,
    "identity": lambda d, o: _same_identity(d.identity, o.identity),
    "tags": lambda d, o: dict(d.tags) == dict(o.tags),
    "boot_diagnostics": lambda d, o: _same_boot_diagnostics(d.boot_diagnostics, o.boot_diagnostics),
    "priority": lambda d, o: d.priority == o.priority,
    "eviction_policy": lambda d, o: d.eviction_policy == o.eviction_policy,
    "max_bid_price": lambda d, o: d.max_bid_price == o.max_bid_price,
    "allow_extension_operations": lambda d, o: d.allow_extension_operations == o.allow_extension_operations,
    "availability_set_id": lambda d, o: same_resource_id(d.availability_set_id, o.availability_set_id),
    "proximity_placement_group_id": lambda d, o: same_resource_id(
        d.proximity_placement_group_id, o.proximity_placement_group_id
    ),
    "dedicated_host_id": lambda d, o: same_resource_id(d.dedicated_host_id, o.dedicated_host_id),
    "zone": lambda d, o: _text(d.zone, o.zone),
    "source_image_id": lambda d, o: same_resource_id(d.source_image_id, o.source_image_id),
}

# Never returned by the API: a None on the observed side means "unknown", not "unset".
_WRITE_ONLY: dict[str, Callable[[VirtualMachineConfig], str | None]] = {
    "admin_password": lambda c: c.admin_password,
    "custom_data": lambda c: c.custom_data,
}


def diff(desired: VirtualMachineConfig, observed: VirtualMachineConfig) -> frozenset[str]:
    """Names of every field whose desired value differs from the observed one."""
    changed = {name for name, same in _COMPARATORS.items() if not same(desired, observed)}

    for name, get in _WRITE_ONLY.items():
        observed_value = get(observed)
        if observed_value is not None and get(desired) != observed_value:
            changed.add(name)

    if (
        desired.source_image_reference is not None
        and observed.source_image_reference is not None
        and desired.source_image_reference != observed.source_image_reference
    ):
        changed.add("source_image_reference")

    if desired.os_disk.name and observed.os_disk.name and desired.os_disk.name != observed.os_disk.name:
        changed.add("os_disk.name")

    changed |= desired.os.changed_fields(observed.os)
    return frozenset(changed)


def plan(desired: VirtualMachineConfig, observed: VirtualMachineConfig) -> UpdatePlan:
    """Compute the update plan for ``desired`` against ``observed``.

    The returned plan is not final: shutdown flags for size and bid price
    changes still depend on remote state. See ``finalize``.

    Raises:
        InvalidConfigurationError: ``desired`` fails validation, or shrinks
            the OS disk.
        ImmutableFieldError: A creation-only field differs.
    """
    validate(desired)
    changed = diff(desired, observed)

    immutable = changed & IMMUTABLE_FIELDS
    if immutable:
        raise ImmutableFieldError(immutable)

    if "os_disk" in changed:
        new_size, old_size = desired.os_disk.disk_size_gb, observed.os_disk.disk_size_gb
        if new_size is not None and old_size is not None and new_size < old_size:
            raise InvalidConfigurationError(
                f"The OS disk can't be shrunk (from {old_size} GB to {new_size} GB)"
            )

    return UpdatePlan(
        fields_changed=changed,
        requires_shutdown=any(shutdown_rule(f) is ShutdownRule.ALWAYS for f in changed),
        pending_size_check=desired.size if "size" in changed else None,
        spot_price_changed=(
            "max_bid_price" in changed
            and desired.priority is Priority.SPOT
            and shutdown_rule("max_bid_price") is ShutdownRule.IF_RUNNING_SPOT
        ),
    )


def size_available(size: str, available_sizes: Collection[str]) -> bool:
    return any(s.lower() == size.lower() for s in available_sizes)


def finalize(
    plan: UpdatePlan,
    power_state: PowerState,
    available_sizes: Collection[str] | None = None,
) -> UpdatePlan:
    """Resolve the remote-dependent shutdown rules.

    ``available_sizes`` is the list of sizes the current host can run; pass
    None when it wasn't fetched (the machine is already stopped, so a
    size change can't force a shutdown).
    """
    shutdown = plan.requires_shutdown
    if plan.spot_price_changed and not power_state.is_stopped:
        shutdown = True
    if (
        plan.pending_size_check is not None
        and available_sizes is not None
        and not size_available(plan.pending_size_check, available_sizes)
    ):
        shutdown = True

    return replace(
        plan,
        requires_shutdown=shutdown,
        requires_restart=shutdown and not power_state.is_stopped,
    )


# =============================================================================
# Request building
# =============================================================================


def build_update_request(desired: VirtualMachineConfig, plan: UpdatePlan) -> Json:
    """Build the partial update body for a plan.

    Sections without changed fields are omitted so that server-held values
    are never cleared by accident.
    """
    changed = plan.fields_changed
    touched = {section for section, owned in SECTIONS.items() if changed & owned}
    body: Json = {}
    properties: Json = {}

    if "osProfile" in touched:
        os_profile: Json = {}
        os_fields = changed & SECTIONS["osProfile"]
        if os_fields - {"custom_data", "secrets"}:
            os_profile.update(desired.os.to_request_fragment(only=frozenset(os_fields)))
        if "custom_data" in changed:
            os_profile["customData"] = desired.custom_data or ""
        if "secrets" in changed:
            os_profile["secrets"] = [s.to_request() for s in desired.secrets]
        properties["osProfile"] = os_profile

    if "identity" in touched:
        body["identity"] = desired.identity.to_request() if desired.identity else {"type": "None"}

    if "networkProfile" in touched:
        properties["networkProfile"] = {
            "networkInterfaces": [
                {"id": nic, "properties": {"primary": i == 0}}
                for i, nic in enumerate(desired.network_interface_ids)
            ]
        }

    if "storageProfile" in touched:
        properties["storageProfile"] = {"osDisk": desired.os_disk.to_request()}

    if "hardwareProfile" in touched:
        properties["hardwareProfile"] = {"vmSize": desired.size}

    if "billingProfile" in touched:
        properties["billingProfile"] = {"maxPrice": desired.max_bid_price}

    if "diagnosticsProfile" in touched:
        properties["diagnosticsProfile"] = BootDiagnostics.to_request(desired.boot_diagnostics)

    if "tags" in touched:
        body["tags"] = dict(desired.tags)

    if properties:
        body["properties"] = properties
    return body
