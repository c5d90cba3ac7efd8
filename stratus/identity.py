"""Resource identifiers.

Parses slash-delimited ARM resource paths such as::

    /subscriptions/{sub}/resourceGroups/{rg}/providers/Microsoft.Compute/virtualMachines/{name}

into typed identities. Parsing is pure - no network access.

The remote API returns resource group names in inconsistent case
(``acctestRG`` vs ``ACCTESTRG``), so identity equality ignores case on the
resource group segment, and only there.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Self

from stratus.core.exceptions import MalformedPathError

_SUBSCRIPTIONS = "subscriptions"
_RESOURCE_GROUPS = "resourceGroups"
_PROVIDERS = "providers"


@dataclass(frozen=True, slots=True)
class ResourceId:
    """Generic parse of an ARM resource path.

    ``segments`` keeps every key/value pair after the resource group in
    order, so typed identities can look up their collection names.
    """

    subscription_id: str
    resource_group: str
    provider: str | None
    segments: tuple[tuple[str, str], ...]

    def get(self, key: str) -> str | None:
        for k, v in self.segments:
            if k == key:
                return v
        return None


def parse_resource_id(path: str) -> ResourceId:
    """Split a resource path into subscription, resource group and segments.

    Raises:
        MalformedPathError: The path is empty, has an odd number of
            components, has an empty key or value, or lacks the
            subscription / resource group segments.
    """
    if not path or not path.strip():
        raise MalformedPathError(path, "path is empty")

    components = path.strip().removeprefix("/").split("/")
    if len(components) % 2 != 0:
        raise MalformedPathError(path, "the number of path segments is not divisible by 2")

    subscription_id: str | None = None
    resource_group: str | None = None
    provider: str | None = None
    segments: list[tuple[str, str]] = []

    for i in range(0, len(components), 2):
        key, value = components[i], components[i + 1]
        if not key or not value:
            raise MalformedPathError(path, f"segment {key or '<empty>'!r} has an empty key or value")

        if key == _SUBSCRIPTIONS and subscription_id is None:
            subscription_id = value
        elif key.lower() == _RESOURCE_GROUPS.lower() and resource_group is None:
            resource_group = value
        elif key == _PROVIDERS:
            provider = value
        else:
            segments.append((key, value))

    if subscription_id is None:
        raise MalformedPathError(path, "no subscription ID found")
    if resource_group is None:
        raise MalformedPathError(path, "no resource group name found")

    return ResourceId(
        subscription_id=subscription_id,
        resource_group=resource_group,
        provider=provider,
        segments=tuple(segments),
    )


class _Identity:
    """Shared equality/serialization for typed identities.

    Subclasses declare ``PROVIDER`` and ``KIND``, and implement
    ``_segments`` returning the ordered collection/name pairs.
    """

    __slots__ = ()

    PROVIDER: ClassVar[str]
    KIND: ClassVar[str]

    subscription_id: str
    resource_group: str

    def _segments(self) -> tuple[tuple[str, str], ...]:
        raise NotImplementedError

    def _key(self) -> tuple[str, ...]:
        flat = tuple(part for pair in self._segments() for part in pair)
        return (self.subscription_id, self.resource_group.lower(), *flat)

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self._key() == other._key()  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self).__name__, self._key()))

    @property
    def resource_id(self) -> str:
        """Serialize back to a resource path."""
        tail = "/".join(f"{k}/{v}" for k, v in self._segments())
        return (
            f"/{_SUBSCRIPTIONS}/{self.subscription_id}"
            f"/{_RESOURCE_GROUPS}/{self.resource_group}"
            f"/{_PROVIDERS}/{self.PROVIDER}/{tail}"
        )


def _parse_for(identity: type[_Identity], path: str) -> ResourceId:
    parsed = parse_resource_id(path)
    if parsed.provider is not None and parsed.provider.lower() != identity.PROVIDER.lower():
        raise MalformedPathError(
            path, f"expected provider `{identity.PROVIDER}`, got `{parsed.provider}`",
        )
    return parsed


def _require(parsed: ResourceId, path: str, key: str) -> str:
    value = parsed.get(key)
    if not value:
        raise MalformedPathError(path, f"ID was missing the `{key}` element")
    return value


@dataclass(frozen=True, slots=True, eq=False)
class VirtualMachineId(_Identity):
    PROVIDER: ClassVar[str] = "Microsoft.Compute"
    KIND: ClassVar[str] = "Virtual Machine"

    subscription_id: str
    resource_group: str
    name: str

    def _segments(self) -> tuple[tuple[str, str], ...]:
        return (("virtualMachines", self.name),)

    @classmethod
    def parse(cls, path: str) -> Self:
        parsed = _parse_for(cls, path)
        return cls(
            subscription_id=parsed.subscription_id,
            resource_group=parsed.resource_group,
            name=_require(parsed, path, "virtualMachines"),
        )

    def __str__(self) -> str:
        return f'{self.KIND} "{self.name}" (Resource Group "{self.resource_group}")'


@dataclass(frozen=True, slots=True, eq=False)
class VirtualMachineExtensionId(_Identity):
    PROVIDER: ClassVar[str] = "Microsoft.Compute"
    KIND: ClassVar[str] = "Extension"

    subscription_id: str
    resource_group: str
    virtual_machine_name: str
    name: str

    @property
    def parent_name(self) -> str:
        return self.virtual_machine_name

    @property
    def virtual_machine(self) -> VirtualMachineId:
        return VirtualMachineId(
            subscription_id=self.subscription_id,
            resource_group=self.resource_group,
            name=self.virtual_machine_name,
        )

    def _segments(self) -> tuple[tuple[str, str], ...]:
        return (("virtualMachines", self.virtual_machine_name), ("extensions", self.name))

    @classmethod
    def parse(cls, path: str) -> Self:
        parsed = _parse_for(cls, path)
        return cls(
            subscription_id=parsed.subscription_id,
            resource_group=parsed.resource_group,
            virtual_machine_name=_require(parsed, path, "virtualMachines"),
            name=_require(parsed, path, "extensions"),
        )

    def __str__(self) -> str:
        return (
            f'{self.KIND} "{self.name}" (Virtual Machine "{self.virtual_machine_name}" '
            f'/ Resource Group "{self.resource_group}")'
        )


@dataclass(frozen=True, slots=True, eq=False)
class NetworkInterfaceId(_Identity):
    PROVIDER: ClassVar[str] = "Microsoft.Network"
    KIND: ClassVar[str] = "Network Interface"

    subscription_id: str
    resource_group: str
    name: str

    def _segments(self) -> tuple[tuple[str, str], ...]:
        return (("networkInterfaces", self.name),)

    @classmethod
    def parse(cls, path: str) -> Self:
        parsed = _parse_for(cls, path)
        return cls(
            subscription_id=parsed.subscription_id,
            resource_group=parsed.resource_group,
            name=_require(parsed, path, "networkInterfaces"),
        )

    def __str__(self) -> str:
        return f'{self.KIND} "{self.name}" (Resource Group "{self.resource_group}")'


@dataclass(frozen=True, slots=True, eq=False)
class PublicIpAddressId(_Identity):
    PROVIDER: ClassVar[str] = "Microsoft.Network"
    KIND: ClassVar[str] = "Public IP Address"

    subscription_id: str
    resource_group: str
    name: str

    def _segments(self) -> tuple[tuple[str, str], ...]:
        return (("publicIPAddresses", self.name),)

    @classmethod
    def parse(cls, path: str) -> Self:
        parsed = _parse_for(cls, path)
        return cls(
            subscription_id=parsed.subscription_id,
            resource_group=parsed.resource_group,
            name=_require(parsed, path, "publicIPAddresses"),
        )

    def __str__(self) -> str:
        return f'{self.KIND} "{self.name}" (Resource Group "{self.resource_group}")'


def parse_virtual_machine_id(path: str) -> VirtualMachineId:
    return VirtualMachineId.parse(path)


def parse_virtual_machine_extension_id(path: str) -> VirtualMachineExtensionId:
    return VirtualMachineExtensionId.parse(path)


def validate_virtual_machine_id(value: object, key: str = "virtual_machine_id") -> list[str]:
    """Schema-style validator: returns a list of errors, empty when valid."""
    if not isinstance(value, str):
        return [f"expected type of {key!r} to be string"]
    try:
        VirtualMachineId.parse(value)
    except MalformedPathError as e:
        return [str(e)]
    return []


def same_resource_id(a: str | None, b: str | None) -> bool:
    """Compare two raw resource paths, ignoring case differences.

    Used for reference fields (availability sets, host groups, ...) where
    the API echoes IDs back with an upper-cased resource group.
    """
    return (a or "").lower() == (b or "").lower()
