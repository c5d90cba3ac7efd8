"""Custom exception hierarchy for Stratus.

All stratus-specific exceptions inherit from StratusError, enabling
callers to catch every reconciliation failure with a single except clause.

Errors split into two families:

- Local errors (MalformedPathError, InvalidConfigurationError) are raised
  before any network call is made.
- Remote errors (RemoteOperationFailed, NotFoundError,
  ReconciliationCancelled) carry the resource identity they refer to.
"""

from __future__ import annotations

from typing import Any


class StratusError(Exception):
    """Base exception for all Stratus errors."""


class ConfigurationError(StratusError):
    """Raised for invalid library settings (TOML files, provider config)."""


class LockLoopError(StratusError):
    """Raised when a lock registry is used from a second, still-running event loop."""


class MalformedPathError(StratusError):
    """Raised when a resource path can't be parsed into an identity."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Unable to parse resource ID {path!r}: {reason}")


class InvalidConfigurationError(StratusError):
    """Raised when a desired configuration fails cross-field validation."""


class ImmutableFieldError(InvalidConfigurationError):
    """Raised when a field that can only be set at creation time has changed."""

    def __init__(self, fields: frozenset[str]) -> None:
        self.fields = fields
        names = ", ".join(f"`{f}`" for f in sorted(fields))
        super().__init__(
            f"{names} can't be changed in place - the resource must be recreated"
        )


class RemoteOperationFailed(StratusError):
    """Raised when a remote call, or the wait for its completion, fails.

    Attributes:
        op: Operation name (e.g. "power-off", "update", "start").
        identity: The resource identity the operation targeted.
        cause: The underlying exception.
    """

    def __init__(self, op: str, identity: Any, cause: BaseException) -> None:
        self.op = op
        self.identity = identity
        self.cause = cause
        super().__init__(f"{op} failed for {identity}: {cause}")


class NotFoundError(StratusError):
    """Raised when a resource expected to exist is absent."""

    def __init__(self, identity: Any) -> None:
        self.identity = identity
        super().__init__(f"{identity} was not found")


class ResourceExistsError(StratusError):
    """Raised on create when the resource already exists remotely."""

    def __init__(self, identity: Any) -> None:
        self.identity = identity
        super().__init__(
            f"{identity} already exists - it needs to be imported to be managed"
        )


class ReconciliationCancelled(StratusError):
    """Raised when the caller's deadline expires during a reconciliation."""

    def __init__(self, identity: Any, op: str | None = None) -> None:
        self.identity = identity
        self.op = op
        where = f" during {op}" if op else ""
        super().__init__(f"Reconciliation of {identity} cancelled{where}: deadline exceeded")
