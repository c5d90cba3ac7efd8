from .exceptions import (
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

__all__ = [
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
]
