"""TOML-based reconciler, logging and provider configuration.

Loads ~/.stratus/defaults.toml (global) and stratus.toml (project), merges
them, and builds typed settings from the merged tables::

    [reconciler]
    check_existing = true

    [reconciler.timeouts]
    create = 2700
    update = 2700

    [logging]
    level = "DEBUG"
    file = "stratus.log"

    [providers.azure]
    subscription_id = "..."
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stratus.core.exceptions import ConfigurationError
from stratus.observability.logging import LogConfig

if TYPE_CHECKING:
    from stratus.providers.azure.config import Azure

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".stratus" / "defaults.toml"
PROJECT_CONFIG_NAME = "stratus.toml"


@dataclass(frozen=True, slots=True)
class Timeouts:
    """Default per-operation deadlines, in seconds."""

    create: float = 45 * 60
    read: float = 5 * 60
    update: float = 45 * 60
    delete: float = 45 * 60


@dataclass(frozen=True, slots=True)
class ReconcilerSettings:
    """Reconciler behaviour.

    Args:
        timeouts: Deadlines applied when a call doesn't pass its own.
        check_existing: Refuse to create a machine that already exists.
    """

    timeouts: Timeouts = field(default_factory=Timeouts)
    check_existing: bool = True

    @classmethod
    def from_dict(cls, raw: RawConfig) -> ReconcilerSettings:
        raw = dict(raw)
        timeouts = Timeouts(**raw.pop("timeouts", {}))
        return cls(timeouts=timeouts, **raw)


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("providers", {})
    merged.setdefault("reconciler", {})
    return merged


def _build[T](cls: type[T], table: str, raw: RawConfig, build: Any = None) -> T:
    try:
        return build(raw) if build else cls(**raw)
    except TypeError as e:
        raise ConfigurationError(f"Invalid [{table}] settings: {e}") from e


def load_settings(config: RawConfig | None = None) -> ReconcilerSettings:
    config = load_config() if config is None else config
    return _build(ReconcilerSettings, "reconciler", config.get("reconciler", {}), ReconcilerSettings.from_dict)


def load_logging(config: RawConfig | None = None) -> LogConfig:
    config = load_config() if config is None else config
    return _build(LogConfig, "logging", config.get("logging", {}), LogConfig.from_dict)


def _get_provider_map() -> dict[str, type]:
    from stratus.providers.azure.config import Azure

    return {"azure": Azure}


def resolve_provider(name: str = "azure", config: RawConfig | None = None) -> Azure:
    """Build the provider config named ``name`` from ``[providers.<name>]``."""
    config = load_config() if config is None else config
    providers = config.get("providers", {})

    provider_map = _get_provider_map()
    cls = provider_map.get(name)
    if cls is None:
        raise ConfigurationError(
            f"Unknown provider type '{name}'. Valid: {', '.join(provider_map)}"
        )
    return _build(cls, f"providers.{name}", dict(providers.get(name, {})))
