"""Logging configuration for Stratus.

Stratus logs through loguru. Logging is disabled by default (library
behavior) and enabled by calling ``setup_logging`` with a LogConfig, either
directly or through the ``[logging]`` table of ``stratus.toml``.

Example:
    from stratus import LogConfig, setup_logging, teardown_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", file="stratus.log"))
    try:
        await reconciler.reconcile_update(vm_id, desired)
    finally:
        teardown_logging(handler_ids)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from rich.logging import RichHandler

logger.disable("stratus")

type LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]

_CONTEXT_KEYS = (
    "component", "provider", "resource", "op", "lock",
)


def _format_context(record: Any) -> str:
    extra = record.get("extra", {})
    parts = [f"{k}={extra[k]}" for k in _CONTEXT_KEYS if k in extra]
    return f" [{' '.join(parts)}]" if parts else ""


# Rich renders time, level and path itself
CONSOLE_FORMAT = "{message}{extra[_ctx]}"

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line}{extra[_ctx]} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum log level (TRACE, DEBUG, INFO, WARNING, ERROR).
        file: Path to log file. None disables file output.
        console: Whether to log to the terminal through rich. Defaults to True.
        rotation: File rotation policy (e.g., "50 MB", "1 day"). Defaults to "50 MB".
        retention: Number of old log files to keep. Defaults to 10.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LogConfig:
        return cls(**raw)


def setup_logging(config: LogConfig) -> list[int]:
    """Configure logging and return handler IDs for cleanup.

    Args:
        config: Logging configuration.

    Returns:
        List of handler IDs that were added (for later removal).
    """
    logger.enable("stratus")
    handler_ids: list[int] = []

    logger.configure(patcher=lambda r: r["extra"].update(_ctx=_format_context(r)))

    if config.console:
        hid = logger.add(
            RichHandler(
                show_time=True,
                show_level=True,
                show_path=True,
                markup=False,
                rich_tracebacks=True,
            ),
            level=config.level,
            format=CONSOLE_FORMAT,
            filter="stratus",
        )
        handler_ids.append(hid)

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        hid = logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,  # Don't expose credentials in tracebacks
            enqueue=False,
            filter="stratus",
        )
        handler_ids.append(hid)

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove handlers and disable logging.

    Args:
        handler_ids: List of handler IDs to remove.
    """
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("stratus")
