"""Named-resource lock registry.

Serializes create/update/delete calls against the same logical resource
within one process. Calls for different names never contend.

The per-name locks are asyncio locks, so a registry serves one event loop
at a time. Once that loop is closed (``asyncio.run`` returned) the registry
rebinds to the next loop that uses it; a second loop using it while the
first is still alive gets a LockLoopError.

Example:
    locks = ResourceLocks()

    async with locks.hold("web-01", kind="virtualMachines"):
        ...  # no other reconciliation of web-01 runs here
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Literal

from loguru import logger

from stratus.core.exceptions import LockLoopError

log = logger.bind(component="locks")

type LockKey = tuple[str, str]


@dataclass(frozen=True, slots=True)
class LockEvent:
    """Emitted on every acquire/release, for instrumentation."""

    action: Literal["acquire", "release"]
    kind: str
    name: str
    task: str | None


type LockListener = Callable[[LockEvent], None]


class ResourceLocks:
    """Map of resource name -> mutex, created on first use.

    Lifetime is tied to whoever constructs it (one per reconciler, or one
    shared singleton). Acquire has no timeout of its own; callers bound it
    with their overall deadline.
    """

    def __init__(self, listener: LockListener | None = None) -> None:
        self._loop: asyncio.AbstractEventLoop | None = None
        self._locks: dict[LockKey, asyncio.Lock] = {}
        self._holders: dict[LockKey, asyncio.Task[object] | None] = {}
        self._listener = listener

    def _bind(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is loop:
            return
        if self._loop is not None and not self._loop.is_closed():
            raise LockLoopError(
                "ResourceLocks is already in use by another running event loop; "
                "create one registry per loop"
            )
        if self._loop is not None:
            log.debug("Previous event loop closed, dropping {count} locks", count=len(self._locks))
        self._loop = loop
        self._locks.clear()
        self._holders.clear()

    def _lock_for(self, key: LockKey) -> asyncio.Lock:
        self._bind()
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _emit(self, action: Literal["acquire", "release"], key: LockKey) -> None:
        if self._listener is None:
            return
        task = asyncio.current_task()
        self._listener(LockEvent(
            action=action,
            kind=key[0],
            name=key[1],
            task=task.get_name() if task else None,
        ))

    async def acquire(self, name: str, kind: str = "virtualMachines") -> None:
        """Block until no other in-flight operation holds ``name``.

        Raises:
            LockLoopError: The registry belongs to another running loop.
        """
        key = (kind, name)
        lock = self._lock_for(key)
        log.trace("Waiting for lock {kind}/{name}", kind=kind, name=name)
        await lock.acquire()
        self._holders[key] = asyncio.current_task()
        log.debug("Acquired lock {kind}/{name}", kind=kind, name=name)
        self._emit("acquire", key)

    def release(self, name: str, kind: str = "virtualMachines") -> None:
        """Release ``name`` if the calling task holds it. Safe to call repeatedly."""
        key = (kind, name)
        lock = self._locks.get(key)
        if lock is None or not lock.locked():
            return
        if self._holders.get(key) is not asyncio.current_task():
            return
        self._holders[key] = None
        lock.release()
        log.debug("Released lock {kind}/{name}", kind=kind, name=name)
        self._emit("release", key)

    def locked(self, name: str, kind: str = "virtualMachines") -> bool:
        lock = self._locks.get((kind, name))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, name: str, kind: str = "virtualMachines") -> AsyncIterator[None]:
        """Hold the lock for the duration of the block, releasing on every exit path."""
        await self.acquire(name, kind)
        try:
            yield
        finally:
            self.release(name, kind)

    def __len__(self) -> int:
        return len(self._locks)
