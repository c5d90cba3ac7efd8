"""Generic wait/polling utilities.

Long-running remote operations are awaited with poll-until-terminal
semantics; an optional deadline (event loop time) bounds every wait.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable


def deadline_remaining(deadline: float | None) -> float | None:
    """Seconds left until ``deadline`` (loop time), or None for no deadline.

    Raises:
        TimeoutError: The deadline has already passed.
    """
    if deadline is None:
        return None
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        raise TimeoutError("deadline exceeded")
    return remaining


def deadline_after(timeout: float | None) -> float | None:
    if timeout is None:
        return None
    return asyncio.get_running_loop().time() + timeout


async def wait_for_ready[T](
    poll_fn: Callable[[], Awaitable[T | None]],
    ready_check: Callable[[T], bool],
    *,
    terminal_check: Callable[[T], bool] | None = None,
    timeout: float | None = 300.0,
    interval: float = 5.0,
    description: str = "resource",
) -> T:
    """Wait until poll_fn returns something that passes ready_check.

    Args:
        poll_fn: Async function that polls for the resource state.
        ready_check: Function that returns True when resource is ready.
        terminal_check: Optional function that returns True if resource reached
            a terminal failure state (e.g., failed, canceled).
        timeout: Maximum time to wait in seconds. None waits forever.
        interval: Time between polls in seconds.
        description: Description for error messages.

    Returns:
        The ready resource.

    Raises:
        TimeoutError: If timeout is exceeded.
        RuntimeError: If resource reaches terminal state.
    """
    loop = asyncio.get_running_loop()
    start = loop.time()

    while True:
        result = await poll_fn()

        if result is not None:
            if ready_check(result):
                return result

            if terminal_check is not None and terminal_check(result):
                raise RuntimeError(f"{description} reached terminal state: {result}")

        elapsed = loop.time() - start
        if timeout is not None and elapsed > timeout:
            raise TimeoutError(
                f"Timeout waiting for {description} after {timeout:.1f}s"
            )

        await asyncio.sleep(interval)
