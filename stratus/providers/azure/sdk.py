"""Plumbing shared by the Azure SDK adapters.

The management SDKs are synchronous; every call is dispatched to a
dedicated thread pool. Idempotent reads retry on transient failures,
mutations never do.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError, ServiceRequestError
from azure.core.polling import LROPoller
from loguru import logger
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from stratus.models import Json
from stratus.wait import deadline_remaining, wait_for_ready

from .config import Azure

log = logger.bind(provider="azure")

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def _is_transient(e: BaseException) -> bool:
    match e:
        case ResourceNotFoundError():
            return False
        case ServiceRequestError():
            return True
        case HttpResponseError(status_code=code):
            return code in TRANSIENT_STATUS_CODES
        case _:
            return False


def to_json(model: Any) -> Json | None:
    """Serialize an SDK model to its REST (camelCase) representation."""
    if model is None:
        return None
    if isinstance(model, dict):
        return model
    return model.serialize(keep_readonly=True)


def _collect_pager[T](list_fn: Callable[..., Iterable[T]], *args: object) -> list[T]:
    """Call a paged list operation and drain it. Requests are issued while iterating."""
    return list(list_fn(*args))


class SdkRunner:
    """Thread pool dispatch for sync SDK clients."""

    def __init__(self, config: Azure, thread_pool: ThreadPoolExecutor) -> None:
        self._config = config
        self._pool = thread_pool

    async def _run[T](self, fn: Callable[..., T], *args: object, **kwargs: object) -> T:
        loop = asyncio.get_running_loop()
        if kwargs:
            return await loop.run_in_executor(
                self._pool, lambda: fn(*args, **kwargs),
            )
        return await loop.run_in_executor(self._pool, fn, *args)

    def _get_sync[T](self, fn: Callable[..., T], *args: object) -> T | None:
        @retry(
            stop=stop_after_attempt(self._config.retry_attempts),
            wait=wait_exponential(multiplier=1, max=self._config.retry_max_wait),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        def _attempt() -> T | None:
            try:
                return fn(*args)
            except ResourceNotFoundError:
                return None

        return _attempt()

    async def _get[T](self, fn: Callable[..., T], *args: object) -> T | None:
        """Idempotent read: retried on transient errors, 404 becomes None."""
        return await self._run(self._get_sync, fn, *args)

    def _operation(self, poller: LROPoller[Any], description: str) -> AzureOperation:
        return AzureOperation(poller, self, interval=self._config.poll_interval, description=description)


class AzureOperation:
    """Long-running operation backed by an ``LROPoller``."""

    def __init__(
        self,
        poller: LROPoller[Any],
        runner: SdkRunner,
        *,
        interval: float,
        description: str,
    ) -> None:
        self._poller = poller
        self._runner = runner
        self._interval = interval
        self._description = description

    async def wait_for_completion(self, deadline: float | None = None) -> Json | None:
        async def poll() -> bool:
            return await self._runner._run(self._poller.done)

        await wait_for_ready(
            poll,
            lambda done: done,
            timeout=deadline_remaining(deadline),
            interval=self._interval,
            description=self._description,
        )
        # result() re-raises the operation's failure, if any
        result = await self._runner._run(self._poller.result)
        log.debug("{op} finished with status {status}", op=self._description, status=self._poller.status())
        return to_json(result)
