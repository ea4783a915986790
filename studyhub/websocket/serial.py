"""Per-key serialized task queue.

Work submitted under the same key runs strictly one job at a time in
submission order. Different keys drain concurrently. Each key gets a
short-lived worker task that exits once its queue is empty.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .errors import ConnectionClosedError

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    """A queued unit of work and the future its submitter awaits."""

    fn: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    owner: Optional[str] = None


class SerialTaskQueue:
    """Runs submitted coroutines one at a time per key."""

    def __init__(self) -> None:
        self._queues: dict[str, deque[_Job]] = {}
        self._workers: dict[str, asyncio.Task] = {}

    @property
    def active_keys(self) -> int:
        """Number of keys with queued or running work."""
        return len(self._workers)

    def pending(self, key: str) -> int:
        """Number of jobs waiting (not running) under a key."""
        return len(self._queues.get(key, ()))

    async def submit(
        self,
        key: str,
        fn: Callable[[], Awaitable[Any]],
        owner: Optional[str] = None,
    ) -> Any:
        """
        Queue `fn` under `key` and wait for its result.

        Args:
            key: Serialization key (a room id)
            fn: Zero-argument coroutine function to run
            owner: Connection id the work belongs to, for cancel_owner

        Returns:
            Whatever `fn` returns

        Raises:
            Whatever `fn` raises, or ConnectionClosedError if the owner
            disconnected before the job started.
        """
        loop = asyncio.get_running_loop()
        job = _Job(fn=fn, future=loop.create_future(), owner=owner)
        self._queues.setdefault(key, deque()).append(job)

        if key not in self._workers:
            self._workers[key] = asyncio.create_task(self._drain(key))

        return await job.future

    async def _drain(self, key: str) -> None:
        queue = self._queues[key]
        try:
            while queue:
                job = queue.popleft()
                if job.future.done():
                    # Submitter gave up or owner was cancelled
                    continue
                try:
                    result = await job.fn()
                except asyncio.CancelledError:
                    if not job.future.done():
                        job.future.cancel()
                    raise
                except Exception as e:
                    if not job.future.done():
                        job.future.set_exception(e)
                else:
                    if not job.future.done():
                        job.future.set_result(result)
        finally:
            self._workers.pop(key, None)
            self._queues.pop(key, None)
            # Non-empty only if the worker itself was cancelled
            for job in queue:
                if not job.future.done():
                    job.future.cancel()

    def cancel_owner(self, owner: str) -> int:
        """
        Drop every queued job belonging to `owner`.

        Jobs already running are left alone. Submitters of dropped jobs
        receive ConnectionClosedError.

        Returns:
            Number of jobs dropped
        """
        dropped = 0
        for key, queue in self._queues.items():
            for job in queue:
                if job.owner == owner and not job.future.done():
                    job.future.set_exception(
                        ConnectionClosedError(f"Connection {owner} closed")
                    )
                    dropped += 1
        if dropped:
            logger.debug(f"Dropped {dropped} queued job(s) for connection {owner}")
        return dropped

    async def close(self) -> None:
        """Cancel all workers and pending jobs."""
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        for worker in workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass
