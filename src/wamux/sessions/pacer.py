"""Startup pacing for connection bring-up.

Opening many connections in the same instant looks like automated abuse to
the platform, so bring-ups run one at a time with a cool-down after each.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from wamux.observability.logging import get_logger

logger = get_logger(__name__)

PacedTask = Callable[[], Awaitable[Any]]

DEFAULT_DELAY_MS = 3000


class StartupPacer:
    """FIFO runner with concurrency 1 and a fixed delay after every task.

    ``schedule`` returns a future that resolves with the task's outcome once
    the task has settled and the delay has elapsed. A failing task does not
    hold up the ones behind it.
    """

    def __init__(self, delay_ms: int = DEFAULT_DELAY_MS) -> None:
        if delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")
        self._delay = delay_ms / 1000
        self._queue: asyncio.Queue[tuple[PacedTask, asyncio.Future[Any]]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def schedule(self, task: PacedTask) -> asyncio.Future[Any]:
        """Enqueue a zero-argument task. Must be called from the event loop."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._queue.put_nowait((task, future))

        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run(), name="startup-pacer")
        return future

    async def _run(self) -> None:
        while True:
            task, future = await self._queue.get()
            result: Any = None
            error: BaseException | None = None
            try:
                try:
                    result = await task()
                except Exception as e:
                    error = e
                    logger.warning(
                        "paced task failed",
                        extra={"extra_fields": {"error_type": type(e).__name__}},
                    )
                await asyncio.sleep(self._delay)
            except asyncio.CancelledError:
                future.cancel()
                raise

            if not future.done():
                if error is not None:
                    future.set_exception(error)
                else:
                    future.set_result(result)
            self._queue.task_done()

    async def close(self) -> None:
        """Stop the worker and cancel everything still queued."""
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            future.cancel()
