"""
Detached work that must not hold up the booking response.

``BackgroundTaskRunner`` keeps a strong reference to every task it starts
(bare ``asyncio.create_task`` results can be garbage collected mid-flight)
and wraps each coroutine in its own error boundary: a failing task is
logged and dropped, it never propagates into the event loop.

Usage:
    runner = get_background_runner()
    runner.submit("notifications", dispatch_booking_notifications(context))
    ...
    await runner.drain()  # on shutdown
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """Fire-and-forget task holder with a drain for shutdown and tests."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _guarded(self, name: str, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.warning(f"Background task cancelled: {name}", extra={"task_name": name})
            raise
        except Exception as e:
            logger.error(
                f"Background task failed: {name}: {e}",
                extra={"task_name": name},
                exc_info=True,
            )

    def submit(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Schedule ``coro`` on the running loop and return its task."""
        task = asyncio.create_task(self._guarded(name, coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(f"Scheduled background task: {name}", extra={"task_name": name})
        return task

    async def drain(self, timeout: Optional[float] = None) -> None:
        """
        Wait for every submitted task, including ones submitted while waiting.

        Tasks still running when ``timeout`` expires are cancelled.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while self._tasks:
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            done, pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if pending and deadline is not None and loop.time() >= deadline:
                logger.warning(f"Cancelling {len(pending)} background task(s) still running at shutdown")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                return


_runner: Optional[BackgroundTaskRunner] = None


def get_background_runner() -> BackgroundTaskRunner:
    global _runner
    if _runner is None:
        _runner = BackgroundTaskRunner()
    return _runner
