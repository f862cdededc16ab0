"""Interval polling of a remote status endpoint.

TaskPoller repeatedly awaits ``fetch_status`` until ``is_pending`` says
the result is terminal, handing every result to ``on_result``. A single
transport failure stops the poll (``on_error``), and a soft deadline is
enforced between ticks (``on_timeout``).

Example:
    poller = TaskPoller(
        api.get_task,
        lambda task: isinstance(task, dict) and task.get("status") == "active",
        handle_task,
        on_error=handle_error,
        on_timeout=handle_timeout,
    )
    poller.start()
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_INTERVAL_SECONDS = 2.0
DEFAULT_TIMEOUT_SECONDS = 600.0

Callback = Callable[..., Any | Awaitable[Any]]


async def _invoke(callback: Callback | None, *args: Any) -> None:
    """Call a sync or async callback."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class TaskPoller(Generic[T]):
    """Polls ``fetch_status`` on a fixed interval until a terminal result.

    At most one polling loop runs per instance. Every loop gets a new
    generation number; results that arrive for an older generation (after
    stop() or a restart) are discarded instead of reaching the callbacks.

    Args:
        fetch_status: Coroutine function returning the latest status.
        is_pending: Predicate; True keeps polling.
        on_result: Called with every successful result, pending or not.
        on_error: Called with the exception when a fetch fails.
        on_timeout: Called once when the deadline passes while pending.
        interval: Seconds between ticks.
        timeout: Soft deadline in seconds, measured from start().
        name: Label used in log messages.
        clock: Monotonic time source (overridable in tests).
    """

    def __init__(
        self,
        fetch_status: Callable[[], Awaitable[T]],
        is_pending: Callable[[T], bool],
        on_result: Callable[[T], Any],
        *,
        on_error: Callable[[Exception], Any] | None = None,
        on_timeout: Callable[[], Any] | None = None,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        name: str = "task",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._fetch_status = fetch_status
        self._is_pending = is_pending
        self._on_result = on_result
        self._on_error = on_error
        self._on_timeout = on_timeout
        self._interval = interval
        self._timeout = timeout
        self._name = name
        self._clock = clock
        self._generation = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def generation(self) -> int:
        return self._generation

    def start(self) -> asyncio.Task[None]:
        """Start polling, restarting any loop that is already running.

        Must be called from within a running event loop.
        """
        self.stop()
        self._generation += 1
        self._task = asyncio.get_running_loop().create_task(
            self._run(self._generation),
            name=f"{self._name}-poller-{self._generation}",
        )
        logger.debug("Started %s poller (generation %d)", self._name, self._generation)
        return self._task

    def stop(self) -> None:
        """Stop polling. Safe to call when not polling."""
        if self._task is None:
            return
        task, self._task = self._task, None
        # Invalidate results of the stopped loop even if a fetch is in flight
        self._generation += 1
        if not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.debug("Stopped %s poller", self._name)

    async def wait(self) -> None:
        """Wait until the current loop (if any) has finished."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    async def _run(self, generation: int) -> None:
        started = self._clock()
        while True:
            if self._clock() - started > self._timeout:
                logger.warning("%s poll timed out after %.0fs", self._name, self._timeout)
                self._finish(generation)
                await _invoke(self._on_timeout)
                return

            try:
                result = await self._fetch_status()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._is_stale(generation):
                    return
                logger.error("%s poll failed: %s", self._name, e)
                self._finish(generation)
                await _invoke(self._on_error, e)
                return

            if self._is_stale(generation):
                logger.debug("Discarding stale %s poll result", self._name)
                return

            try:
                pending = self._is_pending(result)
                if not pending:
                    self._finish(generation)
                await _invoke(self._on_result, result)
            except Exception as e:
                logger.error("%s result handler failed: %s", self._name, e)
                self._finish(generation)
                await _invoke(self._on_error, e)
                return

            if not pending or self._is_stale(generation):
                return

            await asyncio.sleep(self._interval)
            if self._is_stale(generation):
                return

    def _finish(self, generation: int) -> None:
        """Mark the loop of ``generation`` as no longer polling."""
        if not self._is_stale(generation):
            self._task = None
