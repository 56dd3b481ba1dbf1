"""
Concurrency guards for save and open.

- SingleFlight: a call made while one is running is dropped (open)
- Coalescer: calls made while one is running collapse into one trailing
  run (save)
- AutoSave: turns "document changed" notifications into coalesced saves,
  pausable around bulk replacement of the tree

Everything runs on one asyncio event loop; the guards are plain flags, not
locks, because nothing preempts between awaits.
"""
import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class SingleFlight:
    """
    Run a coroutine function at most once at a time.

    Calls arriving while a run is in flight return None without effect
    (first call wins, the rest are ignored).
    """

    def __init__(self, fn: Callable[..., Awaitable[Any]]):
        self._fn = fn
        self._executing = False

    @property
    def is_executing(self) -> bool:
        return self._executing

    async def __call__(self, *args, **kwargs) -> Any:
        if self._executing:
            logger.debug("%s already running, call ignored", getattr(self._fn, "__name__", self._fn))
            return None

        self._executing = True
        try:
            return await self._fn(*args, **kwargs)
        finally:
            self._executing = False


def _fail(waiter: asyncio.Future, error: BaseException):
    if waiter.done():
        return
    if isinstance(error, asyncio.CancelledError):
        waiter.cancel()
    else:
        waiter.set_exception(error)


class Coalescer:
    """
    Run a coroutine function with trailing coalescing.

    A call during an in-flight run marks one more run as requested instead
    of starting a second one. When the in-flight run finishes, exactly one
    trailing run executes, however many calls were suppressed. Suppressed
    callers wait for that trailing run; the caller that started the first
    run drives both.

    A failed run releases the guard, drops the pending request and raises
    the error to its caller and to every caller waiting on it.
    """

    def __init__(self, fn: Callable[[], Awaitable[None]]):
        self._fn = fn
        self._executing = False
        self._pending: Optional[asyncio.Future] = None
        self._idle: Optional[asyncio.Event] = None
        self.run_count = 0

    @property
    def is_executing(self) -> bool:
        return self._executing

    @property
    def is_pending(self) -> bool:
        return self._pending is not None

    async def __call__(self):
        if self._executing:
            if self._pending is None:
                self._pending = asyncio.get_running_loop().create_future()
            await self._pending
            return

        self._idle = asyncio.Event()
        try:
            await self._drive()
        finally:
            self._idle.set()

    async def _drive(self):
        # Future of the callers whose request the current run serves
        current: Optional[asyncio.Future] = None
        while True:
            self._executing = True
            try:
                self.run_count += 1
                await self._fn()
            except BaseException as e:
                for waiter in (current, self._pending):
                    if waiter is not None:
                        _fail(waiter, e)
                self._pending = None
                raise
            finally:
                self._executing = False

            if current is not None and not current.done():
                current.set_result(None)
            if self._pending is None:
                return
            current, self._pending = self._pending, None

    async def wait_idle(self):
        """Wait for the in-flight run and its trailing run. Errors stay with their callers."""
        if self._idle is not None:
            await self._idle.wait()


class AutoSave:
    """
    Schedules a save on every change notification.

    Notifications are ignored while paused. Without a running event loop the
    request is remembered and run by the next flush().
    """

    def __init__(self, save: Callable[[], Awaitable[None]], enabled: bool = True):
        self._save = save
        self.enabled = enabled
        self._pause_depth = 0
        self._requested = False
        self._tasks: Set[asyncio.Task] = set()
        self._error: Optional[BaseException] = None
        # Failures since the last wait(); only the first error is kept
        self.failure_count = 0

    @property
    def is_paused(self) -> bool:
        return self._pause_depth > 0

    @property
    def has_pending_request(self) -> bool:
        return self._requested

    def pause(self):
        self._pause_depth += 1

    def resume(self):
        if self._pause_depth > 0:
            self._pause_depth -= 1

    @contextmanager
    def paused(self):
        """Suppress notifications for the duration of the block."""
        self.pause()
        try:
            yield
        finally:
            self.resume()

    def notify(self) -> Optional[asyncio.Task]:
        """Request a save. Returns the scheduled task, if any."""
        if not self.enabled or self.is_paused:
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._requested = True
            return None

        self._requested = False
        task = loop.create_task(self._save())
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Auto-save failed: %s", error, exc_info=error)
            if self._error is None:
                self._error = error
            self.failure_count += 1

    async def flush(self):
        """Run a save requested while no event loop was running."""
        if self._requested:
            self._requested = False
            await self._save()

    async def drain(self):
        """
        Let scheduled saves finish and drop a deferred request.

        Failures stay recorded for the next wait().
        """
        self._requested = False
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def wait(self):
        """
        Wait for scheduled saves to finish.

        Raises:
            Exception: The first failure since the last wait()
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._error is not None:
            error = self._error
            self._error = None
            self.failure_count = 0
            raise error
