"""
Trailing-edge debounce helpers for bursty event sources.

Both helpers run on the asyncio event loop. Calls from other threads must be
handed over with ``loop.call_soon_threadsafe``.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Set, Tuple, Dict

logger = logging.getLogger(__name__)


class Debouncer:
    """Coalesce rapid calls into a single delayed call of ``fn``.

    Every call restarts the timer; ``fn`` runs once ``delay_ms`` passes with no
    further calls, receiving the arguments of the last call.
    """

    def __init__(self, fn: Callable[..., Any], delay_ms: float):
        self.fn = fn
        self.delay = max(delay_ms, 0) / 1000.0
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        """Whether a call is scheduled and has not fired yet."""
        return self._handle is not None

    def __call__(self, *args, **kwargs) -> None:
        self.trigger(*args, **kwargs)

    def trigger(self, *args, **kwargs) -> None:
        loop = asyncio.get_running_loop()
        self._cancel_timer()
        self._handle = loop.call_later(self.delay, self._fire, args, kwargs)

    def cancel(self) -> None:
        """Drop any scheduled call."""
        self._cancel_timer()

    async def wait(self) -> None:
        """Wait for calls that already fired to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, args: Tuple, kwargs: Dict[str, Any]) -> None:
        self._handle = None
        self._invoke(args, kwargs)

    def _invoke(self, args: Tuple, kwargs: Dict[str, Any]) -> None:
        try:
            result = self.fn(*args, **kwargs)
        except Exception as e:
            logger.error(f"Debounced call to {self.fn!r} failed: {e}")
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Debounced task {self.fn!r} failed: {task.exception()}")


class DedupDebouncer(Debouncer):
    """Debouncer that ignores a call whose key matches the last fired call.

    A duplicate call neither resets the timer nor fires; the first call with a
    different key is handled normally.
    """

    def __init__(
        self,
        fn: Callable[..., Any],
        delay_ms: float,
        get_key: Callable[..., str],
    ):
        super().__init__(fn, delay_ms)
        self.get_key = get_key
        self.last_key: Optional[str] = None

    def trigger(self, *args, **kwargs) -> None:
        key = self.get_key(*args, **kwargs)
        if key == self.last_key:
            return

        loop = asyncio.get_running_loop()
        self._cancel_timer()
        self._handle = loop.call_later(self.delay, self._fire_keyed, key, args, kwargs)

    def _fire_keyed(self, key: str, args: Tuple, kwargs: Dict[str, Any]) -> None:
        self._handle = None
        self.last_key = key
        self._invoke(args, kwargs)


def debounce(fn: Callable[..., Any], delay_ms: float) -> Debouncer:
    """Wrap ``fn`` in a trailing-edge debouncer."""
    return Debouncer(fn, delay_ms)


def debounce_with_dedup(
    fn: Callable[..., Any],
    delay_ms: float,
    get_key: Callable[..., str],
) -> DedupDebouncer:
    """Wrap ``fn`` in a debouncer that also drops repeats of the last fired key."""
    return DedupDebouncer(fn, delay_ms, get_key)
