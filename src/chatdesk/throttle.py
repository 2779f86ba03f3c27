"""Rate-limited delivery of streaming updates."""

import asyncio
import time
from typing import Any, Callable, Optional, Tuple


class Throttle:
    """Delivers at most one call to ``func`` per ``interval`` seconds.

    The first call goes through immediately. Calls arriving inside the
    interval replace each other, and the latest one is delivered when the
    interval ends. ``flush`` delivers a pending call right away, so the final
    value is never lost.

    Must be called from within a running event loop.
    """

    def __init__(
        self,
        func: Callable[..., Any],
        interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.func = func
        self.interval = interval
        self._clock = clock
        self._last_delivery: Optional[float] = None
        self._pending: Optional[Tuple[Any, ...]] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def __call__(self, *args: Any) -> None:
        now = self._clock()
        if self._timer is None and (
            self._last_delivery is None or now - self._last_delivery >= self.interval
        ):
            self._deliver(args)
            return

        self._pending = args
        if self._timer is None:
            delay = max(self.interval - (now - self._last_delivery), 0.0)
            self._timer = asyncio.get_running_loop().call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self._pending is not None:
            args, self._pending = self._pending, None
            self._deliver(args)

    def _deliver(self, args: Tuple[Any, ...]) -> None:
        self._last_delivery = self._clock()
        self.func(*args)

    def flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._pending is not None:
            args, self._pending = self._pending, None
            self._deliver(args)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None
