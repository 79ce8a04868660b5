"""Rate limiting and staleness guards for viewport-driven updates.

:class:`Throttle` and :class:`Debouncer` take an injectable clock and never
start timers of their own: the owner calls ``poll()`` from its event loop (or
a test advances a fake clock) and any due call fires then.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)

T = TypeVar("T")

THROTTLE_INTERVAL = 0.2
DEBOUNCE_DELAY = 0.2
READY_RETRIES = 100
READY_DELAY = 0.1


class Throttle:
    """Run ``callback`` at most once per ``interval`` seconds.

    A call arriving inside the interval is deferred to the end of it; a later
    call inside the same interval replaces the deferred arguments, so the
    trailing call always sees the latest value.
    """

    def __init__(
        self,
        callback: Callable[..., Any],
        interval: float = THROTTLE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.callback = callback
        self.interval = interval
        self.clock = clock
        self._last: float | None = None
        self._due: float | None = None
        self._args: tuple[Any, ...] = ()

    @property
    def pending(self) -> bool:
        return self._due is not None

    def __call__(self, *args: Any) -> bool:
        """Submit a call; returns True when it ran immediately."""
        now = self.clock()
        if self._last is None or now - self._last >= self.interval:
            self._due = None
            self._fire(now, args)
            return True
        self._due = self._last + self.interval
        self._args = args
        return False

    def poll(self) -> bool:
        """Run the deferred call if its time has come."""
        if self._due is None:
            return False
        now = self.clock()
        if now < self._due:
            return False
        self._due = None
        self._fire(now, self._args)
        return True

    def cancel(self) -> None:
        self._due = None

    def _fire(self, now: float, args: tuple[Any, ...]) -> None:
        self._last = now
        self.callback(*args)


class Debouncer:
    """Run ``callback`` once calls have stopped arriving for ``delay`` seconds."""

    def __init__(
        self,
        callback: Callable[..., Any],
        delay: float = DEBOUNCE_DELAY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.callback = callback
        self.delay = delay
        self.clock = clock
        self._due: float | None = None
        self._args: tuple[Any, ...] = ()

    @property
    def pending(self) -> bool:
        return self._due is not None

    def __call__(self, *args: Any) -> None:
        self._due = self.clock() + self.delay
        self._args = args

    def poll(self) -> bool:
        if self._due is None or self.clock() < self._due:
            return False
        self._due = None
        self.callback(*self._args)
        return True

    def cancel(self) -> None:
        self._due = None


class SelectionGuard:
    """Drops results of detail fetches that a newer selection superseded.

    Example:
        >>> guard = SelectionGuard()
        >>> first = guard.begin("2820010100100010000")
        >>> second = guard.begin("2820010100100020000")
        >>> guard.is_current(first), guard.is_current(second)
        (False, True)
    """

    def __init__(self) -> None:
        self._tokens = itertools.count(1)
        self._current: tuple[int, Hashable] | None = None

    @property
    def current_key(self) -> Hashable | None:
        return self._current[1] if self._current else None

    def begin(self, key: Hashable) -> int:
        token = next(self._tokens)
        self._current = (token, key)
        return token

    def is_current(self, token: int) -> bool:
        return self._current is not None and self._current[0] == token

    def invalidate(self) -> None:
        self._current = None

    async def run(self, key: Hashable, fetch: Callable[[], Awaitable[T]]) -> T | None:
        """Await ``fetch``; None if a newer selection started meanwhile."""
        token = self.begin(key)
        result = await fetch()
        if not self.is_current(token):
            logger.debug("Discarding stale result for %s", key)
            return None
        return result


async def wait_until_ready(
    is_ready: Callable[[], bool],
    retries: int = READY_RETRIES,
    delay: float = READY_DELAY,
) -> bool:
    """Poll ``is_ready`` up to ``retries`` times, ``delay`` seconds apart.

    Never blocks forever: when the retries run out a warning is logged and
    False is returned so the caller proceeds anyway.
    """
    for attempt in range(retries):
        if is_ready():
            logger.debug("Renderer ready after %d polls", attempt)
            return True
        await asyncio.sleep(delay)
    logger.warning(
        "Renderer not ready after %d polls; proceeding anyway", retries
    )
    return False
