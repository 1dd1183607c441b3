"""Exam countdown driven by the asyncio event loop.

One ``Countdown`` per live exam. A background task calls ``tick()`` every
``interval`` seconds; when the remaining time reaches zero the countdown
cancels itself first and then schedules ``on_expire`` exactly once.
``cancel()`` may be called any number of times.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

ExpireCallback = Callable[[], Awaitable[object]]


class Countdown:
    def __init__(
        self,
        seconds: int,
        on_expire: ExpireCallback,
        *,
        interval: float = 1.0,
        name: str = "exam",
    ) -> None:
        if seconds < 0:
            raise ValueError("countdown length must be non-negative")
        self._remaining = int(seconds)
        self._on_expire: ExpireCallback | None = on_expire
        self._interval = interval
        self._name = name
        self._cancelled = False
        self._task: asyncio.Task | None = None
        self.expiry_task: asyncio.Task | None = None

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def expired(self) -> bool:
        return self._on_expire is None

    def start(self) -> None:
        """Begin ticking on the running loop."""
        if self._task is not None or self._cancelled:
            return
        if self._remaining == 0:
            self._expire()
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"countdown:{self._name}"
        )

    def tick(self) -> int:
        """Advance one step and return the remaining seconds."""
        if self._cancelled:
            return self._remaining
        if self._remaining > 0:
            self._remaining -= 1
        if self._remaining == 0:
            self._expire()
        return self._remaining

    def cancel(self) -> None:
        """Stop ticking. Safe to call repeatedly and from ``on_expire``."""
        if self._cancelled:
            return
        self._cancelled = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _expire(self) -> None:
        callback, self._on_expire = self._on_expire, None
        self.cancel()
        if callback is None:
            return
        logger.info("Countdown %s reached zero", self._name)
        self.expiry_task = asyncio.ensure_future(callback())

    async def _run(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self._interval)
            self.tick()
