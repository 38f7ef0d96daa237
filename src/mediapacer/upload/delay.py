"""Interruptible countdown used by every waiting state of the pipeline.

A wait is decomposed into ticks (1 second by default).  Between ticks the
caller's observer receives the remaining whole seconds and the stop
predicate is evaluated, so a pause request takes effect within one tick.
The sleep function is injectable; tests pass a fake that returns
immediately.
"""

from __future__ import annotations

import asyncio
import logging
import math
from contextlib import aclosing
from typing import AsyncIterator, Awaitable, Callable

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
StopPredicate = Callable[[], Awaitable[bool]]
TickObserver = Callable[[int], Awaitable[None]]


class InterruptibleDelay:
    """Countdown sleep that can be stopped between ticks.

    Usage::

        delay = InterruptibleDelay()
        finished = await delay.wait(
            180,
            should_stop=orchestrator.pause_requested,
            on_tick=lambda remaining: publish(Phase.cooldown(remaining)),
        )
        if not finished:
            ...  # stopped early

    Args:
        tick: Seconds between checkpoints.
        sleep: Coroutine function used to sleep one tick.
    """

    def __init__(self, tick: float = 1.0, sleep: SleepFn = asyncio.sleep) -> None:
        if tick <= 0:
            raise ValueError(f"tick must be positive, got {tick!r}")
        self._tick = tick
        self._sleep = sleep

    async def countdown(self, seconds: float) -> AsyncIterator[int]:
        """Yield the remaining whole seconds, then sleep one tick, until done.

        The first value yielded is ``ceil(seconds)``; nothing is yielded for a
        non-positive duration.
        """
        remaining = max(0.0, float(seconds))
        while remaining > 0:
            yield math.ceil(remaining)
            step = min(self._tick, remaining)
            await self._sleep(step)
            remaining -= step

    async def wait(
        self,
        seconds: float,
        *,
        should_stop: StopPredicate | None = None,
        on_tick: TickObserver | None = None,
    ) -> bool:
        """Sleep *seconds* in ticks.

        At every checkpoint *on_tick* is called with the remaining seconds
        and then *should_stop* is evaluated.

        Returns:
            ``True`` if the full duration elapsed, ``False`` if *should_stop*
            returned true at a checkpoint.
        """
        async with aclosing(self.countdown(seconds)) as ticks:
            async for remaining in ticks:
                if on_tick is not None:
                    await on_tick(remaining)
                if should_stop is not None and await should_stop():
                    logger.debug("Delay interrupted with %ds remaining", remaining)
                    return False
        return True
