"""
Clock and cancellable sleep used by every waiting step of the pipeline.

Timeouts are measured on a monotonic wall clock. Tests inject a clock whose
sleep advances time instantly.
"""

import asyncio
import time
from typing import Optional

from .delivery_model import DeliveryCancelledError


class SystemClock:
    """Monotonic clock backed by asyncio.sleep."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


async def interruptible_sleep(
    clock,
    seconds: float,
    cancel_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Sleep on the clock, waking early if cancel_event is set.

    Raises:
        DeliveryCancelledError: if the event is (or becomes) set
    """
    if cancel_event is None:
        await clock.sleep(max(seconds, 0))
        return

    if cancel_event.is_set():
        raise DeliveryCancelledError("Delivery cancelled")

    sleeper = asyncio.ensure_future(clock.sleep(max(seconds, 0)))
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, waiter):
            if not task.done():
                task.cancel()
        await asyncio.gather(sleeper, waiter, return_exceptions=True)

    if cancel_event.is_set():
        raise DeliveryCancelledError("Delivery cancelled")
