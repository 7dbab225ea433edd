import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

REVEAL = "reveal"
COUNTDOWN = "countdown"
CLEANUP = "cleanup"
FAMILIES = (REVEAL, COUNTDOWN, CLEANUP)


class TimerRegistry:
    """One pending asyncio task per (family, pin).

    Scheduling a timer cancels any earlier timer of the same family for the
    same PIN, so a burst of identical host actions fires once.
    """

    def __init__(self):
        self._tasks: Dict[str, Dict[str, asyncio.Task]] = {f: {} for f in FAMILIES}

    def schedule(self, family: str, pin: str, delay: float,
                 callback: Callable[[str], Awaitable[None]]) -> asyncio.Task:
        self.cancel(family, pin)
        task = asyncio.create_task(self._run(family, pin, delay, callback))
        self._tasks[family][pin] = task
        return task

    async def _run(self, family: str, pin: str, delay: float,
                   callback: Callable[[str], Awaitable[None]]):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        # Deregister before firing so the callback may re-arm this family
        if self._tasks[family].get(pin) is asyncio.current_task():
            del self._tasks[family][pin]
        try:
            await callback(pin)
        except Exception:
            logger.exception("Error in %s timer for session %s", family, pin)

    def cancel(self, family: str, pin: str) -> bool:
        task = self._tasks[family].pop(pin, None)
        if task and not task.done():
            task.cancel()
            return True
        return False

    def cancel_all(self, pin: str) -> None:
        for family in FAMILIES:
            self.cancel(family, pin)

    def get(self, family: str, pin: str) -> Optional[asyncio.Task]:
        return self._tasks[family].get(pin)

    def is_pending(self, family: str, pin: str) -> bool:
        task = self._tasks[family].get(pin)
        return task is not None and not task.done()

    def shutdown(self) -> None:
        for family in FAMILIES:
            for pin in list(self._tasks[family]):
                self.cancel(family, pin)
