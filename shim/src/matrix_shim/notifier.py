from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

logger = logging.getLogger(__name__)


class ChangeNotifier:
    """Wakes every pending waiter when something changes.

    Each ``wait()`` call gets its own future in the current generation.
    ``notify()`` resolves all of them and starts a new generation, so a waiter
    registered after ``notify()`` returns only wakes on the following call.
    Cancelled futures drop out of the pending set on their own.
    """

    def __init__(self) -> None:
        self._waiters: Set[asyncio.Future] = set()
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pending(self) -> int:
        return len(self._waiters)

    def wait(self) -> asyncio.Future:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.add(future)
        future.add_done_callback(self._waiters.discard)
        return future

    def notify(self) -> int:
        waiters, self._waiters = self._waiters, set()
        generation = self._generation
        self._generation += 1
        woken = 0
        for future in waiters:
            if not future.done():
                future.set_result(generation)
                woken += 1
        if woken:
            logger.debug("woke %d waiter(s) for generation %d", woken, generation)
        return woken

    async def wait_for_change(self, timeout_s: float, waiter: Optional[asyncio.Future] = None) -> bool:
        """Block until the next ``notify()`` or the timeout, whichever is first.

        Pass a ``waiter`` from an earlier ``wait()`` to cover changes made
        between registering and awaiting. The waiter is always released.
        """

        future = waiter if waiter is not None else self.wait()
        try:
            await asyncio.wait_for(future, timeout=timeout_s)
        except asyncio.TimeoutError:
            return False
        finally:
            future.cancel()
        return True
