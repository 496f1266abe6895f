from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Protocol, TypeVar


T = TypeVar("T")


class Clock(Protocol):
    def now_ms(self) -> int: ...

    async def sleep_ms(self, ms: int) -> None: ...

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T: ...


@dataclass(frozen=True, slots=True)
class RealClock(Clock):
    def now_ms(self) -> int:
        return int(time.monotonic() * 1000)

    async def sleep_ms(self, ms: int) -> None:
        await asyncio.sleep(max(0, ms) / 1000.0)

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)


class FakeClock(Clock):
    """
    Manually advanced clock for tests.

    Time only moves through advance(). Retry backoff and external-call deadlines
    in the turn loop are expressed against this clock, so a test can drive a
    timeout or a backoff sleep without waiting in real time.
    """

    def __init__(self, start_ms: int = 0) -> None:
        self._now_ms = int(start_ms)
        self._waiters: list[tuple[int, asyncio.Future[None]]] = []

    def now_ms(self) -> int:
        return self._now_ms

    def pending_sleepers(self) -> int:
        return sum(1 for _, fut in self._waiters if not fut.done())

    async def sleep_ms(self, ms: int) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append((self._now_ms + ms, fut))
        await fut

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable

        work = asyncio.ensure_future(awaitable)
        deadline = asyncio.ensure_future(self.sleep_ms(timeout_ms))
        try:
            await asyncio.wait({work, deadline}, return_when=asyncio.FIRST_COMPLETED)
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
                raise TimeoutError(f"operation timed out after {timeout_ms}ms")
            deadline.cancel()
            await asyncio.gather(deadline, return_exceptions=True)
            return work.result()
        except asyncio.CancelledError:
            work.cancel()
            deadline.cancel()
            await asyncio.gather(work, deadline, return_exceptions=True)
            raise

    async def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("FakeClock.advance(ms): ms must be >= 0")
        # Let tasks scheduled in this tick register sleepers at the old time.
        await asyncio.sleep(0)
        self._now_ms += ms
        due = [fut for wake_at, fut in self._waiters if wake_at <= self._now_ms]
        self._waiters = [(w, f) for w, f in self._waiters if w > self._now_ms and not f.done()]
        for fut in due:
            if not fut.done():
                fut.set_result(None)
        await asyncio.sleep(0)
