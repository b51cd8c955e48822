import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Literal, Optional


QueueListener = Callable[[int], None]


@dataclass
class AdmissionResult:
    status: Literal["ok", "timeout"]
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass
class _Waiter:
    future: "asyncio.Future[bool]"
    timer: Optional[asyncio.TimerHandle] = None


class AdmissionGate:
    """Process-wide cap on concurrent upstream orchestration calls.

    Excess callers wait in FIFO order. A caller whose wait exceeds its timeout
    gets ``AdmissionResult("timeout")`` and its task is never started.
    """

    def __init__(self, max_concurrency: int = 3, timeout_s: Optional[float] = 2.0) -> None:
        self.max_concurrency = max(1, int(max_concurrency))
        self.timeout_s = timeout_s
        self.active = 0
        self._waiters: Deque[_Waiter] = deque()

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    async def admit(
        self,
        task: Callable[[], Awaitable[Any]],
        timeout_s: Optional[float] = None,
        on_queue_position: Optional[QueueListener] = None,
    ) -> AdmissionResult:
        wait_s = self.timeout_s if timeout_s is None else timeout_s
        if not await self._acquire(wait_s, on_queue_position):
            return AdmissionResult(status="timeout")
        try:
            value = await task()
        finally:
            self._release()
        return AdmissionResult(status="ok", value=value)

    async def _acquire(self, wait_s: Optional[float], on_queue_position: Optional[QueueListener]) -> bool:
        if self.active < self.max_concurrency and not self._waiters:
            self.active += 1
            return True
        if on_queue_position is not None:
            on_queue_position(len(self._waiters) + 1)
        loop = asyncio.get_running_loop()
        waiter = _Waiter(future=loop.create_future())
        self._waiters.append(waiter)
        if wait_s is not None:
            waiter.timer = loop.call_later(max(0.0, wait_s), self._expire, waiter)
        try:
            return await waiter.future
        except asyncio.CancelledError:
            if waiter.future.done() and not waiter.future.cancelled() and waiter.future.result():
                # Slot was handed over just before cancellation landed.
                self._release()
            else:
                self._discard(waiter)
            raise

    def _expire(self, waiter: _Waiter) -> None:
        self._discard(waiter)
        if not waiter.future.done():
            waiter.future.set_result(False)

    def _discard(self, waiter: _Waiter) -> None:
        if waiter.timer is not None:
            waiter.timer.cancel()
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

    def _release(self) -> None:
        self.active = max(0, self.active - 1)
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.timer is not None:
                waiter.timer.cancel()
            if waiter.future.done():
                continue
            self.active += 1
            waiter.future.set_result(True)
            return
