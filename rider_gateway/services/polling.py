"""
Interval polling with a liveness guard.

Each poll is independent: responses are last-write-wins. Once stop() is
called no callback fires again, even if a request was in flight.
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from rider_gateway.errors import GatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Poller(Generic[T]):
    def __init__(
        self,
        fetch: Callable[[], Awaitable[T]],
        on_result: Callable[[T], Any],
        interval: float,
        on_error: Optional[Callable[[GatewayError], Any]] = None,
        keep_going: Optional[Callable[[T], bool]] = None,
        name: str = "poller",
    ):
        self._fetch = fetch
        self._on_result = on_result
        self._on_error = on_error
        self._keep_going = keep_going
        self.interval = interval
        self.name = name
        self._alive = False
        self._task: Optional[asyncio.Task] = None

    @property
    def alive(self) -> bool:
        return self._alive

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._alive = True
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        self._alive = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def poll_once(self) -> bool:
        """Run one fetch. Returns False when polling should end."""
        try:
            result = await self._fetch()
        except GatewayError as exc:
            if not self._alive:
                return False
            logger.warning("%s poll failed: %s", self.name, exc.detail)
            if self._on_error is not None:
                await maybe_await(self._on_error(exc))
            return True

        if not self._alive:
            logger.debug("%s dropped a response that arrived after stop", self.name)
            return False
        await maybe_await(self._on_result(result))
        if self._keep_going is not None and not self._keep_going(result):
            return False
        return True

    async def _run(self) -> None:
        while self._alive:
            if not await self.poll_once():
                self._alive = False
                break
            await asyncio.sleep(self.interval)


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    attempts: int,
    interval: float,
) -> tuple[bool, Optional[T]]:
    """
    Bounded wait: fetch up to `attempts` times, `interval` seconds apart.
    Returns (matched, last observed value). Fetch errors count as attempts.
    """
    last: Optional[T] = None
    for attempt in range(1, attempts + 1):
        try:
            last = await fetch()
            if predicate(last):
                return True, last
        except GatewayError as exc:
            logger.info("poll_until attempt %s/%s failed: %s", attempt, attempts, exc.detail)
        if attempt < attempts:
            await asyncio.sleep(interval)
    return False, last


async def race(*aws: Awaitable[Any]) -> None:
    """
    Run side by side until the first one returns or raises, then cancel the
    rest. An exception from the first to finish propagates.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
