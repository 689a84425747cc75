from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

from voxagent.orchestrator.errors import CancellationError
from voxagent.telemetry.logging import get_logger

T = TypeVar("T")

LOGGER = get_logger(__name__)


class CancellationToken:
    """Cooperative cancellation handle for one pipeline stage.

    `run()` races an adapter awaitable against the token. Once the token is
    cancelled the awaitable is abandoned and `CancellationError` is raised;
    a result that resolves after cancellation is discarded the same way.
    """

    def __init__(self, stage: str) -> None:
        self.stage = stage
        self.reason: str | None = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self.stage, self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        self.raise_if_cancelled()
        task: asyncio.Future[T] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if not task.done():
            task.cancel()
            task.add_done_callback(_consume_result)
            raise CancellationError(self.stage, self.reason or "cancelled")
        waiter.cancel()
        if self.cancelled:
            task.add_done_callback(_consume_result)
            raise CancellationError(self.stage, self.reason or "superseded")
        return task.result()

    def __repr__(self) -> str:
        return f"CancellationToken(stage={self.stage!r}, cancelled={self.cancelled})"


def _consume_result(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.debug("cancellation.discarded_error", error=str(exc), error_type=type(exc).__name__)


__all__ = ["CancellationToken"]
