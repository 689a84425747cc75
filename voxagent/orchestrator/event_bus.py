from __future__ import annotations

import asyncio
import collections
import inspect
from collections.abc import Awaitable, Callable
from typing import Deque

from voxagent.orchestrator.events import EventKind, PipelineEvent
from voxagent.telemetry.logging import get_logger

Subscriber = Callable[[PipelineEvent], Awaitable[None] | None]
Unsubscribe = Callable[[], None]


class EventBus:
    """Single-queue observer bus.

    `publish` is synchronous so callers can enqueue from inside a state
    transition without yielding; one dispatcher task delivers each event to
    every matching subscriber exactly once, in publication order.
    """

    def __init__(self, history_size: int = 20) -> None:
        self._subscribers: list[tuple[int, frozenset[EventKind] | None, Subscriber]] = []
        self._next_id = 0
        self._history: Deque[PipelineEvent] = collections.deque(maxlen=history_size)
        self._queue: asyncio.Queue[PipelineEvent] | None = None
        self._task: asyncio.Task[None] | None = None
        self._logger = get_logger(__name__)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, callback: Subscriber, kinds: set[EventKind] | frozenset[EventKind] | None = None) -> Unsubscribe:
        self._next_id += 1
        sub_id = self._next_id
        self._subscribers.append((sub_id, frozenset(kinds) if kinds else None, callback))

        def unsubscribe() -> None:
            self._subscribers = [entry for entry in self._subscribers if entry[0] != sub_id]

        return unsubscribe

    def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._dispatch(), name="pipeline-event-bus")

    def publish(self, event: PipelineEvent) -> None:
        self._history.append(event)
        if self._queue is None or not self.running:
            self._logger.debug("event_bus.dropped", kind=event.kind, reason="not_running")
            return
        self._queue.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every published event has been delivered."""
        if self._queue is None or not self.running:
            return
        await self._queue.join()

    async def close(self) -> None:
        await self.drain()
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._queue = None

    def recent(self) -> list[PipelineEvent]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    async def _dispatch(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                for _, kinds, callback in list(self._subscribers):
                    if kinds is not None and event.kind not in kinds:
                        continue
                    await self._deliver(callback, event)
            finally:
                queue.task_done()

    async def _deliver(self, callback: Subscriber, event: PipelineEvent) -> None:
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self._logger.error(
                "event_bus.subscriber_failed",
                kind=event.kind,
                subscriber=getattr(callback, "__qualname__", repr(callback)),
                error=str(exc),
            )


__all__ = ["EventBus", "Subscriber", "Unsubscribe"]
