from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from voxagent.orchestrator.events import AudioFrame
from voxagent.telemetry.logging import get_logger


class AudioSource(ABC):
    """Microphone-like frame producer owned by the pipeline controller."""

    @abstractmethod
    def frames(self) -> AsyncIterator[AudioFrame]:
        """Yield frames until closed."""

    @abstractmethod
    def pause(self) -> None:
        """Stop producing frames; frames that would arrive while paused are never delivered."""

    @abstractmethod
    def resume(self) -> None:
        """Start (or restart) producing frames."""

    @property
    @abstractmethod
    def paused(self) -> bool: ...

    @abstractmethod
    async def close(self) -> None:
        """Release the device and end `frames()`."""


class QueueAudioSource(AudioSource):
    """In-process source fed with `push()`; used by tests and the HTTP audio bridge."""

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[AudioFrame | None] = asyncio.Queue(maxsize=maxsize)
        self._paused = True
        self._closed = False
        self.dropped = 0
        self._logger = get_logger(__name__)

    @property
    def paused(self) -> bool:
        return self._paused

    def push(self, frame: AudioFrame) -> bool:
        if self._closed or self._paused:
            self.dropped += 1
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            self._logger.warning("audio.source.queue_full", dropped=self.dropped)
            return False
        return True

    def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        # Frames buffered before the pause are stale for the next listening cycle.
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is None:
                self._queue.put_nowait(None)
                break
            self.dropped += 1

    def resume(self) -> None:
        if self._closed:
            return
        self._paused = False

    async def frames(self) -> AsyncIterator[AudioFrame]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                break
            yield frame

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._paused = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)


__all__ = ["AudioSource", "QueueAudioSource"]
