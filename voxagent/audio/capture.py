from __future__ import annotations

import asyncio
import queue
import time
from collections.abc import AsyncIterator

import numpy as np
import sounddevice as sd

from voxagent.audio.source import AudioSource
from voxagent.orchestrator.events import AudioFrame
from voxagent.telemetry.logging import get_logger


class AudioCapture(AudioSource):
    """Microphone source backed by a sounddevice input stream.

    Pausing stops the PortAudio stream and flushes anything already queued, so
    no stale audio reaches the next listening cycle.
    """

    def __init__(
        self,
        samplerate: int = 16_000,
        channels: int = 1,
        frame_ms: int = 30,
        device: str | int | None = None,
    ) -> None:
        self.samplerate = samplerate
        self.channels = channels
        self.frame_ms = frame_ms
        self.frame_samples = int(self.samplerate * self.frame_ms / 1000)
        self._queue: queue.Queue[np.ndarray | None] = queue.Queue()
        self._logger = get_logger(__name__)
        self._stream: sd.InputStream | None = None
        self._device = device
        self._paused = True
        self._closed = False

    @property
    def paused(self) -> bool:
        return self._paused

    def _ensure_stream(self) -> sd.InputStream:
        if self._stream is not None:
            return self._stream

        def callback(indata, frames, time_info, status) -> None:  # type: ignore[override]
            if status:
                self._logger.warning("audio.capture.status", status=str(status))
            if self._paused:
                return
            self._queue.put_nowait(indata[:, 0].copy())

        self._stream = sd.InputStream(
            samplerate=self.samplerate,
            channels=self.channels,
            blocksize=self.frame_samples,
            dtype="float32",
            callback=callback,
            device=self._device,
        )
        return self._stream

    def resume(self) -> None:
        if self._closed or not self._paused:
            return
        stream = self._ensure_stream()
        self._paused = False
        stream.start()
        self._logger.info(
            "audio.capture.started",
            samplerate=self.samplerate,
            frame_ms=self.frame_ms,
            device=self._device,
        )

    def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        if self._stream is not None:
            self._stream.stop()
        dropped = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is None:
                self._queue.put_nowait(None)
                break
            dropped += 1
        self._logger.info("audio.capture.paused", dropped_frames=dropped)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._paused = True
        if self._stream:
            self._stream.stop()
            self._stream.close()
            self._stream = None
        self._queue.put_nowait(None)
        self._logger.info("audio.capture.stopped")

    async def frames(self) -> AsyncIterator[AudioFrame]:
        loop = asyncio.get_running_loop()
        while True:
            samples = await loop.run_in_executor(None, self._queue.get)
            if samples is None:
                break
            yield AudioFrame(ts=time.time(), samples=samples, sample_rate=self.samplerate)


__all__ = ["AudioCapture"]
