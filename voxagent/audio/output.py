from __future__ import annotations

import asyncio
import io

import numpy as np
import sounddevice as sd
import soundfile as sf

from voxagent.telemetry.logging import get_logger


class AudioOutputController:
    """Speaker playback that can be interrupted from another coroutine."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._current_tag: str | None = None
        self._current_done: asyncio.Event | None = None
        self._interrupted = False
        self._logger = get_logger(__name__)

    @staticmethod
    def decode(audio: bytes) -> tuple[np.ndarray, int]:
        with io.BytesIO(audio) as buffer:
            data, samplerate = sf.read(buffer, dtype="float32")
        return np.asarray(data), int(samplerate)

    async def play_bytes(self, audio: bytes, tag: str) -> bool:
        """Decode and play `audio`; returns False when playback was stopped early."""
        if not audio:
            self._logger.warning("audio.output.empty_bytes", tag=tag)
            return True
        data, samplerate = self.decode(audio)
        return await self.play_array(data, samplerate, tag)

    async def play_array(self, data: np.ndarray, samplerate: int, tag: str) -> bool:
        if samplerate <= 0 or data.size == 0:
            self._logger.warning("audio.output.invalid_payload", tag=tag, samplerate=samplerate, frames=int(data.size))
            return True

        loop = asyncio.get_running_loop()
        done_event = asyncio.Event()

        async with self._lock:
            self._current_tag = tag
            self._current_done = done_event
            self._interrupted = False

            def _play() -> None:
                try:
                    sd.play(data, samplerate=samplerate, blocking=False)
                    sd.wait()
                finally:
                    loop.call_soon_threadsafe(done_event.set)

            task = asyncio.create_task(asyncio.to_thread(_play))

        try:
            await done_event.wait()
            await task
        except asyncio.CancelledError:
            sd.stop()
            raise
        finally:
            async with self._lock:
                if self._current_done is done_event:
                    self._current_tag = None
                    self._current_done = None
        self._logger.debug("audio.output.finished", tag=tag, interrupted=self._interrupted)
        return not self._interrupted

    async def stop(self, tag: str | None = None) -> bool:
        """Stop current playback if tags match (or any playback when tag is None)."""
        async with self._lock:
            current_tag = self._current_tag
            done = self._current_done
        if current_tag is None:
            return False
        if tag is not None and current_tag != tag:
            return False
        self._interrupted = True
        sd.stop()
        if done:
            await done.wait()
        self._logger.info("audio.output.stopped", tag=current_tag)
        return True

    def current_tag(self) -> str | None:
        return self._current_tag


__all__ = ["AudioOutputController"]
