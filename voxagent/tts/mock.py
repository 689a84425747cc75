from __future__ import annotations

import asyncio

from voxagent.orchestrator.errors import AdapterError
from voxagent.orchestrator.policies import TTSConfig
from voxagent.tts.base import TextToSpeech


class ScriptedTextToSpeech(TextToSpeech):
    """Silent TTS for tests and the offline backend.

    With `hold_playback` set, `play()` blocks until `stop()` or `release()`
    so a test can act while the pipeline is speaking.
    """

    def __init__(self, hold_playback: bool = False) -> None:
        self.hold_playback = hold_playback
        self.synth_gate: asyncio.Event | None = None
        self.fail_with: Exception | None = None
        self.synthesized: list[str] = []
        self.played: list[bytes] = []
        self.stops = 0
        self._release = asyncio.Event()
        self._stopped = False
        self.playing = asyncio.Event()

    async def synthesize(self, text: str, config: TTSConfig) -> bytes:
        self.synthesized.append(text)
        if self.synth_gate is not None:
            await self.synth_gate.wait()
        if self.fail_with is not None:
            exc, self.fail_with = self.fail_with, None
            raise AdapterError(str(exc), stage="tts-speaking") from exc
        return f"audio:{config.voice}:{text}".encode()

    async def play(self, audio: bytes) -> bool:
        self.played.append(audio)
        self._stopped = False
        self._release.clear()
        self.playing.set()
        try:
            if self.hold_playback:
                await self._release.wait()
            else:
                await asyncio.sleep(0)
        finally:
            self.playing.clear()
        return not self._stopped

    def release(self) -> None:
        self._release.set()

    async def stop(self) -> None:
        self.stops += 1
        self._stopped = True
        self._release.set()
