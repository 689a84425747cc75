from __future__ import annotations

from uuid import uuid4

from voxagent.audio.output import AudioOutputController
from voxagent.llm.providers.openai import OpenAIClient
from voxagent.orchestrator.policies import TTSConfig
from voxagent.telemetry.logging import get_logger
from voxagent.tts.base import TextToSpeech


class HttpTextToSpeech(TextToSpeech):
    def __init__(
        self,
        client: OpenAIClient,
        model: str = "tts-1",
        audio_output: AudioOutputController | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._audio_output = audio_output or AudioOutputController()
        self._logger = get_logger(__name__)

    async def synthesize(self, text: str, config: TTSConfig) -> bytes:
        preview = text if len(text) <= 120 else text[:120] + "…"
        self._logger.info("tts.request", model=self._model, voice=config.voice, speed=config.speed, input=preview)
        return await self._client.speech(
            text, model=self._model, voice=config.voice, speed=config.speed, stage="tts-speaking"
        )

    async def play(self, audio: bytes) -> bool:
        return await self._audio_output.play_bytes(audio, tag=f"tts:{uuid4().hex[:8]}")

    async def stop(self) -> None:
        await self._audio_output.stop()
