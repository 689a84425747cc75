from __future__ import annotations

import io

import soundfile as sf

from voxagent.llm.providers.openai import OpenAIClient
from voxagent.orchestrator.errors import AdapterError, TranscriptionError
from voxagent.orchestrator.events import CapturedAudio, Transcript
from voxagent.orchestrator.policies import ASRConfig
from voxagent.telemetry.logging import get_logger
from voxagent.transcription.base import PartialCallback, SpeechToText


def encode_wav(audio: CapturedAudio) -> bytes:
    buffer = io.BytesIO()
    sf.write(buffer, audio.samples, audio.sample_rate, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


class HttpSpeechToText(SpeechToText):
    """Whisper-style transcription over `/audio/transcriptions`."""

    def __init__(self, client: OpenAIClient) -> None:
        self._client = client
        self._logger = get_logger(__name__)

    async def transcribe(
        self,
        audio: CapturedAudio,
        config: ASRConfig,
        on_partial: PartialCallback | None = None,
    ) -> Transcript:
        wav = encode_wav(audio)
        try:
            data = await self._client.transcribe(
                wav, model=config.model, language=config.language, stage="speech-processing"
            )
        except AdapterError as exc:
            raise TranscriptionError(str(exc)) from exc
        text = str(data.get("text", "")).strip()
        self._logger.info("asr.final", chars=len(text), duration_ms=audio.duration_ms, model=config.model)
        return Transcript(text=text, is_final=True, language=data.get("language", config.language))
