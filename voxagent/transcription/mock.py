from __future__ import annotations

import asyncio
import collections
from collections.abc import Iterable
from typing import Deque

from voxagent.orchestrator.errors import TranscriptionError
from voxagent.orchestrator.events import CapturedAudio, Transcript
from voxagent.orchestrator.policies import ASRConfig
from voxagent.transcription.base import PartialCallback, SpeechToText


class ScriptedSpeechToText(SpeechToText):
    """Returns queued transcripts in order; used by tests and the offline backend.

    `gate`, when set, holds every call until the event fires so callers can
    observe the speech-processing stage. `fail_with` makes the next call raise.
    """

    def __init__(self, transcripts: Iterable[str] = (), default: str = "") -> None:
        self._transcripts: Deque[str] = collections.deque(transcripts)
        self._default = default
        self.gate: asyncio.Event | None = None
        self.fail_with: Exception | None = None
        self.calls: list[CapturedAudio] = []

    def queue(self, *texts: str) -> None:
        self._transcripts.extend(texts)

    async def transcribe(
        self,
        audio: CapturedAudio,
        config: ASRConfig,
        on_partial: PartialCallback | None = None,
    ) -> Transcript:
        self.calls.append(audio)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            exc, self.fail_with = self.fail_with, None
            if isinstance(exc, TranscriptionError):
                raise exc
            raise TranscriptionError(str(exc)) from exc
        text = self._transcripts.popleft() if self._transcripts else self._default
        words = text.split()
        if on_partial and len(words) > 1:
            on_partial(Transcript(text=" ".join(words[: len(words) // 2]), is_final=False))
        return Transcript(text=text, is_final=True, language=config.language)
