from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

from voxagent.orchestrator.events import CapturedAudio, Transcript
from voxagent.orchestrator.policies import ASRConfig

PartialCallback = Callable[[Transcript], None]


class SpeechToText(ABC):
    @abstractmethod
    async def transcribe(
        self,
        audio: CapturedAudio,
        config: ASRConfig,
        on_partial: PartialCallback | None = None,
    ) -> Transcript:
        """Return the final transcript; raise TranscriptionError on engine failure."""

    async def close(self) -> None:
        """Cleanup resources."""
