from __future__ import annotations

from abc import ABC, abstractmethod

from voxagent.orchestrator.policies import TTSConfig


class TextToSpeech(ABC):
    @abstractmethod
    async def synthesize(self, text: str, config: TTSConfig) -> bytes:
        """Render `text` to encoded audio."""

    @abstractmethod
    async def play(self, audio: bytes) -> bool:
        """Play audio to completion; return False when playback was stopped early."""

    @abstractmethod
    async def stop(self) -> None:
        """Interrupt playback immediately. A no-op when nothing is playing."""

    async def aclose(self) -> None:
        """Cleanup resources."""
