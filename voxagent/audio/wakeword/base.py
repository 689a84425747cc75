from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable

from voxagent.orchestrator.events import AudioFrame, WakeScore
from voxagent.orchestrator.policies import WakeWordConfig


class WakeWordDetector(ABC):
    @abstractmethod
    def evaluate(self, frame: AudioFrame, config: WakeWordConfig) -> WakeScore:
        """Score a single frame against the configured phrase and threshold."""

    def reset(self) -> None:
        """Clear internal state so detection can restart for a new session."""

    async def scores(
        self,
        frames: AsyncIterator[AudioFrame],
        config: Callable[[], WakeWordConfig],
    ) -> AsyncIterator[WakeScore]:
        """Lazily score a frame stream; `config` is read per frame so updates apply immediately."""
        async for frame in frames:
            yield self.evaluate(frame, config())

    async def close(self) -> None:
        """Cleanup resources."""
