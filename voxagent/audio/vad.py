from __future__ import annotations

import collections
from abc import ABC, abstractmethod
from typing import Deque

from voxagent.audio.energy import frame_energy
from voxagent.orchestrator.events import AudioFrame, VadBoundary
from voxagent.orchestrator.policies import VADConfig
from voxagent.telemetry.logging import get_logger


class VoiceActivityDetector(ABC):
    @abstractmethod
    def process(self, frame: AudioFrame, config: VADConfig) -> VadBoundary | None:
        """Consume one frame; return a boundary when speech starts or ends."""

    @abstractmethod
    def reset(self) -> None:
        """Forget any partial onset or capture."""

    @property
    @abstractmethod
    def in_speech(self) -> bool: ...


class EnergyVoiceActivityDetector(VoiceActivityDetector):
    """RMS-energy VAD with an adaptive noise floor.

    A frame counts as speech when its energy exceeds
    `max(config.threshold, 2 * mean(noise floor))`, where the noise floor is
    the energy of the last `history_size` non-speech frames. Speech starts
    once `min_speech_duration_ms` of consecutive speech frames accumulate and
    ends after `silence_timeout_ms` of silence.
    """

    def __init__(self, history_size: int = 10) -> None:
        self._noise: Deque[float] = collections.deque(maxlen=history_size)
        self._onset: list[AudioFrame] = []
        self._onset_ms = 0.0
        self._speech_ms = 0.0
        self._silence_ms = 0.0
        self._in_speech = False
        self._logger = get_logger(__name__)

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    def threshold(self, config: VADConfig) -> float:
        if not self._noise:
            return config.threshold
        floor = sum(self._noise) / len(self._noise)
        return max(config.threshold, floor * 2)

    def is_speech(self, frame: AudioFrame, config: VADConfig) -> bool:
        return frame_energy(frame) > self.threshold(config)

    def process(self, frame: AudioFrame, config: VADConfig) -> VadBoundary | None:
        energy = frame_energy(frame)
        speech = self.is_speech(frame, config)
        if not speech:
            self._noise.append(energy)

        if not self._in_speech:
            if not speech:
                self._onset.clear()
                self._onset_ms = 0.0
                return None
            self._onset.append(frame)
            self._onset_ms += frame.duration_ms
            if self._onset_ms < config.min_speech_duration_ms:
                return None
            self._in_speech = True
            self._speech_ms = self._onset_ms
            self._silence_ms = 0.0
            onset = tuple(self._onset)
            self._onset.clear()
            self._onset_ms = 0.0
            self._logger.debug("vad.speech_start", duration_ms=self._speech_ms, energy=energy)
            return VadBoundary(kind="speech-start", ts=frame.ts, duration_ms=self._speech_ms, frames=onset)

        self._speech_ms += frame.duration_ms
        if speech:
            self._silence_ms = 0.0
            return None
        self._silence_ms += frame.duration_ms
        if self._silence_ms < config.silence_timeout_ms:
            return None
        duration = self._speech_ms
        self._logger.debug("vad.speech_end", duration_ms=duration, silence_ms=self._silence_ms)
        self.reset()
        return VadBoundary(kind="speech-end", ts=frame.ts, duration_ms=duration)

    def reset(self) -> None:
        self._onset.clear()
        self._onset_ms = 0.0
        self._speech_ms = 0.0
        self._silence_ms = 0.0
        self._in_speech = False


__all__ = ["VoiceActivityDetector", "EnergyVoiceActivityDetector"]
