from __future__ import annotations

from voxagent.audio.energy import frame_energy
from voxagent.audio.wakeword.base import WakeWordDetector
from voxagent.orchestrator.events import AudioFrame, WakeScore
from voxagent.orchestrator.policies import WakeWordConfig
from voxagent.telemetry.logging import get_logger


class EnergyWakeWordDetector(WakeWordDetector):
    """Triggers on any frame whose RMS energy reaches the threshold.

    Stand-in for a keyword model: it does not recognise the phrase, it only
    gates on voice energy with a cooldown between detections.
    """

    def __init__(self, cooldown_s: float = 3.0) -> None:
        self._cooldown_s = cooldown_s
        self._last_detection: float | None = None
        self._logger = get_logger(__name__)

    def evaluate(self, frame: AudioFrame, config: WakeWordConfig) -> WakeScore:
        score = frame_energy(frame)
        detected = config.enabled and score >= config.threshold and self._cooled_down(frame.ts)
        if detected:
            self._last_detection = frame.ts
            self._logger.info("wakeword.hit", phrase=config.phrase, score=score)
        return WakeScore(ts=frame.ts, score=score, detected=detected, phrase=config.phrase)

    def reset(self) -> None:
        self._last_detection = None

    def _cooled_down(self, ts: float) -> bool:
        if self._last_detection is None:
            return True
        return ts - self._last_detection > self._cooldown_s
