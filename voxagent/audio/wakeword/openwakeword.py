from __future__ import annotations

import numpy as np

try:
    from openwakeword.model import Model  # type: ignore
except ImportError:  # pragma: no cover - optional dependency
    Model = None

from voxagent.audio.energy import float_to_pcm16
from voxagent.audio.wakeword.base import WakeWordDetector
from voxagent.orchestrator.events import AudioFrame, WakeScore
from voxagent.orchestrator.policies import WakeWordConfig
from voxagent.telemetry.logging import get_logger


class OpenWakeWordDetector(WakeWordDetector):
    def __init__(self, model_name: str = "hey_jarvis") -> None:
        if Model is None:
            raise RuntimeError("openwakeword is not installed; install the 'wakeword' extra.")
        self._model_name = model_name
        self._model = Model(wakeword_models=[model_name])
        self._logger = get_logger(__name__)
        self._logger.info("wakeword.openwakeword.loaded", model=model_name)

    def evaluate(self, frame: AudioFrame, config: WakeWordConfig) -> WakeScore:
        pcm = np.frombuffer(float_to_pcm16(frame.samples), dtype=np.int16)
        predictions = self._model.predict(pcm)
        score = float(max(predictions.values(), default=0.0))
        detected = config.enabled and score >= config.threshold
        if detected:
            self._logger.info("wakeword.hit", phrase=config.phrase, score=score, model=self._model_name)
        return WakeScore(ts=frame.ts, score=score, detected=detected, phrase=config.phrase)

    def reset(self) -> None:
        self._model.reset()
