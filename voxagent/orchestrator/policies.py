from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from voxagent.orchestrator.errors import ConfigError
from voxagent.telemetry.logging import get_logger

LOGGER = get_logger(__name__)


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class WakeWordConfig(_Section):
    enabled: bool = True
    threshold: float = Field(0.01, ge=0.0)
    phrase: str = Field("hey jarvis", min_length=1)


class VADConfig(_Section):
    threshold: float = Field(0.01, ge=0.0)
    silence_timeout_ms: int = Field(1500, ge=0)
    min_speech_duration_ms: int = Field(500, ge=0)


class ASRConfig(_Section):
    language: str = "en"
    model: str = "whisper-1"


class NLUConfig(_Section):
    model: str = "gpt-4o-mini"
    threshold: float = Field(0.7, ge=0.0, le=1.0)
    low_confidence_policy: Literal["proceed", "clarify"] = "proceed"


class TTSConfig(_Section):
    voice: str = "alloy"
    speed: float = Field(1.0, gt=0.0, le=4.0)
    enabled: bool = True


class ContextConfig(_Section):
    max_history: int = Field(50, ge=1)
    persistence_enabled: bool = True


class BargeInConfig(_Section):
    enabled: bool = True


class PipelineConfig(_Section):
    """Live pipeline configuration. Instances are immutable; updates produce a new config."""

    wake_word: WakeWordConfig = Field(default_factory=WakeWordConfig)
    vad: VADConfig = Field(default_factory=VADConfig)
    asr: ASRConfig = Field(default_factory=ASRConfig)
    nlu: NLUConfig = Field(default_factory=NLUConfig)
    tts: TTSConfig = Field(default_factory=TTSConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    barge_in: BargeInConfig = Field(default_factory=BargeInConfig)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "PipelineConfig":
        try:
            config = cls.model_validate(dict(data or {}))
        except ValidationError as exc:
            raise ConfigError(f"Invalid pipeline config: {exc}") from exc
        config.warn_if_inconsistent()
        return config

    def merged(self, updates: Mapping[str, Any]) -> "PipelineConfig":
        """Return a new config with `updates` merged section by section.

        Raises ConfigError for unknown sections or invalid values; `self` is untouched.
        """
        current = self.model_dump()
        for section, values in updates.items():
            if section not in current:
                raise ConfigError(f"Unknown config section '{section}'")
            if isinstance(values, BaseModel):
                values = values.model_dump()
            if not isinstance(values, Mapping):
                raise ConfigError(f"Config section '{section}' must be a mapping")
            current[section] = {**current[section], **values}
        return self.from_mapping(current)

    def warn_if_inconsistent(self) -> None:
        if self.vad.silence_timeout_ms < self.vad.min_speech_duration_ms:
            LOGGER.warning(
                "config.vad.silence_shorter_than_min_speech",
                silence_timeout_ms=self.vad.silence_timeout_ms,
                min_speech_duration_ms=self.vad.min_speech_duration_ms,
            )


DEFAULT_CONFIG = PipelineConfig()


__all__ = [
    "WakeWordConfig",
    "VADConfig",
    "ASRConfig",
    "NLUConfig",
    "TTSConfig",
    "ContextConfig",
    "BargeInConfig",
    "PipelineConfig",
    "DEFAULT_CONFIG",
]
