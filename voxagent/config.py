from __future__ import annotations

import functools
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from voxagent.orchestrator.errors import ConfigError
from voxagent.orchestrator.policies import PipelineConfig


class DatabaseSettings(BaseModel):
    dsn: str
    max_pool_size: int = 10


class OpenAISettings(BaseModel):
    base_url: str
    api_key: str | None = None
    tts_model: str = "tts-1"
    timeout_s: float = 60.0


class AudioSettings(BaseModel):
    enabled: bool = False
    sample_rate: int = 16_000
    frame_ms: int = 30
    input_device: str | int | None = None


class WakeWordSettings(BaseModel):
    engine: Literal["energy", "openwakeword"] = "energy"
    model: str = "hey_jarvis"


class TelemetrySettings(BaseModel):
    log_level: str = "INFO"
    log_json: bool = True
    otlp_endpoint: str | None = None


class UISettings(BaseModel):
    floating_ui_origin: str = "http://localhost:8010"


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env", ".env.local"), env_file_encoding="utf-8", extra="ignore")

    ADAPTER_BACKEND: Literal["mock", "openai"] = "mock"
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_API_KEY: str | None = None
    OPENAI_TTS_MODEL: str = "tts-1"
    OPENAI_TIMEOUT_S: float = 60.0
    DATABASE_DSN: str | None = None
    DATABASE_POOL_SIZE: int = 10
    AUDIO_ENABLED: bool = False
    AUDIO_SAMPLE_RATE: int = 16_000
    AUDIO_FRAME_MS: int = 30
    AUDIO_INPUT_DEVICE: str | int | None = None
    WAKEWORD_ENGINE: Literal["energy", "openwakeword"] = "energy"
    WAKEWORD_MODEL: str = "hey_jarvis"
    PIPELINE_MODE: Literal["voice", "manual"] = "manual"
    PIPELINE_CONFIG_PATH: str | None = None
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    OTEL_EXPORTER_OTLP_ENDPOINT: str | None = None
    FLOATING_UI_ORIGIN: str = "http://localhost:8010"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    @property
    def database(self) -> DatabaseSettings | None:
        if not self.DATABASE_DSN:
            return None
        return DatabaseSettings(dsn=self.DATABASE_DSN, max_pool_size=self.DATABASE_POOL_SIZE)

    @property
    def openai(self) -> OpenAISettings:
        return OpenAISettings(
            base_url=self.OPENAI_BASE_URL,
            api_key=self.OPENAI_API_KEY,
            tts_model=self.OPENAI_TTS_MODEL,
            timeout_s=self.OPENAI_TIMEOUT_S,
        )

    @staticmethod
    def _coerce_device(device: str | int | None) -> str | int | None:
        if isinstance(device, str):
            trimmed = device.strip()
            if not trimmed:
                return None
            if trimmed.isdigit():
                return int(trimmed)
            return trimmed
        return device

    @property
    def audio(self) -> AudioSettings:
        return AudioSettings(
            enabled=self.AUDIO_ENABLED,
            sample_rate=self.AUDIO_SAMPLE_RATE,
            frame_ms=self.AUDIO_FRAME_MS,
            input_device=self._coerce_device(self.AUDIO_INPUT_DEVICE),
        )

    @property
    def wakeword(self) -> WakeWordSettings:
        return WakeWordSettings(engine=self.WAKEWORD_ENGINE, model=self.WAKEWORD_MODEL)

    @property
    def telemetry(self) -> TelemetrySettings:
        return TelemetrySettings(
            log_level=self.LOG_LEVEL,
            log_json=self.LOG_JSON,
            otlp_endpoint=self.OTEL_EXPORTER_OTLP_ENDPOINT,
        )

    @property
    def ui(self) -> UISettings:
        return UISettings(floating_ui_origin=self.FLOATING_UI_ORIGIN)

    def pipeline_config(self) -> PipelineConfig:
        """Initial pipeline config, optionally read from the YAML file at PIPELINE_CONFIG_PATH."""
        if not self.PIPELINE_CONFIG_PATH:
            return PipelineConfig()
        return load_pipeline_config(Path(self.PIPELINE_CONFIG_PATH))


def load_pipeline_config(path: Path) -> PipelineConfig:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read pipeline config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Pipeline config {path} must be a mapping")
    return PipelineConfig.from_mapping(data)


@functools.lru_cache(maxsize=1)
def load_settings() -> AppSettings:
    return AppSettings()


def project_root() -> Path:
    return Path(__file__).resolve().parents[1]


__all__ = ["AppSettings", "load_settings", "load_pipeline_config", "project_root"]
