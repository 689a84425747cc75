from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

import numpy as np

PipelineState = Literal[
    "idle",
    "wake-listening",
    "voice-detecting",
    "speech-capturing",
    "speech-processing",
    "nlu-processing",
    "planning",
    "tool-executing",
    "tts-speaking",
    "error",
]

LISTENING_STATES: frozenset[PipelineState] = frozenset({"wake-listening", "voice-detecting", "speech-capturing"})
PROCESSING_STATES: frozenset[PipelineState] = frozenset(
    {"speech-processing", "nlu-processing", "planning", "tool-executing"}
)
# No turn in flight: manual input, push-to-talk and mode switches apply immediately.
QUIESCENT_STATES: frozenset[PipelineState] = frozenset({"idle", "wake-listening", "voice-detecting", "error"})

PipelineMode = Literal["voice", "manual"]

EventKind = Literal[
    "state-change",
    "wake-detected",
    "speech-start",
    "speech-end",
    "partial-transcript",
    "final-transcript",
    "intent-result",
    "plan-created",
    "tool-result",
    "tts-start",
    "tts-end",
    "barge-in",
    "response",
    "mode-change",
    "config-updated",
    "capture-discarded",
    "error",
]

Role = Literal["user", "assistant"]


@dataclass(frozen=True, slots=True)
class PipelineEvent:
    kind: EventKind
    timestamp: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    cause: BaseException | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {key: value for key, value in self.payload.items() if not isinstance(value, (bytes, bytearray))}
        data: dict[str, Any] = {"kind": self.kind, "timestamp": self.timestamp.isoformat(), "payload": payload}
        if self.cause is not None:
            data["error"] = {"type": type(self.cause).__name__, "message": str(self.cause)}
        return data


@dataclass(slots=True)
class AudioFrame:
    ts: float
    samples: np.ndarray
    sample_rate: int = 16_000

    @property
    def duration_ms(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.samples.shape[0] * 1000.0 / self.sample_rate


@dataclass(slots=True)
class WakeScore:
    ts: float
    score: float
    detected: bool
    phrase: str = ""


@dataclass(slots=True)
class VadBoundary:
    kind: Literal["speech-start", "speech-end"]
    ts: float
    duration_ms: float
    frames: tuple[AudioFrame, ...] = ()


@dataclass(slots=True)
class CapturedAudio:
    frames: list[AudioFrame]
    source: Literal["vad", "push-to-talk"]
    sample_rate: int = 16_000

    @property
    def samples(self) -> np.ndarray:
        if not self.frames:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate([frame.samples for frame in self.frames]).astype(np.float32)

    @property
    def duration_ms(self) -> float:
        return sum(frame.duration_ms for frame in self.frames)

    def __bool__(self) -> bool:
        return any(frame.samples.size for frame in self.frames)


@dataclass(slots=True)
class Transcript:
    text: str
    is_final: bool = True
    confidence: float = 1.0
    language: str | None = None


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    role: Role
    content: str
    timestamp: datetime
    id: str = field(default_factory=lambda: uuid4().hex)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


__all__ = [
    "PipelineState",
    "LISTENING_STATES",
    "PROCESSING_STATES",
    "QUIESCENT_STATES",
    "PipelineMode",
    "EventKind",
    "Role",
    "PipelineEvent",
    "AudioFrame",
    "WakeScore",
    "VadBoundary",
    "CapturedAudio",
    "Transcript",
    "ConversationTurn",
]
