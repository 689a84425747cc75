from __future__ import annotations


class VoxAgentError(Exception):
    """Base class for pipeline errors."""


class InitializationError(VoxAgentError):
    """Raised when a pipeline session cannot start."""


class AdapterError(VoxAgentError):
    """A capability adapter failed; the pipeline recovers to idle."""

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class TranscriptionError(AdapterError):
    def __init__(self, message: str) -> None:
        super().__init__(message, stage="speech-processing")


class CancellationError(VoxAgentError):
    """Raised inside a stage whose token was cancelled or superseded."""

    def __init__(self, stage: str, reason: str = "cancelled") -> None:
        super().__init__(f"{stage} cancelled: {reason}")
        self.stage = stage
        self.reason = reason


class ConfigError(VoxAgentError):
    """Rejected configuration update; the previous config stays live."""


class ToolError(VoxAgentError):
    """Raised when a tool cannot be executed."""


__all__ = [
    "VoxAgentError",
    "InitializationError",
    "AdapterError",
    "TranscriptionError",
    "CancellationError",
    "ConfigError",
    "ToolError",
]
