from __future__ import annotations

import time

import numpy as np

from voxagent.orchestrator.events import AudioFrame


def rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    data = samples.astype(np.float32, copy=False)
    return float(np.sqrt(np.mean(np.square(data))))


def frame_energy(frame: AudioFrame) -> float:
    return rms(frame.samples)


def float_to_pcm16(samples: np.ndarray) -> bytes:
    return (np.clip(samples, -1.0, 1.0) * 32767.0).astype(np.int16).tobytes()


def tone_frame(level: float, duration_ms: float = 100.0, sample_rate: int = 16_000, ts: float | None = None) -> AudioFrame:
    """Constant-amplitude frame whose RMS energy equals `level`."""
    count = int(sample_rate * duration_ms / 1000)
    samples = np.full(count, level, dtype=np.float32)
    return AudioFrame(ts=time.time() if ts is None else ts, samples=samples, sample_rate=sample_rate)


def silence_frame(duration_ms: float = 100.0, sample_rate: int = 16_000, ts: float | None = None) -> AudioFrame:
    return tone_frame(0.0, duration_ms=duration_ms, sample_rate=sample_rate, ts=ts)


__all__ = ["rms", "frame_energy", "float_to_pcm16", "tone_frame", "silence_frame"]
