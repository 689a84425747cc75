from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from voxagent.audio.energy import frame_energy
from voxagent.audio.source import AudioSource
from voxagent.audio.vad import VoiceActivityDetector
from voxagent.audio.wakeword.base import WakeWordDetector
from voxagent.llm.intent import IntentClassifier
from voxagent.llm.planner import Planner
from voxagent.memory.store import ContextStore
from voxagent.orchestrator.cancellation import CancellationToken
from voxagent.orchestrator.clock import CLOCK, Clock
from voxagent.orchestrator.errors import (
    AdapterError,
    CancellationError,
    ConfigError,
    InitializationError,
)
from voxagent.orchestrator.event_bus import EventBus
from voxagent.orchestrator.events import (
    LISTENING_STATES,
    QUIESCENT_STATES,
    AudioFrame,
    CapturedAudio,
    EventKind,
    PipelineEvent,
    PipelineMode,
    PipelineState,
    Transcript,
)
from voxagent.orchestrator.policies import PipelineConfig
from voxagent.telemetry.logging import bind_pipeline_context, clear_pipeline_context, get_logger
from voxagent.telemetry.tracing import get_tracer, pipeline_span
from voxagent.tools.taskgraph import StepResult, ToolExecutor
from voxagent.transcription.base import SpeechToText
from voxagent.tts.base import TextToSpeech

T = TypeVar("T")

CLARIFY_RESPONSE = "Sorry, I'm not sure I understood. Could you rephrase that?"


@dataclass(slots=True)
class PipelineAdapters:
    vad: VoiceActivityDetector
    stt: SpeechToText
    nlu: IntentClassifier
    planner: Planner
    tools: ToolExecutor
    tts: TextToSpeech
    wake_word: WakeWordDetector | None = None
    audio_source: AudioSource | None = None


class PipelineController:
    """Single-flight voice pipeline state machine.

    All state changes happen synchronously on the event loop and publish their
    events before any await, so subscribers observe transitions in order. Each
    turn (speech-processing through tts-speaking) runs as one task; every
    adapter await in it is raced against the turn's cancellation token, which
    barge-in and shutdown cancel.
    """

    def __init__(
        self,
        adapters: PipelineAdapters,
        *,
        config: PipelineConfig | None = None,
        mode: PipelineMode = "voice",
        bus: EventBus | None = None,
        store: ContextStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._adapters = adapters
        self._config = config or PipelineConfig()
        self._mode: PipelineMode = mode
        self._pending_mode: PipelineMode | None = None
        self._owns_bus = bus is None
        self._bus = bus if bus is not None else EventBus()
        self._owns_store = store is None
        self._clock = clock or CLOCK
        self._store = store if store is not None else ContextStore(self._config.context, clock=self._clock)
        self._state: PipelineState = "idle"
        self._initialized = False
        self._closed = False
        self._token: CancellationToken | None = None
        self._turn_task: asyncio.Task[None] | None = None
        self._listener_task: asyncio.Task[None] | None = None
        self._capture: list[AudioFrame] = []
        self._capture_source: str | None = None
        self._waiters: list[tuple[PipelineState, asyncio.Future[None]]] = []
        self._last_response: str | None = None
        self._logger = get_logger(__name__)
        self._tracer = get_tracer(__name__)

    # -- read-only surface -------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def mode(self) -> PipelineMode:
        return self._mode

    @property
    def pending_mode(self) -> PipelineMode | None:
        return self._pending_mode

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def is_initialized(self) -> bool:
        return self._initialized and not self._closed

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def store(self) -> ContextStore:
        return self._store

    @property
    def last_response(self) -> str | None:
        return self._last_response

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self) -> None:
        if self._closed:
            raise InitializationError("Pipeline controller was shut down; create a new one")
        if self._initialized:
            return
        self._bus.start()
        missing = self._missing_capabilities(self._config)
        if missing:
            exc = InitializationError(f"Missing pipeline capabilities: {', '.join(missing)}")
            self._logger.error("pipeline.initialize.failed", missing=missing)
            self._emit("error", {"stage": "initialize", "message": str(exc)}, cause=exc)
            if self._owns_bus:
                await self._bus.close()
            raise exc
        bind_pipeline_context(self._store.session_id, self._mode)
        with pipeline_span(self._tracer, "initialize", session_id=self._store.session_id):
            restored = await self._store.load()
        self._initialized = True
        if self._adapters.audio_source is not None:
            self._listener_task = asyncio.create_task(self._listen(), name="pipeline-audio-listener")
        self._logger.info(
            "pipeline.initialized",
            mode=self._mode,
            session_id=self._store.session_id,
            restored_turns=restored,
        )
        self._go_rest()

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._token is not None:
            self._token.cancel("shutdown")
        self._capture = []
        self._capture_source = None
        try:
            await self._adapters.tts.stop()
        except Exception as exc:
            self._logger.warning("pipeline.tts.stop_failed", error=str(exc))
        source = self._adapters.audio_source
        if source is not None:
            await source.close()
        if self._listener_task is not None:
            self._listener_task.cancel()
            await asyncio.gather(self._listener_task, return_exceptions=True)
            self._listener_task = None
        if self._turn_task is not None:
            await asyncio.gather(self._turn_task, return_exceptions=True)
            self._turn_task = None
        self._set_state("idle", reason="shutdown")
        self._initialized = False
        await self._bus.drain()
        if self._owns_store:
            await self._store.aclose()
        if self._owns_bus:
            await self._bus.close()
        self._logger.info("pipeline.shutdown", session_id=self._store.session_id)
        clear_pipeline_context()

    async def wait_for_state(self, state: PipelineState, timeout: float | None = 5.0) -> None:
        if self._state == state:
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (state, future)
        self._waiters.append(entry)
        try:
            await asyncio.wait_for(future, timeout)
        finally:
            if entry in self._waiters:
                self._waiters.remove(entry)

    async def wait_idle(self) -> None:
        """Wait for the in-flight turn, if any, to finish."""
        if self._turn_task is not None:
            await asyncio.gather(asyncio.shield(self._turn_task), return_exceptions=True)

    # -- controls ----------------------------------------------------------

    def set_mode(self, mode: PipelineMode) -> bool:
        """Switch mode now if quiescent, otherwise at the next rest transition.

        Returns True when the switch was applied immediately.
        """
        if mode not in ("voice", "manual"):
            raise ValueError(f"Unknown pipeline mode '{mode}'")
        if not self.is_initialized:
            self._pending_mode = None
            self._apply_mode(mode)
            return True
        if self._state in QUIESCENT_STATES:
            self._pending_mode = None
            self._apply_mode(mode)
            self._set_state(self._rest_state(), reason="mode-change")
            return True
        self._pending_mode = mode
        self._logger.info("pipeline.mode.queued", mode=mode, state=self._state)
        return False

    def update_config(self, updates: Mapping[str, Any]) -> PipelineConfig:
        try:
            config = self._config.merged(updates)
            missing = self._missing_capabilities(config)
            if missing:
                raise ConfigError(f"Config requires missing capabilities: {', '.join(missing)}")
        except ConfigError as exc:
            self._logger.warning("pipeline.config.rejected", error=str(exc))
            raise
        self._config = config
        self._store.reconfigure(config.context)
        self._emit("config-updated", {"sections": sorted(updates)})
        self._logger.info("pipeline.config.updated", sections=sorted(updates))
        if self.is_initialized:
            if self._state in QUIESCENT_STATES:
                self._set_state(self._rest_state(), reason="config-updated")
            self._sync_audio()
        return config

    async def process_text(self, text: str, *, wait: bool = True) -> bool:
        self._require_initialized()
        text = text.strip()
        if not text:
            self._logger.info("pipeline.text.empty")
            return False
        if self._state not in QUIESCENT_STATES:
            self._logger.info("pipeline.busy", state=self._state, input="text")
            return False
        token = self._new_token("nlu-processing")
        self._set_state("nlu-processing", source="text")
        task = self._start_turn(token, text=text)
        if wait:
            await asyncio.shield(task)
        return True

    async def handle_push_to_talk(self, pressed: bool) -> None:
        self._require_initialized()
        if pressed:
            if self._state == "tts-speaking":
                await self.handle_barge_in(source="push-to-talk")
                return
            if self._state == "speech-capturing" and self._capture_source == "vad":
                self._capture_source = "push-to-talk"
                self._logger.info("pipeline.push_to_talk.took_over_capture", frames=len(self._capture))
                return
            if self._state not in QUIESCENT_STATES:
                self._logger.info("pipeline.busy", state=self._state, input="push-to-talk")
                return
            self._start_capture("push-to-talk")
            self._emit("speech-start", {"source": "push-to-talk"})
            self._set_state("speech-capturing", source="push-to-talk")
            return
        if self._state == "speech-capturing" and self._capture_source == "push-to-talk":
            self._finish_capture()

    async def handle_barge_in(self, source: str = "explicit") -> bool:
        """Interrupt speech output; a no-op outside tts-speaking."""
        if self._state != "tts-speaking":
            return False
        if self._token is not None:
            self._token.cancel("barge-in")
        self._emit("barge-in", {"source": source})
        self._logger.info("pipeline.barge_in", source=source)
        if source == "push-to-talk":
            self._start_capture("push-to-talk")
            self._set_state("speech-capturing", reason="barge-in")
        else:
            self._adapters.vad.reset()
            self._set_state("voice-detecting", reason="barge-in")
        try:
            await self._adapters.tts.stop()
        except Exception as exc:
            self._logger.warning("pipeline.tts.stop_failed", error=str(exc))
        return True

    async def process_frame(self, frame: AudioFrame) -> None:
        if not self.is_initialized:
            return
        state = self._state
        config = self._config
        try:
            if state == "wake-listening":
                detector = self._adapters.wake_word
                if detector is None:
                    return
                score = detector.evaluate(frame, config.wake_word)
                if score.detected:
                    self._emit("wake-detected", {"score": score.score, "phrase": score.phrase})
                    self._adapters.vad.reset()
                    self._set_state("voice-detecting", reason="wake-word")
            elif state == "voice-detecting":
                boundary = self._adapters.vad.process(frame, config.vad)
                if boundary is not None and boundary.kind == "speech-start":
                    self._capture = list(boundary.frames) or [frame]
                    self._capture_source = "vad"
                    self._emit("speech-start", {"source": "vad", "duration_ms": boundary.duration_ms})
                    self._set_state("speech-capturing", source="vad")
            elif state == "speech-capturing":
                self._capture.append(frame)
                if self._capture_source != "vad":
                    return
                boundary = self._adapters.vad.process(frame, config.vad)
                if boundary is not None and boundary.kind == "speech-end":
                    self._finish_capture()
            elif state == "tts-speaking":
                if self._mode == "voice" and config.barge_in.enabled and frame_energy(frame) > config.vad.threshold:
                    await self.handle_barge_in(source="voice")
        except AdapterError as exc:
            self._fail(exc, exc.stage or state)
        except Exception as exc:
            self._logger.exception("pipeline.frame.failed", state=state)
            self._fail(AdapterError(str(exc), stage=state), state)

    # -- turn execution ----------------------------------------------------

    def _start_capture(self, source: str) -> None:
        self._adapters.vad.reset()
        self._capture = []
        self._capture_source = source

    def _finish_capture(self) -> None:
        audio = CapturedAudio(frames=self._capture, source=self._capture_source or "vad")
        self._capture = []
        self._capture_source = None
        self._adapters.vad.reset()
        self._emit("speech-end", {"source": audio.source, "duration_ms": audio.duration_ms})
        if not audio:
            self._emit("capture-discarded", {"reason": "empty-audio", "source": audio.source})
            self._logger.info("pipeline.capture.discarded", reason="empty-audio", source=audio.source)
            self._go_rest()
            return
        token = self._new_token("speech-processing")
        self._set_state("speech-processing", source=audio.source)
        self._start_turn(token, audio=audio)

    def _start_turn(
        self,
        token: CancellationToken,
        *,
        text: str | None = None,
        audio: CapturedAudio | None = None,
    ) -> asyncio.Task[None]:
        self._turn_task = asyncio.create_task(self._run_turn(token, text=text, audio=audio), name="pipeline-turn")
        return self._turn_task

    async def _run_turn(
        self,
        token: CancellationToken,
        *,
        text: str | None = None,
        audio: CapturedAudio | None = None,
    ) -> None:
        config = self._config
        try:
            if audio is not None:
                transcript = await self._stage(
                    token,
                    "speech-processing",
                    self._adapters.stt.transcribe(audio, config.asr, on_partial=self._partial_emitter(token)),
                )
                text = transcript.text.strip()
                self._check_live(token)
                self._emit(
                    "final-transcript",
                    {"text": text, "confidence": transcript.confidence, "language": transcript.language},
                )
                if not text:
                    self._emit("capture-discarded", {"reason": "empty-transcript", "source": audio.source})
                    self._logger.info("pipeline.capture.discarded", reason="empty-transcript")
                    self._go_rest()
                    return
                self._advance(token, "nlu-processing")
            assert text is not None
            await self._store.append("user", text, {"source": "voice" if audio is not None else "text"})
            self._check_live(token)

            intent = await self._stage(
                token,
                "nlu-processing",
                self._adapters.nlu.classify(text, self._store.snapshot(), config.nlu),
            )
            low_confidence = intent.is_low_confidence(config.nlu.threshold)
            self._check_live(token)
            self._emit("intent-result", intent.to_payload(config.nlu.threshold))
            if low_confidence:
                self._logger.info(
                    "pipeline.nlu.low_confidence",
                    intent=intent.intent,
                    confidence=intent.confidence,
                    policy=config.nlu.low_confidence_policy,
                )

            if intent.requires_planning:
                self._advance(token, "planning")
                plan = await self._stage(
                    token,
                    "planning",
                    self._adapters.planner.create_plan(text, intent, self._store.snapshot()),
                )
                self._check_live(token)
                self._emit("plan-created", plan.to_trace())
                self._advance(token, "tool-executing")
                run = await self._stage(
                    token,
                    "tool-executing",
                    self._adapters.tools.execute(plan, on_step=self._step_emitter(token)),
                )
                self._check_live(token)
                response = run.spoken_summary()
            elif low_confidence and config.nlu.low_confidence_policy == "clarify":
                response = CLARIFY_RESPONSE
            else:
                response = intent.response.strip()

            if not response:
                self._logger.info("pipeline.response.empty", intent=intent.intent)
                self._go_rest()
                return
            await self._store.append("assistant", response, {"intent": intent.intent})
            self._check_live(token)
            await self._respond(token, response, config)
        except CancellationError as exc:
            self._logger.info("pipeline.stage.cancelled", stage=exc.stage, reason=exc.reason)
        except AdapterError as exc:
            if self._is_live(token):
                self._fail(exc, exc.stage or self._state)
            else:
                self._logger.info("pipeline.stage.discarded_error", stage=token.stage, error=str(exc))
        except Exception as exc:
            if self._is_live(token):
                self._logger.exception("pipeline.stage.unexpected_error", stage=self._state)
                self._fail(AdapterError(str(exc), stage=self._state), self._state)
            else:
                self._logger.info("pipeline.stage.discarded_error", stage=token.stage, error=str(exc))
        finally:
            if self._token is token:
                self._token = None

    async def _respond(self, token: CancellationToken, text: str, config: PipelineConfig) -> None:
        if not config.tts.enabled:
            self._publish_response(text, None)
            self._go_rest()
            return
        self._advance(token, "tts-speaking")
        self._emit("tts-start", {"text": text, "voice": config.tts.voice})
        audio = await self._stage(token, "tts-speaking", self._adapters.tts.synthesize(text, config.tts))
        self._check_live(token)
        self._publish_response(text, audio)
        completed = await self._stage(token, "tts-speaking", self._adapters.tts.play(audio))
        self._check_live(token)
        if completed:
            self._emit("tts-end", {"text": text})
        else:
            self._logger.info("pipeline.tts.stopped_early")
        self._go_rest()

    async def _stage(self, token: CancellationToken, stage: str, awaitable: Awaitable[T]) -> T:
        with pipeline_span(
            self._tracer,
            stage,
            expected=(CancellationError,),
            session_id=self._store.session_id,
            mode=self._mode,
        ):
            try:
                return await token.run(awaitable)
            except AdapterError as exc:
                if exc.stage is None:
                    exc.stage = stage
                raise

    def _publish_response(self, text: str, audio: bytes | None) -> None:
        self._last_response = text
        self._emit("response", {"text": text, "audio": audio})

    def _partial_emitter(self, token: CancellationToken) -> Callable[[Transcript], None]:
        def emit(partial: Transcript) -> None:
            if self._is_live(token):
                self._emit("partial-transcript", {"text": partial.text})

        return emit

    def _step_emitter(self, token: CancellationToken) -> Callable[[StepResult], None]:
        def emit(result: StepResult) -> None:
            if self._is_live(token):
                self._emit("tool-result", result.to_dict())

        return emit

    # -- state plumbing ----------------------------------------------------

    def _new_token(self, stage: str) -> CancellationToken:
        if self._token is not None:
            self._token.cancel("superseded")
        self._token = CancellationToken(stage)
        return self._token

    def _is_live(self, token: CancellationToken) -> bool:
        return token is self._token and not token.cancelled and not self._closed

    def _check_live(self, token: CancellationToken) -> None:
        if not self._is_live(token):
            raise CancellationError(token.stage, token.reason or "superseded")

    def _advance(self, token: CancellationToken, state: PipelineState) -> None:
        self._check_live(token)
        token.stage = state
        self._set_state(state)

    def _fail(self, exc: BaseException, stage: str) -> None:
        self._logger.error(
            "pipeline.stage.failed",
            stage=stage,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        if self._token is not None:
            self._token.cancel("error")
            self._token = None
        self._capture = []
        self._capture_source = None
        self._set_state("error", stage=stage)
        self._emit("error", {"stage": stage, "message": str(exc)}, cause=exc)
        self._set_state("idle", reason="recovered")
        self._go_rest()

    def _rest_state(self) -> PipelineState:
        if self._mode == "manual":
            return "idle"
        if self._config.wake_word.enabled:
            return "wake-listening"
        return "voice-detecting"

    def _go_rest(self) -> None:
        if self._pending_mode is not None:
            mode, self._pending_mode = self._pending_mode, None
            self._apply_mode(mode)
        self._adapters.vad.reset()
        if self._adapters.wake_word is not None:
            self._adapters.wake_word.reset()
        self._set_state(self._rest_state())

    def _apply_mode(self, mode: PipelineMode) -> None:
        if mode == self._mode:
            return
        previous, self._mode = self._mode, mode
        self._logger.info("pipeline.mode.changed", previous=previous, mode=mode)
        self._emit("mode-change", {"mode": mode, "previous": previous})

    def _set_state(self, state: PipelineState, **payload: Any) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        self._logger.info("pipeline.state.transition", previous=previous, state=state, **payload)
        self._emit("state-change", {"state": state, "previous": previous, **payload})
        self._sync_audio()
        for waited, future in list(self._waiters):
            if waited == state and not future.done():
                future.set_result(None)

    def _sync_audio(self) -> None:
        source = self._adapters.audio_source
        if source is None or self._closed:
            return
        listening = self._state in LISTENING_STATES or (
            self._state == "tts-speaking" and self._mode == "voice" and self._config.barge_in.enabled
        )
        if listening:
            source.resume()
        else:
            source.pause()

    def _emit(self, kind: EventKind, payload: dict[str, Any], cause: BaseException | None = None) -> None:
        self._bus.publish(PipelineEvent(kind=kind, timestamp=self._clock.now(), payload=payload, cause=cause))

    def _require_initialized(self) -> None:
        if not self.is_initialized:
            raise InitializationError("Pipeline is not initialized")

    def _missing_capabilities(self, config: PipelineConfig) -> list[str]:
        missing = [
            name
            for name in ("vad", "stt", "nlu", "planner", "tools", "tts")
            if getattr(self._adapters, name) is None
        ]
        if config.wake_word.enabled and self._adapters.wake_word is None:
            missing.append("wake_word")
        return missing

    async def _listen(self) -> None:
        source = self._adapters.audio_source
        assert source is not None
        try:
            async for frame in source.frames():
                if self._closed:
                    break
                await self.process_frame(frame)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.exception("pipeline.audio.failed")
            self._emit("error", {"stage": "audio", "message": str(exc)}, cause=exc)


__all__ = ["PipelineController", "PipelineAdapters", "CLARIFY_RESPONSE"]
