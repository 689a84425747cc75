from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from voxagent.orchestrator.errors import InitializationError, VoxAgentError
from voxagent.orchestrator.event_bus import EventBus, Unsubscribe
from voxagent.orchestrator.events import (
    LISTENING_STATES,
    PROCESSING_STATES,
    AudioFrame,
    PipelineEvent,
    PipelineMode,
    PipelineState,
)
from voxagent.orchestrator.policies import PipelineConfig
from voxagent.orchestrator.state_machine import PipelineController
from voxagent.telemetry.logging import get_logger

ControllerFactory = Callable[[EventBus, PipelineConfig, PipelineMode], PipelineController]


def _forward(result: Any) -> Awaitable[None] | None:
    return result if inspect.isawaitable(result) else None


class VoicePipelineClient:
    """Imperative facade over a pipeline session.

    Subscriptions live on the client's event bus and survive shutdown and
    re-initialize; each `initialize` builds a fresh controller through
    `factory`. Control methods wait for pending events to be delivered before
    returning, so they must not be called from inside a subscriber.
    """

    def __init__(
        self,
        factory: ControllerFactory,
        *,
        config: PipelineConfig | None = None,
        mode: PipelineMode = "voice",
        history_size: int = 20,
    ) -> None:
        self._factory = factory
        self._config = config or PipelineConfig()
        self._mode: PipelineMode = mode
        self._bus = EventBus(history_size=history_size)
        self._controller: PipelineController | None = None
        self._last_error: BaseException | None = None
        self._last_response: str | None = None
        self._logger = get_logger(__name__)
        self._bus.subscribe(self._record, {"error", "response"})

    # -- subscriptions -----------------------------------------------------

    def on_state_change(self, callback: Callable[[PipelineState], Any]) -> Unsubscribe:
        return self._bus.subscribe(lambda event: _forward(callback(event.payload["state"])), {"state-change"})

    def on_event(self, callback: Callable[[PipelineEvent], Any]) -> Unsubscribe:
        return self._bus.subscribe(lambda event: _forward(callback(event)))

    def on_error(self, callback: Callable[[BaseException], Any]) -> Unsubscribe:
        return self._bus.subscribe(lambda event: _forward(callback(self._error_of(event))), {"error"})

    def on_response(self, callback: Callable[[str, bytes | None], Any]) -> Unsubscribe:
        return self._bus.subscribe(
            lambda event: _forward(callback(event.payload["text"], event.payload.get("audio"))),
            {"response"},
        )

    # -- read-only state ---------------------------------------------------

    @property
    def controller(self) -> PipelineController | None:
        return self._controller

    @property
    def state(self) -> PipelineState:
        return self._controller.state if self._controller else "idle"

    @property
    def mode(self) -> PipelineMode:
        return self._controller.mode if self._controller else self._mode

    @property
    def config(self) -> PipelineConfig:
        return self._controller.config if self._controller else self._config

    @property
    def is_initialized(self) -> bool:
        return self._controller is not None and self._controller.is_initialized

    @property
    def last_error(self) -> BaseException | None:
        return self._last_error

    @property
    def last_response(self) -> str | None:
        return self._last_response

    @property
    def events(self) -> list[PipelineEvent]:
        return self._bus.recent()

    @property
    def is_listening(self) -> bool:
        return self.state in LISTENING_STATES

    @property
    def is_processing(self) -> bool:
        return self.state in PROCESSING_STATES

    @property
    def is_speaking(self) -> bool:
        return self.state == "tts-speaking"

    @property
    def is_active(self) -> bool:
        return self.state != "idle"

    @property
    def has_error(self) -> bool:
        return self._last_error is not None or self.state == "error"

    # -- controls ----------------------------------------------------------

    async def initialize(self) -> None:
        if self.is_initialized:
            return
        self._bus.start()
        controller = self._factory(self._bus, self._config, self._mode)
        try:
            await controller.initialize()
        except InitializationError as exc:
            self._last_error = exc
            await self._bus.drain()
            raise
        self._controller = controller
        await self._bus.drain()

    async def shutdown(self) -> None:
        if self._controller is None:
            return
        controller, self._controller = self._controller, None
        self._mode = controller.mode if controller.pending_mode is None else controller.pending_mode
        self._config = controller.config
        await controller.shutdown()
        await self._bus.drain()

    async def aclose(self) -> None:
        await self.shutdown()
        await self._bus.close()

    def set_mode(self, mode: PipelineMode) -> bool:
        self._mode = mode
        if self._controller is None:
            return True
        return self._controller.set_mode(mode)

    async def process_text(self, text: str) -> bool:
        accepted = await self._require_controller().process_text(text)
        await self._bus.drain()
        return accepted

    async def handle_push_to_talk(self, pressed: bool) -> None:
        await self._require_controller().handle_push_to_talk(pressed)
        await self._bus.drain()

    async def handle_barge_in(self) -> bool:
        handled = await self._require_controller().handle_barge_in()
        await self._bus.drain()
        return handled

    async def feed_audio(self, frame: AudioFrame) -> None:
        await self._require_controller().process_frame(frame)
        await self._bus.drain()

    async def update_config(self, updates: Mapping[str, Any]) -> PipelineConfig:
        if self._controller is not None:
            self._config = self._controller.update_config(updates)
        else:
            self._config = self._config.merged(updates)
        await self._bus.drain()
        return self._config

    async def wait_for_state(self, state: PipelineState, timeout: float | None = 5.0) -> None:
        await self._require_controller().wait_for_state(state, timeout)

    async def wait_idle(self) -> None:
        if self._controller is not None:
            await self._controller.wait_idle()
        await self._bus.drain()

    async def drain(self) -> None:
        await self._bus.drain()

    def clear_error(self) -> None:
        self._last_error = None

    def clear_events(self) -> None:
        self._bus.clear_history()

    def _require_controller(self) -> PipelineController:
        if self._controller is None or not self._controller.is_initialized:
            raise InitializationError("Pipeline is not initialized")
        return self._controller

    def _record(self, event: PipelineEvent) -> None:
        if event.kind == "error":
            self._last_error = self._error_of(event)
        elif event.kind == "response":
            self._last_response = event.payload.get("text")

    @staticmethod
    def _error_of(event: PipelineEvent) -> BaseException:
        if event.cause is not None:
            return event.cause
        return VoxAgentError(str(event.payload.get("message", "pipeline error")))


__all__ = ["VoicePipelineClient", "ControllerFactory"]
