from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest

from voxagent.audio.source import AudioSource
from voxagent.audio.vad import EnergyVoiceActivityDetector
from voxagent.audio.wakeword.energy import EnergyWakeWordDetector
from voxagent.llm.intent import RuleBasedIntentClassifier
from voxagent.llm.planner import RuleBasedPlanner
from voxagent.memory.store import ContextStore
from voxagent.orchestrator.event_bus import EventBus
from voxagent.orchestrator.events import PipelineEvent, PipelineMode
from voxagent.orchestrator.policies import PipelineConfig
from voxagent.orchestrator.state_machine import PipelineAdapters, PipelineController
from voxagent.tools.registry import ToolContext, ToolRegistry
from voxagent.tools.skills import SkillState, register_builtin_skills
from voxagent.tools.taskgraph import PlanToolExecutor
from voxagent.transcription.mock import ScriptedSpeechToText
from voxagent.tts.mock import ScriptedTextToSpeech

FAST_VAD = {"threshold": 0.01, "silence_timeout_ms": 200, "min_speech_duration_ms": 100}


@pytest.fixture
def anyio_backend():
    return "asyncio"


def weather_transport(temperature: float = 12.4, code: int = 2) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host.startswith("geocoding-api"):
            name = request.url.params["name"]
            return httpx.Response(200, json={"results": [{"name": name, "latitude": 42.36, "longitude": -71.06}]})
        return httpx.Response(200, json={"current": {"temperature_2m": temperature, "weather_code": code}})

    return httpx.MockTransport(handler)


def build_executor(transport: httpx.MockTransport | None = None) -> PlanToolExecutor:
    registry = ToolRegistry()
    register_builtin_skills(registry)
    http = httpx.AsyncClient(transport=transport or weather_transport())
    skills = SkillState()
    return PlanToolExecutor(registry, lambda: ToolContext(http=http, extras={"skills": skills}))


def make_config(**sections: Any) -> PipelineConfig:
    data: dict[str, Any] = {"vad": dict(FAST_VAD)}
    for name, values in sections.items():
        data[name] = {**data.get(name, {}), **values}
    return PipelineConfig.from_mapping(data)


@dataclass
class Harness:
    controller: PipelineController
    stt: ScriptedSpeechToText
    tts: ScriptedTextToSpeech
    bus: EventBus
    events: list[PipelineEvent] = field(default_factory=list)

    def kinds(self) -> list[str]:
        return [event.kind for event in self.events]

    def states(self) -> list[str]:
        return [event.payload["state"] for event in self.events if event.kind == "state-change"]

    def of_kind(self, kind: str) -> list[PipelineEvent]:
        return [event for event in self.events if event.kind == kind]

    async def settle(self) -> None:
        await self.controller.wait_idle()
        await self.bus.drain()

    async def aclose(self) -> None:
        await self.controller.shutdown()
        await self.bus.close()


def build_adapters(
    stt: ScriptedSpeechToText,
    tts: ScriptedTextToSpeech,
    *,
    with_wake: bool = True,
    audio_source: AudioSource | None = None,
) -> PipelineAdapters:
    return PipelineAdapters(
        vad=EnergyVoiceActivityDetector(),
        stt=stt,
        nlu=RuleBasedIntentClassifier(),
        planner=RuleBasedPlanner(),
        tools=build_executor(),
        tts=tts,
        wake_word=EnergyWakeWordDetector() if with_wake else None,
        audio_source=audio_source,
    )


def build_harness(
    *,
    mode: PipelineMode = "manual",
    config: PipelineConfig | None = None,
    transcripts: tuple[str, ...] = (),
    hold_playback: bool = False,
    with_wake: bool = True,
    audio_source: AudioSource | None = None,
    store: ContextStore | None = None,
    bus: EventBus | None = None,
) -> Harness:
    stt = ScriptedSpeechToText(transcripts)
    tts = ScriptedTextToSpeech(hold_playback=hold_playback)
    bus = bus if bus is not None else EventBus()
    adapters = build_adapters(stt, tts, with_wake=with_wake, audio_source=audio_source)
    controller = PipelineController(adapters, config=config or make_config(), mode=mode, bus=bus, store=store)
    harness = Harness(controller=controller, stt=stt, tts=tts, bus=bus)
    bus.subscribe(harness.events.append)
    return harness
