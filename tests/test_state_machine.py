from __future__ import annotations

import asyncio

import pytest

from conftest import build_adapters, build_harness, make_config
from voxagent.audio.energy import silence_frame, tone_frame
from voxagent.audio.source import QueueAudioSource
from voxagent.memory.store import ContextStore, SqlTurnRepository
from voxagent.orchestrator.errors import ConfigError, InitializationError, TranscriptionError
from voxagent.orchestrator.policies import ContextConfig
from voxagent.orchestrator.state_machine import CLARIFY_RESPONSE, PipelineController
from voxagent.transcription.mock import ScriptedSpeechToText
from voxagent.tts.mock import ScriptedTextToSpeech

NO_WAKE = {"enabled": False}


async def _wait_playing(harness) -> None:
    await asyncio.wait_for(harness.tts.playing.wait(), timeout=2.0)


@pytest.mark.anyio("asyncio")
async def test_manual_weather_request_runs_full_turn() -> None:
    harness = build_harness(mode="manual")
    await harness.controller.initialize()

    accepted = await harness.controller.process_text("What's the weather in Boston?")
    await harness.settle()

    assert accepted is True
    assert harness.states() == ["nlu-processing", "planning", "tool-executing", "tts-speaking", "idle"]
    responses = harness.of_kind("response")
    assert len(responses) == 1
    assert responses[0].payload["text"] == "Weather for Boston: partly cloudy, 12°C"
    assert responses[0].payload["audio"] == b"audio:alloy:Weather for Boston: partly cloudy, 12\xc2\xb0C"

    kinds = harness.kinds()
    order = ["intent-result", "plan-created", "tool-result", "tts-start", "response", "tts-end"]
    assert [kinds.index(kind) for kind in order] == sorted(kinds.index(kind) for kind in order)

    intent = harness.of_kind("intent-result")[0].payload
    assert intent["intent"] == "weather"
    assert intent["entities"]["location"] == "Boston"
    step = harness.of_kind("plan-created")[0].payload["steps"][0]
    assert step["action"] == "get_weather"
    assert step["parameters"] == {"location": "Boston"}
    assert harness.of_kind("tool-result")[0].payload["status"] == "succeeded"

    turns = harness.controller.store.snapshot()
    assert [turn.role for turn in turns] == ["user", "assistant"]
    assert turns[0].content == "What's the weather in Boston?"
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_voice_capture_flows_through_vad_and_transcription() -> None:
    harness = build_harness(mode="voice", config=make_config(wake_word=NO_WAKE), transcripts=("remember to buy milk",))
    await harness.controller.initialize()
    assert harness.controller.state == "voice-detecting"

    for frame in (tone_frame(0.2), tone_frame(0.2), silence_frame(), silence_frame()):
        await harness.controller.process_frame(frame)
    await harness.settle()

    assert harness.states() == [
        "voice-detecting",
        "speech-capturing",
        "speech-processing",
        "nlu-processing",
        "planning",
        "tool-executing",
        "tts-speaking",
        "voice-detecting",
    ]
    assert harness.of_kind("partial-transcript")[0].payload["text"] == "remember to"
    assert harness.of_kind("final-transcript")[0].payload["text"] == "remember to buy milk"
    assert harness.controller.last_response == 'Created note "Note"'
    captured = harness.stt.calls[0]
    assert captured.source == "vad"
    assert len(captured.frames) == 4
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_push_to_talk_interrupts_speech_and_starts_new_capture() -> None:
    harness = build_harness(
        mode="voice",
        config=make_config(wake_word=NO_WAKE),
        transcripts=("set a timer for 5 minutes",),
        hold_playback=True,
    )
    await harness.controller.initialize()
    turn = asyncio.create_task(harness.controller.process_text("hello there"))
    await _wait_playing(harness)
    assert harness.controller.state == "tts-speaking"

    await harness.controller.handle_push_to_talk(True)
    assert harness.controller.state == "speech-capturing"
    assert await turn is True
    await harness.bus.drain()

    kinds = harness.kinds()
    assert kinds.count("barge-in") == 1
    assert kinds.count("response") == 1
    assert "tts-end" not in kinds
    assert harness.of_kind("barge-in")[0].payload["source"] == "push-to-talk"
    assert harness.tts.stops == 1
    barge_in_state = harness.of_kind("state-change")[-1].payload
    assert barge_in_state["previous"] == "tts-speaking"
    assert barge_in_state["state"] == "speech-capturing"

    harness.tts.hold_playback = False
    await harness.controller.process_frame(tone_frame(0.2))
    await harness.controller.handle_push_to_talk(False)
    await harness.settle()

    assert harness.controller.last_response == 'Created timer "Timer" for 5 minutes'
    assert len(harness.of_kind("tts-end")) == 1
    assert harness.controller.state == "voice-detecting"
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_loud_frame_during_speech_is_a_voice_barge_in() -> None:
    harness = build_harness(mode="voice", config=make_config(wake_word=NO_WAKE), hold_playback=True)
    await harness.controller.initialize()
    turn = asyncio.create_task(harness.controller.process_text("hello there"))
    await _wait_playing(harness)

    await harness.controller.process_frame(tone_frame(0.5))
    await turn
    await harness.bus.drain()

    assert harness.controller.state == "voice-detecting"
    assert harness.of_kind("barge-in")[0].payload["source"] == "voice"
    assert "tts-end" not in harness.kinds()
    assert harness.states()[-2:] == ["tts-speaking", "voice-detecting"]
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_loud_frame_ignored_when_barge_in_disabled() -> None:
    config = make_config(wake_word=NO_WAKE, barge_in={"enabled": False})
    harness = build_harness(mode="voice", config=config, hold_playback=True)
    await harness.controller.initialize()
    turn = asyncio.create_task(harness.controller.process_text("hello there"))
    await _wait_playing(harness)

    await harness.controller.process_frame(tone_frame(0.5))
    assert harness.controller.state == "tts-speaking"

    harness.tts.release()
    await turn
    await harness.settle()
    assert "barge-in" not in harness.kinds()
    assert len(harness.of_kind("tts-end")) == 1
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_barge_in_outside_speaking_is_a_noop() -> None:
    harness = build_harness(mode="manual")
    await harness.controller.initialize()
    await harness.bus.drain()
    before = list(harness.kinds())

    assert await harness.controller.handle_barge_in() is False
    assert await harness.controller.handle_barge_in() is False
    await harness.bus.drain()

    assert harness.kinds() == before
    assert harness.controller.state == "idle"
    assert harness.tts.stops == 0
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_shutdown_during_transcription_discards_result() -> None:
    harness = build_harness(mode="manual", transcripts=("what time is it",))
    harness.stt.gate = asyncio.Event()
    await harness.controller.initialize()

    await harness.controller.handle_push_to_talk(True)
    await harness.controller.process_frame(tone_frame(0.2))
    await harness.controller.handle_push_to_talk(False)
    assert harness.controller.state == "speech-processing"
    await asyncio.sleep(0)

    await harness.controller.shutdown()
    harness.stt.gate.set()
    await harness.bus.drain()

    assert harness.controller.state == "idle"
    assert harness.controller.is_initialized is False
    kinds = harness.kinds()
    assert "final-transcript" not in kinds
    assert "error" not in kinds
    assert "response" not in kinds
    with pytest.raises(InitializationError):
        await harness.controller.initialize()
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_wake_word_above_threshold_moves_to_voice_detecting() -> None:
    harness = build_harness(mode="voice")
    await harness.controller.initialize()
    assert harness.controller.state == "wake-listening"

    await harness.controller.process_frame(tone_frame(0.005))
    assert harness.controller.state == "wake-listening"

    await harness.controller.process_frame(tone_frame(0.02))
    await harness.bus.drain()

    assert harness.controller.state == "voice-detecting"
    wake = harness.of_kind("wake-detected")
    assert len(wake) == 1
    assert wake[0].payload["score"] == pytest.approx(0.02, rel=1e-4)
    assert wake[0].payload["phrase"] == "hey jarvis"
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_mode_change_during_turn_applies_at_rest() -> None:
    harness = build_harness(mode="manual", hold_playback=True)
    await harness.controller.initialize()
    turn = asyncio.create_task(harness.controller.process_text("hello there"))
    await _wait_playing(harness)

    assert harness.controller.set_mode("voice") is False
    assert harness.controller.mode == "manual"
    assert harness.controller.pending_mode == "voice"

    harness.tts.release()
    await turn
    await harness.settle()

    assert harness.controller.mode == "voice"
    assert harness.controller.pending_mode is None
    assert harness.controller.state == "wake-listening"
    kinds = harness.kinds()
    assert kinds.index("tts-end") < kinds.index("mode-change")
    assert harness.of_kind("mode-change")[0].payload == {"mode": "voice", "previous": "manual"}
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_mode_change_when_quiescent_applies_immediately() -> None:
    harness = build_harness(mode="voice")
    await harness.controller.initialize()
    assert harness.controller.set_mode("manual") is True
    assert harness.controller.state == "idle"
    with pytest.raises(ValueError):
        harness.controller.set_mode("telepathy")  # type: ignore[arg-type]
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_transcription_failure_recovers_through_error() -> None:
    harness = build_harness(mode="manual")
    harness.stt.fail_with = RuntimeError("microphone unplugged")
    await harness.controller.initialize()

    await harness.controller.handle_push_to_talk(True)
    await harness.controller.process_frame(tone_frame(0.2))
    await harness.controller.handle_push_to_talk(False)
    await harness.settle()

    assert harness.states() == ["speech-capturing", "speech-processing", "error", "idle"]
    error = harness.of_kind("error")[0]
    assert error.payload["stage"] == "speech-processing"
    assert isinstance(error.cause, TranscriptionError)
    assert "microphone unplugged" in error.payload["message"]

    assert await harness.controller.process_text("hello again") is True
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_synthesis_failure_recovers_to_rest_state() -> None:
    harness = build_harness(mode="voice", config=make_config(wake_word=NO_WAKE))
    harness.tts.fail_with = RuntimeError("voice service down")
    await harness.controller.initialize()

    await harness.controller.process_text("hello there")
    await harness.settle()

    assert harness.states()[-3:] == ["error", "idle", "voice-detecting"]
    assert harness.of_kind("error")[0].payload["stage"] == "tts-speaking"
    assert "response" not in harness.kinds()
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_low_confidence_intent_proceeds_by_default() -> None:
    harness = build_harness(mode="manual")
    await harness.controller.initialize()
    await harness.controller.process_text("hello there")
    await harness.settle()

    intent = harness.of_kind("intent-result")[0].payload
    assert intent["low_confidence"] is True
    assert harness.controller.last_response == 'I understand you said: "hello there". How can I help you with that?'
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_low_confidence_intent_asks_for_clarification() -> None:
    harness = build_harness(mode="manual", config=make_config(nlu={"low_confidence_policy": "clarify"}))
    await harness.controller.initialize()
    await harness.controller.process_text("hello there")
    await harness.settle()

    assert harness.controller.last_response == CLARIFY_RESPONSE
    assert "planning" not in harness.states()
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_empty_push_to_talk_capture_is_discarded() -> None:
    harness = build_harness(mode="manual")
    await harness.controller.initialize()

    await harness.controller.handle_push_to_talk(True)
    await harness.controller.handle_push_to_talk(False)
    await harness.bus.drain()

    assert harness.states() == ["speech-capturing", "idle"]
    discarded = harness.of_kind("capture-discarded")
    assert discarded[0].payload == {"reason": "empty-audio", "source": "push-to-talk"}
    assert harness.stt.calls == []
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_empty_transcript_is_discarded() -> None:
    harness = build_harness(mode="manual")
    await harness.controller.initialize()

    await harness.controller.handle_push_to_talk(True)
    await harness.controller.process_frame(tone_frame(0.2))
    await harness.controller.handle_push_to_talk(False)
    await harness.settle()

    assert harness.of_kind("capture-discarded")[0].payload["reason"] == "empty-transcript"
    assert "intent-result" not in harness.kinds()
    assert harness.controller.state == "idle"
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_text_is_rejected_while_busy() -> None:
    harness = build_harness(mode="manual", hold_playback=True)
    await harness.controller.initialize()
    turn = asyncio.create_task(harness.controller.process_text("hello there"))
    await _wait_playing(harness)

    assert await harness.controller.process_text("another request") is False
    assert await harness.controller.process_text("   ") is False

    harness.tts.release()
    await turn
    await harness.settle()
    assert len(harness.of_kind("response")) == 1
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_text_requires_initialization() -> None:
    harness = build_harness(mode="manual")
    with pytest.raises(InitializationError):
        await harness.controller.process_text("hello")
    await harness.bus.close()


@pytest.mark.anyio("asyncio")
async def test_initialize_fails_without_wake_detector() -> None:
    harness = build_harness(mode="voice", with_wake=False)

    with pytest.raises(InitializationError, match="wake_word"):
        await harness.controller.initialize()
    await harness.bus.drain()

    assert harness.controller.is_initialized is False
    assert harness.of_kind("error")[0].payload["stage"] == "initialize"
    await harness.bus.close()


@pytest.mark.anyio("asyncio")
async def test_config_update_applies_and_rejects() -> None:
    harness = build_harness(mode="voice", config=make_config(wake_word=NO_WAKE))
    await harness.controller.initialize()
    assert harness.controller.state == "voice-detecting"

    harness.controller.update_config({"wake_word": {"enabled": True}})
    await harness.bus.drain()
    assert harness.controller.state == "wake-listening"
    assert harness.of_kind("config-updated")[0].payload == {"sections": ["wake_word"]}

    with pytest.raises(ConfigError):
        harness.controller.update_config({"vad": {"threshold": -1}})
    with pytest.raises(ConfigError):
        harness.controller.update_config({"speakers": {"volume": 3}})
    assert harness.controller.config.vad.threshold == 0.01
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_config_update_cannot_enable_missing_wake_detector() -> None:
    harness = build_harness(mode="voice", config=make_config(wake_word=NO_WAKE), with_wake=False)
    await harness.controller.initialize()

    with pytest.raises(ConfigError):
        harness.controller.update_config({"wake_word": {"enabled": True}})
    assert harness.controller.config.wake_word.enabled is False
    assert harness.controller.state == "voice-detecting"
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_tts_disabled_publishes_text_only_response() -> None:
    harness = build_harness(mode="manual", config=make_config(tts={"enabled": False}))
    await harness.controller.initialize()
    await harness.controller.process_text("hello there")
    await harness.settle()

    assert "tts-speaking" not in harness.states()
    assert "tts-start" not in harness.kinds()
    assert harness.of_kind("response")[0].payload["audio"] is None
    assert harness.tts.synthesized == []
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_audio_source_is_paused_while_processing() -> None:
    source = QueueAudioSource()
    harness = build_harness(
        mode="voice",
        config=make_config(wake_word=NO_WAKE),
        transcripts=("what is the time",),
        audio_source=source,
    )
    harness.stt.gate = asyncio.Event()
    await harness.controller.initialize()
    assert source.paused is False

    for frame in (tone_frame(0.2), tone_frame(0.2), silence_frame(), silence_frame()):
        assert source.push(frame) is True
    await harness.controller.wait_for_state("speech-processing", timeout=2.0)
    assert source.paused is True
    assert source.push(tone_frame(0.2)) is False

    harness.stt.gate.set()
    await harness.settle()
    assert harness.controller.state == "voice-detecting"
    assert source.paused is False
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_mode_change_during_capture_applies_at_rest() -> None:
    harness = build_harness(mode="voice", config=make_config(wake_word=NO_WAKE), transcripts=("remember to buy milk",))
    await harness.controller.initialize()

    await harness.controller.process_frame(tone_frame(0.2))
    assert harness.controller.state == "speech-capturing"
    assert harness.controller.set_mode("manual") is False
    assert harness.controller.mode == "voice"
    assert harness.controller.pending_mode == "manual"

    for frame in (tone_frame(0.2), silence_frame(), silence_frame()):
        await harness.controller.process_frame(frame)
    await harness.settle()

    states = harness.states()
    assert states[:2] == ["voice-detecting", "speech-capturing"]
    assert states[-2:] == ["tts-speaking", "idle"]
    assert "voice-detecting" not in states[2:]
    assert harness.controller.mode == "manual"
    assert harness.controller.pending_mode is None
    kinds = harness.kinds()
    assert kinds.index("speech-end") < kinds.index("mode-change")
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_injected_store_writes_turns_through_to_repository(tmp_path) -> None:
    dsn = f"sqlite+aiosqlite:///{tmp_path / 'context.db'}"
    store = ContextStore(ContextConfig(), repository=SqlTurnRepository(dsn))
    harness = build_harness(mode="manual", store=store)
    assert harness.controller.store is store

    await harness.controller.initialize()
    await harness.controller.process_text("What's the weather in Boston?")
    await harness.settle()
    await harness.aclose()
    assert len(store) == 2
    await store.aclose()

    restored = ContextStore(ContextConfig(), repository=SqlTurnRepository(dsn))
    assert await restored.load() == 2
    assert [turn.content for turn in restored.snapshot()] == [
        "What's the weather in Boston?",
        "Weather for Boston: partly cloudy, 12°C",
    ]
    await restored.aclose()


class UnreachableRepository:
    async def init(self) -> None:
        raise ConnectionRefusedError("database down")

    async def append(self, session_id, turn) -> None:
        raise ConnectionRefusedError("database down")

    async def recent(self, limit, max_age):
        raise ConnectionRefusedError("database down")

    async def clear(self, session_id=None) -> None:
        raise ConnectionRefusedError("database down")

    async def aclose(self) -> None:
        return None


@pytest.mark.anyio("asyncio")
async def test_unreachable_repository_does_not_break_turns() -> None:
    store = ContextStore(ContextConfig(), repository=UnreachableRepository())
    harness = build_harness(mode="manual", store=store)

    await harness.controller.initialize()
    assert harness.controller.state == "idle"
    await harness.controller.process_text("What's the weather in Boston?")
    await harness.settle()

    assert harness.states() == ["nlu-processing", "planning", "tool-executing", "tts-speaking", "idle"]
    assert "error" not in harness.kinds()
    assert len(harness.of_kind("response")) == 1
    assert [turn.role for turn in store.snapshot()] == ["user", "assistant"]
    await store.clear()
    assert len(store) == 0
    await harness.aclose()


@pytest.mark.anyio("asyncio")
async def test_failed_initialize_closes_owned_event_bus() -> None:
    adapters = build_adapters(ScriptedSpeechToText(), ScriptedTextToSpeech(), with_wake=False)
    controller = PipelineController(adapters, config=make_config(), mode="voice")

    with pytest.raises(InitializationError):
        await controller.initialize()

    assert controller.bus.running is False
    assert controller.bus.recent()[-1].kind == "error"
