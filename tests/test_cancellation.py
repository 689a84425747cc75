from __future__ import annotations

import asyncio

import pytest

from voxagent.orchestrator.cancellation import CancellationToken
from voxagent.orchestrator.errors import CancellationError


@pytest.mark.anyio("asyncio")
async def test_run_returns_result_when_live() -> None:
    token = CancellationToken("nlu-processing")

    async def classify() -> str:
        await asyncio.sleep(0)
        return "weather"

    assert await token.run(classify()) == "weather"
    assert token.cancelled is False


@pytest.mark.anyio("asyncio")
async def test_cancel_abandons_pending_call() -> None:
    token = CancellationToken("tts-speaking")
    started = asyncio.Event()
    finished = False

    async def play() -> bool:
        nonlocal finished
        started.set()
        await asyncio.sleep(10)
        finished = True
        return True

    pending = asyncio.create_task(token.run(play()))
    await started.wait()
    assert token.cancel("barge-in") is True
    assert token.cancel("again") is False

    with pytest.raises(CancellationError) as info:
        await pending
    assert info.value.stage == "tts-speaking"
    assert info.value.reason == "barge-in"
    assert finished is False


@pytest.mark.anyio("asyncio")
async def test_cancelled_token_refuses_new_work() -> None:
    token = CancellationToken("planning")
    token.cancel("superseded")
    called = False

    async def plan() -> None:
        nonlocal called
        called = True

    coro = plan()
    with pytest.raises(CancellationError):
        await token.run(coro)
    coro.close()
    assert called is False
    with pytest.raises(CancellationError):
        token.raise_if_cancelled()


@pytest.mark.anyio("asyncio")
async def test_adapter_errors_propagate_while_live() -> None:
    token = CancellationToken("speech-processing")

    async def transcribe() -> str:
        raise ValueError("bad audio")

    with pytest.raises(ValueError, match="bad audio"):
        await token.run(transcribe())
