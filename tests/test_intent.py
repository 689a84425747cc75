from __future__ import annotations

import json

import httpx
import pytest

from voxagent.llm.intent import HttpIntentClassifier, RuleBasedIntentClassifier, extract_entities, is_question
from voxagent.llm.planner import (
    HttpPlanner,
    RuleBasedPlanner,
    extract_duration_seconds,
    extract_timer_name,
)
from voxagent.llm.providers.openai import OpenAIClient
from voxagent.llm.types import IntentResult
from voxagent.orchestrator.errors import AdapterError
from voxagent.orchestrator.policies import NLUConfig


def _chat_transport(content: object, status: int = 200) -> httpx.MockTransport:
    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        body = content if isinstance(content, str) else json.dumps(content)
        return httpx.Response(status, json={"choices": [{"message": {"content": body}}]})

    transport = httpx.MockTransport(handler)
    transport.requests = requests  # type: ignore[attr-defined]
    return transport


@pytest.mark.parametrize(
    ("text", "intent", "planning"),
    [
        ("Set a timer for 10 minutes", "timer", True),
        ("Take a note: buy milk", "notes", True),
        ("What's the weather in Boston?", "weather", True),
        ("Search for pasta recipes", "search", True),
        ("Help me debug this function", "development", True),
        ("How tall is Everest?", "question", False),
        ("hello there", "general", False),
    ],
)
def test_rule_based_intents(text: str, intent: str, planning: bool) -> None:
    result = RuleBasedIntentClassifier().classify_sync(text)
    assert result.intent == intent
    assert result.requires_planning is planning
    assert bool(result.response) is not planning


def test_entities_and_question_detection() -> None:
    assert extract_entities("What's the weather in New York?", "weather")["location"] == "New York"
    assert extract_entities("weather in paris", "weather")["location"] == "paris"
    assert extract_entities("Set a timer for 10 minutes", "timer") == {"duration": "10 minutes"}
    assert extract_entities("Take a note: buy milk", "notes")["content"] == "buy milk"
    assert is_question("is it raining") is True
    assert is_question("turn on the lights") is False


def test_planner_helpers() -> None:
    assert extract_duration_seconds("remind me in 2 hours") == 7200
    assert extract_duration_seconds("set a timer") == 300
    assert extract_timer_name("start a timer for pasta for 10 minutes") == "pasta"

    planner = RuleBasedPlanner()
    timers = planner.plan_sync("show my timers", IntentResult(intent="timer"))
    assert timers.steps[0].action == "list_timers"
    general = planner.plan_sync("tell me a joke", IntentResult(intent="general"))
    assert general.steps[0].type == "computation"
    assert general.summary == "Execute general task: tell me a joke"


@pytest.mark.anyio("asyncio")
async def test_http_classifier_parses_model_reply() -> None:
    transport = _chat_transport(
        {"intent": "weather", "entities": {"location": "Oslo"}, "confidence": 0.92, "response": ""}
    )
    client = OpenAIClient("https://llm.test/v1", "secret", transport=transport)
    classifier = HttpIntentClassifier(client, fallback=RuleBasedIntentClassifier())

    result = await classifier.classify("weather in Oslo", (), NLUConfig())

    assert result.intent == "weather"
    assert result.confidence == 0.92
    assert result.requires_planning is True
    sent = transport.requests[0]  # type: ignore[attr-defined]
    assert sent["model"] == "gpt-4o-mini"
    assert sent["response_format"] == {"type": "json_object"}
    assert sent["messages"][-1] == {"role": "user", "content": "weather in Oslo"}
    await client.aclose()


@pytest.mark.anyio("asyncio")
async def test_http_classifier_falls_back_on_bad_payloads() -> None:
    client = OpenAIClient("https://llm.test/v1", transport=_chat_transport("not json"))
    classifier = HttpIntentClassifier(client, fallback=RuleBasedIntentClassifier())
    result = await classifier.classify("set a timer for 5 minutes", (), NLUConfig())
    assert result.intent == "timer"
    await client.aclose()

    client = OpenAIClient("https://llm.test/v1", transport=_chat_transport({}, status=500))
    strict = HttpIntentClassifier(client)
    with pytest.raises(AdapterError) as info:
        await strict.classify("hello", (), NLUConfig())
    assert info.value.stage == "nlu-processing"
    await client.aclose()


@pytest.mark.anyio("asyncio")
async def test_http_planner_validates_steps() -> None:
    plan = {
        "summary": "check weather",
        "steps": [{"id": "w", "type": "api", "action": "get_weather", "parameters": {"location": "Oslo"}}],
    }
    client = OpenAIClient("https://llm.test/v1", transport=_chat_transport(plan))
    planner = HttpPlanner(client, model="gpt-4o-mini", tools=["get_weather"], fallback=RuleBasedPlanner())

    result = await planner.create_plan("weather in Oslo", IntentResult(intent="weather"), ())
    assert [step.action for step in result.steps] == ["get_weather"]
    assert result.summary == "check weather"
    await client.aclose()

    client = OpenAIClient("https://llm.test/v1", transport=_chat_transport({"steps": [{"action": ""}]}))
    planner = HttpPlanner(client, model="gpt-4o-mini", tools=["get_weather"], fallback=RuleBasedPlanner())
    fallback = await planner.create_plan(
        "weather in Oslo", IntentResult(intent="weather", entities={"location": "Oslo"}), ()
    )
    assert fallback.steps[0].parameters == {"location": "Oslo"}
    await client.aclose()
