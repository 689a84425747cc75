from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence

from pydantic import ValidationError

from voxagent.llm.plan_schema import Plan, PlanStep
from voxagent.llm.providers.openai import OpenAIClient
from voxagent.llm.types import IntentResult
from voxagent.memory.store import as_messages
from voxagent.orchestrator.errors import AdapterError
from voxagent.orchestrator.events import ConversationTurn
from voxagent.telemetry.logging import get_logger

_DURATION_RE = re.compile(r"(\d+)\s*(minutes?|min|seconds?|sec|hours?|hr)\b", re.IGNORECASE)
_TIMER_NAME_RE = re.compile(r"timer\s+(?:for\s+)?(.+?)(?:\s+(?:for|in)\s+\d+|\s*$)", re.IGNORECASE)
_NOTE_TITLE_RE = re.compile(r"(?:note|write)\s+(?:about\s+)?(.+?)(?:\s*:|$)", re.IGNORECASE)

DEFAULT_TIMER_SECONDS = 300


def extract_duration_seconds(text: str) -> int:
    match = _DURATION_RE.search(text)
    if not match:
        return DEFAULT_TIMER_SECONDS
    value = int(match.group(1))
    unit = match.group(2).lower()
    if unit.startswith("h"):
        return value * 3600
    if unit.startswith("m"):
        return value * 60
    return value


def extract_timer_name(text: str) -> str:
    match = _TIMER_NAME_RE.search(text)
    if match and not _DURATION_RE.search(match.group(1)):
        return match.group(1).strip()
    return "Timer"


def extract_note_title(text: str) -> str:
    match = _NOTE_TITLE_RE.search(text)
    if match:
        return match.group(1).strip()
    return "Note"


class Planner(ABC):
    @abstractmethod
    async def create_plan(self, text: str, intent: IntentResult, context: Sequence[ConversationTurn]) -> Plan:
        """Produce the tool steps that answer `text`."""


class RuleBasedPlanner(Planner):
    """One-step plans keyed on the intent name."""

    async def create_plan(self, text: str, intent: IntentResult, context: Sequence[ConversationTurn]) -> Plan:
        return self.plan_sync(text, intent)

    def plan_sync(self, text: str, intent: IntentResult) -> Plan:
        name = intent.intent
        entities = intent.entities
        lowered = text.lower()
        if name in {"timer", "create_timer"}:
            if "list" in lowered or "show" in lowered:
                step = PlanStep(action="list_timers")
            else:
                step = PlanStep(
                    action="create_timer",
                    parameters={"name": extract_timer_name(text), "duration_s": extract_duration_seconds(text)},
                )
        elif name in {"notes", "create_note"}:
            if "list" in lowered or "show" in lowered:
                step = PlanStep(action="list_notes", parameters={"limit": 10})
            else:
                step = PlanStep(
                    action="create_note",
                    parameters={"title": extract_note_title(text), "content": entities.get("content") or text},
                )
        elif name in {"weather", "get_weather"}:
            step = PlanStep(type="api", action="get_weather", parameters={"location": entities.get("location") or "current"})
        else:
            step = PlanStep(type="computation", action="computation", parameters={"query": text, "intent": name})
        return Plan(steps=[step], summary=f"Execute {name} task: {text}")


PLANNER_PROMPT = (
    "You plan tool calls for a voice assistant. Reply with a JSON object with keys "
    "summary (string) and steps (list of objects with id, type, action, parameters, dependencies). "
    "Use only these tools: {tools}."
)


class HttpPlanner(Planner):
    def __init__(
        self,
        client: OpenAIClient,
        model: str,
        tools: Sequence[str],
        fallback: Planner | None = None,
        history: int = 5,
    ) -> None:
        self._client = client
        self._model = model
        self._tools = list(tools)
        self._fallback = fallback
        self._history = history
        self._logger = get_logger(__name__)

    async def create_plan(self, text: str, intent: IntentResult, context: Sequence[ConversationTurn]) -> Plan:
        messages = [{"role": "system", "content": PLANNER_PROMPT.format(tools=", ".join(self._tools))}]
        messages.extend(as_messages(list(context)[-self._history :]))
        messages.append(
            {
                "role": "user",
                "content": json.dumps({"query": text, "intent": intent.intent, "entities": intent.entities}),
            }
        )
        try:
            data = await self._client.chat_json(self._model, messages, stage="planning")
            plan = Plan.model_validate(data)
        except (AdapterError, ValidationError) as exc:
            if self._fallback is None:
                if isinstance(exc, AdapterError):
                    raise
                raise AdapterError(f"Malformed plan payload: {exc}", stage="planning") from exc
            self._logger.warning("planner.fallback", error=str(exc))
            return await self._fallback.create_plan(text, intent, context)
        if not plan.summary:
            plan = plan.model_copy(update={"summary": f"Plan for: {text}"})
        self._logger.info("planner.plan", plan_id=plan.id, steps=len(plan.steps))
        return plan


__all__ = [
    "Planner",
    "RuleBasedPlanner",
    "HttpPlanner",
    "extract_duration_seconds",
    "extract_timer_name",
    "extract_note_title",
]
