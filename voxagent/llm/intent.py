from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from voxagent.llm.providers.openai import OpenAIClient
from voxagent.llm.types import IntentResult
from voxagent.memory.store import as_messages
from voxagent.orchestrator.errors import AdapterError
from voxagent.orchestrator.events import ConversationTurn
from voxagent.orchestrator.policies import NLUConfig
from voxagent.telemetry.logging import get_logger

PLANNING_INTENTS = frozenset({"timer", "notes", "weather", "search", "development"})

_INTENT_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("timer", ("timer", "alarm", "remind")),
    ("notes", ("note", "write", "remember")),
    ("weather", ("weather", "temperature", "forecast")),
    ("search", ("search", "find", "look up")),
    ("development", ("code", "function", "debug", "implement", "project")),
)

_QUESTION_WORDS = (
    "what", "when", "where", "who", "why", "how", "which", "can", "could",
    "would", "should", "is", "are", "do", "does", "did",
)

_DURATION_RE = re.compile(r"(\d+)\s*(minutes?|min|seconds?|sec|hours?|hr)\b", re.IGNORECASE)
_PROPER_LOCATION_RE = re.compile(r"\bin\s+([A-Z][A-Za-z]*(?:\s+[A-Z][A-Za-z]*)*)")
_LOCATION_RE = re.compile(r"\bin\s+([A-Za-z]+)", re.IGNORECASE)
_NOTE_RE = re.compile(r"note\s*:?\s*(.+)", re.IGNORECASE)

SYSTEM_PROMPT = (
    "Classify the user's request for a voice assistant. Reply with a JSON object with keys "
    "intent (one of timer, notes, weather, search, development, question, general), "
    "entities (object), confidence (0-1), requires_planning (bool) and response "
    "(a short spoken reply when no tool is needed, otherwise an empty string)."
)


def is_question(text: str) -> bool:
    lowered = text.lower().strip()
    return lowered.endswith("?") or any(lowered.startswith(word + " ") for word in _QUESTION_WORDS)


def extract_entities(text: str, intent: str) -> dict[str, Any]:
    entities: dict[str, Any] = {}
    duration = _DURATION_RE.search(text)
    if duration:
        entities["duration"] = duration.group(0)
    if intent == "weather":
        location = _PROPER_LOCATION_RE.search(text) or _LOCATION_RE.search(text)
        if location:
            entities["location"] = location.group(1).strip()
    if "note" in text.lower():
        note = _NOTE_RE.search(text)
        if note:
            entities["content"] = note.group(1).strip()
    return entities


class IntentClassifier(ABC):
    @abstractmethod
    async def classify(
        self,
        text: str,
        context: Sequence[ConversationTurn],
        config: NLUConfig,
    ) -> IntentResult:
        """Interpret one user utterance."""


class RuleBasedIntentClassifier(IntentClassifier):
    """Keyword rules; the offline backend and the HTTP classifier's fallback."""

    def __init__(self, keyword_confidence: float = 0.85, fallback_confidence: float = 0.6) -> None:
        self._keyword_confidence = keyword_confidence
        self._fallback_confidence = fallback_confidence

    async def classify(
        self,
        text: str,
        context: Sequence[ConversationTurn],
        config: NLUConfig,
    ) -> IntentResult:
        return self.classify_sync(text)

    def classify_sync(self, text: str) -> IntentResult:
        lowered = text.lower()
        intent = next(
            (name for name, keywords in _INTENT_KEYWORDS if any(word in lowered for word in keywords)),
            None,
        )
        confidence = self._keyword_confidence
        if intent is None:
            intent = "question" if is_question(text) else "general"
            confidence = self._fallback_confidence
        requires_planning = intent in PLANNING_INTENTS
        response = "" if requires_planning else f'I understand you said: "{text.strip()}". How can I help you with that?'
        return IntentResult(
            intent=intent,
            entities=extract_entities(text, intent),
            confidence=confidence,
            requires_planning=requires_planning,
            response=response,
        )


class HttpIntentClassifier(IntentClassifier):
    def __init__(self, client: OpenAIClient, fallback: IntentClassifier | None = None, history: int = 5) -> None:
        self._client = client
        self._fallback = fallback
        self._history = history
        self._logger = get_logger(__name__)

    async def classify(
        self,
        text: str,
        context: Sequence[ConversationTurn],
        config: NLUConfig,
    ) -> IntentResult:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        messages.extend(as_messages(list(context)[-self._history :]))
        if messages[-1]["content"] != text:
            messages.append({"role": "user", "content": text})
        try:
            data = await self._client.chat_json(config.model, messages, stage="nlu-processing")
            result = IntentResult.model_validate(data)
        except (AdapterError, ValidationError) as exc:
            if self._fallback is None:
                if isinstance(exc, AdapterError):
                    raise
                raise AdapterError(f"Malformed intent payload: {exc}", stage="nlu-processing") from exc
            self._logger.warning("nlu.fallback", error=str(exc))
            return await self._fallback.classify(text, context, config)
        if result.intent in PLANNING_INTENTS and not result.requires_planning and not result.response:
            result = result.model_copy(update={"requires_planning": True})
        return result


__all__ = [
    "IntentClassifier",
    "RuleBasedIntentClassifier",
    "HttpIntentClassifier",
    "PLANNING_INTENTS",
    "is_question",
    "extract_entities",
]
