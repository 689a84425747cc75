from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class IntentResult(BaseModel):
    intent: str = "general"
    entities: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    requires_planning: bool = False
    response: str = ""

    def is_low_confidence(self, threshold: float) -> bool:
        return self.confidence < threshold

    def to_payload(self, threshold: float) -> dict[str, Any]:
        payload = self.model_dump()
        payload["low_confidence"] = self.is_low_confidence(threshold)
        return payload


__all__ = ["IntentResult"]
