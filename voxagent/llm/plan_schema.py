from __future__ import annotations

from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def _new_id() -> str:
    return uuid4().hex[:12]


class PlanStep(BaseModel):
    """Single action emitted by the planner."""

    id: str = Field(default_factory=_new_id)
    type: Literal["skill", "api", "search", "computation"] = "skill"
    action: str = Field(..., min_length=1, description="Registered tool name, e.g. get_weather")
    parameters: dict[str, Any] = Field(default_factory=dict, description="JSON arguments payload for the tool")
    dependencies: list[str] = Field(default_factory=list)


class Plan(BaseModel):
    """Ordered tool steps that answer one user request."""

    id: str = Field(default_factory=_new_id)
    steps: list[PlanStep] = Field(default_factory=list)
    summary: str = ""

    @field_validator("steps")
    @classmethod
    def unique_step_ids(cls, steps: list[PlanStep]) -> list[PlanStep]:
        seen: set[str] = set()
        for step in steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id '{step.id}'")
            seen.add(step.id)
        return steps

    def to_trace(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "summary": self.summary,
            "steps": [step.model_dump() for step in self.steps],
        }


__all__ = ["Plan", "PlanStep"]
