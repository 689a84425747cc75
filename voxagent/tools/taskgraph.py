from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from voxagent.llm.plan_schema import Plan, PlanStep
from voxagent.orchestrator.errors import ToolError
from voxagent.telemetry.logging import get_logger
from voxagent.tools.registry import ToolContext, ToolRegistry

StepStatus = Literal["succeeded", "failed"]


@dataclass(slots=True)
class StepResult:
    step_id: str
    action: str
    status: StepStatus
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == "succeeded"

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "action": self.action,
            "status": self.status,
            "data": self.data,
            "error": self.error,
        }


@dataclass(slots=True)
class ToolRunResult:
    plan_id: str
    steps: list[StepResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[StepResult]:
        return [step for step in self.steps if step.success]

    @property
    def failed(self) -> list[StepResult]:
        return [step for step in self.steps if not step.success]

    def spoken_summary(self) -> str:
        """Sentence for TTS built from step messages, falling back to step counts."""
        total = len(self.steps)
        ok = self.succeeded
        messages = [str(step.data["message"]) for step in ok if step.data.get("message")]
        if total and len(ok) == total and messages:
            return ". ".join(messages)
        summary = f"I executed your plan with {total} steps. "
        if len(ok) == total:
            summary += "All steps completed successfully."
        elif ok:
            summary += f"{len(ok)} steps succeeded, {total - len(ok)} failed."
        else:
            summary += "Unfortunately, all steps failed."
        if messages:
            summary += " " + ". ".join(messages)
        return summary

    def to_dict(self) -> dict[str, Any]:
        return {"plan_id": self.plan_id, "steps": [step.to_dict() for step in self.steps]}


StepCallback = Callable[[StepResult], None]


class ToolExecutor(ABC):
    @abstractmethod
    async def execute(self, plan: Plan, on_step: StepCallback | None = None) -> ToolRunResult:
        """Run every step of `plan`; step failures are reported, not raised."""


class PlanToolExecutor(ToolExecutor):
    """Runs plan steps one at a time in dependency order against a tool registry.

    A step runs only after all of its dependencies have run; if any dependency
    failed, is unknown, or is part of a cycle, the step is recorded as failed
    without invoking its tool.
    """

    def __init__(self, registry: ToolRegistry, context_factory: Callable[[], ToolContext]) -> None:
        self._registry = registry
        self._context_factory = context_factory
        self._logger = get_logger(__name__)

    @property
    def tools(self) -> list[str]:
        return self._registry.available()

    async def execute(self, plan: Plan, on_step: StepCallback | None = None) -> ToolRunResult:
        run = ToolRunResult(plan_id=plan.id)
        done: dict[str, StepResult] = {}
        pending: list[PlanStep] = list(plan.steps)

        def record(result: StepResult) -> None:
            done[result.step_id] = result
            run.steps.append(result)
            if on_step is not None:
                on_step(result)

        while pending:
            ready = [step for step in pending if all(dep in done for dep in step.dependencies)]
            if not ready:
                for step in pending:
                    record(self._unmet(step, [dep for dep in step.dependencies if dep not in done]))
                break
            for step in ready:
                pending.remove(step)
                unmet = [dep for dep in step.dependencies if not done[dep].success]
                if unmet:
                    record(self._unmet(step, unmet))
                else:
                    record(await self._run_step(step))
        self._logger.info(
            "tool.plan.completed",
            plan_id=plan.id,
            succeeded=len(run.succeeded),
            failed=len(run.failed),
        )
        return run

    async def _run_step(self, step: PlanStep) -> StepResult:
        self._logger.info("tool.invoke", tool=step.action, step_id=step.id, payload=json.dumps(step.parameters, default=str))
        try:
            data = await self._registry.run(step.action, step.parameters, context=self._context_factory())
        except ToolError as exc:
            self._logger.warning("tool.failed", tool=step.action, step_id=step.id, error=str(exc))
            return StepResult(step_id=step.id, action=step.action, status="failed", error=str(exc))
        return StepResult(step_id=step.id, action=step.action, status="succeeded", data=data)

    def _unmet(self, step: PlanStep, deps: list[str]) -> StepResult:
        self._logger.warning("tool.dependencies_unmet", step_id=step.id, dependencies=deps)
        return StepResult(
            step_id=step.id,
            action=step.action,
            status="failed",
            error=f"Dependencies not met for step: {step.id}",
        )


__all__ = ["ToolExecutor", "PlanToolExecutor", "ToolRunResult", "StepResult"]
