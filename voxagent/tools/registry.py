from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from voxagent.orchestrator.clock import CLOCK, Clock
from voxagent.orchestrator.errors import ToolError
from voxagent.telemetry.logging import get_logger


@dataclass(slots=True)
class ToolContext:
    http: httpx.AsyncClient | None = None
    clock: Clock = CLOCK
    extras: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolSpec:
    name: str
    request_model: type[BaseModel]
    handler: Callable[[BaseModel, ToolContext], Awaitable[dict[str, Any]] | dict[str, Any]]
    timeout_s: float = 8.0
    description: str = ""


class ToolRegistry:
    def __init__(self) -> None:
        self._specs: dict[str, ToolSpec] = {}
        self._logger = get_logger(__name__)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool '{spec.name}' already registered")
        self._specs[spec.name] = spec
        self._logger.info("tool.registry.registered", tool=spec.name)

    def available(self) -> list[str]:
        return sorted(self._specs.keys())

    def describe(self) -> list[dict[str, Any]]:
        return [
            {"name": spec.name, "description": spec.description, "parameters": spec.request_model.model_json_schema()}
            for spec in sorted(self._specs.values(), key=lambda item: item.name)
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    async def run(self, name: str, payload: dict[str, Any], *, context: ToolContext | None = None) -> dict[str, Any]:
        spec = self._specs.get(name)
        if spec is None:
            raise ToolError(f"Unknown tool '{name}'")
        ctx = context or ToolContext()
        try:
            args = spec.request_model.model_validate(payload)
        except ValidationError as exc:
            raise ToolError(f"Invalid payload for tool '{name}': {exc}") from exc

        async def _invoke() -> dict[str, Any]:
            try:
                result = spec.handler(args, ctx)
                if asyncio.iscoroutine(result):
                    result = await result
            except ToolError:
                raise
            except Exception as exc:
                raise ToolError(f"Tool '{name}' failed: {exc}") from exc
            if not isinstance(result, dict):
                raise ToolError(f"Tool '{name}' returned non-dict result")
            return result

        try:
            return await asyncio.wait_for(_invoke(), timeout=spec.timeout_s)
        except asyncio.TimeoutError as exc:
            raise ToolError(f"Tool '{name}' timed out after {spec.timeout_s}s") from exc


__all__ = ["ToolRegistry", "ToolSpec", "ToolContext", "ToolError"]
