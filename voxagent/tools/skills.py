from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import httpx
from pydantic import BaseModel, Field

from voxagent.orchestrator.errors import ToolError
from voxagent.telemetry.logging import get_logger
from voxagent.tools.registry import ToolContext, ToolRegistry, ToolSpec

LOGGER = get_logger(__name__)

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"

WEATHER_CODES = {
    0: "clear sky",
    1: "mainly clear",
    2: "partly cloudy",
    3: "overcast",
    45: "fog",
    48: "rime fog",
    51: "light drizzle",
    53: "drizzle",
    55: "dense drizzle",
    61: "light rain",
    63: "rain",
    65: "heavy rain",
    71: "light snow",
    73: "snow",
    75: "heavy snow",
    80: "rain showers",
    81: "rain showers",
    82: "violent rain showers",
    95: "thunderstorm",
}


@dataclass(slots=True)
class Timer:
    id: str
    name: str
    duration_s: int
    expires_at: datetime

    def to_dict(self, now: datetime) -> dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat()
        data["remaining_s"] = max(0, int((self.expires_at - now).total_seconds()))
        return data


@dataclass(slots=True)
class Note:
    id: str
    title: str
    content: str
    created_at: datetime
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass(slots=True)
class SkillState:
    """In-process timers and notes shared by the built-in skills."""

    timers: dict[str, Timer] = field(default_factory=dict)
    notes: list[Note] = field(default_factory=list)


class CreateTimerArgs(BaseModel):
    name: str = Field(default="Timer", max_length=120)
    duration_s: int = Field(default=300, ge=1, le=86_400)


class EmptyArgs(BaseModel):
    """Placeholder for tools that do not accept input."""


class CreateNoteArgs(BaseModel):
    title: str = Field(default="New Note", max_length=200)
    content: str = Field(default="", max_length=4000)
    tags: list[str] = Field(default_factory=list)


class ListNotesArgs(BaseModel):
    limit: int = Field(default=10, ge=1, le=100)


class WeatherArgs(BaseModel):
    location: str = Field(default="current", max_length=120)


class ComputationArgs(BaseModel):
    query: str = Field(..., max_length=2000)
    intent: str = "general"


def _describe_duration(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds} seconds"
    minutes = round(seconds / 60)
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


def _state(ctx: ToolContext) -> SkillState:
    state = ctx.extras.get("skills")
    if not isinstance(state, SkillState):
        raise ToolError("Skill state is not configured")
    return state


def create_timer(args: CreateTimerArgs, ctx: ToolContext) -> dict[str, Any]:
    now = ctx.clock.now()
    timer = Timer(
        id=uuid4().hex[:8],
        name=args.name,
        duration_s=args.duration_s,
        expires_at=now + timedelta(seconds=args.duration_s),
    )
    _state(ctx).timers[timer.id] = timer
    LOGGER.info("skills.timer.created", timer_id=timer.id, duration_s=timer.duration_s)
    return {
        "timer": timer.to_dict(now),
        "message": f'Created timer "{timer.name}" for {_describe_duration(timer.duration_s)}',
    }


def list_timers(_args: EmptyArgs, ctx: ToolContext) -> dict[str, Any]:
    now = ctx.clock.now()
    active = [timer.to_dict(now) for timer in _state(ctx).timers.values() if timer.expires_at > now]
    if not active:
        message = "You have no active timers"
    elif len(active) == 1:
        message = f'You have one active timer, "{active[0]["name"]}"'
    else:
        message = f"You have {len(active)} active timers"
    return {"timers": active, "message": message}


def create_note(args: CreateNoteArgs, ctx: ToolContext) -> dict[str, Any]:
    note = Note(
        id=uuid4().hex[:8],
        title=args.title,
        content=args.content,
        created_at=ctx.clock.now(),
        tags=list(args.tags),
    )
    _state(ctx).notes.append(note)
    LOGGER.info("skills.note.created", note_id=note.id)
    return {"note": note.to_dict(), "message": f'Created note "{note.title}"'}


def list_notes(args: ListNotesArgs, ctx: ToolContext) -> dict[str, Any]:
    notes = [note.to_dict() for note in reversed(_state(ctx).notes[-args.limit :])]
    message = f"You have {len(notes)} notes" if notes else "You have no notes yet"
    return {"notes": notes, "message": message}


async def get_weather(args: WeatherArgs, ctx: ToolContext) -> dict[str, Any]:
    if args.location.strip().lower() in {"", "current", "here"}:
        raise ToolError("A location is required for the weather")
    if ctx.http is None:
        raise ToolError("No HTTP client configured for weather lookups")
    try:
        geo = await ctx.http.get(GEOCODING_URL, params={"name": args.location, "count": 1})
        geo.raise_for_status()
        places = geo.json().get("results") or []
        if not places:
            raise ToolError(f"Unknown location '{args.location}'")
        place = places[0]
        forecast = await ctx.http.get(
            FORECAST_URL,
            params={
                "latitude": place["latitude"],
                "longitude": place["longitude"],
                "current": "temperature_2m,weather_code",
            },
        )
        forecast.raise_for_status()
        current = forecast.json()["current"]
    except httpx.HTTPError as exc:
        raise ToolError(f"Weather lookup failed: {exc}") from exc
    except (KeyError, ValueError) as exc:
        raise ToolError(f"Malformed weather response: {exc}") from exc
    temperature = round(float(current["temperature_2m"]))
    description = WEATHER_CODES.get(int(current.get("weather_code", -1)), "unknown conditions")
    name = place.get("name", args.location)
    return {
        "weather": {"location": name, "temperature_c": temperature, "description": description},
        "message": f"Weather for {name}: {description}, {temperature}°C",
    }


def computation(args: ComputationArgs, _ctx: ToolContext) -> dict[str, Any]:
    return {
        "response": f"I processed your request: {args.query}",
        "intent": args.intent,
        "message": f"I processed your request: {args.query}",
    }


def register_builtin_skills(registry: ToolRegistry) -> None:
    registry.register(
        ToolSpec(
            name="create_timer",
            request_model=CreateTimerArgs,
            handler=create_timer,
            description="Create a timer with a name and a duration in seconds",
        )
    )
    registry.register(
        ToolSpec(
            name="list_timers",
            request_model=EmptyArgs,
            handler=list_timers,
            description="List active timers",
        )
    )
    registry.register(
        ToolSpec(
            name="create_note",
            request_model=CreateNoteArgs,
            handler=create_note,
            description="Create a note with a title and optional content",
        )
    )
    registry.register(
        ToolSpec(
            name="list_notes",
            request_model=ListNotesArgs,
            handler=list_notes,
            description="List recent notes",
        )
    )
    registry.register(
        ToolSpec(
            name="get_weather",
            request_model=WeatherArgs,
            handler=get_weather,
            timeout_s=10.0,
            description="Current weather for a named location",
        )
    )
    registry.register(
        ToolSpec(
            name="computation",
            request_model=ComputationArgs,
            handler=computation,
            description="Answer a general request without external tools",
        )
    )


__all__ = [
    "SkillState",
    "Timer",
    "Note",
    "register_builtin_skills",
    "CreateTimerArgs",
    "CreateNoteArgs",
    "ListNotesArgs",
    "WeatherArgs",
    "ComputationArgs",
    "EmptyArgs",
]
