from __future__ import annotations

import json
from typing import Any

import httpx

from voxagent.orchestrator.errors import AdapterError
from voxagent.telemetry.logging import get_logger


class OpenAIClient:
    """Thin client for OpenAI-compatible chat, transcription and speech endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._logger = get_logger(__name__)
        self.name = "openai"

    async def chat_json(self, model: str, messages: list[dict[str, str]], *, stage: str) -> dict[str, Any]:
        payload = {
            "model": model,
            "messages": messages,
            "response_format": {"type": "json_object"},
            "temperature": 0.2,
        }
        self._logger.info("openai.chat", model=model, stage=stage, messages=len(messages))
        data = await self._post_json("/chat/completions", payload, stage=stage)
        try:
            content = data["choices"][0]["message"]["content"]
            return json.loads(content)
        except (KeyError, IndexError, TypeError, json.JSONDecodeError) as exc:
            raise AdapterError(f"Malformed chat completion: {exc}", stage=stage) from exc

    async def transcribe(self, wav: bytes, *, model: str, language: str, stage: str) -> dict[str, Any]:
        files = {"file": ("speech.wav", wav, "audio/wav")}
        form = {"model": model, "language": language, "response_format": "json"}
        try:
            resp = await self._client.post("/audio/transcriptions", data=form, files=files)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as exc:
            raise AdapterError(f"Transcription request failed: {exc}", stage=stage) from exc
        except ValueError as exc:
            raise AdapterError(f"Transcription response was not JSON: {exc}", stage=stage) from exc

    async def speech(self, text: str, *, model: str, voice: str, speed: float, stage: str) -> bytes:
        payload = {"model": model, "input": text, "voice": voice, "speed": speed, "response_format": "wav"}
        try:
            resp = await self._client.post("/audio/speech", json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise AdapterError(f"Speech request failed: {exc}", stage=stage) from exc
        return resp.content

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post_json(self, path: str, payload: dict[str, Any], *, stage: str) -> dict[str, Any]:
        try:
            resp = await self._client.post(path, json=payload)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as exc:
            raise AdapterError(f"Request to {path} failed: {exc}", stage=stage) from exc
        except ValueError as exc:
            raise AdapterError(f"Response from {path} was not JSON: {exc}", stage=stage) from exc


__all__ = ["OpenAIClient"]
