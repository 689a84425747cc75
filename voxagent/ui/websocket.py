from __future__ import annotations

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from voxagent.orchestrator.events import PipelineEvent
from voxagent.telemetry.logging import get_logger


class PipelineEventBridge:
    """Fans pipeline events out to every connected `/ws/events` client."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()
        self._router = APIRouter()
        self._router.add_api_websocket_route("/ws/events", self._websocket_handler)
        self._lock = asyncio.Lock()
        self._logger = get_logger(__name__)

    @property
    def router(self) -> APIRouter:
        return self._router

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def _websocket_handler(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.add(websocket)
        self._logger.info("ui.client.connected", count=self.client_count)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            async with self._lock:
                self._clients.discard(websocket)
            self._logger.info("ui.client.disconnected", count=self.client_count)

    async def publish(self, event: PipelineEvent) -> None:
        message = event.to_dict()
        async with self._lock:
            clients = list(self._clients)
        if not clients:
            return
        results = await asyncio.gather(*(client.send_json(message) for client in clients), return_exceptions=True)
        stale = [client for client, result in zip(clients, results) if isinstance(result, Exception)]
        if stale:
            async with self._lock:
                for client in stale:
                    self._clients.discard(client)
            self._logger.info("ui.client.dropped", count=len(stale))


__all__ = ["PipelineEventBridge"]
