"""
WebSocket stream of run progress.

Every event published through the runtime's ``BroadcastEventSink`` is sent
to each connected client as ``{type, data, timestamp}`` JSON. Each client
has its own bounded queue, so a slow client only loses its own messages.

Client messages:
    - {"type": "ping"}  ->  {"type": "pong"}
"""

import asyncio
import json
import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect

from ..monitoring.metrics import get_metrics_collector
from ..services.events import ArenaEvent, BroadcastEventSink

router = APIRouter(tags=["websocket"])
logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Tracks WebSocket clients of one broadcaster.

    Usage:
        manager = ConnectionManager(broadcaster)
        await manager.serve(websocket)
    """

    MAX_CONNECTIONS = 200

    def __init__(self, broadcaster: BroadcastEventSink):
        self.broadcaster = broadcaster
        self._count = 0

    @property
    def connection_count(self) -> int:
        return self._count

    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        if self._count >= self.MAX_CONNECTIONS:
            logger.warning(f"WebSocket connection limit reached ({self.MAX_CONNECTIONS})")
            await websocket.send_json({"type": "error", "data": {"message": "Too many connections"}})
            await websocket.close(code=1013, reason="Connection limit exceeded")
            return

        queue = self.broadcaster.subscribe()
        self._count += 1
        get_metrics_collector().set_websocket_connections(self._count)
        logger.info(f"WebSocket client connected ({self._count} total)")

        sender = asyncio.create_task(self._forward(websocket, queue))
        try:
            while True:
                raw = await websocket.receive_text()
                await self._handle_message(websocket, raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            self.broadcaster.unsubscribe(queue)
            self._count -= 1
            get_metrics_collector().set_websocket_connections(self._count)
            logger.info(f"WebSocket client disconnected ({self._count} total)")

    async def _forward(self, websocket: WebSocket, queue: asyncio.Queue) -> None:
        while True:
            event: ArenaEvent = await queue.get()
            try:
                await websocket.send_json(event.to_message())
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"Connection dead during send: {e}")
                return

    async def _handle_message(self, websocket: WebSocket, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            await websocket.send_json({"type": "error", "data": {"message": "Invalid JSON"}})
            return

        if isinstance(message, dict) and message.get("type") == "ping":
            await websocket.send_json(
                {"type": "pong", "timestamp": datetime.now(UTC).isoformat()}
            )
        else:
            await websocket.send_json(
                {"type": "error", "data": {"message": "Unsupported message type"}}
            )


@router.websocket("/ws/runs")
async def runs_websocket(websocket: WebSocket):
    """
    Live run events.

    Server messages: run_started, cycle_started, trade, portfolio, analyze,
    eod_summary, run_complete, error
    """
    manager: ConnectionManager = websocket.app.state.connections
    await manager.serve(websocket)


@router.get("/ws/stats")
async def websocket_stats(request: Request):
    manager: ConnectionManager = request.app.state.connections
    return {
        "total_connections": manager.connection_count,
        "dropped_events": manager.broadcaster.dropped,
    }
