"""
WebSocket event feed for VodPipe
"""

import asyncio
import json
import logging
from typing import List

from fastapi import WebSocket, WebSocketDisconnect

from ..models import EventMessage

logger = logging.getLogger(__name__)

# Global WebSocket connections
websocket_connections: List[WebSocket] = []


async def broadcast_event(message: EventMessage) -> None:
    """Event sink: send a pipeline event to all WebSocket clients."""
    payload = {"type": "event", **message.model_dump(mode="json")}

    disconnected = []
    for ws in websocket_connections[:]:  # Iterate over a copy
        try:
            await ws.send_json(payload)
        except Exception:
            disconnected.append(ws)

    for ws in disconnected:
        if ws in websocket_connections:
            websocket_connections.remove(ws)


async def websocket_events_handler(websocket: WebSocket) -> None:
    """WebSocket endpoint handler streaming pipeline events."""
    await websocket.accept()
    websocket_connections.append(websocket)

    logger.info(f"WebSocket client connected. Total connections: {len(websocket_connections)}")

    try:
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=30.0)

                try:
                    message = json.loads(data)
                    if message.get("type") == "ping":
                        await websocket.send_json({"type": "pong"})
                except (json.JSONDecodeError, AttributeError):
                    pass

            except asyncio.TimeoutError:
                # Keep idle connections alive
                try:
                    await websocket.send_json({"type": "ping"})
                except RuntimeError:
                    break

    except WebSocketDisconnect:
        pass
    finally:
        if websocket in websocket_connections:
            websocket_connections.remove(websocket)
        logger.info(f"WebSocket client disconnected. Total connections: {len(websocket_connections)}")
