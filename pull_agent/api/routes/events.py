"""
Live event stream over WebSocket.
"""

import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


@router.websocket("/ws")
async def event_stream(websocket: WebSocket) -> None:
    """
    Send a ``state`` message, then every event published on the bus.

    Slow clients lose events rather than holding up the publisher.
    """
    agent: Any = websocket.app.state.agent
    await websocket.accept()
    subscription = agent.event_bus.subscribe()
    try:
        await websocket.send_json({"type": "state", "data": agent.status_info()})
        while True:
            event = await subscription.get()
            await websocket.send_json(event.model_dump(mode="json"))
    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected")
    finally:
        subscription.close()
