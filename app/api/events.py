"""
Job Events WebSocket
Per-user push channel for job updates.
"""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/events")
async def job_events(websocket: WebSocket):
    """
    Stream {"event": "model3d:job", "job": {...}} messages for the caller's jobs.

    Identity comes only from the X-User-Id header set by the authentication
    layer, the same source as the HTTP routes. Connections without it are
    closed with 1008.
    """
    caller = (websocket.headers.get("x-user-id") or "").strip()
    if not caller:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    manager = websocket.app.state.connections
    await manager.connect(websocket, caller)
    try:
        while True:
            # Client messages are ignored; reading keeps the disconnect visible
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket, caller)
