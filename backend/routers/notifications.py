"""
Notifications Router

- WS /api/notifications/ws?user_id=... - Live EmailStatusUpdate events for one user
"""

import asyncio
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from services.notification_hub import get_notification_hub, user_group

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.websocket("/ws")
async def notifications_socket(websocket: WebSocket, user_id: str = Query(..., min_length=1)):
    group = user_group(user_id)
    await websocket.accept()
    hub = get_notification_hub()

    async with hub.subscribe(group) as queue:
        receiver = asyncio.create_task(_drain_client(websocket))
        try:
            while not receiver.done():
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    break
                await websocket.send_json(getter.result().to_dict())
        except WebSocketDisconnect:
            pass
        finally:
            receiver.cancel()

    logger.info(f"Notification socket closed for {group}")


async def _drain_client(websocket: WebSocket):
    """Consume client frames until the socket closes."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return
