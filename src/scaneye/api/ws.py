"""WebSocket endpoint: state snapshot on connect, then live events and keepalive."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends
from starlette.websockets import WebSocket, WebSocketDisconnect

from scaneye.api.deps import get_event_bus, get_scheduler, get_settings
from scaneye.config import Settings
from scaneye.events.bus import EventBus, Subscription
from scaneye.scheduler import Scheduler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

HELLO_EVENT = "hello"
PING_EVENT = "ping"


def _message(event: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"event": event, "data": data, "timestamp": datetime.now(timezone.utc).isoformat()}


class WebSocketClient:
    """A connected observer and its event-bus subscription."""

    def __init__(self, ws: WebSocket, subscription: Subscription):
        self.ws = ws
        self.subscription = subscription

    async def send(self, message: dict[str, Any]) -> bool:
        """Send one message. Returns False if the socket is gone."""
        try:
            await self.ws.send_json(message)
            return True
        except Exception:
            return False


async def _forward_events(client: WebSocketClient, bus: EventBus) -> None:
    """Pump bus events to the socket until it breaks or the subscription closes."""
    async for event in client.subscription:
        if not await client.send(event.to_message()):
            break
    bus.unsubscribe(client.subscription)


async def _keepalive_loop(client: WebSocketClient, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        if not await client.send(_message(PING_EVENT, {})):
            return


@router.websocket("/ws")
async def ws_events(
    ws: WebSocket,
    scheduler: Scheduler = Depends(get_scheduler),
    bus: EventBus = Depends(get_event_bus),
    settings: Settings = Depends(get_settings),
):
    """Real-time event stream.

    Protocol:
    1. Client connects
    2. Server sends ``hello`` with the current config and latest devices
    3. Every published event follows as ``{event, data, timestamp}``
    4. Server sends ``ping`` every ``events.ping_interval_seconds``
    Client messages are read only to notice disconnects.
    """
    await ws.accept()

    # Subscribe before taking the snapshot so nothing falls in between.
    subscription = bus.subscribe(maxsize=settings.events.subscriber_queue_size)
    client = WebSocketClient(ws, subscription)
    logger.info("WebSocket client connected (%d subscribers)", bus.subscriber_count)

    try:
        config = await scheduler.get_config()
        snapshot = {
            "config": config.wire(),
            "devices": [device.wire() for device in scheduler.get_latest_results()],
            "scanInProgress": scheduler.scan_in_progress,
        }
        if not await client.send(_message(HELLO_EVENT, snapshot)):
            return

        sender = asyncio.create_task(_forward_events(client, bus))
        keepalive = asyncio.create_task(
            _keepalive_loop(client, settings.events.ping_interval_seconds)
        )
        try:
            while True:
                try:
                    await ws.receive_text()
                except WebSocketDisconnect:
                    break
        finally:
            sender.cancel()
            keepalive.cancel()
            await asyncio.gather(sender, keepalive, return_exceptions=True)
    finally:
        bus.unsubscribe(subscription)
        logger.info("WebSocket client disconnected (%d subscribers)", bus.subscriber_count)
