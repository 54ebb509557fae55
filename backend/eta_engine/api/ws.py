"""WebSocket endpoint for real-time position and ETA updates."""

import asyncio
import logging
import uuid

import pydantic
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from eta_engine.core.broadcaster import CLOSE_SENTINEL, parse_topic
from eta_engine.core.bus_tracker import eta_payload, position_payload
from eta_engine.schemas.ws import ClientMessage

logger = logging.getLogger(__name__)

router = APIRouter()

# Will be set by main.py on startup
broadcaster = None
tracker = None

# Close code sent to a client that fell too far behind
CLOSE_TRY_AGAIN_LATER = 1013


def _snapshot(topic: str) -> list[dict]:
    kind, ident = parse_topic(topic)
    if kind == "route":
        return [position_payload(p).model_dump() for p in tracker.get_positions(ident)]
    return [eta_payload(e).model_dump() for e in tracker.get_etas_for_stop(ident)]


def handle_message(client_id: str, raw: str | bytes) -> None:
    """Apply one client control message and queue the replies for the client.

    Replies go through the same queue as published events, so the pump is
    the only writer on the socket. The snapshot is queued in the same step
    as the subscription, ahead of any event published after it.
    """
    try:
        msg = ClientMessage.model_validate_json(raw)
    except pydantic.ValidationError as e:
        broadcaster.send(client_id, "error", None, {"detail": e.errors(include_url=False, include_context=False)})
        return

    if msg.action == "unsubscribe":
        broadcaster.unsubscribe(client_id, msg.topic)
        broadcaster.send(client_id, "ack", msg.topic, {"action": "unsubscribe"})
        return

    try:
        broadcaster.subscribe(client_id, msg.topic)
    except ValueError as e:
        broadcaster.send(client_id, "error", msg.topic, {"detail": str(e)})
        return
    if broadcaster.send(client_id, "ack", msg.topic, {"action": "subscribe"}):
        broadcaster.send(client_id, "snapshot", msg.topic, _snapshot(msg.topic))


async def _pump(websocket: WebSocket, queue: asyncio.Queue) -> None:
    """Forward queued events to the socket until cut off."""
    while True:
        data = await queue.get()
        if data is CLOSE_SENTINEL:
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER, reason="Subscriber too slow")
            return
        await websocket.send_bytes(data)


async def _read(websocket: WebSocket, client_id: str) -> None:
    while True:
        handle_message(client_id, await websocket.receive_text())


@router.websocket("/ws")
async def eta_ws(websocket: WebSocket) -> None:
    """Stream events for the route and stop topics the client subscribes to."""
    await websocket.accept()

    if broadcaster is None or tracker is None:
        await websocket.close(code=1011, reason="Service not ready")
        return

    client_id = uuid.uuid4().hex
    queue = broadcaster.register(client_id)
    tasks = [
        asyncio.create_task(_pump(websocket, queue)),
        asyncio.create_task(_read(websocket, client_id)),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error("WebSocket error for client %s: %r", client_id, exc)
    except asyncio.CancelledError:
        pass
    finally:
        for task in tasks:
            task.cancel()
        broadcaster.disconnect(client_id)
