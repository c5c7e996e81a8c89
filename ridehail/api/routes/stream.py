"""
Ride stream (WebSocket)
=======================

WS /ws

Client -> server
  {"type": "subscribe",   "rideId": "..."}   ack: {"type": "subscribed", "rideId": ...}
  {"type": "unsubscribe", "rideId": "..."}   ack: {"type": "unsubscribed", "rideId": ...}

Server -> client
  {"type": "rideUpdate",     "data": <ride>}
  {"type": "driverPosition", "data": {rideId, driver: {id, location, bearing},
                                      status, phase, distanceRemaining, progress}}

A malformed message gets ``{"type": "error"}`` and the socket stays open.
All subscriptions of one socket share a single queue drained by a single
writer, so per-ride ordering is preserved end to end.
"""

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ridehail.api.schemas import RideResponse, StreamMessage
from ridehail.domain.errors import RideNotFound
from ridehail.workers.dispatcher import Dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stream"])


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        message = await outbox.get()
        await websocket.send_json(message)


def _error(message: str) -> dict:
    return StreamMessage(type="error", message=message).to_wire()


@router.websocket("/ws")
async def ride_stream(websocket: WebSocket):
    dispatcher: Dispatcher = websocket.app.state.dispatcher
    await websocket.accept()

    outbox: asyncio.Queue = asyncio.Queue()
    subscriptions: set[str] = set()
    writer = asyncio.create_task(_pump(websocket, outbox))
    logger.info("Stream client connected")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
                kind = message["type"]
                ride_id = message.get("rideId")
            except (ValueError, KeyError, TypeError, AttributeError):
                outbox.put_nowait(_error("Malformed message"))
                continue
            if kind in ("subscribe", "unsubscribe") and not isinstance(ride_id, str):
                outbox.put_nowait(_error("rideId must be a string"))
                continue

            if kind == "subscribe":
                try:
                    ride = dispatcher.get_ride(ride_id)
                except RideNotFound:
                    outbox.put_nowait(_error(f"Unknown ride {ride_id}"))
                    continue
                if ride_id not in subscriptions:
                    subscriptions.add(ride_id)
                    outbox.put_nowait(StreamMessage(type="subscribed", ride_id=ride_id).to_wire())
                    # current snapshot first, live updates after
                    outbox.put_nowait(
                        {"type": "rideUpdate", "data": RideResponse.from_ride(ride).to_wire()}
                    )
                    dispatcher.hub.subscribe(ride_id, outbox)
            elif kind == "unsubscribe":
                if ride_id in subscriptions:
                    subscriptions.discard(ride_id)
                    dispatcher.hub.unsubscribe(ride_id, outbox)
                outbox.put_nowait(StreamMessage(type="unsubscribed", ride_id=ride_id).to_wire())
            else:
                outbox.put_nowait(_error(f"Unknown message type {kind!r}"))
    except WebSocketDisconnect:
        logger.info("Stream client disconnected")
    finally:
        for ride_id in subscriptions:
            dispatcher.hub.unsubscribe(ride_id, outbox)
        writer.cancel()
