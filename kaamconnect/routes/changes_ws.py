from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..db import session_scope
from ..errors import NotFound, Unauthenticated
from ..messaging import get_equipment
from ..realtime import change_feed
from ..schemas import ChangeEvent
from .auth import user_from_token

router = APIRouter()
logger = logging.getLogger("kaamconnect.realtime")

# URL segment -> table whose changes the channel carries
CHANNEL_TABLES = {
    "messages": "equipment_messages",
    "bookings": "equipment_bookings",
}


def _get_token_from_ws(websocket: WebSocket) -> Optional[str]:
    # Prefer Authorization header; browsers cannot set it on WebSockets, so ?token= is accepted too
    auth = websocket.headers.get("authorization")
    if auth:
        parts = auth.split(" ", 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
    return websocket.query_params.get("token")


def visible_to(event: ChangeEvent, user_id: int, owner_id: int) -> bool:
    """Owner sees every change; others only rows they are a party to."""
    if user_id == owner_id:
        return True
    row = event.new or event.old or {}
    if event.table == "equipment_messages":
        return user_id in (row.get("sender_id"), row.get("recipient_id"))
    return row.get("renter_id") == user_id


async def _pump(websocket: WebSocket, queue: "asyncio.Queue[ChangeEvent]") -> None:
    while True:
        event = await queue.get()
        await websocket.send_text(event.model_dump_json(exclude={"origin"}))


async def _drain(websocket: WebSocket) -> None:
    # Inbound frames carry nothing; reading them is how a client disconnect is noticed
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@router.websocket("/equipment/{equipment_id}/{channel}")
async def equipment_changes(websocket: WebSocket, equipment_id: int, channel: str) -> None:
    """
    Push channel of row changes for one equipment item.

    - Auth: JWT via Authorization: Bearer or ?token=
    - channel: "messages" or "bookings"
    - Server -> client: {"event_type","table","equipment_id","new","old"}

    The feed subscription is taken before the handshake completes, so nothing
    committed after connect is missed, and it is released on every exit path.
    """
    table = CHANNEL_TABLES.get(channel)
    token = _get_token_from_ws(websocket)
    if table is None or not token:
        await websocket.close(code=1008)  # Policy violation
        return

    with session_scope() as db:
        try:
            user = user_from_token(db, token)
            equipment = get_equipment(db, equipment_id)
        except (Unauthenticated, NotFound):
            await websocket.close(code=1008)
            return
        user_id, owner_id = user.id, equipment.owner_id

    queue: "asyncio.Queue[ChangeEvent]" = asyncio.Queue()

    def _enqueue(event: ChangeEvent) -> None:
        if visible_to(event, user_id, owner_id):
            queue.put_nowait(event)

    with change_feed.subscribe(table, equipment_id, _enqueue):
        await websocket.accept()
        logger.info(
            "realtime.ws.connected",
            extra={"equipment_id": equipment_id, "table": table, "user_id": user_id},
        )
        tasks = {asyncio.ensure_future(_pump(websocket, queue)), asyncio.ensure_future(_drain(websocket))}
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is not None:
                    logger.warning(
                        "realtime.ws.error",
                        extra={"equipment_id": equipment_id, "user_id": user_id, "error": str(exc)},
                    )
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(
                "realtime.ws.disconnected",
                extra={"equipment_id": equipment_id, "table": table, "user_id": user_id},
            )
