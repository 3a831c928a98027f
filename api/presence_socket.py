import asyncio
import json
import logging
from typing import Annotated
from uuid import uuid4

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from core.config import Settings
from core.deps import get_socket_principal
from models.employee import EmployeePrincipal
from services.presence_broadcaster import PresenceBroadcaster
from services.presence_channel import WebSocketChannel
from services.presence_dispatch import SocketContext, dispatch
from services.presence_registry import PresenceRegistry

logger = logging.getLogger(__name__)

# Application-defined close codes
CLOSE_REPLACED = 4000
CLOSE_IDLE = 4008

router = APIRouter()


async def _heartbeat(channel: WebSocketChannel, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        if not channel.enqueue("ping", {}):
            return


@router.websocket("/ws")
async def presence_socket(
    websocket: WebSocket,
    principal: Annotated[EmployeePrincipal, Depends(get_socket_principal)],
):
    settings: Settings = websocket.app.state.settings
    registry: PresenceRegistry = websocket.app.state.registry
    broadcaster: PresenceBroadcaster = websocket.app.state.broadcaster

    await websocket.accept()

    connection_id = uuid4().hex
    employee = principal.summary()
    channel = WebSocketChannel(connection_id, websocket, max_queue=settings.presence_queue_size)
    sender = asyncio.create_task(channel.run_sender())

    replaced = await registry.register(connection_id, employee, principal.is_observer, channel)
    if replaced is not None:
        # One live socket per employee; the transport closes the old one
        logger.info("Replacing connection %s for %s", replaced.connection_id, employee.id)
        await replaced.channel.close(code=CLOSE_REPLACED, reason="Replaced by a newer connection")

    logger.info(
        "Presence connected: %s (%s) observer=%s",
        employee.name,
        employee.id,
        principal.is_observer,
    )
    channel.enqueue(
        "connection_success",
        {
            "message": f"Welcome {employee.name or employee.id}!",
            "user": principal.model_dump(),
            "connection_id": connection_id,
        },
    )
    if replaced is None:
        await broadcaster.announce_status(employee, online=True)

    ctx = SocketContext(
        connection_id=connection_id,
        principal=principal,
        channel=channel,
        broadcaster=broadcaster,
    )
    heartbeat = asyncio.create_task(_heartbeat(channel, settings.presence_heartbeat_seconds))

    reason = "client disconnected"
    close_code = 1000
    try:
        while True:
            try:
                frame = await asyncio.wait_for(
                    websocket.receive(), timeout=settings.presence_idle_timeout_seconds
                )
            except asyncio.TimeoutError:
                reason = "idle timeout"
                close_code = CLOSE_IDLE
                break

            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            raw = frame.get("text")
            if raw is None:
                ctx.error("Malformed message: binary frames are not supported")
                continue

            try:
                message = json.loads(raw)
            except ValueError:
                ctx.error("Malformed message: not JSON")
                continue

            await dispatch(ctx, message)
    except WebSocketDisconnect:
        pass
    finally:
        heartbeat.cancel()
        session = await registry.unregister(connection_id)
        logger.info("Presence disconnected: %s (%s) - %s", employee.name, employee.id, reason)
        # A replaced socket leaves quietly; its successor is still online
        if session is not None:
            await broadcaster.announce_status(employee, online=False, reason=reason)

        try:
            await channel.close(code=close_code, reason=reason)
        finally:
            sender.cancel()
            await asyncio.gather(heartbeat, sender, return_exceptions=True)
