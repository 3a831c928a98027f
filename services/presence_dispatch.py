import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from core.errors import Forbidden, InvalidCoordinates
from models.attendance_record import Coordinate
from models.employee import EmployeePrincipal
from services.presence_broadcaster import ONLINE_USERS, PresenceBroadcaster
from services.presence_channel import WebSocketChannel

logger = logging.getLogger(__name__)


# --- Inbound payloads ---


class LocationUpdatePayload(BaseModel):
    latitude: Coordinate = Field(validation_alias="lat")
    longitude: Coordinate = Field(validation_alias="lon")
    accuracy: Optional[float] = None
    timestamp: Optional[str] = None

    model_config = {"populate_by_name": True}


class AttendanceEventPayload(BaseModel):
    event: str
    location: Optional[dict] = None
    details: Any = None


class AnnouncementPayload(BaseModel):
    message: str = Field(min_length=1, max_length=1000)


class NotificationPayload(BaseModel):
    target_user_id: str = Field(validation_alias="targetUserId")
    notification: dict

    model_config = {"populate_by_name": True}


@dataclass
class SocketContext:
    """Everything a handler may touch for one connected socket."""

    connection_id: str
    principal: EmployeePrincipal
    channel: WebSocketChannel
    broadcaster: PresenceBroadcaster

    def reply(self, event: str, payload: dict) -> None:
        self.channel.enqueue(event, payload)

    def error(self, message: str, **details) -> None:
        self.reply("error", {"message": message, **details})


Handler = Callable[[SocketContext, dict], Awaitable[None]]


def _require_observer(ctx: SocketContext) -> None:
    if not ctx.principal.is_observer:
        raise Forbidden("Observer privileges required")


async def handle_ping(ctx: SocketContext, data: dict) -> None:
    ctx.reply("pong", {})


async def handle_pong(ctx: SocketContext, data: dict) -> None:
    # Heartbeat reply; any inbound frame resets the idle timer
    return None


async def handle_location_update(ctx: SocketContext, data: dict) -> None:
    payload = LocationUpdatePayload.model_validate(data)
    await ctx.broadcaster.on_position_update(
        ctx.principal.summary(),
        payload.latitude,
        payload.longitude,
        accuracy=payload.accuracy,
        timestamp=payload.timestamp,
    )
    ctx.reply("location_update_ack", {"success": True})


async def handle_attendance_event(ctx: SocketContext, data: dict) -> None:
    payload = AttendanceEventPayload.model_validate(data)
    await ctx.broadcaster.on_client_attendance_event(
        ctx.principal.summary(),
        payload.event,
        location=payload.location,
        details=payload.details,
    )


async def handle_get_online_users(ctx: SocketContext, data: dict) -> None:
    users = await ctx.broadcaster.online_snapshot(ctx.principal, connection_id=ctx.connection_id)
    ctx.reply(
        ONLINE_USERS,
        {"users": [user.model_dump() for user in users], "count": len(users)},
    )


async def handle_broadcast_announcement(ctx: SocketContext, data: dict) -> None:
    _require_observer(ctx)
    payload = AnnouncementPayload.model_validate(data)
    await ctx.broadcaster.broadcast_announcement(payload.message, sender=ctx.principal.summary())


async def handle_send_notification(ctx: SocketContext, data: dict) -> None:
    _require_observer(ctx)
    payload = NotificationPayload.model_validate(data)
    delivered = await ctx.broadcaster.send_notification(payload.target_user_id, payload.notification)
    ctx.reply("notification_ack", {"target_user_id": payload.target_user_id, "delivered": delivered})


# Every inbound socket event and the one operation it triggers
EVENT_HANDLERS: dict[str, Handler] = {
    "ping": handle_ping,
    "pong": handle_pong,
    "location_update": handle_location_update,
    "attendance_event": handle_attendance_event,
    "get_online_users": handle_get_online_users,
    "broadcast_announcement": handle_broadcast_announcement,
    "send_notification": handle_send_notification,
}


async def dispatch(ctx: SocketContext, message: Any) -> None:
    """Route one inbound frame `{"event": ..., "data": {...}}` to its handler.

    Bad input is answered with an `error` frame to the sender only; the
    socket stays open.
    """
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        ctx.error("Malformed message: expected {\"event\": str, \"data\": object}")
        return

    event = message["event"]
    data = message.get("data") or {}
    handler = EVENT_HANDLERS.get(event)
    if handler is None:
        logger.debug("Unknown socket event %s from %s", event, ctx.connection_id)
        ctx.error(f"Unknown event: {event}")
        return
    if not isinstance(data, dict):
        ctx.error(f"Invalid payload for {event}")
        return

    try:
        await handler(ctx, data)
    except ValidationError as e:
        ctx.error(f"Invalid payload for {event}", details=e.errors(include_url=False, include_context=False))
    except InvalidCoordinates as e:
        ctx.error("Invalid location data", details=str(e))
    except Forbidden as e:
        ctx.error(str(e) or "Forbidden")
