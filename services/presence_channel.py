import asyncio
import logging
from datetime import datetime, timezone

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from utils.timezone_helpers import format_utc_datetime

logger = logging.getLogger(__name__)


def stamp(payload: dict) -> dict:
    """Copy of `payload` with a UTC `timestamp`, unless it already has one."""
    stamped = dict(payload)
    stamped.setdefault("timestamp", format_utc_datetime(datetime.now(timezone.utc)))
    return stamped


class WebSocketChannel:
    """One outbound FIFO per socket, drained by a single sender task.

    Enqueueing never blocks the broadcaster. A full queue drops the event for
    this socket only, and a failed send ends this socket's sender only, so
    one slow or dead observer can't hold up delivery to the rest.
    """

    def __init__(self, connection_id: str, websocket: WebSocket, max_queue: int = 100):
        self.connection_id = connection_id
        self.websocket = websocket
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, event: str, payload: dict) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait({"event": event, "data": stamp(payload)})
            return True
        except asyncio.QueueFull:
            logger.warning("Dropping %s for %s: outbound queue full", event, self.connection_id)
            return False

    async def run_sender(self) -> None:
        try:
            while True:
                message = await self._queue.get()
                if message is None:
                    return
                await self.websocket.send_json(message)
        except Exception as e:
            logger.info("Sender for %s stopped: %s", self.connection_id, e)
        finally:
            self._closed = True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass
        if (
            self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        ):
            try:
                await self.websocket.close(code=code, reason=reason)
            except (RuntimeError, OSError):
                # Peer went away between the state check and the close frame
                pass
