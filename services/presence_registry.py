import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol

from models.employee import EmployeeSummary


class PresenceChannel(Protocol):
    """Transport handle the broadcaster pushes events into."""

    connection_id: str

    def enqueue(self, event: str, payload: dict) -> bool: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


@dataclass
class PresenceSession:
    connection_id: str
    employee: EmployeeSummary
    is_observer: bool
    channel: PresenceChannel
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PresenceRegistry:
    """Which employees hold a live socket right now, and which sockets are observers.

    Process local. Every mutation and read goes through one asyncio.Lock so
    concurrent handshakes and disconnects can't lose registrations. The
    registry only records intent: when a second connection replaces an
    employee's first, the replaced session is handed back and closing it is
    the caller's job.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._sessions: dict[str, PresenceSession] = {}
        self._by_employee: dict[str, str] = {}

    async def register(
        self,
        connection_id: str,
        employee: EmployeeSummary,
        is_observer: bool,
        channel: PresenceChannel,
    ) -> Optional[PresenceSession]:
        async with self._lock:
            replaced = None
            previous_id = self._by_employee.get(employee.id)
            if previous_id is not None and previous_id != connection_id:
                replaced = self._sessions.pop(previous_id, None)

            self._sessions[connection_id] = PresenceSession(
                connection_id=connection_id,
                employee=employee,
                is_observer=is_observer,
                channel=channel,
            )
            self._by_employee[employee.id] = connection_id
            return replaced

    async def unregister(self, connection_id: str) -> Optional[PresenceSession]:
        async with self._lock:
            session = self._sessions.pop(connection_id, None)
            if session is None:
                return None
            # A replaced connection unregistering late must not evict its successor
            if self._by_employee.get(session.employee.id) == connection_id:
                del self._by_employee[session.employee.id]
            return session

    async def list_online(self) -> list[EmployeeSummary]:
        async with self._lock:
            return [
                self._sessions[connection_id].employee
                for connection_id in self._by_employee.values()
            ]

    async def connections_for(self, employee_id: str) -> list[PresenceChannel]:
        async with self._lock:
            connection_id = self._by_employee.get(employee_id)
            if connection_id is None:
                return []
            return [self._sessions[connection_id].channel]

    async def observer_channels(self, exclude_employee_id: Optional[str] = None) -> list[PresenceChannel]:
        async with self._lock:
            return [
                session.channel
                for session in self._sessions.values()
                if session.is_observer and session.employee.id != exclude_employee_id
            ]

    async def all_channels(self) -> list[PresenceChannel]:
        async with self._lock:
            return [session.channel for session in self._sessions.values()]

    async def session_for(self, connection_id: str) -> Optional[PresenceSession]:
        async with self._lock:
            return self._sessions.get(connection_id)

    async def is_online(self, employee_id: str) -> bool:
        async with self._lock:
            return employee_id in self._by_employee

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)
