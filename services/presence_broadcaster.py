import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from core.errors import Forbidden
from models.employee import EmployeePrincipal, EmployeeSummary
from services.attendance_ledger import AttendanceEvent, TransitionType
from services.geofence_service import GeofenceEvaluator
from services.presence_registry import PresenceChannel, PresenceRegistry
from utils.timezone_helpers import format_utc_datetime

logger = logging.getLogger(__name__)

# Outbound socket event names
ATTENDANCE_NOTIFICATION = "attendance_notification"
ATTENDANCE_UPDATE = "attendance_update"
ATTENDANCE_EVENT = "attendance_event"
STAFF_LOCATION_UPDATE = "staff_location_update"
USER_STATUS = "user_status"
ONLINE_USERS = "online_users"
ANNOUNCEMENT = "announcement"
SYSTEM_ALERT = "system_alert"
NOTIFICATION = "notification"


class PresenceBroadcaster:
    """Fans attendance transitions and live positions out to the right sockets.

    Best effort and at most once: nothing is persisted, retried or
    acknowledged. An observer that was offline re-reads state over HTTP.
    """

    def __init__(self, registry: PresenceRegistry, evaluator: GeofenceEvaluator):
        self.registry = registry
        self.evaluator = evaluator

    @staticmethod
    def _deliver(channels: Iterable[PresenceChannel], event: str, payload: dict) -> int:
        delivered = 0
        for channel in channels:
            try:
                if channel.enqueue(event, payload):
                    delivered += 1
            except Exception:
                logger.exception("Failed to queue %s for %s", event, channel.connection_id)
        return delivered

    async def on_attendance_transition(self, event: AttendanceEvent) -> int:
        checked_in = event.transition == TransitionType.CHECK_IN
        own_channels = await self.registry.connections_for(event.employee.id)
        self._deliver(
            own_channels,
            ATTENDANCE_NOTIFICATION,
            {
                "message": "Check-in successful!" if checked_in else "Check-out successful!",
                "type": "success",
                "event": event.transition.value,
                "work_duration_hours": event.work_duration_hours,
            },
        )

        observers = await self.registry.observer_channels()
        return self._deliver(
            observers,
            ATTENDANCE_UPDATE,
            {
                "type": "attendance_change",
                "event": event.transition.value,
                "user": event.employee.model_dump(),
                "department": event.employee.department,
                "distance_meters": event.distance_meters,
                "classification": event.classification,
                "work_duration_hours": event.work_duration_hours,
                "record": event.record.model_dump(mode="json"),
                "timestamp": format_utc_datetime(event.occurred_at),
            },
        )

    async def on_position_update(
        self,
        employee: EmployeeSummary,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
        timestamp: Optional[datetime | str] = None,
    ) -> int:
        # Raises InvalidCoordinates; the socket reports it back to the sender only
        decision = self.evaluator.evaluate(latitude, longitude)

        if isinstance(timestamp, datetime):
            timestamp = format_utc_datetime(timestamp)

        # Never echo a position back to the employee who sent it
        observers = await self.registry.observer_channels(exclude_employee_id=employee.id)
        payload = {
            "user": employee.model_dump(),
            "location": {
                "latitude": latitude,
                "longitude": longitude,
                "accuracy": accuracy,
                "timestamp": timestamp,
            },
            "geofence": decision.model_dump(mode="json"),
        }
        if timestamp:
            payload["timestamp"] = timestamp
        return self._deliver(observers, STAFF_LOCATION_UPDATE, payload)

    async def on_client_attendance_event(
        self,
        employee: EmployeeSummary,
        event: str,
        location: Optional[dict] = None,
        details: Any = None,
    ) -> int:
        # Client-reported and informational only; it never touches the ledger
        observers = await self.registry.observer_channels(exclude_employee_id=employee.id)
        return self._deliver(
            observers,
            ATTENDANCE_EVENT,
            {"user": employee.model_dump(), "event": event, "location": location, "details": details},
        )

    async def broadcast_announcement(self, message: str, sender: Optional[EmployeeSummary] = None) -> int:
        channels = await self.registry.all_channels()
        payload = {"message": message}
        if sender is not None:
            payload["from"] = sender.model_dump()
        return self._deliver(channels, ANNOUNCEMENT, payload)

    async def send_system_alert(self, alert: dict) -> int:
        channels = await self.registry.all_channels()
        return self._deliver(channels, SYSTEM_ALERT, alert)

    async def send_notification(self, employee_id: str, notification: dict) -> bool:
        channels = await self.registry.connections_for(employee_id)
        return self._deliver(channels, NOTIFICATION, notification) > 0

    async def announce_status(
        self,
        employee: EmployeeSummary,
        online: bool,
        reason: Optional[str] = None,
    ) -> int:
        observers = await self.registry.observer_channels(exclude_employee_id=employee.id)
        payload = {
            "type": "user_online" if online else "user_offline",
            "user": employee.model_dump(),
        }
        if reason:
            payload["reason"] = reason
        return self._deliver(observers, USER_STATUS, payload)

    async def online_snapshot(
        self,
        caller: EmployeePrincipal,
        connection_id: Optional[str] = None,
    ) -> list[EmployeeSummary]:
        if connection_id is not None:
            # Socket callers must hold a live observer session of their own
            session = await self.registry.session_for(connection_id)
            allowed = (
                session is not None
                and session.is_observer
                and session.employee.id == caller.uid
            )
        else:
            # HTTP callers hold no socket; the verified principal carries the capability
            allowed = caller.is_observer
        if not allowed:
            raise Forbidden("Observer privileges required")
        return await self.registry.list_online()
