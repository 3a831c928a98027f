import asyncio
import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Literal, Optional, Union

from pydantic import BaseModel, field_serializer
from sqlalchemy import and_, case, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlmodel import Session, select

from core.errors import InvalidCoordinates, StoreUnavailable
from models.attendance_audit import AttendanceAudit, AttendanceAuditAction
from models.attendance_record import AttendanceRead, AttendanceRecord, AttendanceState
from models.employee import EmployeeSummary
from services.geofence_service import GeofenceDecision, GeofenceEvaluator
from utils.timezone_helpers import ensure_timezone_aware, format_utc_datetime, local_date

logger = logging.getLogger(__name__)

NOTE_SEPARATOR = " | "

# Columns a check-in writes; an upsert only ever touches these
CHECK_IN_COLUMNS = (
    "check_in_time",
    "check_in_lat",
    "check_in_lng",
    "check_in_distance",
    "notes",
    "device_info",
    "updated_at",
)


class TransitionType(str, Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"


class RejectionCode(str, Enum):
    INVALID_COORDINATES = "invalid_coordinates"
    OUTSIDE_GEOFENCE = "outside_geofence"
    ALREADY_CHECKED_IN = "already_checked_in"
    ALREADY_CHECKED_OUT = "already_checked_out"
    NO_ACTIVE_CHECK_IN = "no_active_check_in"


class Rejection(BaseModel):
    """Expected business outcome. Terminal for the request, never retried."""

    accepted: Literal[False] = False
    code: RejectionCode
    message: str
    distance_meters: Optional[float] = None
    required_radius: Optional[float] = None
    existing_time: Optional[datetime] = None

    @field_serializer("existing_time")
    def serialize_existing_time(self, dt: Optional[datetime]) -> Optional[str]:
        return format_utc_datetime(dt)


class AttendanceEvent(BaseModel):
    transition: TransitionType
    employee: EmployeeSummary
    record: AttendanceRead
    distance_meters: float
    classification: str
    work_duration_hours: Optional[float] = None
    occurred_at: datetime

    @field_serializer("occurred_at")
    def serialize_occurred_at(self, dt: datetime) -> Optional[str]:
        return format_utc_datetime(dt)


class Accepted(BaseModel):
    accepted: Literal[True] = True
    transition: TransitionType
    record: AttendanceRead
    decision: GeofenceDecision
    work_duration_hours: Optional[float] = None
    event: AttendanceEvent


class AttendanceStatus(BaseModel):
    state: AttendanceState
    record: Optional[AttendanceRead] = None
    work_duration_hours: Optional[float] = None
    work_date: date


LedgerResult = Union[Accepted, Rejection]
TransitionSubscriber = Callable[[AttendanceEvent], Awaitable[None]]


def work_duration_hours(
    check_in_time: Optional[datetime],
    check_out_time: Optional[datetime],
    now: datetime,
) -> Optional[float]:
    if check_in_time is None:
        return None
    end = check_out_time or now
    seconds = (end - check_in_time).total_seconds()
    return round(max(seconds, 0.0) / 3600, 2)


def _snapshot(record: AttendanceRecord) -> dict:
    return {
        "check_in_time": format_utc_datetime(record.check_in_time),
        "check_out_time": format_utc_datetime(record.check_out_time),
        "check_in_distance": record.check_in_distance,
        "check_out_distance": record.check_out_distance,
        "notes": record.notes,
    }


def _upsert_insert(dialect_name: str):
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Attendance store does not support the {dialect_name} dialect")
    return insert


class AttendanceLedger:
    """Owns the per-employee, per-day attendance state machine.

    NOT_CHECKED_IN -> CHECKED_IN -> CHECKED_OUT, with CHECKED_OUT terminal for
    the office-local date. Uniqueness and ordering for one employee are left
    entirely to the store: check-in is a single conditional upsert and
    check-out a single guarded update, so concurrent requests are linearised by
    the database rather than by this process.

    Business rejections come back as `Rejection` values. Only store trouble
    raises (`StoreUnavailable`).
    """

    def __init__(
        self,
        engine: Engine,
        evaluator: GeofenceEvaluator,
        timezone_name: str = "UTC",
        store_timeout_seconds: float = 5.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.engine = engine
        self.evaluator = evaluator
        self.timezone_name = timezone_name
        self.store_timeout_seconds = store_timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._subscribers: list[TransitionSubscriber] = []

    # --- Events ---

    def subscribe(self, handler: TransitionSubscriber) -> None:
        self._subscribers.append(handler)

    async def _publish(self, event: AttendanceEvent) -> None:
        for handler in self._subscribers:
            try:
                await handler(event)
            except Exception:
                # The transition is already committed; a subscriber can't undo it
                logger.exception(
                    "Transition subscriber failed for %s %s",
                    event.employee.id,
                    event.transition.value,
                )

    # --- Clock / store plumbing ---

    def _now(self, now: Optional[datetime]) -> datetime:
        # Stored columns drop tzinfo on SQLite, so everything is kept in UTC
        return ensure_timezone_aware(now or self._clock()).astimezone(timezone.utc)

    def business_date(self, now: Optional[datetime] = None) -> date:
        """Office-local calendar date of the server clock."""
        return local_date(self._now(now), self.timezone_name)

    async def _run(self, fn, *args):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args), timeout=self.store_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            logger.error("Attendance store timed out after %.1fs", self.store_timeout_seconds)
            raise StoreUnavailable("Attendance store timed out") from exc
        except OperationalError as exc:
            logger.error("Attendance store unavailable: %s", exc.orig or exc)
            raise StoreUnavailable("Attendance store unavailable") from exc
        except DBAPIError as exc:
            if not exc.connection_invalidated:
                raise
            logger.error("Attendance store connection lost: %s", exc.orig or exc)
            raise StoreUnavailable("Attendance store connection lost") from exc

    # --- Check-in ---

    async def check_in(
        self,
        employee: EmployeeSummary,
        latitude: float,
        longitude: float,
        now: Optional[datetime] = None,
        note: Optional[str] = None,
        device_info: Optional[dict] = None,
    ) -> LedgerResult:
        try:
            decision = self.evaluator.evaluate(latitude, longitude)
        except InvalidCoordinates as exc:
            return Rejection(code=RejectionCode.INVALID_COORDINATES, message=str(exc))

        required_radius = self.evaluator.config.radius_meters
        if not decision.is_inside:
            return Rejection(
                code=RejectionCode.OUTSIDE_GEOFENCE,
                message=(
                    f"You are {decision.distance_meters}m away from the office. "
                    f"You must be within {required_radius:g}m to check in."
                ),
                distance_meters=decision.distance_meters,
                required_radius=required_radius,
            )

        at = self._now(now)
        work_date = self.business_date(at)
        outcome = await self._run(
            self._apply_check_in,
            employee.id,
            work_date,
            at,
            latitude,
            longitude,
            decision,
            note,
            device_info,
        )
        if isinstance(outcome, Rejection):
            logger.info("Check-in rejected for %s on %s: %s", employee.id, work_date, outcome.code.value)
            return outcome

        record = outcome
        event = AttendanceEvent(
            transition=TransitionType.CHECK_IN,
            employee=employee,
            record=record,
            distance_meters=decision.distance_meters,
            classification=decision.classification.value,
            occurred_at=at,
        )
        logger.info("Checked in %s on %s at %.2fm", employee.id, work_date, decision.distance_meters)
        await self._publish(event)

        return Accepted(
            transition=TransitionType.CHECK_IN,
            record=record,
            decision=decision,
            work_duration_hours=work_duration_hours(record.check_in_time, None, at),
            event=event,
        )

    def _apply_check_in(
        self,
        employee_id: str,
        work_date: date,
        at: datetime,
        latitude: float,
        longitude: float,
        decision: GeofenceDecision,
        note: Optional[str],
        device_info: Optional[dict],
    ) -> Union[AttendanceRead, Rejection]:
        insert = _upsert_insert(self.engine.dialect.name)

        stmt = insert(AttendanceRecord).values(
            employee_id=employee_id,
            work_date=work_date,
            check_in_time=at,
            check_in_lat=latitude,
            check_in_lng=longitude,
            check_in_distance=decision.distance_meters,
            notes=note or None,
            device_info=device_info,
            created_at=at,
            updated_at=at,
        )
        # Only a row that was never checked in may be filled; anything else
        # returns nothing and falls through to the rejection below.
        stmt = stmt.on_conflict_do_update(
            index_elements=["employee_id", "work_date"],
            set_={column: getattr(stmt.excluded, column) for column in CHECK_IN_COLUMNS},
            where=and_(
                AttendanceRecord.check_in_time.is_(None),
                AttendanceRecord.check_out_time.is_(None),
            ),
        ).returning(AttendanceRecord)

        with Session(self.engine, expire_on_commit=False) as session:
            written = session.scalars(
                stmt, execution_options={"populate_existing": True}
            ).first()

            if written is None:
                session.rollback()
                existing = session.exec(
                    select(AttendanceRecord)
                    .where(AttendanceRecord.employee_id == employee_id)
                    .where(AttendanceRecord.work_date == work_date)
                ).first()
                existing_time = ensure_timezone_aware(existing.check_in_time) if existing else None
                return Rejection(
                    code=RejectionCode.ALREADY_CHECKED_IN,
                    message="You are already checked in for today",
                    existing_time=existing_time,
                )

            session.add(
                AttendanceAudit(
                    record_id=written.id,
                    employee_id=employee_id,
                    action=AttendanceAuditAction.CHECK_IN,
                    old_values=None,
                    new_values=_snapshot(written),
                    performed_by=employee_id,
                    performed_at=at,
                )
            )
            session.commit()
            return AttendanceRead.model_validate(written)

    # --- Check-out ---

    async def check_out(
        self,
        employee: EmployeeSummary,
        latitude: float,
        longitude: float,
        now: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> LedgerResult:
        try:
            # Evaluated for the record only; leaving the area doesn't block check-out
            decision = self.evaluator.evaluate(latitude, longitude)
        except InvalidCoordinates as exc:
            return Rejection(code=RejectionCode.INVALID_COORDINATES, message=str(exc))

        at = self._now(now)
        work_date = self.business_date(at)
        outcome = await self._run(
            self._apply_check_out,
            employee.id,
            work_date,
            at,
            latitude,
            longitude,
            decision,
            note,
        )
        if isinstance(outcome, Rejection):
            logger.info("Check-out rejected for %s on %s: %s", employee.id, work_date, outcome.code.value)
            return outcome

        record = outcome
        hours = work_duration_hours(record.check_in_time, record.check_out_time, at)
        event = AttendanceEvent(
            transition=TransitionType.CHECK_OUT,
            employee=employee,
            record=record,
            distance_meters=decision.distance_meters,
            classification=decision.classification.value,
            work_duration_hours=hours,
            occurred_at=record.check_out_time,
        )
        logger.info("Checked out %s on %s after %.2fh", employee.id, work_date, hours or 0.0)
        await self._publish(event)

        return Accepted(
            transition=TransitionType.CHECK_OUT,
            record=record,
            decision=decision,
            work_duration_hours=hours,
            event=event,
        )

    def _apply_check_out(
        self,
        employee_id: str,
        work_date: date,
        at: datetime,
        latitude: float,
        longitude: float,
        decision: GeofenceDecision,
        note: Optional[str],
    ) -> Union[AttendanceRead, Rejection]:
        with Session(self.engine, expire_on_commit=False) as session:
            record = session.exec(
                select(AttendanceRecord)
                .where(AttendanceRecord.employee_id == employee_id)
                .where(AttendanceRecord.work_date == work_date)
            ).first()

            if record is None or record.check_in_time is None:
                return Rejection(
                    code=RejectionCode.NO_ACTIVE_CHECK_IN,
                    message="You must check in first before checking out",
                )
            if record.check_out_time is not None:
                return Rejection(
                    code=RejectionCode.ALREADY_CHECKED_OUT,
                    message="You have already checked out for today",
                    existing_time=ensure_timezone_aware(record.check_out_time),
                )

            before = _snapshot(record)
            # Check-in is immutable once set, so clamping against it is safe
            check_out_at = max(at, ensure_timezone_aware(record.check_in_time))

            values = {
                "check_out_time": check_out_at,
                "check_out_lat": latitude,
                "check_out_lng": longitude,
                "check_out_distance": decision.distance_meters,
                "updated_at": at,
            }
            if note:
                notes = AttendanceRecord.notes
                values["notes"] = case(
                    (and_(notes.is_not(None), notes != ""), notes + NOTE_SEPARATOR + note),
                    else_=note,
                )

            result = session.execute(
                update(AttendanceRecord)
                .where(AttendanceRecord.id == record.id)
                .where(AttendanceRecord.check_in_time.is_not(None))
                .where(AttendanceRecord.check_out_time.is_(None))
                .values(**values)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                # Lost the race to a concurrent check-out
                session.rollback()
                session.refresh(record)
                return Rejection(
                    code=RejectionCode.ALREADY_CHECKED_OUT,
                    message="You have already checked out for today",
                    existing_time=ensure_timezone_aware(record.check_out_time),
                )

            session.refresh(record)
            session.add(
                AttendanceAudit(
                    record_id=record.id,
                    employee_id=employee_id,
                    action=AttendanceAuditAction.CHECK_OUT,
                    old_values=before,
                    new_values=_snapshot(record),
                    performed_by=employee_id,
                    performed_at=at,
                )
            )
            session.commit()
            return AttendanceRead.model_validate(record)

    # --- Status ---

    async def status(
        self,
        employee_id: str,
        on_date: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> AttendanceStatus:
        at = self._now(now)
        work_date = on_date or self.business_date(at)
        record = await self._run(self._load, employee_id, work_date)

        if record is None:
            return AttendanceStatus(state=AttendanceState.NOT_CHECKED_IN, work_date=work_date)

        return AttendanceStatus(
            state=record.state,
            record=record,
            work_duration_hours=work_duration_hours(record.check_in_time, record.check_out_time, at),
            work_date=work_date,
        )

    def _load(self, employee_id: str, work_date: date) -> Optional[AttendanceRead]:
        with Session(self.engine) as session:
            record = session.exec(
                select(AttendanceRecord)
                .where(AttendanceRecord.employee_id == employee_id)
                .where(AttendanceRecord.work_date == work_date)
            ).first()
            return AttendanceRead.model_validate(record) if record else None

