from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field as PydanticField, StrictFloat, StrictInt, field_serializer, field_validator
from sqlalchemy import JSON, Column, DateTime, Text, UniqueConstraint
from sqlmodel import Field, Index, SQLModel

from utils.timezone_helpers import ensure_timezone_aware, format_utc_datetime


# JSON numbers only; lax float parsing would turn true into 1.0
Coordinate = Union[StrictFloat, StrictInt]


# Defines the Structure of Data for a Check-in Call
class CheckInRequest(BaseModel):
    latitude: Coordinate
    longitude: Coordinate
    notes: Optional[str] = PydanticField(default=None, max_length=500)
    device_info: Optional[dict[str, Any]] = None


# Defines the Structure of Data for a Check-out Call
class CheckOutRequest(BaseModel):
    latitude: Coordinate
    longitude: Coordinate
    notes: Optional[str] = PydanticField(default=None, max_length=500)


class AttendanceState(str, Enum):
    NOT_CHECKED_IN = "not_checked_in"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Defines a Table "attendance": one row per employee per office-local day
class AttendanceRecord(SQLModel, table=True):
    __tablename__ = "attendance"

    __table_args__ = (
        # The store is the only arbiter of one row per (employee, day)
        UniqueConstraint("employee_id", "work_date", name="uq_attendance_employee_date"),
        Index("ix_attendance_work_date", "work_date"),
        Index("ix_attendance_check_in_time", "check_in_time"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    employee_id: str = Field(index=True)
    work_date: date

    check_in_time: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    check_out_time: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    check_in_lat: Optional[float] = None
    check_in_lng: Optional[float] = None
    check_in_distance: Optional[float] = None
    check_out_lat: Optional[float] = None
    check_out_lng: Optional[float] = None
    check_out_distance: Optional[float] = None

    notes: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    device_info: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))

    created_at: datetime = Field(
        default_factory=_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


# What callers and sockets see of a record
class AttendanceRead(SQLModel):
    id: int
    employee_id: str
    work_date: date
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    check_in_lat: Optional[float] = None
    check_in_lng: Optional[float] = None
    check_in_distance: Optional[float] = None
    check_out_lat: Optional[float] = None
    check_out_lng: Optional[float] = None
    check_out_distance: Optional[float] = None
    notes: Optional[str] = None
    device_info: Optional[dict] = None

    @field_validator("check_in_time", "check_out_time")
    @classmethod
    def assume_utc(cls, dt: Optional[datetime]) -> Optional[datetime]:
        return ensure_timezone_aware(dt)

    @property
    def state(self) -> AttendanceState:
        if self.check_in_time is None:
            return AttendanceState.NOT_CHECKED_IN
        if self.check_out_time is None:
            return AttendanceState.CHECKED_IN
        return AttendanceState.CHECKED_OUT

    @field_serializer("check_in_time", "check_out_time")
    def serialize_timestamps(self, dt: Optional[datetime]) -> Optional[str]:
        """Ensure timestamps are formatted as UTC with Z suffix"""
        return format_utc_datetime(dt)
