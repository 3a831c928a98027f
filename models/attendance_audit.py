from sqlmodel import SQLModel, Field
from sqlalchemy import JSON, Column, DateTime
from datetime import datetime, timezone
from typing import Optional
from enum import Enum

class AttendanceAuditAction(str, Enum):
    CHECK_IN = "CHECK_IN"
    CHECK_OUT = "CHECK_OUT"

class AttendanceAudit(SQLModel, table=True):
    __tablename__ = "attendance_audit"

    id: Optional[int] = Field(default=None, primary_key=True)

    # Row in the attendance table that changed
    record_id: int = Field(index=True, foreign_key="attendance.id")

    # Employee affected
    employee_id: str = Field(index=True)

    # Which transition was applied
    action: AttendanceAuditAction = Field(index=True)

    # Column values before and after the transition
    old_values: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    new_values: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))

    # Authenticated principal that triggered it
    performed_by: str

    performed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
