from .attendance_audit import AttendanceAudit, AttendanceAuditAction
from .attendance_record import (
    AttendanceRead,
    AttendanceRecord,
    AttendanceState,
    CheckInRequest,
    CheckOutRequest,
)
from .employee import EmployeePrincipal, EmployeeSummary
