from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from core.deps import get_current_employee, get_evaluator, get_ledger, get_settings
from core.config import Settings
from models.attendance_record import CheckInRequest, CheckOutRequest
from models.employee import EmployeePrincipal
from services.attendance_ledger import AttendanceLedger, Rejection, RejectionCode
from services.geofence_service import GeofenceEvaluator

# Defines API Endpoints
router = APIRouter()

# Rejections are expected outcomes; the status code only tells the client which kind
REJECTION_STATUS = {
    RejectionCode.INVALID_COORDINATES: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RejectionCode.OUTSIDE_GEOFENCE: status.HTTP_400_BAD_REQUEST,
    RejectionCode.ALREADY_CHECKED_IN: status.HTTP_409_CONFLICT,
    RejectionCode.ALREADY_CHECKED_OUT: status.HTTP_409_CONFLICT,
    RejectionCode.NO_ACTIVE_CHECK_IN: status.HTTP_409_CONFLICT,
}


def rejection_response(rejection: Rejection) -> JSONResponse:
    return JSONResponse(
        status_code=REJECTION_STATUS[rejection.code],
        content={
            "status": "rejected",
            "code": rejection.code.value,
            "message": rejection.message,
            "data": rejection.model_dump(mode="json", exclude={"accepted", "code", "message"}),
        },
    )


# Check In Endpoint
@router.post("/checkin")
async def check_in(
    data: CheckInRequest,
    ledger: Annotated[AttendanceLedger, Depends(get_ledger)],
    user: Annotated[EmployeePrincipal, Depends(get_current_employee)],
):
    # Identity always comes from the token; any employee id in the body is ignored
    result = await ledger.check_in(
        user.summary(),
        data.latitude,
        data.longitude,
        note=data.notes,
        device_info=data.device_info,
    )
    if isinstance(result, Rejection):
        return rejection_response(result)

    return {
        "status": "success",
        "message": f"Check-in successful! Welcome, {user.name or user.uid}",
        "data": {
            "record": result.record.model_dump(mode="json"),
            "location": {
                "distance_meters": result.decision.distance_meters,
                "classification": result.decision.classification.value,
            },
        },
    }


# Check Out Endpoint
@router.post("/checkout")
async def check_out(
    data: CheckOutRequest,
    ledger: Annotated[AttendanceLedger, Depends(get_ledger)],
    user: Annotated[EmployeePrincipal, Depends(get_current_employee)],
):
    result = await ledger.check_out(
        user.summary(),
        data.latitude,
        data.longitude,
        note=data.notes,
    )
    if isinstance(result, Rejection):
        return rejection_response(result)

    return {
        "status": "success",
        "message": f"Check-out successful! Have a great day, {user.name or user.uid}",
        "data": {
            "record": result.record.model_dump(mode="json"),
            "work_duration_hours": result.work_duration_hours,
            "location": {
                "distance_meters": result.decision.distance_meters,
                "classification": result.decision.classification.value,
            },
        },
    }


# Get Today's Attendance State
@router.get("/status")
async def get_status(
    ledger: Annotated[AttendanceLedger, Depends(get_ledger)],
    user: Annotated[EmployeePrincipal, Depends(get_current_employee)],
):
    current = await ledger.status(user.uid)
    return {
        "status": "success",
        "data": {
            "state": current.state.value,
            "record": current.record.model_dump(mode="json") if current.record else None,
            "work_duration_hours": current.work_duration_hours,
            "date": current.work_date.isoformat(),
        },
    }


# Where Am I Relative To The Office
@router.get("/location-status")
async def get_location_status(
    latitude: Annotated[float, Query()],
    longitude: Annotated[float, Query()],
    evaluator: Annotated[GeofenceEvaluator, Depends(get_evaluator)],
    user: Annotated[EmployeePrincipal, Depends(get_current_employee)],
):
    # InvalidCoordinates propagates to the 422 handler in main
    hint = evaluator.check_in_hint(latitude, longitude)
    eta = evaluator.eta(latitude, longitude)
    return {
        "status": "success",
        "data": {
            "classification": hint.classification.value,
            "distance_meters": hint.distance_meters,
            "can_check_in": hint.can_check_in,
            "message": hint.message,
            "severity": hint.severity,
            "eta": eta.model_dump(),
        },
    }


@router.get("/office")
async def get_office(
    settings: Annotated[Settings, Depends(get_settings)],
    user: Annotated[EmployeePrincipal, Depends(get_current_employee)],
):
    """
    Retrieve the geofence information (center, radius, buffer) for the office.
    """
    geofence = settings.geofence
    return {
        "status": "success",
        "data": {
            "center_lat": geofence.center_lat,
            "center_lng": geofence.center_lng,
            "radius_meters": geofence.radius_meters,
            "buffer_meters": geofence.buffer_meters,
            "address": geofence.address,
            "timezone": settings.timezone,
        },
    }
