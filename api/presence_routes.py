from typing import Annotated, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from core.deps import get_broadcaster, require_observer
from models.employee import EmployeePrincipal
from services.presence_broadcaster import PresenceBroadcaster

router = APIRouter()

# --- Pydantic Models for Request Payloads ---


class AnnouncementRequest(BaseModel):
    message: str = Field(min_length=1, max_length=1000)


class SystemAlertRequest(BaseModel):
    message: str = Field(min_length=1, max_length=1000)
    level: str = "info"
    details: Optional[dict] = None


# --- API Endpoints ---


@router.get("/online")
async def get_online_users(
    broadcaster: Annotated[PresenceBroadcaster, Depends(get_broadcaster)],
    observer: Annotated[EmployeePrincipal, Depends(require_observer)],
):
    """
    Who currently holds a live socket on this instance. Observer-only.
    """
    users = await broadcaster.online_snapshot(observer)
    return {
        "status": "success",
        "data": {"users": [user.model_dump() for user in users], "count": len(users)},
    }


@router.post("/announcements")
async def post_announcement(
    payload: AnnouncementRequest,
    broadcaster: Annotated[PresenceBroadcaster, Depends(get_broadcaster)],
    observer: Annotated[EmployeePrincipal, Depends(require_observer)],
):
    delivered = await broadcaster.broadcast_announcement(payload.message, sender=observer.summary())
    return {"status": "success", "data": {"delivered": delivered}}


@router.post("/alerts")
async def post_system_alert(
    payload: SystemAlertRequest,
    broadcaster: Annotated[PresenceBroadcaster, Depends(get_broadcaster)],
    observer: Annotated[EmployeePrincipal, Depends(require_observer)],
):
    delivered = await broadcaster.send_system_alert(payload.model_dump())
    return {"status": "success", "data": {"delivered": delivered}}
