import asyncio
import logging
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, WebSocket, WebSocketException, status

from core.config import Settings
from core.firebase import get_firestore_client, verify_id_token
from models.employee import EmployeePrincipal
from services.attendance_ledger import AttendanceLedger
from services.geofence_service import GeofenceEvaluator
from services.presence_broadcaster import PresenceBroadcaster

logger = logging.getLogger(__name__)

# Standard credentials exception
CREDENTIALS_EXCEPTION = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Could not validate credentials",
    headers={"WWW-Authenticate": "Bearer"},
)


class PrincipalError(Exception):
    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(detail)


# --- Lifecycle-scoped components (built once in main.lifespan) ---


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_evaluator(request: Request) -> GeofenceEvaluator:
    return request.app.state.evaluator


def get_ledger(request: Request) -> AttendanceLedger:
    return request.app.state.ledger


def get_broadcaster(request: Request) -> PresenceBroadcaster:
    return request.app.state.broadcaster


# --- Principal resolution ---


def resolve_principal(token: str, observer_roles: tuple[str, ...]) -> EmployeePrincipal:
    """Verify a Firebase ID token and load the Firestore profile behind it.

    Blocking (Firebase + Firestore round trips); callers run it off the loop.
    The observer capability is decided here, once, from the profile's role.
    """
    # 1) Verify This Points to a Real User Account
    try:
        decoded = verify_id_token(token)
    except Exception:
        raise PrincipalError(status.HTTP_401_UNAUTHORIZED, "Invalid or expired token")
    uid = decoded.get("uid")
    if not uid:
        raise PrincipalError(status.HTTP_401_UNAUTHORIZED, "Token did not contain uid")

    # 2) Fetch the Firestore user profile
    try:
        snapshot = get_firestore_client().collection("users").document(uid).get()
    except Exception as e:
        logger.error(f"Firestore error fetching profile for {uid}: {e}")
        raise PrincipalError(status.HTTP_503_SERVICE_UNAVAILABLE, "Could not fetch user profile.")
    if not snapshot.exists:
        raise PrincipalError(status.HTTP_404_NOT_FOUND, "User profile not found in Firestore")
    profile = snapshot.to_dict() or {}

    # Deactivated employees keep their history but can't punch
    if profile.get("active") is False:
        raise PrincipalError(status.HTTP_403_FORBIDDEN, "User not found or inactive")

    # 3) Extract Critical Information
    role = (profile.get("role") or "").strip().lower()
    return EmployeePrincipal(
        uid=uid,
        name=profile.get("displayName", ""),
        email=profile.get("email", ""),
        department=profile.get("department"),
        role=role,
        is_observer=role in observer_roles,
    )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1]
    return None


async def get_current_employee(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> EmployeePrincipal:
    # 1) Extract & Analyze Authorization Header
    token = _bearer_token(request.headers.get("Authorization", ""))
    if not token:
        raise CREDENTIALS_EXCEPTION

    try:
        return await asyncio.to_thread(resolve_principal, token, settings.observer_roles)
    except PrincipalError as e:
        headers = {"WWW-Authenticate": "Bearer"} if e.status_code == 401 else None
        raise HTTPException(status_code=e.status_code, detail=e.detail, headers=headers)


# Observer Role Check Dependency
async def require_observer(
    current_user: Annotated[EmployeePrincipal, Depends(get_current_employee)]
) -> EmployeePrincipal:
    # Check That User Has Adequate Permissions
    if not current_user.is_observer:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User doesn't have sufficient privileges for this action",
        )

    # Passes Check Endpoint
    return current_user


# Socket handshake: token from ?token= or the Authorization header
async def get_socket_principal(websocket: WebSocket) -> EmployeePrincipal:
    token = websocket.query_params.get("token") or _bearer_token(
        websocket.headers.get("Authorization")
    )
    if not token:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Authentication token required")

    settings: Settings = websocket.app.state.settings
    try:
        return await asyncio.to_thread(resolve_principal, token, settings.observer_roles)
    except PrincipalError as e:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason=e.detail)
