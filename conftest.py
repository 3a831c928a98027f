from datetime import datetime, timezone

import pytest
from fastapi import HTTPException, Request, WebSocket, WebSocketException, status
from fastapi.testclient import TestClient

from core.config import GeofenceConfig, Settings
from core.deps import get_current_employee, get_socket_principal
from db.session import create_db_engine, init_db
from main import create_app
from models.employee import EmployeePrincipal, EmployeeSummary
from services.attendance_ledger import AttendanceLedger
from services.geofence_service import GeofenceEvaluator

OFFICE_LAT = 11.55187745723682
OFFICE_LNG = 104.92836774000962

# Authenticated principals the tests can act as; selected by X-Test-User / ?token=
PRINCIPALS = {
    "emp-1": EmployeePrincipal(uid="emp-1", name="Sokha", department="Engineering", role="staff"),
    "emp-2": EmployeePrincipal(uid="emp-2", name="Vanna", department="Finance", role="staff"),
    "boss": EmployeePrincipal(
        uid="boss", name="Dara", department="Operations", role="owner", is_observer=True
    ),
}


class FakeChannel:
    """Records what the broadcaster queued for one connection."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.messages: list[tuple[str, dict]] = []
        self.closed_with = None

    def enqueue(self, event: str, payload: dict) -> bool:
        self.messages.append((event, payload))
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)

    def events(self) -> list[str]:
        return [event for event, _ in self.messages]


class BrokenChannel(FakeChannel):
    def enqueue(self, event: str, payload: dict) -> bool:
        raise RuntimeError("socket gone")


def summary(uid: str) -> EmployeeSummary:
    return PRINCIPALS[uid].summary()


@pytest.fixture
def geofence_config() -> GeofenceConfig:
    return GeofenceConfig(center_lat=OFFICE_LAT, center_lng=OFFICE_LNG, radius_meters=10, buffer_meters=5)


@pytest.fixture
def evaluator(geofence_config) -> GeofenceEvaluator:
    return GeofenceEvaluator(geofence_config)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'attendance.db'}"


@pytest.fixture
def engine(database_url):
    db_engine = create_db_engine(database_url)
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def clock_time() -> datetime:
    return datetime(2026, 3, 2, 2, 0, tzinfo=timezone.utc)


@pytest.fixture
def ledger(engine, evaluator, clock_time) -> AttendanceLedger:
    return AttendanceLedger(engine, evaluator, timezone_name="UTC", clock=lambda: clock_time)


@pytest.fixture
def settings(geofence_config, database_url) -> Settings:
    return Settings(
        geofence=geofence_config,
        timezone="UTC",
        database_url=database_url,
        presence_heartbeat_seconds=30,
        presence_idle_timeout_seconds=30,
    )


def _fake_current_employee(request: Request) -> EmployeePrincipal:
    principal = PRINCIPALS.get(request.headers.get("X-Test-User", ""))
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials")
    return principal


def _fake_socket_principal(websocket: WebSocket) -> EmployeePrincipal:
    principal = PRINCIPALS.get(websocket.query_params.get("token", ""))
    if principal is None:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Authentication token required")
    return principal


def build_client_app(settings: Settings):
    app = create_app(settings)
    app.dependency_overrides[get_current_employee] = _fake_current_employee
    app.dependency_overrides[get_socket_principal] = _fake_socket_principal
    return app


@pytest.fixture
def client(settings):
    with TestClient(build_client_app(settings)) as test_client:
        yield test_client


def as_user(uid: str) -> dict:
    return {"X-Test-User": uid}
