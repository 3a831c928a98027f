import pytest
from fastapi.testclient import TestClient

import core.deps
from conftest import OFFICE_LAT, OFFICE_LNG
from core.deps import PrincipalError, resolve_principal
from main import create_app

OBSERVER_ROLES = ("owner", "admin")


class FakeSnapshot:
    def __init__(self, data):
        self._data = data
        self.exists = data is not None

    def to_dict(self):
        return self._data


class FakeFirestore:
    def __init__(self, profiles):
        self.profiles = profiles
        self._uid = None

    def collection(self, name):
        assert name == "users"
        return self

    def document(self, uid):
        self._uid = uid
        return self

    def get(self):
        return FakeSnapshot(self.profiles.get(self._uid))


PROFILES = {
    "u-owner": {"displayName": "Dara", "email": "dara@example.com", "department": "Operations", "role": "Owner"},
    "u-staff": {"displayName": "Sokha", "email": "sokha@example.com", "department": "Engineering", "role": "staff"},
    "u-gone": {"displayName": "Old Hand", "role": "staff", "active": False},
}


@pytest.fixture(autouse=True)
def fake_firebase(monkeypatch):
    def verify(token):
        if not token.startswith("token-"):
            raise ValueError("bad token")
        return {"uid": token[len("token-"):]}

    monkeypatch.setattr(core.deps, "verify_id_token", verify)
    monkeypatch.setattr(core.deps, "get_firestore_client", lambda: FakeFirestore(PROFILES))


def test_owner_resolves_as_observer():
    principal = resolve_principal("token-u-owner", OBSERVER_ROLES)

    assert principal.uid == "u-owner"
    assert principal.name == "Dara"
    assert principal.role == "owner"
    assert principal.is_observer


def test_staff_is_not_an_observer():
    principal = resolve_principal("token-u-staff", OBSERVER_ROLES)

    assert principal.department == "Engineering"
    assert not principal.is_observer


def test_observer_roles_are_configurable():
    assert resolve_principal("token-u-staff", ("staff",)).is_observer


@pytest.mark.parametrize(
    "token, status_code",
    [("garbage", 401), ("token-u-missing", 404), ("token-u-gone", 403)],
)
def test_unusable_credentials(token, status_code):
    with pytest.raises(PrincipalError) as exc_info:
        resolve_principal(token, OBSERVER_ROLES)

    assert exc_info.value.status_code == status_code


def test_bearer_token_flows_through_http(settings):
    with TestClient(create_app(settings)) as client:
        ok = client.post(
            "/attendance/checkin",
            json={"latitude": OFFICE_LAT, "longitude": OFFICE_LNG},
            headers={"Authorization": "Bearer token-u-staff"},
        )
        missing = client.get("/attendance/status")
        inactive = client.get("/attendance/status", headers={"Authorization": "Bearer token-u-gone"})
        not_observer = client.get("/presence/online", headers={"Authorization": "Bearer token-u-staff"})

    assert ok.status_code == 200
    assert ok.json()["data"]["record"]["employee_id"] == "u-staff"
    assert missing.status_code == 401
    assert missing.headers["WWW-Authenticate"] == "Bearer"
    assert inactive.status_code == 403
    assert not_observer.status_code == 403


def test_socket_token_in_query_string(settings):
    with TestClient(create_app(settings)) as client:
        with client.websocket_connect("/presence/ws?token=token-u-owner") as ws:
            hello = ws.receive_json()

    assert hello["data"]["user"]["uid"] == "u-owner"
    assert hello["data"]["user"]["is_observer"] is True
