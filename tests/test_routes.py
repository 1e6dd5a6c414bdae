import pytest
from fastapi.testclient import TestClient

from conftest import FakeClient, make_config, make_lock
from tedee_local import routes
from tedee_local.api import TedeeLocalAPI
from tedee_local.controller import LockController
from tedee_local.models import LockState
from tedee_local.registry import DeviceRegistry


def build_api(lock, config=None, fail=False):
    """A connected TedeeLocalAPI with one lock, without going through the bridge."""
    client = FakeClient([lock], fail=fail)
    config = config or make_config(lock.name)
    api = TedeeLocalAPI([config], grace_delay=0)
    api.client = client
    api.registry = DeviceRegistry(client, [config], on_change=api.handle_change, grace_delay=0)
    api.registry.controllers[lock.id] = LockController(
        client, lock, config, on_change=api.handle_change, grace_delay=0
    )
    return api, client


def make_app(api):
    app = routes.create_app()
    routes.register_routes(app, lambda: api)
    return TestClient(app)


@pytest.fixture
def no_api_keys(monkeypatch):
    monkeypatch.setattr(routes, "API_KEYS", set())


def test_webhook_updates_lock(no_api_keys):
    api, _ = build_api(make_lock(LockState.CLOSED, id=12345))
    http = make_app(api)

    response = http.post("/", json={
        "event": "lock-status-changed",
        "timestamp": "2025-01-01T12:00:00.000Z",
        "data": {"deviceId": 12345, "state": 2, "jammed": 0},
    })

    assert response.status_code == 200
    assert api.registry.get(12345).state is LockState.OPEN


def test_webhook_status_codes(no_api_keys):
    api, _ = build_api(make_lock(id=12345))
    http = make_app(api)

    unknown_device = http.post("/", json={"event": "lock-status-changed", "data": {"deviceId": 1, "state": 2}})
    unknown_event = http.post("/", json={"event": "device-exploded", "data": {"deviceId": 12345}})
    not_json = http.post("/", content=b"not json", headers={"content-type": "application/json"})
    list_event = http.post("/", json={"event": ["lock-status-changed"], "data": {"deviceId": 12345}})

    assert unknown_device.status_code == 404
    assert unknown_event.status_code == 400
    assert not_json.status_code == 400
    assert list_event.status_code == 400


def test_webhook_is_not_authenticated(monkeypatch):
    monkeypatch.setattr(routes, "API_KEYS", {"secret"})
    api, _ = build_api(make_lock(id=12345))
    http = make_app(api)

    response = http.post("/", json={"event": "backend-connection-changed", "data": {"isConnected": 1}})

    assert response.status_code == 200


def test_rest_routes_require_key_when_configured(monkeypatch):
    monkeypatch.setattr(routes, "API_KEYS", {"secret"})
    api, _ = build_api(make_lock(id=12345))
    http = make_app(api)

    assert http.get("/locks").status_code == 401
    assert http.get("/locks", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert http.get("/locks", headers={"Authorization": "Bearer secret"}).status_code == 200


def test_list_and_get_locks(no_api_keys):
    api, _ = build_api(make_lock(LockState.CLOSED, id=12345, battery_level=55))
    http = make_app(api)

    locks = http.get("/locks").json()
    lock = http.get("/locks/12345").json()

    assert locks['count'] == 1
    assert lock['lock'] == {'name': "Front door", 'current': 1, 'target': 1}
    assert lock['battery'] == {'level': 55, 'low_battery': 0, 'charging_state': 0}
    assert http.get("/locks/1").status_code == 404


def test_status(no_api_keys):
    api, _ = build_api(make_lock(id=12345))
    http = make_app(api)

    response = http.get("/status")

    assert response.status_code == 200
    assert response.json()['status'] == 'connected'


def test_status_without_bridge(no_api_keys):
    http = make_app(TedeeLocalAPI())

    assert http.get("/status").status_code == 503
    assert http.get("/locks").status_code == 503
    assert http.post("/", json={"event": "lock-status-changed", "data": {"deviceId": 1, "state": 2}}).status_code == 404


def test_unlock_command(no_api_keys):
    api, client = build_api(make_lock(LockState.CLOSED, id=12345))
    http = make_app(api)

    response = http.post("/locks/12345/unlock")

    assert response.status_code == 200
    assert response.json()['is_operating'] is True
    assert client.command_calls() == [("unlock", 12345, 0)]


def test_set_with_target_and_surface(no_api_keys):
    api, client = build_api(
        make_lock(LockState.OPEN, id=12345, pull_spring=True),
        make_config(unlatch_lock=True),
    )
    http = make_app(api)

    response = http.post("/locks/12345/set", params={"target": "unsecured", "surface": "latch"})

    assert response.status_code == 200
    assert client.command_calls() == [("unlock", 12345, 4)]


def test_command_error_mapping(no_api_keys):
    api, _ = build_api(make_lock(LockState.CLOSED, id=12345), make_config(disable_unlock=True))
    http = make_app(api)

    assert http.post("/locks/12345/unlock").status_code == 403
    assert http.post("/locks/12345/set", params={"target": "sideways"}).status_code == 400
    assert http.post("/locks/12345/unlatch").status_code == 400

    assert http.post("/locks/12345/lock").status_code == 200
    assert http.post("/locks/12345/lock").status_code == 409


def test_communication_failure_is_bad_gateway(no_api_keys):
    api, _ = build_api(make_lock(LockState.OPEN, id=12345), fail=True)
    http = make_app(api)

    assert http.post("/locks/12345/lock").status_code == 502
    assert api.registry.get(12345).is_operating is False
    assert http.post("/locks/12345/refresh").status_code == 502


def test_refresh_lock(no_api_keys):
    api, client = build_api(make_lock(LockState.CLOSED, id=12345))
    client.locks[12345] = make_lock(LockState.OPEN, id=12345)
    http = make_app(api)

    response = http.post("/locks/12345/refresh")

    assert response.status_code == 200
    assert response.json()['state'] == 'open'
