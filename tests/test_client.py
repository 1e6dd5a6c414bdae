import hashlib
import itertools
import json

import aiohttp
import pytest

from tedee_local.client import TedeeLocalClient
from tedee_local.exceptions import TedeeApiError, TedeeResponseError
from tedee_local.models import CallbackData, LockState

BRIDGE = {
    "name": "Bridge",
    "currentTime": "2025-01-01T00:00:00Z",
    "serialNumber": "20000001-000001",
    "ssid": "home",
    "isConnected": 1,
    "version": "2.0.0",
    "wifiVersion": "1.0.0",
}


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body if isinstance(body, str) else json.dumps(body)

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Replays a list of outcomes; an exception instance is raised instead of answering."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests = []
        self.closed = False

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append({"method": method, "url": url, "json": json, "headers": dict(headers)})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(*outcome)

    async def close(self):
        self.closed = True


def make_client(outcomes, **kwargs):
    session = FakeSession(outcomes)
    client = TedeeLocalClient("192.168.1.50", "secret", session=session, **kwargs)
    client.retry_delay = 0
    return client, session


def test_api_token_is_sha256_of_key_and_timestamp(monkeypatch):
    monkeypatch.setattr("tedee_local.client.time.time", lambda: 1700000000.5)
    client = TedeeLocalClient("192.168.1.50", "secret")

    token = client.generate_api_token()

    expected = hashlib.sha256(b"secret1700000000500").hexdigest()
    assert token == expected + "1700000000500"


@pytest.mark.asyncio
async def test_request_sends_token_and_accept_header():
    client, session = make_client([(200, BRIDGE)])

    details = await client.get_bridge_details()

    assert details.serial_number == "20000001-000001"
    request = session.requests[0]
    assert request["url"] == "http://192.168.1.50/v1.0/bridge"
    assert request["headers"]["accept"] == "application/json"
    assert len(request["headers"]["api_token"]) > 64


@pytest.mark.asyncio
async def test_retry_succeeds_after_two_transport_errors(monkeypatch):
    ticks = itertools.count(1700000000.0, 0.5)
    monkeypatch.setattr("tedee_local.client.time.time", lambda: next(ticks))
    client, session = make_client(
        [
            aiohttp.ClientConnectionError("refused"),
            aiohttp.ClientConnectionError("refused"),
            (200, []),
        ],
        max_retries=3,
    )

    locks = await client.get_locks()

    assert locks == []
    assert len(session.requests) == 3
    tokens = {r["headers"]["api_token"] for r in session.requests}
    assert len(tokens) == 3


@pytest.mark.asyncio
async def test_retry_exhaustion_raises_after_one_retry():
    client, session = make_client(
        [aiohttp.ClientConnectionError("refused")] * 2,
        max_retries=1,
    )

    with pytest.raises(TedeeApiError) as excinfo:
        await client.get_locks()

    assert len(session.requests) == 2
    assert isinstance(excinfo.value.__cause__, aiohttp.ClientConnectionError)


@pytest.mark.asyncio
async def test_http_error_status_is_retried_and_surfaced_with_body():
    client, session = make_client([(500, "oops"), (401, "bad token")], max_retries=1)

    with pytest.raises(TedeeApiError) as excinfo:
        await client.lock(1)

    assert len(session.requests) == 2
    assert excinfo.value.status == 401
    assert excinfo.value.body == "bad token"


@pytest.mark.asyncio
async def test_invalid_json_is_not_retried():
    client, session = make_client([(200, "<html>hello</html>"), (200, [])], max_retries=3)

    with pytest.raises(TedeeResponseError):
        await client.get_locks()

    assert len(session.requests) == 1


@pytest.mark.asyncio
async def test_lock_list_shape_error_is_not_retried():
    client, session = make_client([(200, {"not": "a list"})], max_retries=3)

    with pytest.raises(TedeeResponseError):
        await client.get_locks()

    assert len(session.requests) == 1


@pytest.mark.asyncio
async def test_health_check_accepts_bridge_document():
    client, _ = make_client([(200, BRIDGE)])

    assert await client.check_api_health() is True


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    {**BRIDGE, "isConnected": 2},
    {**BRIDGE, "serialNumber": 12345},
    {k: v for k, v in BRIDGE.items() if k != "ssid"},
    {"status": "ok"},
])
async def test_health_check_rejects_other_documents(body):
    client, _ = make_client([(200, body)])

    assert await client.check_api_health() is False


@pytest.mark.asyncio
async def test_health_check_fails_on_transport_error():
    client, _ = make_client([aiohttp.ClientConnectionError("refused")], max_retries=0)

    assert await client.check_api_health() is False


@pytest.mark.asyncio
async def test_get_lock_parses_camel_case_record():
    record = {
        "id": 12345,
        "name": "Front door",
        "type": 4,
        "serialNumber": "10000001-000001",
        "isConnected": 1,
        "state": 6,
        "jammed": 0,
        "batteryLevel": 64,
        "isCharging": 0,
        "deviceSettings": {"pullSpringEnabled": 1, "autoPullSpringEnabled": 0},
    }
    client, session = make_client([(200, record)])

    lock = await client.get_lock(12345)

    assert session.requests[0]["url"].endswith("/lock/12345")
    assert lock.state is LockState.CLOSED
    assert lock.type.model == "Lock GO"
    assert lock.battery_level == 64
    assert lock.device_settings.pull_spring_enabled is True
    assert lock.device_settings.auto_pull_spring_enabled is False


@pytest.mark.asyncio
async def test_command_endpoints():
    client, session = make_client([(204, ""), (204, ""), (204, "")])

    assert await client.unlock(5) is None
    await client.unlock(5, mode=4)
    await client.pull(5)

    assert [(r["method"], r["url"].split("/v1.0")[1], r["json"]) for r in session.requests] == [
        ("POST", "/lock/5/unlock", {"mode": 0}),
        ("POST", "/lock/5/unlock", {"mode": 4}),
        ("POST", "/lock/5/pull", None),
    ]


@pytest.mark.asyncio
async def test_set_callbacks_puts_list():
    client, session = make_client([(200, [{"id": 3}])])

    result = await client.set_callbacks([CallbackData(url="http://10.0.0.2:3003/")])

    assert result == [{"id": 3}]
    assert session.requests[0]["method"] == "PUT"
    assert session.requests[0]["json"] == [{"url": "http://10.0.0.2:3003/", "method": "POST", "headers": []}]


@pytest.mark.asyncio
async def test_close_leaves_shared_session_open():
    client, session = make_client([])

    await client.close()

    assert session.closed is False
