import asyncio
import json

import pytest

from conftest import FakeClient, make_config, make_lock
from tedee_local.api import TedeeLocalAPI
from tedee_local.models import LockState


def read_event(queue):
    message = queue.get_nowait()
    assert message.startswith("data: ") and message.endswith("\n\n")
    return json.loads(message[len("data: "):])


@pytest.mark.asyncio
async def test_initialize_loads_locks():
    client = FakeClient([make_lock(id=1), make_lock(id=2, name="Garage")])
    api = TedeeLocalAPI([make_config("Garage", ignored=True)])

    await api.initialize(client)

    assert api.is_connected
    assert api.bridge.name == "Bridge"
    assert len(api.registry) == 1
    assert api.background_tasks == []
    assert api.status()['locks'] == 1


@pytest.mark.asyncio
async def test_register_webhook_remembers_callback_id():
    client = FakeClient([make_lock()])
    api = TedeeLocalAPI()
    await api.initialize(client)

    callback_id = await api.register_webhook("http://10.0.0.2:3003/")

    assert callback_id == 7
    assert ("set_callbacks", ["http://10.0.0.2:3003/"]) in client.calls


@pytest.mark.parametrize("result,expected", [
    ([{"id": 3}], 3),
    ([5], 5),
    ({"id": 9}, 9),
    (None, None),
    ([], None),
])
def test_callback_id_from_response(result, expected):
    assert TedeeLocalAPI._callback_id_from(result) == expected


@pytest.mark.asyncio
async def test_webhook_changes_are_broadcast():
    client = FakeClient([make_lock(LockState.CLOSED, id=12345)])
    api = TedeeLocalAPI()
    await api.initialize(client)
    queue = asyncio.Queue()
    api.event_listeners.append(queue)

    result = await api.handle_webhook({
        "event": "lock-status-changed",
        "timestamp": "2025-01-01T12:00:00.000Z",
        "data": {"deviceId": 12345, "state": 2, "jammed": 0},
    })

    assert result.status_code == 200
    data = read_event(queue)
    assert data['type'] == 'lock'
    assert data['id'] == 12345
    assert data['state'] == 'open'
    assert data['lock']['current'] == 0


@pytest.mark.asyncio
async def test_webhook_before_initialize_is_not_found():
    api = TedeeLocalAPI()

    result = await api.handle_webhook({"event": "lock-status-changed", "data": {"deviceId": 1, "state": 2}})

    assert result.status_code == 404


@pytest.mark.asyncio
async def test_full_listener_is_dropped():
    api = TedeeLocalAPI()
    queue = asyncio.Queue(maxsize=1)
    api.event_listeners.append(queue)

    await api.broadcast_event({'type': 'lock'})
    await api.broadcast_event({'type': 'lock'})

    assert api.event_listeners == []


@pytest.mark.asyncio
async def test_background_resync():
    client = FakeClient([make_lock(id=1)])
    api = TedeeLocalAPI(update_interval=0.01)
    await api.initialize(client)

    await asyncio.sleep(0.05)
    await api.cleanup()

    assert ("get_lock", 1) in client.calls


@pytest.mark.asyncio
async def test_cleanup_unregisters_and_closes():
    client = FakeClient([make_lock()])
    api = TedeeLocalAPI()
    await api.initialize(client)
    await api.register_webhook("http://10.0.0.2:3003/")
    queue = asyncio.Queue()
    api.event_listeners.append(queue)

    await api.cleanup()

    assert ("delete_callback", 7) in client.calls
    assert api.callback_id is None
    assert queue.get_nowait() is None
    assert api.event_listeners == []
    assert client.closed is True
