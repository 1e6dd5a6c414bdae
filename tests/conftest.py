import pytest

from tedee_local.exceptions import TedeeApiError
from tedee_local.models import BridgeDetails, DeviceConfiguration, DeviceSettings, Lock, LockState


def make_lock(
    state=LockState.CLOSED,
    *,
    id=1,
    name="Front door",
    jammed=False,
    battery_level=80,
    is_charging=False,
    pull_spring=False,
    auto_pull_spring=False,
):
    return Lock(
        id=id,
        name=name,
        type=2,
        serial_number="10000001-000001",
        version="2.2.1234",
        device_revision=4,
        state=state,
        jammed=jammed,
        battery_level=battery_level,
        is_charging=is_charging,
        device_settings=DeviceSettings(
            pull_spring_enabled=pull_spring,
            auto_pull_spring_enabled=auto_pull_spring,
        ),
    )


def make_config(name="Front door", **kwargs):
    return DeviceConfiguration(name=name, **kwargs)


class FakeClient:
    """Stands in for TedeeLocalClient and records every bridge call."""

    def __init__(self, locks=None, fail=False):
        self.host = "192.168.1.50"
        self.locks = {lock.id: lock for lock in (locks or [])}
        self.fail = fail
        self.calls = []
        self.callbacks = []
        self.closed = False

    def _record(self, *call):
        self.calls.append(call)
        if self.fail:
            raise TedeeApiError(f"{call[0]} failed", status=500)

    async def get_bridge_details(self):
        self._record("bridge")
        return BridgeDetails(
            name="Bridge", current_time="2025-01-01T00:00:00Z", serial_number="20000001-000001",
            ssid="home", is_connected=1, version="2.0.0", wifi_version="1.0.0",
        )

    async def get_locks(self):
        self._record("get_locks")
        return list(self.locks.values())

    async def get_lock(self, device_id):
        self._record("get_lock", device_id)
        return self.locks[device_id]

    async def lock(self, device_id):
        self._record("lock", device_id)

    async def unlock(self, device_id, mode=0):
        self._record("unlock", device_id, mode)

    async def pull(self, device_id):
        self._record("pull", device_id)

    async def set_callbacks(self, callbacks):
        self._record("set_callbacks", [c.url for c in callbacks])
        self.callbacks = callbacks
        return [{"id": 7, "url": callbacks[0].url}]

    async def delete_callback(self, callback_id):
        self._record("delete_callback", callback_id)

    async def close(self):
        self.closed = True

    def command_calls(self):
        return [c for c in self.calls if c[0] in ("lock", "unlock", "pull")]


@pytest.fixture
def fake_client():
    return FakeClient()
