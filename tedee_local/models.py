#
# Copyright 2025 The TedeeLocal contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

"""Pydantic models for the Tedee bridge local API and per-lock configuration."""

from enum import IntEnum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr
from pydantic.alias_generators import to_camel

# Unlock modes accepted by POST /lock/{id}/unlock
UNLOCK_MODE_NORMAL = 0
UNLOCK_MODE_PULL = 4

# Battery level reported by the bridge when the level is not known
BATTERY_LEVEL_UNKNOWN = 255


class LockState(IntEnum):
    """Physical position of the lock mechanism as reported by the bridge."""
    UNCALIBRATED = 0
    CALIBRATING = 1
    OPEN = 2
    HALF_CLOSED = 3
    OPENING = 4
    CLOSING = 5
    CLOSED = 6
    UNLATCHED = 7
    UNLATCHING = 8
    UNKNOWN = 9
    LATCHING = 255


# States that end an operation started by this process
SETTLED_STATES = frozenset({
    LockState.OPEN,
    LockState.HALF_CLOSED,
    LockState.CLOSED,
    LockState.UNLATCHED,
    LockState.UNKNOWN,
})


class DeviceType(IntEnum):
    LOCK_PRO = 2
    LOCK_GO = 4

    @property
    def model(self) -> str:
        return "Lock PRO" if self is DeviceType.LOCK_PRO else "Lock GO"


class HubModel(BaseModel):
    """Base for models parsed from the bridge's camelCase JSON."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeviceSettings(HubModel):
    auto_lock_enabled: bool = False
    auto_lock_delay: int = 0
    auto_lock_implicit_enabled: bool = False
    auto_lock_implicit_delay: int = 0
    pull_spring_enabled: bool = False
    pull_spring_duration: int = 0
    auto_pull_spring_enabled: bool = False
    postponed_lock_enabled: bool = False
    postponed_lock_delay: int = 0
    button_lock_enabled: bool = False
    button_unlock_enabled: bool = False


class Lock(HubModel):
    """A single lock as returned by GET /lock and GET /lock/{id}."""
    id: int
    name: str
    type: DeviceType = DeviceType.LOCK_PRO
    serial_number: str = ""
    is_connected: bool = True
    rssi: int = 0
    device_revision: int = 0
    version: str = ""
    state: LockState = LockState.UNKNOWN
    jammed: bool = False
    battery_level: int = BATTERY_LEVEL_UNKNOWN
    is_charging: bool = False
    device_settings: DeviceSettings = Field(default_factory=DeviceSettings)


class BridgeDetails(HubModel):
    """GET /bridge document, validated strictly so discovery can tell a Tedee
    bridge apart from any other HTTP server answering on the same address."""
    name: StrictStr
    current_time: StrictStr
    serial_number: StrictStr
    ssid: StrictStr
    is_connected: Literal[0, 1]
    version: StrictStr
    wifi_version: StrictStr


class CallbackData(HubModel):
    url: str
    method: str = "POST"
    headers: List[dict] = Field(default_factory=list)


class DeviceConfiguration(BaseModel):
    """Per-lock policy supplied by the user; immutable once built."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    ignored: bool = False
    unlatch_lock: bool = Field(default=False, alias="unlatchLock")
    disable_unlock: bool = Field(default=False, alias="disableUnlock")
    unlatch_from_unlocked_to_unlocked: bool = Field(default=False, alias="unlatchFromUnlockedToUnlocked")
    default_lock_name: Optional[str] = Field(default=None, alias="defaultLockName")
    default_latch_name: Optional[str] = Field(default=None, alias="defaultLatchName")

    @classmethod
    def for_lock(cls, lock: Lock) -> "DeviceConfiguration":
        """Policy used for a lock that has no configuration entry."""
        return cls(
            name=lock.name,
            unlatch_from_unlocked_to_unlocked=True,
            default_lock_name=lock.name,
            default_latch_name=f"{lock.name} Latch",
        )

    @property
    def lock_name(self) -> str:
        return self.default_lock_name or self.name

    @property
    def latch_name(self) -> str:
        return self.default_latch_name or f"{self.name} Latch"
