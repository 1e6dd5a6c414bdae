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

"""Lock/latch state reconciliation for a single Tedee lock.

A LockController is the only writer of the observable state of one lock. It
accepts target requests (commands) and device records (full snapshots or
partial pushes from the webhook) and turns them into current/target values
for the lock surface and, when exposed, the latch surface.

While a command issued by this process is unresolved (``is_operating``), a
full snapshot that does not report a settled state leaves the displayed
values alone, so a stale poll cannot revert a surface that is mid-transition.

All work for one lock runs under a per-controller asyncio.Lock which is held
across the bridge round trip of a command.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .exceptions import (
    CommunicationError,
    InvalidTargetError,
    LockBusyError,
    TedeeApiError,
    UnlockDisabledError,
)
from .models import (
    BATTERY_LEVEL_UNKNOWN,
    SETTLED_STATES,
    UNLOCK_MODE_PULL,
    DeviceConfiguration,
    Lock,
    LockState,
)

logger = logging.getLogger(__name__)

# Seconds before a refused latch request snaps back to secured
GRACE_DELAY = 0.5

LOW_BATTERY_THRESHOLD = 10


# Values follow the HomeKit LockMechanism / BatteryService characteristics
class CurrentState(IntEnum):
    UNSECURED = 0
    SECURED = 1
    JAMMED = 2
    UNKNOWN = 3


class TargetState(IntEnum):
    UNSECURED = 0
    SECURED = 1


class LowBattery(IntEnum):
    NORMAL = 0
    LOW = 1


class ChargingState(IntEnum):
    NOT_CHARGING = 0
    CHARGING = 1


class Surface(str, Enum):
    LOCK = "lock"
    LATCH = "latch"


# raw state -> (current, target); None leaves the value unchanged
LOCK_SURFACE_MAP: Dict[LockState, Tuple[Optional[CurrentState], Optional[TargetState]]] = {
    LockState.UNCALIBRATED: (CurrentState.JAMMED, None),
    LockState.CALIBRATING: (CurrentState.JAMMED, None),
    LockState.OPEN: (CurrentState.UNSECURED, TargetState.UNSECURED),
    LockState.HALF_CLOSED: (CurrentState.SECURED, TargetState.SECURED),
    LockState.OPENING: (None, TargetState.UNSECURED),
    LockState.CLOSING: (None, TargetState.SECURED),
    LockState.CLOSED: (CurrentState.SECURED, TargetState.SECURED),
    LockState.UNLATCHED: (CurrentState.UNSECURED, TargetState.UNSECURED),
    LockState.UNLATCHING: (None, TargetState.UNSECURED),
    LockState.UNKNOWN: (CurrentState.UNKNOWN, None),
    LockState.LATCHING: (None, TargetState.UNSECURED),
}

# The latch only reads unsecured while the spring is actually pulled
LATCH_SURFACE_MAP: Dict[LockState, Tuple[Optional[CurrentState], Optional[TargetState]]] = {
    LockState.UNCALIBRATED: (CurrentState.JAMMED, None),
    LockState.CALIBRATING: (CurrentState.JAMMED, None),
    LockState.OPEN: (CurrentState.SECURED, TargetState.SECURED),
    LockState.HALF_CLOSED: (CurrentState.SECURED, TargetState.SECURED),
    LockState.OPENING: (None, TargetState.UNSECURED),
    LockState.CLOSING: (None, TargetState.SECURED),
    LockState.CLOSED: (CurrentState.SECURED, TargetState.SECURED),
    LockState.UNLATCHED: (CurrentState.UNSECURED, TargetState.UNSECURED),
    LockState.UNLATCHING: (None, TargetState.UNSECURED),
    LockState.UNKNOWN: (CurrentState.UNKNOWN, None),
    LockState.LATCHING: (None, TargetState.SECURED),
}


@dataclass
class SurfaceState:
    """Observable current/target pair of one lock mechanism surface."""
    current: CurrentState = CurrentState.UNKNOWN
    target: TargetState = TargetState.SECURED

    def update(self, current: Optional[CurrentState], target: Optional[TargetState]):
        if current is not None:
            self.current = current
        if target is not None:
            self.target = target

    def as_dict(self) -> Dict[str, int]:
        return {'current': int(self.current), 'target': int(self.target)}


def parse_target(value: Any) -> TargetState:
    """Accept 0/1 or 'secured'/'unsecured' (any case)."""
    try:
        if isinstance(value, str) and not value.isdigit():
            return TargetState[value.strip().upper()]
        return TargetState(int(value))
    except (KeyError, ValueError, TypeError):
        raise InvalidTargetError(f"Invalid target state: {value!r}") from None


def parse_surface(value: Any) -> Surface:
    try:
        return Surface(value)
    except ValueError:
        raise InvalidTargetError(f"Invalid surface: {value!r}") from None


class LockController:
    """Owns the reconciled state of one lock."""

    PARTIAL_FIELDS = frozenset({'battery_level', 'is_charging', 'state', 'jammed', 'is_connected'})

    def __init__(
        self,
        client,
        lock: Lock,
        configuration: DeviceConfiguration,
        on_change: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        grace_delay: float = GRACE_DELAY,
    ):
        self.client = client
        self.configuration = configuration
        self.id = lock.id
        self.name = configuration.name
        self.lock = lock
        self.on_change = on_change
        self.grace_delay = grace_delay

        self.is_operating = False
        self.state = lock.state
        self.jammed = lock.jammed
        self.battery_level: Optional[int] = None
        self.is_charging = False
        self.is_connected = lock.is_connected

        self.lock_surface = SurfaceState()
        self.latch_surface: Optional[SurfaceState] = SurfaceState() if configuration.unlatch_lock else None

        self.background_tasks: List[asyncio.Task] = []
        self._lock = asyncio.Lock()
        self._published: Optional[Dict[str, Any]] = None

        self._apply_battery_level(lock.battery_level)
        self.is_charging = lock.is_charging
        self._apply_state(lock.state, lock.jammed)
        logger.info(f"[{self.name}] Initialized ({lock.type.model}, state {lock.state.name})")

    def __repr__(self) -> str:
        return f"<LockController {self.id} {self.name!r} state={self.state.name}>"

    # ========================================================================
    # Observable state
    # ========================================================================

    @property
    def low_battery(self) -> LowBattery:
        if self.battery_level is not None and self.battery_level < LOW_BATTERY_THRESHOLD and not self.is_charging:
            return LowBattery.LOW
        return LowBattery.NORMAL

    @property
    def charging_state(self) -> ChargingState:
        return ChargingState.CHARGING if self.is_charging else ChargingState.NOT_CHARGING

    def as_dict(self) -> Dict[str, Any]:
        lock = self.lock
        return {
            'id': self.id,
            'name': self.name,
            'serial_number': lock.serial_number,
            'model': lock.type.model,
            'firmware_revision': lock.version,
            'hardware_revision': str(lock.device_revision),
            'is_connected': self.is_connected,
            'state': self.state.name.lower(),
            'jammed': self.jammed,
            'is_operating': self.is_operating,
            'lock': {'name': self.configuration.lock_name, **self.lock_surface.as_dict()},
            'latch': (
                {'name': self.configuration.latch_name, **self.latch_surface.as_dict()}
                if self.latch_surface is not None else None
            ),
            'battery': {
                'level': self.battery_level,
                'low_battery': int(self.low_battery),
                'charging_state': int(self.charging_state),
            },
        }

    async def _notify(self):
        data = self.as_dict()
        if data == self._published:
            return
        self._published = data
        if self.on_change is None:
            return
        try:
            await self.on_change(data)
        except Exception as e:
            logger.error(f"[{self.name}] Error publishing state change: {e}")

    # ========================================================================
    # Commands
    # ========================================================================

    async def apply_command(self, target: Any, surface: Any = Surface.LOCK):
        """Handle a request to move a surface to ``target``.

        Raises:
            LockBusyError: a previous command is still unresolved
            UnlockDisabledError: unlocking is disabled for this lock
            InvalidTargetError: unknown target/surface, or latch not exposed
            CommunicationError: the bridge did not accept the command
        """
        target = parse_target(target)
        surface = parse_surface(surface)

        async with self._lock:
            try:
                if surface is Surface.LATCH:
                    await self._command_latch(target)
                else:
                    await self._command_lock(target)
            finally:
                await self._notify()

    async def _command_lock(self, target: TargetState):
        if self.is_operating:
            logger.info(f"[{self.name}] Command rejected, another operation is in progress.")
            raise LockBusyError(f"Lock {self.name} is busy")

        if target is TargetState.SECURED:
            await self._send(TargetState.SECURED, self.client.lock, "Close")
            return

        if self.configuration.disable_unlock:
            logger.info(f"[{self.name}] Unlock requested but not enabled in the configuration.")
            raise UnlockDisabledError(f"Unlock is disabled for {self.name}")

        settings = self.lock.device_settings
        if self.lock_surface.current is CurrentState.SECURED:
            await self._send(
                TargetState.UNSECURED, self.client.unlock, "Open",
                latch_target=TargetState.UNSECURED if settings.pull_spring_enabled and settings.auto_pull_spring_enabled else None,
            )
        elif self.state is LockState.HALF_CLOSED:
            # Half-closed may be either side of the bolt, opening is always allowed
            await self._send(TargetState.UNSECURED, self.client.unlock, "Open")
        elif self.configuration.unlatch_from_unlocked_to_unlocked and settings.pull_spring_enabled:
            await self._send(TargetState.UNSECURED, self.client.pull, "Pull spring", latch_target=TargetState.UNSECURED)
        else:
            logger.info(f"[{self.name}] Already unlocked, pull spring from unlocked is not enabled.")

    async def _command_latch(self, target: TargetState):
        if self.latch_surface is None:
            raise InvalidTargetError(f"Latch is not exposed for {self.name}")
        if self.is_operating:
            logger.info(f"[{self.name}] Command rejected, another operation is in progress.")
            raise LockBusyError(f"Lock {self.name} is busy")

        if self.configuration.disable_unlock and target is TargetState.UNSECURED:
            logger.info(f"[{self.name}] Unlatch requested but not enabled in the configuration.")
            self.latch_surface.target = target
            self._schedule_latch_revert()
            raise UnlockDisabledError(f"Unlock is disabled for {self.name}")

        settings = self.lock.device_settings
        if not settings.pull_spring_enabled:
            logger.info(f"[{self.name}] Unlatch requested but pull spring is not enabled on the lock.")
            self.latch_surface.target = target
            self._schedule_latch_revert()
            return

        # The latch cannot be secured by command
        if target is not TargetState.UNSECURED:
            return

        if self.lock_surface.current is CurrentState.SECURED:
            logger.info(f"[{self.name}] Unlatch requested while locked, pull spring not possible.")
            self.latch_surface.target = target
            self._schedule_latch_revert()
            return

        await self._send(
            TargetState.UNSECURED,
            lambda device_id: self.client.unlock(device_id, UNLOCK_MODE_PULL),
            "Pull spring",
            latch_target=TargetState.UNSECURED,
        )

    async def _send(
        self,
        target: TargetState,
        command: Callable[[int], Awaitable[Any]],
        description: str,
        latch_target: Optional[TargetState] = None,
    ):
        """Issue an opening/closing command and mark the lock as operating.

        The lock surface target follows the command and, when given, the
        latch target is mirrored; on failure both targets are restored and
        the guard cleared.
        """
        previous_lock_target = self.lock_surface.target
        previous_latch_target = self.latch_surface.target if self.latch_surface is not None else None

        self.is_operating = True
        self.lock_surface.target = target
        if latch_target is not None and self.latch_surface is not None:
            self.latch_surface.target = latch_target
        logger.info(f"[{self.name}] {description} requested.")
        try:
            await command(self.id)
        except TedeeApiError as e:
            self.is_operating = False
            self.lock_surface.target = previous_lock_target
            if self.latch_surface is not None:
                self.latch_surface.target = previous_latch_target
            logger.warning(f"[{self.name}] {description} failed: {e}")
            raise CommunicationError(f"{description} failed for {self.name}") from e

    def _schedule_latch_revert(self):
        task = asyncio.create_task(self._revert_latch())
        self.background_tasks.append(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        if task in self.background_tasks:
            self.background_tasks.remove(task)

    async def _revert_latch(self):
        await asyncio.sleep(self.grace_delay)
        async with self._lock:
            if self.latch_surface is None:
                return
            self.latch_surface.current = CurrentState.SECURED
            self.latch_surface.target = TargetState.SECURED
            await self._notify()

    async def wait_for_pending(self):
        """Wait until delayed latch reverts have run."""
        while self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)

    async def close(self):
        for task in list(self.background_tasks):
            task.cancel()
        await asyncio.gather(*self.background_tasks, return_exceptions=True)
        self.background_tasks.clear()

    # ========================================================================
    # Device updates
    # ========================================================================

    async def apply_snapshot(self, lock: Lock):
        """Apply a full lock record fetched from the bridge."""
        logger.debug(f"[{self.name}] Update received.")
        async with self._lock:
            self.lock = lock
            self.is_connected = lock.is_connected
            self._apply_battery_level(lock.battery_level)
            self.is_charging = lock.is_charging

            if self.is_operating and lock.state not in SETTLED_STATES:
                logger.debug(f"[{self.name}] Operation in progress, keeping displayed state ({lock.state.name}).")
                self.state = lock.state
                self.jammed = lock.jammed
            else:
                self._apply_state(lock.state, lock.jammed)

            await self._notify()

    async def apply_partial_update(self, **fields):
        """Apply single fields pushed by the bridge.

        Accepted fields: battery_level, is_charging, state, jammed, is_connected.
        """
        unknown = set(fields) - self.PARTIAL_FIELDS
        if unknown:
            raise TypeError(f"Unknown lock fields: {', '.join(sorted(unknown))}")

        async with self._lock:
            if 'battery_level' in fields:
                self._apply_battery_level(fields['battery_level'])
            if 'is_charging' in fields:
                self.is_charging = bool(fields['is_charging'])
            if 'is_connected' in fields:
                self.is_connected = bool(fields['is_connected'])
            if 'state' in fields or 'jammed' in fields:
                state = LockState(fields.get('state', self.state))
                self._apply_state(state, bool(fields.get('jammed', self.jammed)))

            await self._notify()

    async def refresh(self) -> bool:
        """Fetch the lock from the bridge and apply it as a snapshot."""
        logger.debug(f"Syncing lock with ID {self.id} from the API...")
        try:
            lock = await self.client.get_lock(self.id)
        except TedeeApiError as e:
            logger.warning(f"Failed to sync lock with ID {self.id} from API: {e}")
            return False
        await self.apply_snapshot(lock)
        logger.debug(f"Lock with ID {self.id} synced from the API.")
        return True

    def _apply_battery_level(self, level: Optional[int]):
        if level is None or level == BATTERY_LEVEL_UNKNOWN:
            self.battery_level = None
        else:
            self.battery_level = max(0, min(100, int(level)))

    def _apply_state(self, state: LockState, jammed: bool):
        self.state = state
        self.jammed = jammed

        if state in SETTLED_STATES and self.is_operating:
            logger.debug(f"[{self.name}] Operation finished ({state.name}).")
            self.is_operating = False

        self.lock_surface.update(*LOCK_SURFACE_MAP[state])
        if self.latch_surface is not None:
            self.latch_surface.update(*LATCH_SURFACE_MAP[state])

        if jammed:
            self.lock_surface.current = CurrentState.JAMMED
            if self.latch_surface is not None:
                self.latch_surface.current = CurrentState.JAMMED
