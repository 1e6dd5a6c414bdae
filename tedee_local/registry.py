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

"""Known locks, their configuration and their controllers."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional

from .controller import GRACE_DELAY, LockController
from .models import DeviceConfiguration, Lock

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Maps lock ids to the controller that owns each exposed lock."""

    def __init__(
        self,
        client,
        configurations: Iterable[DeviceConfiguration] = (),
        on_change: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        grace_delay: float = GRACE_DELAY,
    ):
        self.client = client
        self.configurations: List[DeviceConfiguration] = list(configurations)
        self.on_change = on_change
        self.grace_delay = grace_delay
        self.locks: List[Lock] = []
        self.controllers: Dict[int, LockController] = {}

    def __len__(self) -> int:
        return len(self.controllers)

    def __iter__(self) -> Iterator[LockController]:
        return iter(list(self.controllers.values()))

    def __contains__(self, device_id: int) -> bool:
        return device_id in self.controllers

    def get(self, device_id: int) -> Optional[LockController]:
        return self.controllers.get(device_id)

    def configuration_for(self, lock: Lock) -> DeviceConfiguration:
        """Find the configuration entry for a lock by name, or build the default."""
        for configuration in self.configurations:
            if configuration.name == lock.name:
                return configuration
        return DeviceConfiguration.for_lock(lock)

    async def load(self) -> int:
        """Fetch all locks and create a controller for each exposed one.

        Returns:
            Number of exposed locks
        """
        self.locks = await self.client.get_locks()
        logger.info(f"Found {len(self.locks)} locks on the bridge")

        for lock in self.locks:
            configuration = self.configuration_for(lock)
            if configuration.ignored:
                logger.info(f"[{configuration.name}] Ignored by configuration")
                continue
            if lock.id in self.controllers:
                await self.controllers[lock.id].apply_snapshot(lock)
                continue

            self.controllers[lock.id] = LockController(
                self.client,
                lock,
                configuration,
                on_change=self.on_change,
                grace_delay=self.grace_delay,
            )

        return len(self.controllers)

    async def refresh_all(self) -> Dict[int, bool]:
        """Resynchronize every exposed lock; locks are independent so run them concurrently."""
        controllers = list(self.controllers.values())
        results = await asyncio.gather(*(c.refresh() for c in controllers))
        return {c.id: ok for c, ok in zip(controllers, results)}

    async def close(self):
        for controller in self.controllers.values():
            await controller.close()
