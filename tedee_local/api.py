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

"""Tedee Local API - ties the bridge client, the lock controllers and the event streams together."""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Iterable, List, Optional

from .client import TedeeLocalClient
from .controller import GRACE_DELAY
from .exceptions import TedeeApiError
from .models import BridgeDetails, CallbackData, DeviceConfiguration
from .registry import DeviceRegistry
from .webhook import WebhookResult, handle_webhook

logger = logging.getLogger(__name__)


class TedeeLocalAPI:
    """Tedee Local API that keeps lock state in sync through bridge webhooks."""

    def __init__(
        self,
        configurations: Iterable[DeviceConfiguration] = (),
        update_interval: float = 0,
        grace_delay: float = GRACE_DELAY,
    ):
        self.configurations = list(configurations)
        self.update_interval = update_interval
        self.grace_delay = grace_delay

        self.client: Optional[TedeeLocalClient] = None
        self.registry: Optional[DeviceRegistry] = None
        self.bridge: Optional[BridgeDetails] = None
        self.callback_id: Optional[int] = None
        self.webhook_url: Optional[str] = None
        self.last_update: Optional[float] = None

        self.event_listeners: List[asyncio.Queue] = []
        self.background_tasks: List[asyncio.Task] = []
        self.is_shutting_down = False

    @property
    def is_connected(self) -> bool:
        return self.client is not None and self.registry is not None

    async def initialize(self, client: TedeeLocalClient):
        """Load the locks from the bridge and start the periodic resync if enabled."""
        self.client = client
        try:
            self.bridge = await client.get_bridge_details()
            logger.info(f"Connected to bridge {self.bridge.name} ({self.bridge.serial_number}, firmware {self.bridge.version})")
        except TedeeApiError as e:
            logger.warning(f"Could not read bridge details: {e}")

        registry = DeviceRegistry(
            client,
            self.configurations,
            on_change=self.handle_change,
            grace_delay=self.grace_delay,
        )
        count = await registry.load()
        self.registry = registry
        self.last_update = time.time()
        logger.info(f"Exposing {count} locks")

        if self.update_interval > 0:
            task = asyncio.create_task(self.background_polling_loop())
            self.background_tasks.append(task)
            logger.info(f"Background resync every {self.update_interval}s started")

        logger.info("Tedee Local API initialized successfully")

    async def register_webhook(self, url: str) -> Optional[int]:
        """Point the bridge's callback list at ``url``.

        The bridge keeps a list of callbacks; it is replaced by a single entry
        so restarts do not pile up stale registrations.
        """
        if not self.client:
            return None

        result = await self.client.set_callbacks([CallbackData(url=url)])
        self.webhook_url = url
        self.callback_id = self._callback_id_from(result)
        logger.info(f"Webhook registered at {url} (callback id {self.callback_id})")
        return self.callback_id

    @staticmethod
    def _callback_id_from(result: Any) -> Optional[int]:
        if isinstance(result, list) and result:
            result = result[0]
        if isinstance(result, dict):
            result = result.get('id')
        if isinstance(result, int) and not isinstance(result, bool):
            return result
        return None

    async def unregister_webhook(self):
        if not self.client or self.callback_id is None:
            return
        try:
            await self.client.delete_callback(self.callback_id)
            logger.info(f"Webhook callback {self.callback_id} removed")
        except TedeeApiError as e:
            logger.warning(f"Failed to remove webhook callback {self.callback_id}: {e}")
        self.callback_id = None

    async def handle_webhook(self, payload: Any) -> WebhookResult:
        if not self.registry:
            return WebhookResult(404, "Lock not found")
        result = await handle_webhook(self.registry, payload)
        if result.status_code == 200:
            self.last_update = time.time()
        return result

    async def handle_change(self, lock_data: Dict[str, Any]):
        """Called by a controller whenever its observable state changed."""
        await self.broadcast_event({
            'type': 'lock',
            'timestamp': time.time(),
            **lock_data,
        })

    async def broadcast_event(self, event_data):
        """Broadcast change event to all connected SSE clients."""
        event_message = f"data: {json.dumps(event_data)}\n\n"

        for listener in list(self.event_listeners):
            try:
                listener.put_nowait(event_message)
            except asyncio.QueueFull:
                logger.warning("SSE client is not keeping up, dropping it")
                self.event_listeners.remove(listener)

    async def refresh(self) -> Dict[int, bool]:
        """Resynchronize all locks with the bridge."""
        if not self.registry:
            return {}
        results = await self.registry.refresh_all()
        if results and all(results.values()):
            self.last_update = time.time()
        return results

    async def background_polling_loop(self):
        """Resync every lock every ``update_interval`` seconds as a safety net for lost webhooks."""
        while not self.is_shutting_down:
            await asyncio.sleep(self.update_interval)
            try:
                results = await self.refresh()
                failed = [device_id for device_id, ok in results.items() if not ok]
                if failed:
                    logger.debug(f"Background resync failed for {len(failed)} locks")
            except Exception as e:
                logger.error(f"Background resync error: {e}")

    def status(self) -> Dict[str, Any]:
        bridge = self.bridge
        return {
            'status': 'connected' if self.is_connected else 'disconnected',
            'bridge_host': self.client.host if self.client else None,
            'bridge': {
                'name': bridge.name,
                'serial_number': bridge.serial_number,
                'version': bridge.version,
                'wifi_version': bridge.wifi_version,
                'cloud_connected': bool(bridge.is_connected),
            } if bridge else None,
            'webhook_url': self.webhook_url,
            'callback_id': self.callback_id,
            'locks': len(self.registry) if self.registry else 0,
            'last_update': self.last_update,
            'event_listeners': len(self.event_listeners),
        }

    async def cleanup(self):
        """Clean up resources and unregister from the bridge."""
        logger.info("Starting cleanup...")
        self.is_shutting_down = True

        if self.background_tasks:
            logger.info(f"Cancelling {len(self.background_tasks)} background tasks")
            for task in self.background_tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*self.background_tasks, return_exceptions=True)
            self.background_tasks.clear()

        if self.registry:
            await self.registry.close()

        await self.unregister_webhook()

        if self.event_listeners:
            logger.info(f"Closing {len(self.event_listeners)} event listener queues")
            for queue in self.event_listeners:
                # None signals end of stream
                if queue.full():
                    queue.get_nowait()
                queue.put_nowait(None)
            self.event_listeners.clear()

        if self.client:
            await self.client.close()

        logger.info("Cleanup complete")
