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

"""Webhook events pushed by the Tedee bridge.

The bridge POSTs ``{"event": <type>, "timestamp": <str>, "data": {...}}`` to
every registered callback. Each event type is parsed into its own model and
routed to the controller of the lock named by ``data.deviceId``.
"""

import logging
from typing import Any, Dict, NamedTuple, Type

from pydantic import ValidationError

from .exceptions import MalformedEventError, UnknownEventError
from .models import HubModel, LockState

logger = logging.getLogger(__name__)


class WebhookResult(NamedTuple):
    status_code: int
    message: str


class WebhookEvent(HubModel):
    """Base class for all webhook events."""
    event: str = ""
    timestamp: str = ""


class DeviceEvent(WebhookEvent):
    device_id: int


class BackendConnectionChanged(WebhookEvent):
    is_connected: bool


class DeviceConnectionChanged(DeviceEvent):
    is_connected: bool


class DeviceSettingsChanged(DeviceEvent):
    pass


class BatteryLevelChanged(DeviceEvent):
    battery_level: int


class BatteryStartCharging(DeviceEvent):
    pass


class BatteryStopCharging(DeviceEvent):
    pass


class BatteryFullyCharged(DeviceEvent):
    pass


class LockStatusChanged(DeviceEvent):
    state: LockState
    jammed: bool = False


EVENT_TYPES: Dict[str, Type[WebhookEvent]] = {
    'backend-connection-changed': BackendConnectionChanged,
    'device-connection-changed': DeviceConnectionChanged,
    'device-settings-changed': DeviceSettingsChanged,
    'device-battery-level-changed': BatteryLevelChanged,
    'device-battery-start-charging': BatteryStartCharging,
    'device-battery-stop-charging': BatteryStopCharging,
    'device-battery-fully-charged': BatteryFullyCharged,
    'lock-status-changed': LockStatusChanged,
}


def parse_webhook_payload(payload: Any) -> WebhookEvent:
    """Turn a decoded webhook body into its event model.

    Raises:
        UnknownEventError: event type is not one we handle
        MalformedEventError: body or data does not have the expected shape
    """
    if not isinstance(payload, dict):
        raise MalformedEventError("Webhook body is not a JSON object")

    event_type = payload.get('event')
    if not isinstance(event_type, str):
        raise UnknownEventError(f"Event type must be a string, got {event_type!r}")
    event_class = EVENT_TYPES.get(event_type)
    if event_class is None:
        raise UnknownEventError(f"Unknown event type {event_type!r}")

    data = payload.get('data') or {}
    if not isinstance(data, dict):
        raise MalformedEventError(f"Data of {event_type} is not a JSON object")

    try:
        return event_class.model_validate({
            **data,
            'event': event_type,
            'timestamp': str(payload.get('timestamp', '')),
        })
    except ValidationError as e:
        raise MalformedEventError(f"Invalid {event_type} data: {e}") from e


async def dispatch_event(registry, event: WebhookEvent) -> WebhookResult:
    """Apply an event to the matching controller.

    Connectivity events are informational. Every other event needs a known
    device; once applied the bridge gets a 200 even if a resync failed.
    """
    if isinstance(event, BackendConnectionChanged):
        logger.info(f"Webhook: Backend {'connected' if event.is_connected else 'disconnected'}")
        return WebhookResult(200, "Backend connection noted")

    if isinstance(event, DeviceConnectionChanged):
        logger.info(f"Webhook: Device with id {event.device_id} {'connected' if event.is_connected else 'disconnected'}")
        controller = registry.get(event.device_id)
        if controller is not None:
            await controller.apply_partial_update(is_connected=event.is_connected)
        return WebhookResult(200, "Device connection noted")

    controller = registry.get(event.device_id)
    if controller is None:
        logger.warning(f"Webhook: Device not found with id {event.device_id}")
        return WebhookResult(404, "Lock not found")

    if isinstance(event, DeviceSettingsChanged):
        logger.info(f"Webhook: Device settings changed for device with id {event.device_id}")
        await controller.refresh()
    elif isinstance(event, BatteryFullyCharged):
        logger.info(f"Webhook: Battery fully charged for device with id {event.device_id}")
        await controller.apply_partial_update(battery_level=100, is_charging=False)
    elif isinstance(event, BatteryStartCharging):
        logger.info(f"Webhook: Battery started charging for device with id {event.device_id}")
        await controller.apply_partial_update(is_charging=True)
    elif isinstance(event, BatteryStopCharging):
        logger.info(f"Webhook: Battery stopped charging for device with id {event.device_id}")
        await controller.apply_partial_update(is_charging=False)
    elif isinstance(event, BatteryLevelChanged):
        logger.info(f"Webhook: Battery level changed to {event.battery_level} for device with id {event.device_id}")
        await controller.apply_partial_update(battery_level=event.battery_level)
    elif isinstance(event, LockStatusChanged):
        logger.info(f"Webhook: Lock status changed to {event.state.name} for device with id {event.device_id}")
        await controller.apply_partial_update(state=event.state, jammed=event.jammed)
    else:
        raise UnknownEventError(f"No handler for {type(event).__name__}")

    return WebhookResult(200, "Lock updated successfully")


async def handle_webhook(registry, payload: Any) -> WebhookResult:
    """Parse and dispatch a webhook body, mapping payload errors to 400."""
    try:
        event = parse_webhook_payload(payload)
    except UnknownEventError as e:
        logger.warning(f"Webhook: {e}")
        return WebhookResult(400, "Unknown event type")
    except MalformedEventError as e:
        logger.warning(f"Webhook: {e}")
        return WebhookResult(400, "Malformed event")
    return await dispatch_event(registry, event)
