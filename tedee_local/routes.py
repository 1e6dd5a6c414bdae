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

"""FastAPI route handlers for Tedee Local."""

import asyncio
import json
import logging
import os
import time
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .__version__ import __version__
from .controller import Surface, TargetState
from .exceptions import (
    CommunicationError,
    InvalidTargetError,
    LockBusyError,
    UnlockDisabledError,
)

logger = logging.getLogger(__name__)

# Security
security = HTTPBearer(auto_error=False)

# Space-separated list of accepted bearer tokens; empty disables authentication
API_KEYS_RAW = os.environ.get('TEDEE_LOCAL_API_KEYS', '').strip()
API_KEYS = set(key.strip() for key in API_KEYS_RAW.split() if key.strip()) if API_KEYS_RAW else set()

KEEPALIVE_INTERVAL = 90
EVENT_QUEUE_SIZE = 100


def get_api_key(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Optional[str]:
    """
    Validate API key from Authorization header.

    If API keys are configured (TEDEE_LOCAL_API_KEYS environment variable), checks Bearer token.
    If no API keys are configured, authentication is disabled.

    Returns:
        The validated API key, or None if authentication is disabled

    Raises:
        HTTPException 401 if authentication fails
    """
    if not API_KEYS:
        return None

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if credentials.credentials not in API_KEYS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return credentials.credentials


def create_app():
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Tedee Local",
        description="Local REST API and webhook receiver for Tedee locks via the Tedee bridge",
        version=__version__
    )

    if API_KEYS:
        logger.info(f"API authentication enabled ({len(API_KEYS)} key(s) configured)")
    else:
        logger.info("API authentication disabled (no TEDEE_LOCAL_API_KEYS configured)")

    return app


def register_routes(app: FastAPI, get_tedee_api):
    """Register all API routes.

    Args:
        app: FastAPI application instance
        get_tedee_api: Callable that returns the current TedeeLocalAPI instance
    """

    def get_controller(lock_id: int):
        tedee_api = get_tedee_api()
        if not tedee_api or not tedee_api.registry:
            raise HTTPException(status_code=503, detail="Bridge not connected")
        controller = tedee_api.registry.get(lock_id)
        if controller is None:
            raise HTTPException(status_code=404, detail=f"Lock {lock_id} not found")
        return controller

    async def run_command(lock_id: int, target, surface):
        controller = get_controller(lock_id)
        try:
            await controller.apply_command(target, surface)
        except LockBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except UnlockDisabledError as e:
            raise HTTPException(status_code=403, detail=str(e))
        except InvalidTargetError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except CommunicationError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {'success': True, **controller.as_dict()}

    # ========================================================================
    # Webhook receiver (called by the bridge)
    # ========================================================================

    @app.post("/", include_in_schema=False)
    async def webhook(request: Request):
        """Receive an event pushed by the Tedee bridge."""
        try:
            payload = await request.json()
        except ValueError:
            logger.warning("Webhook: body is not valid JSON")
            return JSONResponse(status_code=400, content={'message': "Malformed event"})

        tedee_api = get_tedee_api()
        if not tedee_api:
            return JSONResponse(status_code=404, content={'message': "Lock not found"})

        result = await tedee_api.handle_webhook(payload)
        return JSONResponse(status_code=result.status_code, content={'message': result.message})

    # ========================================================================
    # Info
    # ========================================================================

    @app.get("/api", tags=["Info"])
    async def api_info(api_key: Optional[str] = Depends(get_api_key)):
        """API root with diagnostics and navigation."""
        return {
            "service": "Tedee Local",
            "description": "Local REST API and webhook receiver for Tedee locks via the Tedee bridge",
            "version": __version__,
            "documentation": "/docs",
            "endpoints": {
                "status": "/status",
                "locks": "/locks",
                "events": "/events",
                "webhook": "/",
            }
        }

    @app.get("/status", tags=["Status"])
    async def get_status(api_key: Optional[str] = Depends(get_api_key)):
        """Get overall system status."""
        tedee_api = get_tedee_api()
        if not tedee_api or not tedee_api.is_connected:
            raise HTTPException(status_code=503, detail="Bridge not connected")
        return {'version': __version__, **tedee_api.status()}

    # ========================================================================
    # Locks
    # ========================================================================

    @app.get("/locks", tags=["Locks"])
    async def get_locks(api_key: Optional[str] = Depends(get_api_key)):
        """All exposed locks with their lock, latch and battery state."""
        tedee_api = get_tedee_api()
        if not tedee_api or not tedee_api.registry:
            raise HTTPException(status_code=503, detail="Bridge not connected")
        locks = [controller.as_dict() for controller in tedee_api.registry]
        return {'locks': locks, 'count': len(locks)}

    @app.get("/locks/{lock_id}", tags=["Locks"])
    async def get_lock(lock_id: int, api_key: Optional[str] = Depends(get_api_key)):
        return get_controller(lock_id).as_dict()

    @app.post("/locks/{lock_id}/set", tags=["Locks"])
    async def set_lock(
        lock_id: int,
        target: str,
        surface: str = Surface.LOCK.value,
        api_key: Optional[str] = Depends(get_api_key)
    ):
        """
        Request a target state for the lock or the latch.

        Args:
            lock_id: Tedee device id
            target: "secured"/"unsecured" or 1/0
            surface: "lock" (default) or "latch"

        Returns:
            The lock state after the command was accepted

        Notes:
            - 409 while a previous command is still moving the lock
            - 403 when unlocking is disabled for this lock
            - 502 when the bridge did not accept the command
            - An accepted command leaves is_operating set until the bridge
              reports a settled state
        """
        return await run_command(lock_id, target, surface)

    @app.post("/locks/{lock_id}/lock", tags=["Locks"])
    async def lock_lock(lock_id: int, api_key: Optional[str] = Depends(get_api_key)):
        return await run_command(lock_id, TargetState.SECURED, Surface.LOCK)

    @app.post("/locks/{lock_id}/unlock", tags=["Locks"])
    async def unlock_lock(lock_id: int, api_key: Optional[str] = Depends(get_api_key)):
        return await run_command(lock_id, TargetState.UNSECURED, Surface.LOCK)

    @app.post("/locks/{lock_id}/unlatch", tags=["Locks"])
    async def unlatch_lock(lock_id: int, api_key: Optional[str] = Depends(get_api_key)):
        """Pull the spring; only available when the latch is exposed for this lock."""
        return await run_command(lock_id, TargetState.UNSECURED, Surface.LATCH)

    @app.post("/locks/{lock_id}/refresh", tags=["Locks"])
    async def refresh_lock(lock_id: int, api_key: Optional[str] = Depends(get_api_key)):
        """Re-read the lock from the bridge."""
        controller = get_controller(lock_id)
        if not await controller.refresh():
            raise HTTPException(status_code=502, detail=f"Failed to refresh lock {lock_id}")
        return controller.as_dict()

    # ========================================================================
    # Events
    # ========================================================================

    @app.get("/events", tags=["Events"])
    async def get_events(api_key: Optional[str] = Depends(get_api_key)):
        """
        Server-Sent Events (SSE) endpoint for real-time updates.

        Every change of a lock's observable state is sent as:
           {
             "type": "lock",
             "id": 12345,
             "name": "Front door",
             "lock": {"name": "Front door", "current": 1, "target": 1},
             "latch": null,
             "battery": {"level": 80, "low_battery": 0, "charging_state": 0},
             ...
             "timestamp": 1700000000.0
           }

        When nothing happens for 90 seconds a keepalive event is sent:
           {"type": "keepalive", "timestamp": 1700000000.0}
        """
        tedee_api = get_tedee_api()
        if not tedee_api:
            raise HTTPException(status_code=503, detail="API not initialized")

        async def event_publisher():
            client_queue = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
            tedee_api.event_listeners.append(client_queue)

            try:
                while True:
                    try:
                        event_data = await asyncio.wait_for(client_queue.get(), timeout=KEEPALIVE_INTERVAL)
                    except asyncio.TimeoutError:
                        keepalive_obj = {'type': 'keepalive', 'timestamp': time.time()}
                        yield f"data: {json.dumps(keepalive_obj)}\n\n"
                        continue

                    if event_data is None:
                        logger.debug("SSE stream received shutdown signal")
                        break

                    yield event_data

            except asyncio.CancelledError:
                logger.debug("SSE stream cancelled")
            finally:
                if client_queue in tedee_api.event_listeners:
                    tedee_api.event_listeners.remove(client_queue)

        return StreamingResponse(
            event_publisher(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            }
        )

    @app.post("/refresh", tags=["Admin"])
    async def refresh_all(api_key: Optional[str] = Depends(get_api_key)):
        """Re-read every lock from the bridge."""
        tedee_api = get_tedee_api()
        if not tedee_api or not tedee_api.registry:
            raise HTTPException(status_code=503, detail="Bridge not connected")
        results = await tedee_api.refresh()
        return {'refreshed': {str(k): v for k, v in results.items()}, 'timestamp': time.time()}

    return app
