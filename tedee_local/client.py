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

"""Tedee bridge local API client.

Authentication:
---------------
Every request carries an ``api_token`` header built as
``sha256(api_key + timestamp).hexdigest() + timestamp`` where timestamp is the
current Unix time in milliseconds. Tokens are time-scoped, so a new one is
generated for every attempt, including retries.

Retries:
--------
Transport errors, timeouts and HTTP error statuses are retried after a fixed
delay until ``max_retries`` retries have been spent. Responses that arrive but
cannot be parsed are not retried.
"""

import asyncio
import hashlib
import json
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from .exceptions import TedeeApiError, TedeeResponseError
from .models import (
    BridgeDetails,
    CallbackData,
    Lock,
    UNLOCK_MODE_NORMAL,
)

logger = logging.getLogger(__name__)


class TedeeLocalClient:
    """Client for the Tedee bridge HTTP API (``/v1.0``)."""

    API_PATH = "/v1.0"
    RETRY_DELAY = 0.5

    def __init__(
        self,
        host: str,
        api_key: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize the client.

        Args:
            host: Bridge address, optionally with ``:port``
            api_key: API key shown in the Tedee app for the bridge
            timeout: Per-request timeout in seconds
            max_retries: Number of retries after the first failed attempt
            session: Optional shared aiohttp session (not closed by us)
        """
        self.host = host
        self.base_url = f"http://{host}{self.API_PATH}"
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = self.RETRY_DELAY
        self._session = session
        self._owns_session = session is None

    def __repr__(self) -> str:
        return f"<TedeeLocalClient {self.base_url}>"

    def generate_api_token(self) -> str:
        timestamp = int(time.time() * 1000)
        digest = hashlib.sha256(f"{self.api_key}{timestamp}".encode("utf-8")).hexdigest()
        return f"{digest}{timestamp}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self):
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, path: str, json_body: Any = None) -> Any:
        """Send a request, retrying transient failures.

        Returns:
            Decoded JSON body, or None for an empty body

        Raises:
            TedeeApiError: when all attempts failed
            TedeeResponseError: when the body is not valid JSON
        """
        url = f"{self.base_url}{path}"
        retries = 0

        while True:
            headers = {
                "accept": "application/json",
                "api_token": self.generate_api_token(),
            }
            try:
                session = self._get_session()
                async with session.request(
                    method,
                    url,
                    json=json_body,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    text = await resp.text()
                    if resp.status >= 400:
                        raise TedeeApiError(
                            f"{method} {path} failed: HTTP {resp.status}",
                            status=resp.status,
                            body=text,
                        )
                    if not text.strip():
                        return None
                    try:
                        return json.loads(text)
                    except ValueError as e:
                        raise TedeeResponseError(
                            f"{method} {path} returned invalid JSON: {e}",
                            status=resp.status,
                            body=text,
                        ) from e

            except TedeeResponseError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, TedeeApiError) as e:
                if retries >= self.max_retries:
                    if isinstance(e, TedeeApiError):
                        raise
                    raise TedeeApiError(f"{method} {path} failed: {e!r}") from e

                retries += 1
                logger.debug(f"{method} {path} failed ({e!r}), retry {retries} of {self.max_retries}")
                await asyncio.sleep(self.retry_delay)

    @staticmethod
    def _parse(model, data: Any, what: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise TedeeResponseError(f"Unexpected {what} document: {e}", body=data) from e

    # ========================================================================
    # Bridge
    # ========================================================================

    async def get_bridge_details(self) -> BridgeDetails:
        data = await self._request("GET", "/bridge")
        return self._parse(BridgeDetails, data, "bridge")

    async def check_api_health(self) -> bool:
        """Return True only if the address answers with a well-formed bridge document."""
        try:
            await self.get_bridge_details()
            return True
        except TedeeApiError as e:
            logger.debug(f"Health check for {self.host} failed: {e}")
            return False

    # ========================================================================
    # Locks
    # ========================================================================

    async def get_locks(self) -> List[Lock]:
        data = await self._request("GET", "/lock")
        if not isinstance(data, list):
            raise TedeeResponseError("Lock list is not a JSON array", body=data)
        return [self._parse(Lock, item, "lock") for item in data]

    async def get_lock(self, device_id: int) -> Lock:
        data = await self._request("GET", f"/lock/{device_id}")
        return self._parse(Lock, data, "lock")

    async def lock(self, device_id: int):
        return await self._request("POST", f"/lock/{device_id}/lock")

    async def unlock(self, device_id: int, mode: int = UNLOCK_MODE_NORMAL):
        return await self._request("POST", f"/lock/{device_id}/unlock", {"mode": mode})

    async def pull(self, device_id: int):
        return await self._request("POST", f"/lock/{device_id}/pull")

    # ========================================================================
    # Callbacks
    # ========================================================================

    async def list_callbacks(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/callback") or []

    async def add_callback(self, callback: CallbackData):
        return await self._request("POST", "/callback", callback.model_dump(by_alias=True))

    async def set_callbacks(self, callbacks: List[CallbackData]):
        """Replace all callbacks registered on the bridge."""
        return await self._request("PUT", "/callback", [c.model_dump(by_alias=True) for c in callbacks])

    async def update_callback(self, callback_id: int, callback: CallbackData):
        return await self._request("PUT", f"/callback/{callback_id}", callback.model_dump(by_alias=True))

    async def delete_callback(self, callback_id: int):
        return await self._request("DELETE", f"/callback/{callback_id}")
