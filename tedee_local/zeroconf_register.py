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

"""mDNS advertisement of the local REST service via AsyncZeroconf.

Registration failures are logged and reported to the caller; the service
keeps running without advertisement.
"""

import logging
import socket
from typing import Dict, Optional, Tuple

from zeroconf import ServiceInfo
from zeroconf.asyncio import AsyncZeroconf

from .discovery import get_primary_ipv4

logger = logging.getLogger(__name__)

SERVICE_TYPE = '_tedee-local._tcp.local.'

# module-level registration handle: (async_zc, info)
_reg: Optional[Tuple[AsyncZeroconf, ServiceInfo]] = None


def _props_to_txt(props: Dict[str, str]):
    return {k: (v.encode('utf-8') if isinstance(v, str) else v) for k, v in props.items()}


def _pack_ipv4(addr: str) -> Optional[bytes]:
    try:
        return socket.inet_pton(socket.AF_INET, addr)
    except OSError:
        return None


def build_service_info(
    name: str,
    port: int,
    props: Optional[Dict[str, str]] = None,
    service_type: str = SERVICE_TYPE,
    advertise_addr: Optional[str] = None,
) -> ServiceInfo:
    """Describe the service; the address defaults to the primary IPv4 of this host."""
    addresses = None
    packed = _pack_ipv4(advertise_addr or get_primary_ipv4() or '')
    if packed:
        addresses = [packed]

    return ServiceInfo(
        service_type,
        f"{name}.{service_type}",
        addresses=addresses,
        port=port,
        properties=_props_to_txt(props or {}),
    )


async def register_service_async(
    name: str = 'tedee-local',
    port: int = 3003,
    props: Optional[Dict[str, str]] = None,
    service_type: Optional[str] = None,
    advertise_addr: Optional[str] = None,
):
    """Register the service.

    Returns (ok: bool, message: Optional[str]).
    """
    global _reg
    service_type = service_type or SERVICE_TYPE
    logger.debug("register_service_async called: name=%s port=%s service_type=%s props=%s", name, port, service_type, props)

    info = build_service_info(name, port, props, service_type, advertise_addr)
    async_zc = AsyncZeroconf()
    try:
        # Zeroconf renames the instance (e.g. "tedee-local (2)") on a name conflict
        await async_zc.async_register_service(info, allow_name_change=True)
    except Exception as e:
        logger.exception("AsyncZeroconf registration failed for %s", name)
        await async_zc.async_close()
        return False, str(e)

    _reg = (async_zc, info)
    logger.info("AsyncZeroconf registered service %s (published as: %s) on port %s", name, info.name, port)
    return True, None


async def unregister_service_async():
    """Unregister the current registration, if any."""
    global _reg
    if not _reg:
        return
    async_zc, info = _reg
    _reg = None
    try:
        await async_zc.async_unregister_service(info)
    except Exception as e:
        logger.warning(f"Failed to unregister {info.name}: {e}")
    finally:
        await async_zc.async_close()
