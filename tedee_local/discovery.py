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

"""Finding the Tedee bridge on the local network.

The bridge does not advertise itself, so candidate addresses are probed with
a signed ``GET /bridge``. Only an address that answers with a well-formed
bridge document counts as found.
"""

import asyncio
import ipaddress
import logging
import socket
from pathlib import Path
from typing import Iterable, List, Optional

from .client import TedeeLocalClient

logger = logging.getLogger(__name__)

ARP_TABLE = Path("/proc/net/arp")
PROBE_TIMEOUT = 2.0
PROBE_CONCURRENCY = 16


def get_primary_ipv4() -> Optional[str]:
    """Return the IPv4 address of the interface used for outbound traffic, or None.

    A UDP connect selects a route without sending anything.
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("8.8.8.8", 80))
        return s.getsockname()[0]
    except OSError:
        try:
            return socket.gethostbyname(socket.gethostname())
        except OSError:
            return None
    finally:
        s.close()


def arp_neighbours(path: Path = ARP_TABLE) -> List[str]:
    """IPv4 addresses from the kernel neighbour table (Linux only)."""
    try:
        lines = path.read_text().splitlines()
    except OSError:
        return []

    addresses = []
    # IP address  HW type  Flags  HW address  Mask  Device
    for line in lines[1:]:
        fields = line.split()
        if len(fields) >= 4 and fields[3] != "00:00:00:00:00:00":
            addresses.append(fields[0])
    return addresses


def subnet_hosts(address: Optional[str], prefix: int = 24) -> List[str]:
    """All host addresses in the /24 around ``address`` except the address itself."""
    if not address:
        return []
    try:
        network = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
    except ValueError:
        return []
    return [str(host) for host in network.hosts() if str(host) != address]


def candidate_hosts() -> List[str]:
    """Known neighbours first, then the rest of the local subnet, without duplicates."""
    seen = set()
    candidates = []
    for host in arp_neighbours() + subnet_hosts(get_primary_ipv4()):
        if host not in seen:
            seen.add(host)
            candidates.append(host)
    return candidates


async def verify_bridge(host: str, api_key: str, timeout: float = PROBE_TIMEOUT) -> bool:
    """Check that ``host`` is a Tedee bridge accepting ``api_key``."""
    client = TedeeLocalClient(host, api_key, timeout=timeout, max_retries=0)
    try:
        return await client.check_api_health()
    finally:
        await client.close()


async def find_bridge(
    api_key: str,
    candidates: Optional[Iterable[str]] = None,
    timeout: float = PROBE_TIMEOUT,
    concurrency: int = PROBE_CONCURRENCY,
) -> Optional[str]:
    """Probe candidate addresses and return the first one that is a bridge.

    Returns:
        Bridge address, or None if nothing answered
    """
    hosts = list(candidates) if candidates is not None else candidate_hosts()
    if not hosts:
        logger.warning("No candidate addresses to probe for the Tedee bridge")
        return None

    logger.info(f"Searching for the Tedee bridge among {len(hosts)} addresses...")
    semaphore = asyncio.Semaphore(concurrency)

    async def probe(host: str) -> Optional[str]:
        async with semaphore:
            logger.debug(f"Probing {host}")
            if await verify_bridge(host, api_key, timeout):
                return host
            return None

    tasks = [asyncio.create_task(probe(host)) for host in hosts]
    found = None
    try:
        for next_done in asyncio.as_completed(tasks):
            found = await next_done
            if found:
                break
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    if found:
        logger.info(f"Tedee bridge found at {found}")
    else:
        logger.warning("Tedee bridge not found on the local network")
    return found
