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

"""Command-line interface for Tedee Local."""

import argparse
import asyncio
import json
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional

import uvicorn
from pydantic import TypeAdapter, ValidationError

from .__version__ import __version__
from .api import TedeeLocalAPI
from .client import TedeeLocalClient
from .discovery import find_bridge, get_primary_ipv4, verify_bridge
from .exceptions import TedeeApiError
from .models import DeviceConfiguration
from .routes import create_app, register_routes
from .zeroconf_register import register_service_async, unregister_service_async

# Logger will be configured in main() based on daemon/console mode
logger = logging.getLogger(__name__)

CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(message)s"
DAEMON_FORMAT = "%(levelname)-8s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def load_device_configurations(path: Optional[str]) -> List[DeviceConfiguration]:
    """Read the per-lock configuration list from a JSON file.

    The file holds a list of objects such as
    ``{"name": "Front door", "unlatchLock": true, "disableUnlock": false}``.
    """
    if not path:
        return []
    data = json.loads(Path(os.path.expanduser(path)).read_text())
    if isinstance(data, dict):
        data = data.get('devices', [])
    return TypeAdapter(List[DeviceConfiguration]).validate_python(data)


def uvicorn_log_config(args) -> dict:
    """Make uvicorn log through the same format as the rest of the service."""
    loggers = {
        "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "uvicorn.error": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "uvicorn.access": {"handlers": ["default"], "level": "INFO", "propagate": False},
    }
    if args.syslog:
        # Syslog mode: no own handlers, everything goes through the root logger
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "loggers": {
                "uvicorn": {"handlers": [], "level": "INFO", "propagate": True},
                "uvicorn.error": {"handlers": [], "level": "INFO", "propagate": True},
                "uvicorn.access": {"handlers": [], "level": "WARNING", "propagate": True},
            },
        }

    formatter = {"format": DAEMON_FORMAT} if args.daemon else {"format": CONSOLE_FORMAT, "datefmt": DATE_FORMAT}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": loggers,
    }


async def resolve_bridge(args) -> Optional[str]:
    """Return the bridge address to use, discovering it when none is configured."""
    if args.bridge_ip:
        # A configured address is kept even if it does not answer yet
        if not await verify_bridge(args.bridge_ip, args.api_key, args.timeout):
            logger.warning(f"Bridge at {args.bridge_ip} did not pass the health check")
        return args.bridge_ip
    return await find_bridge(args.api_key)


async def run_server(args):
    """Run the Tedee Local server."""
    tedee_api: Optional[TedeeLocalAPI] = None
    server: Optional[uvicorn.Server] = None
    advertised = False

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        if tedee_api:
            for queue in list(tedee_api.event_listeners):
                if not queue.full():
                    queue.put_nowait(None)
        if server:
            server.should_exit = True

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        configurations = load_device_configurations(args.devices)
        tedee_api = TedeeLocalAPI(configurations, update_interval=args.update_interval)

        app = create_app()
        register_routes(app, lambda: tedee_api)

        bridge_ip = await resolve_bridge(args)
        if bridge_ip is None:
            logger.warning("No Tedee bridge available, running without locks until restarted")
        else:
            client = TedeeLocalClient(bridge_ip, args.api_key, timeout=args.timeout, max_retries=args.max_retries)
            try:
                await tedee_api.initialize(client)
                webhook_host = args.webhook_host or get_primary_ipv4() or "127.0.0.1"
                await tedee_api.register_webhook(f"http://{webhook_host}:{args.port}/")
            except TedeeApiError as e:
                logger.error(f"Failed to initialize locks from bridge {bridge_ip}: {e}")

        if args.advertise:
            advertised, message = await register_service_async(
                port=args.port,
                props={'path': '/api', 'version': __version__},
                advertise_addr=args.webhook_host,
            )
            if not advertised:
                logger.warning(f"Service advertisement failed: {message}")

        logger.info("*** Tedee Local ready! ***")
        logger.info(f"Bridge IP: {bridge_ip}")
        logger.info(f"API Server: http://0.0.0.0:{args.port}")
        logger.info(f"Documentation: http://0.0.0.0:{args.port}/docs")
        logger.info(f"Locks: http://0.0.0.0:{args.port}/locks")
        logger.info(f"Live Events: http://0.0.0.0:{args.port}/events")

        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=args.port,
            log_config=uvicorn_log_config(args),
            access_log=args.verbose
        )
        server = uvicorn.Server(config)
        await server.serve()

    except Exception as e:
        logger.error(f"ERROR: Failed to start Tedee Local: {e}")
        raise
    finally:
        if advertised:
            await unregister_service_async()

        if tedee_api:
            logger.info("Performing cleanup...")
            await tedee_api.cleanup()

        if args.pid_file:
            pid_path = Path(args.pid_file)
            try:
                if pid_path.exists():
                    pid_path.unlink()
                    logger.info(f"PID file removed: {pid_path}")
            except OSError as e:
                logger.warning(f"Failed to remove PID file: {e}")


def setup_logging(args):
    """Configure the root logger for console, daemon or syslog mode."""
    if args.syslog:
        syslog_address = args.syslog
        if ':' in syslog_address and not syslog_address.startswith('/'):
            host, port = syslog_address.rsplit(':', 1)
            syslog_address = (host, int(port))

        try:
            syslog_handler = logging.handlers.SysLogHandler(
                address=syslog_address,
                facility=logging.handlers.SysLogHandler.LOG_DAEMON
            )
        except OSError as e:
            logging.basicConfig(level=logging.INFO, format=CONSOLE_FORMAT, datefmt=DATE_FORMAT,
                                stream=sys.stdout, force=True)
            logger.error(f"Failed to connect to syslog ({args.syslog}): {e}")
            logger.info("Falling back to console logging")
        else:
            syslog_handler.setFormatter(logging.Formatter(
                'tedee-local[%(process)d]: %(levelname)s %(message)s'
            ))
            root_logger = logging.getLogger()
            root_logger.setLevel(logging.INFO)
            root_logger.handlers = [syslog_handler]
            logger.info("Logging to syslog: %s", args.syslog)
    elif args.daemon:
        # No timestamp, the service manager adds it
        logging.basicConfig(level=logging.INFO, format=DAEMON_FORMAT, stream=sys.stdout, force=True)
    else:
        logging.basicConfig(level=logging.INFO, format=CONSOLE_FORMAT, datefmt=DATE_FORMAT,
                            stream=sys.stdout, force=True)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.info("Verbose logging enabled")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tedee-local",
        description="Tedee Local - webhook-driven REST API for Tedee locks via the Tedee bridge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Find the bridge on the local network
  tedee-local --api-key <key from the Tedee app>

  # Use a known bridge address and a lock configuration file
  tedee-local --bridge-ip 192.168.1.50 --api-key KEY --devices ~/tedee-devices.json

  # Run as system daemon with periodic resync as a safety net
  tedee-local --bridge-ip 192.168.1.50 --daemon --update-interval 300

  # Send logs to local syslog
  tedee-local --bridge-ip 192.168.1.50 --syslog /dev/log

API Endpoints:
  POST /                        - Webhook receiver for the bridge
  GET  /status                  - System status
  GET  /locks                   - All exposed locks
  POST /locks/{id}/set          - Request a target state (target=secured|unsecured, surface=lock|latch)
  POST /locks/{id}/lock|unlock|unlatch
  GET  /events                  - Server-Sent Events for real-time updates
        """
    )
    parser.add_argument("--bridge-ip", default=os.environ.get('TEDEE_BRIDGE_IP'),
                        help="IP of the Tedee bridge. If not provided, the local network is searched.")
    parser.add_argument("--api-key", default=os.environ.get('TEDEE_API_KEY'),
                        help="Bridge API key from the Tedee app (or TEDEE_API_KEY)")
    parser.add_argument("--timeout", type=float, default=10.0,
                        help="Timeout for each bridge request in seconds (default: 10)")
    parser.add_argument("--max-retries", type=int, default=3,
                        help="Retries for a failed bridge request (default: 3)")
    parser.add_argument("--port", type=int, default=3003,
                        help="Port for the webhook receiver and REST API (default: 3003)")
    parser.add_argument("--webhook-host",
                        help="Address the bridge should use to reach this service (default: primary IPv4)")
    parser.add_argument("--devices",
                        help="JSON file with per-lock configuration")
    parser.add_argument("--update-interval", type=float, default=0,
                        help="Resync all locks every N seconds (default: 0, disabled)")
    parser.add_argument("--advertise", action="store_true",
                        help="Advertise the REST API via mDNS")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable verbose logging (DEBUG level)")
    parser.add_argument("--daemon", action="store_true",
                        help="Run in daemon mode (logging without timestamps, auto-enables --pid-file)")
    parser.add_argument("--syslog",
                        help="Send logs to syslog instead of stdout (e.g., /dev/log, localhost:514)")
    parser.add_argument("--pid-file",
                        help="Write process ID to specified file")
    return parser


def main(argv=None):
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.api_key:
        parser.error("an API key is required (--api-key or TEDEE_API_KEY)")

    if args.daemon and not args.pid_file:
        args.pid_file = "/var/run/tedee-local.pid" if sys.platform != "win32" else "tedee-local.pid"

    setup_logging(args)

    try:
        load_device_configurations(args.devices)
    except (OSError, ValueError, ValidationError) as e:
        logger.error(f"Invalid device configuration {args.devices}: {e}")
        sys.exit(1)

    if args.pid_file:
        pid_path = Path(args.pid_file)
        try:
            pid_path.write_text(str(os.getpid()))
            logger.info(f"PID file written: {pid_path}")
        except OSError as e:
            logger.error(f"Failed to write PID file: {e}")
            sys.exit(1)

    try:
        asyncio.run(run_server(args))
    except KeyboardInterrupt:
        logger.info("*** Shutdown complete ***")
    except Exception as e:
        logger.error(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
