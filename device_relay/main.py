#!/usr/bin/env python3
"""
Device Relay Broker - Main Entry Point

This server lets web (operator) clients discover which devices are
connected, send them commands and receive their results:
- Devices log in with a device ID (last login wins)
- Web clients log in and get the live device list
- Commands and results are relayed over a single WebSocket endpoint

Environment Variables:
    RELAY_HOST: Bind address (default: 0.0.0.0)
    RELAY_PORT: Bind port (default: 3000)
    RELAY_CORS_ORIGINS: Comma-separated allowed origins (default: *)
    RELAY_LOG_LEVEL: Log level (default: INFO)
    RELAY_SEND_QUEUE_SIZE: Per-connection outbound queue bound (default: 256)

Usage:
    python -m device_relay.main --port 3000
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

import uvicorn

from .broker import RelayBroker
from .ws_server import WebSocketServer

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class RelayConfig:
    """Runtime configuration, read once at startup."""
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    send_queue_size: int = 256

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'RelayConfig':
        """
        Build configuration from environment variables.

        Args:
            env: Mapping to read from (default: os.environ)

        Raises:
            ValueError: if a numeric variable is not an integer
        """
        env = os.environ if env is None else env

        origins = [
            o.strip() for o in env.get("RELAY_CORS_ORIGINS", "*").split(",") if o.strip()
        ]
        port = _int_env(env, "RELAY_PORT", 3000)
        queue_size = _int_env(env, "RELAY_SEND_QUEUE_SIZE", 256)
        if queue_size <= 0:
            raise ValueError("RELAY_SEND_QUEUE_SIZE must be positive")

        return cls(
            host=env.get("RELAY_HOST", "0.0.0.0"),
            port=port,
            cors_origins=origins or ["*"],
            log_level=env.get("RELAY_LOG_LEVEL", "INFO").upper(),
            send_queue_size=queue_size,
        )


class RelayGateway:
    """
    Owns the broker and its WebSocket front end for one process.

    The registry lives only as long as this object; nothing survives a
    restart.
    """

    def __init__(self, config: RelayConfig):
        """
        Initialize relay gateway.

        Args:
            config: Runtime configuration
        """
        self.config = config
        self.host = config.host
        self.port = config.port

        self.broker: Optional[RelayBroker] = None
        self.ws_server: Optional[WebSocketServer] = None

        self._running = False

    async def start(self) -> None:
        """Create the broker and WebSocket server."""
        logger.info("Starting Device Relay Broker...")

        self.broker = RelayBroker()
        self.ws_server = WebSocketServer(
            broker=self.broker,
            cors_origins=self.config.cors_origins,
            send_queue_size=self.config.send_queue_size,
        )

        self._running = True
        logger.info(f"Device Relay Broker ready on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Close remaining connections."""
        logger.info("Stopping Device Relay Broker...")
        self._running = False

        if self.ws_server:
            self.ws_server.shutdown()

        logger.info("Device Relay Broker stopped")

    def get_app(self):
        """Get the FastAPI application for uvicorn."""
        return self.ws_server.app

    def get_stats(self) -> dict:
        """Get server statistics."""
        return self.ws_server.get_stats() if self.ws_server else {}


async def run_server(gateway: RelayGateway) -> None:
    """Run the server with uvicorn."""
    config = uvicorn.Config(
        gateway.get_app(),
        host=gateway.host,
        port=gateway.port,
        log_level=gateway.config.log_level.lower(),
        access_log=True,
    )
    server = uvicorn.Server(config)
    await server.serve()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line overrides for the environment configuration."""
    parser = argparse.ArgumentParser(description="Device relay broker")
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", type=int, help="Bind port")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


async def main_async(config: RelayConfig) -> None:
    """Async main entry point."""
    gateway = RelayGateway(config)

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await gateway.start()

        # Run server until shutdown
        server_task = asyncio.create_task(run_server(gateway))
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        done, pending = await asyncio.wait(
            [server_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # Cancel pending tasks
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    except Exception as e:
        logger.error(f"Server error: {e}")
    finally:
        await gateway.stop()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = RelayConfig.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level.upper()

    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
