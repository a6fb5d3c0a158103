"""
WebSocket client for talking to the relay broker.

Handles:
- Async WebSocket connection with exponential backoff reconnection
- Message queue for decoupled sending
- Event handlers keyed by event name
- Helpers for the device and web client sides of the protocol

Run as a demo device that acknowledges every command:
    python -m device_relay.ws_client --url ws://127.0.0.1:3000/ws --device-id dev1
"""

import argparse
import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .message import (
    DEVICE_CMD,
    DEVICE_CMD_RESULT,
    DEVICE_LOGIN,
    PING,
    WEB_DEVICE_CMD,
    WEB_GET_DEVICE_LIST,
    WEB_LOGIN,
    encode_frame,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


@dataclass
class ConnectionStats:
    """Statistics about WebSocket connection."""
    connected: bool = False
    connect_time: Optional[float] = None
    disconnect_time: Optional[float] = None
    reconnect_attempts: int = 0
    messages_sent: int = 0
    messages_failed: int = 0
    messages_discarded: int = 0
    messages_received: int = 0
    last_send_time: Optional[float] = None


class RelayClient:
    """
    Async relay client with automatic reconnection.

    Features:
    - Exponential backoff on connection failure (1s -> 30s max)
    - Non-blocking message sending via queue
    - ``on(event, handler)`` dispatch of inbound events
    - ``on_connected`` hook, used to log in again after each reconnect
    """

    def __init__(
        self,
        server_url: str,
        max_backoff_seconds: float = 30.0,
        initial_backoff_seconds: float = 1.0,
        on_connected: Optional[Callable[[], Awaitable[None]]] = None,
        on_disconnected: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        """
        Initialize relay client.

        Args:
            server_url: Broker URL (e.g., ws://127.0.0.1:3000/ws)
            max_backoff_seconds: Maximum backoff time between reconnect attempts
            initial_backoff_seconds: Initial backoff time
            on_connected: Callback when connection is established
            on_disconnected: Callback when connection is lost
        """
        self.server_url = server_url
        self.max_backoff = max_backoff_seconds
        self.initial_backoff = initial_backoff_seconds
        self.on_connected = on_connected
        self.on_disconnected = on_disconnected

        # Connection state
        self._ws = None
        self._connected = False
        self._running = False

        # Incremented per successful connect; queued frames carry the session
        # they were emitted for and are discarded once it has ended
        self._session = 0

        # Message queue
        self._send_queue: asyncio.Queue[Optional[Tuple[int, str]]] = asyncio.Queue(maxsize=100)

        # Inbound handlers
        self._handlers: Dict[str, List[EventHandler]] = {}

        # Statistics
        self.stats = ConnectionStats()

        # Backoff state
        self._current_backoff = initial_backoff_seconds

        # Tasks
        self._connect_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        """Check if currently connected."""
        return self._connected and self._ws is not None

    def on(self, event: str, handler: EventHandler) -> None:
        """
        Register a handler for an inbound event.

        Handlers receive the event payload and may be plain functions or
        coroutines.
        """
        self._handlers.setdefault(event, []).append(handler)

    async def start(self) -> None:
        """Start the client and connection tasks."""
        if self._running:
            return

        self._running = True

        self._connect_task = asyncio.create_task(self._connection_loop())
        self._send_task = asyncio.create_task(self._send_loop())

        logger.info(f"Relay client started, connecting to {self.server_url}")

    async def stop(self) -> None:
        """Stop the client and close the connection."""
        if not self._running:
            return

        logger.info("Relay client stopping...")
        self._running = False

        # Signal send loop to exit
        await self._send_queue.put(None)

        for task in (self._connect_task, self._send_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self._ws:
            await self._ws.close()
            self._ws = None

        self._connected = False
        logger.info("Relay client stopped")

    def _target_session(self) -> int:
        """Session a frame emitted now belongs to: the live one, else the next."""
        return self._session if self._connected else self._session + 1

    def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        Queue an event for sending.

        Non-blocking. Returns False if queue is full. Frames still queued
        when their connection drops are discarded rather than replayed on
        the next one; frames emitted while disconnected go out on the next.
        """
        try:
            self._send_queue.put_nowait((self._target_session(), encode_frame(event, payload or {})))
            return True
        except asyncio.QueueFull:
            self.stats.messages_failed += 1
            logger.warning(f"Send queue full, dropping {event}")
            return False

    # -- protocol helpers ------------------------------------------------------

    def login_device(self, device_id: str) -> bool:
        """Claim a device identity."""
        return self.emit(DEVICE_LOGIN, {"deviceId": device_id})

    def login_web(self, username: str, password: str) -> bool:
        """Log in as a web client."""
        return self.emit(WEB_LOGIN, {"username": username, "password": password})

    def request_device_list(self) -> bool:
        """Ask for the current device list."""
        return self.emit(WEB_GET_DEVICE_LIST)

    def send_command(self, device_id: str, command: str, params: Any = None) -> bool:
        """Send a command to a device (web client side)."""
        return self.emit(WEB_DEVICE_CMD, {
            "deviceId": device_id,
            "command": command,
            "params": {} if params is None else params,
        })

    def send_command_result(
        self,
        to: str,
        command: str,
        success: bool,
        result: Any = None,
        message: str = "",
    ) -> bool:
        """Report a command outcome to the web client that sent it (device side)."""
        return self.emit(DEVICE_CMD_RESULT, {
            "to": to,
            "command": command,
            "success": success,
            "result": result,
            "message": message,
        })

    def ping(self) -> bool:
        """Send an application-level heartbeat."""
        return self.emit(PING)

    # -- internals -------------------------------------------------------------

    async def handle_raw(self, raw: str) -> None:
        """Decode one inbound frame and run its handlers."""
        self.stats.messages_received += 1
        try:
            frame = json.loads(raw)
            event = frame["event"]
            payload = frame.get("data") or {}
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Invalid frame from server: {e}")
            return

        handlers = self._handlers.get(event)
        if not handlers:
            logger.debug(f"No handler for {event}: {payload}")
            return

        for handler in handlers:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in {event} handler: {e}")

    async def _connection_loop(self) -> None:
        """Main connection loop with automatic reconnection."""
        while self._running:
            try:
                await self._connect()

                # Reset backoff on successful connection
                self._current_backoff = self.initial_backoff

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Connection error: {e}")

            if not self._running:
                break

            # Exponential backoff before reconnect
            logger.info(f"Reconnecting in {self._current_backoff:.1f}s...")
            await asyncio.sleep(self._current_backoff)

            self._current_backoff = min(
                self._current_backoff * 2,
                self.max_backoff
            )
            self.stats.reconnect_attempts += 1

    async def _connect(self) -> None:
        """Establish the connection and read frames until it closes."""
        try:
            logger.info(f"Connecting to {self.server_url}...")

            self._ws = await websockets.connect(
                self.server_url,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=5,
            )

            self._session += 1
            self._connected = True
            self.stats.connected = True
            self.stats.connect_time = time.time()

            logger.info("WebSocket connected successfully")

            if self.on_connected:
                await self.on_connected()

            try:
                async for message in self._ws:
                    await self.handle_raw(message)
            except ConnectionClosed as e:
                logger.info(f"Connection closed by server: {e}")

        except ConnectionRefusedError:
            logger.error("Connection refused - is the broker running?")
            raise
        finally:
            self._connected = False
            self.stats.connected = False
            self.stats.disconnect_time = time.time()

            if self.on_disconnected:
                await self.on_disconnected()

    async def _send_loop(self) -> None:
        """Process outgoing message queue."""
        while self._running:
            try:
                item = await self._send_queue.get()

                # None is shutdown signal
                if item is None:
                    break

                # Wait for the connection instead of dropping early traffic
                while self._running and not self.connected:
                    await asyncio.sleep(0.1)
                if not self._running:
                    break

                session, message = item
                if session != self._session:
                    self.stats.messages_discarded += 1
                    logger.debug(f"Discarding frame queued for connection {session}: {message}")
                    continue

                try:
                    await self._ws.send(message)
                    self.stats.messages_sent += 1
                    self.stats.last_send_time = time.time()
                except (ConnectionClosed, WebSocketException) as e:
                    self.stats.messages_failed += 1
                    logger.warning(f"Send failed: {e}")

            except asyncio.CancelledError:
                break

    def get_stats(self) -> dict:
        """Get connection statistics."""
        return {
            "connected": self.connected,
            "connect_time": self.stats.connect_time,
            "disconnect_time": self.stats.disconnect_time,
            "reconnect_attempts": self.stats.reconnect_attempts,
            "messages_sent": self.stats.messages_sent,
            "messages_failed": self.stats.messages_failed,
            "messages_discarded": self.stats.messages_discarded,
            "messages_received": self.stats.messages_received,
            "last_send_time": self.stats.last_send_time,
            "queue_size": self._send_queue.qsize(),
        }


def make_echo_device(client: RelayClient, device_id: str) -> None:
    """
    Wire a client up as a device that acknowledges every command.

    Logs in on every (re)connect and answers each ``device:cmd`` with
    ``success: true`` and the received params as the result.
    """

    async def login() -> None:
        client.login_device(device_id)

    def on_command(payload: Dict[str, Any]) -> None:
        logger.info(f"Command {payload.get('command')} from {payload.get('from')}")
        client.send_command_result(
            to=payload.get("from"),
            command=payload.get("command"),
            success=True,
            result=payload.get("params"),
            message="ok",
        )

    client.on_connected = login
    client.on(DEVICE_CMD, on_command)


async def run_echo_device(url: str, device_id: str) -> None:
    """Run a demo device until cancelled."""
    client = RelayClient(url)
    make_echo_device(client, device_id)
    await client.start()
    try:
        await asyncio.Event().wait()
    finally:
        await client.stop()


def main() -> None:
    """Main entry point for the demo device."""
    parser = argparse.ArgumentParser(description="Demo relay device")
    parser.add_argument("--url", default="ws://127.0.0.1:3000/ws", help="Broker URL")
    parser.add_argument("--device-id", required=True, help="Device ID to log in as")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        asyncio.run(run_echo_device(args.url, args.device_id))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
