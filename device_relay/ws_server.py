"""
WebSocket server for the relay broker.

Handles:
- FastAPI WebSocket endpoint at /ws
- One reader and one writer task per connection
- Health and device list HTTP endpoints
- CORS for browser-based operator consoles
"""

import asyncio
import logging
from typing import List, Optional, Union

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .broker import RelayBroker
from .connection import Connection

logger = logging.getLogger(__name__)


class WebSocketServer:
    """
    WebSocket front end for a ``RelayBroker``.

    Every accepted socket becomes a ``Connection``. Whichever of its two
    tasks ends first (peer went away, or the broker closed it) ends the
    session, and the broker's disconnect path runs exactly once.
    """

    def __init__(
        self,
        broker: Optional[RelayBroker] = None,
        cors_origins: Optional[List[str]] = None,
        send_queue_size: int = 256,
    ):
        """
        Initialize WebSocket server.

        Args:
            broker: Relay broker to feed (a fresh one if omitted)
            cors_origins: Allowed CORS origins (default: any)
            send_queue_size: Per-connection outbound queue bound
        """
        self.broker = broker or RelayBroker()
        self.send_queue_size = send_queue_size

        self.app = FastAPI(title="Device Relay Broker")

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins or ["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._setup_routes()

    def _setup_routes(self):
        """Set up FastAPI routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            stats = self.broker.get_stats()
            return {
                "status": "ok",
                "connections": stats["connections"],
                "devices": stats["devices"],
                "web_clients": stats["web_clients"],
                "total_messages": stats["total_messages"],
                "invalid_messages": stats["invalid_messages"],
            }

        @self.app.get("/devices")
        async def device_list():
            """Current device list, same shape as sys:device_list."""
            return self.broker.presence.snapshot().to_payload()

        @self.app.websocket("/ws")
        async def websocket_relay(websocket: WebSocket):
            """WebSocket endpoint for devices and web clients."""
            await self._handle_websocket(websocket)

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        """Serve one connection from accept to cleanup."""
        await websocket.accept()

        conn = Connection(websocket, max_queue_size=self.send_queue_size)
        self.broker.connect(conn)
        logger.info(f"Client connected: {conn.conn_id} from {websocket.client}")

        reader = asyncio.create_task(self._receive_messages(conn))
        writer = asyncio.create_task(conn.run_writer())
        try:
            await asyncio.wait([reader, writer], return_when=asyncio.FIRST_COMPLETED)
        finally:
            # Cleanup first: nothing below may await before the registry is purged
            self.broker.disconnect(conn.conn_id)
            for task in (reader, writer):
                task.cancel()
            if reader.done() and not reader.cancelled() and reader.exception():
                logger.error(f"Error handling client {conn.conn_id}: {reader.exception()}")

    async def _receive_messages(self, conn: Connection) -> None:
        """Receive frames from a client until it disconnects."""
        while True:
            try:
                data = await self._receive_frame(conn.websocket)
            except WebSocketDisconnect:
                logger.info(f"Client disconnected: {conn.conn_id}")
                return
            self.broker.handle_frame(conn, data)

    @staticmethod
    async def _receive_frame(websocket: WebSocket) -> Union[str, bytes]:
        """Receive one text or binary frame."""
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(code=message.get("code", 1000), reason=message.get("reason"))
        if message.get("text") is not None:
            return message["text"]
        return message.get("bytes") or b""

    def shutdown(self) -> None:
        """Close every live connection."""
        self.broker.close_all()

    def get_stats(self) -> dict:
        """Get server statistics."""
        return self.broker.get_stats()


def create_app(config=None) -> FastAPI:
    """
    Create FastAPI application with a fresh broker.

    Usable as a uvicorn factory:
    ``uvicorn device_relay.ws_server:create_app --factory``

    Args:
        config: Optional RelayConfig (read from the environment if omitted)

    Returns:
        Configured FastAPI application
    """
    from .main import RelayConfig

    config = config or RelayConfig.from_env()
    server = WebSocketServer(
        cors_origins=config.cors_origins,
        send_queue_size=config.send_queue_size,
    )
    return server.app
