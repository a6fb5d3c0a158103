"""
Live transport connection with a decoupled outbound queue.

Handlers never await a socket: ``send`` only enqueues, and a writer task
per connection drains the queue onto the WebSocket. Forced closure is a
sentinel on the same queue, so anything sent before ``close`` is flushed
first. A closing notice is held outside the queue bound and written
last, right before the close frame.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from fastapi import WebSocketDisconnect

from .message import encode_frame, stamp

logger = logging.getLogger(__name__)

_CLOSE = object()

# Policy violation: used when a device identity is taken over
CLOSE_CODE_EVICTED = 1008


def new_connection_id() -> str:
    """Generate an opaque connection identifier."""
    return uuid.uuid4().hex


@dataclass
class ConnectionStats:
    """Statistics about one connection."""
    connected_at: float
    messages_queued: int = 0
    messages_sent: int = 0
    messages_dropped: int = 0
    last_send_time: Optional[float] = None


class Connection:
    """
    One live WebSocket session owned by the connection registry.

    Attributes:
        conn_id: Opaque identifier, unique among live connections
        closing: Set once a forced close has been requested
    """

    def __init__(
        self,
        websocket: Any,
        conn_id: Optional[str] = None,
        max_queue_size: int = 256,
    ):
        """
        Initialize connection.

        Args:
            websocket: Accepted WebSocket offering ``send_text`` and ``close``
            conn_id: Connection identifier (generated if omitted)
            max_queue_size: Bound on queued outbound frames
        """
        self.websocket = websocket
        self.conn_id = conn_id or new_connection_id()
        self.closing = False
        self.close_reason: Optional[str] = None
        self._final_frame: Optional[str] = None

        self._send_queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.stats = ConnectionStats(connected_at=time.time())

    def send(self, event: str, payload: Dict[str, Any]) -> bool:
        """
        Queue a named event for this connection only.

        Non-blocking. The payload is stamped with a server timestamp.

        Args:
            event: Outbound event name
            payload: JSON-serializable payload

        Returns:
            True if queued, False if the connection is closing or the
            queue is full
        """
        if self.closing:
            logger.debug(f"Dropping {event} for closing connection {self.conn_id}")
            self.stats.messages_dropped += 1
            return False

        try:
            self._send_queue.put_nowait(encode_frame(event, stamp(payload)))
        except asyncio.QueueFull:
            self.stats.messages_dropped += 1
            logger.warning(f"Send queue full for {self.conn_id}, dropping {event}")
            return False

        self.stats.messages_queued += 1
        return True

    def close(self, reason: str = "", notice: Optional[Tuple[str, Dict[str, Any]]] = None) -> None:
        """
        Request forced closure after already-queued frames are flushed.

        Idempotent. The writer task exits after closing the socket, which
        ends the session and runs the normal disconnect path.

        Args:
            reason: Close reason sent with the close frame
            notice: Optional (event, payload) written last, right before
                the close frame; it is kept outside the queue bound
        """
        if self.closing:
            return
        self.closing = True
        self.close_reason = reason
        if notice is not None:
            event, payload = notice
            self._final_frame = encode_frame(event, stamp(payload))
        try:
            self._send_queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            # Make room for the sentinel; the close outranks pending traffic
            self._send_queue.get_nowait()
            self.stats.messages_dropped += 1
            self._send_queue.put_nowait(_CLOSE)

    async def run_writer(self) -> None:
        """Drain the outbound queue onto the socket until closed."""
        while True:
            frame = await self._send_queue.get()

            if frame is _CLOSE:
                await self._close_socket()
                return

            if not await self._write(frame):
                return

    async def _write(self, frame: str) -> bool:
        try:
            await self.websocket.send_text(frame)
        except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
            # Socket is gone; the session ends and cleanup follows
            logger.warning(f"Send to {self.conn_id} failed: {e}")
            return False

        self.stats.messages_sent += 1
        self.stats.last_send_time = time.time()
        return True

    async def _close_socket(self) -> None:
        if self._final_frame is not None and not await self._write(self._final_frame):
            return

        logger.info(f"Closing connection {self.conn_id}: {self.close_reason}")
        try:
            await self.websocket.close(
                code=CLOSE_CODE_EVICTED,
                reason=self.close_reason or "",
            )
        except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
            logger.debug(f"Close of {self.conn_id} failed: {e}")

    def queue_size(self) -> int:
        """Number of frames waiting to be written."""
        return self._send_queue.qsize()
