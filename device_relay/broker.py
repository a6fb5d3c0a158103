"""
Relay broker core.

Routes decoded inbound messages to the session protocol handler, the
command router or the presence broadcaster. All handlers are plain
synchronous methods over a shared ``RelayRegistry``; outbound traffic
only enqueues on connections, so no handler suspends mid-mutation.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .errors import MalformedRequest, TargetUnavailable
from .message import (
    DEVICE_CMD,
    DEVICE_LOGIN_RESULT,
    PONG,
    SYS_DEVICE_LIST,
    SYS_MESSAGE,
    WEB_CMD_RESULT,
    WEB_DEVICE_CMD_RESULT,
    WEB_LOGIN_RESULT,
    DeviceCommandResult,
    DeviceLogin,
    InboundMessage,
    Ping,
    WebDeviceCommand,
    WebGetDeviceList,
    WebLogin,
    decode_frame,
)
from .registry import IdentityClass, LoginOutcome, RelayRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceListSnapshot:
    """Device ids online at one instant, in registration order."""
    devices: List[str]
    count: int

    def to_payload(self) -> Dict[str, Any]:
        return {"devices": list(self.devices), "count": self.count}


@dataclass(frozen=True)
class CommandOutcome:
    """Whether a command was accepted for delivery, and why not."""
    accepted: bool
    message: str


class PresenceBroadcaster:
    """Publishes the current device list to web clients."""

    def __init__(self, registry: RelayRegistry):
        self.registry = registry
        self.broadcasts = 0

    def snapshot(self) -> DeviceListSnapshot:
        """
        Capture the device list.

        Order follows registration; it is stable within one call but is
        not a sort order clients should rely on.
        """
        devices = self.registry.device_ids()
        return DeviceListSnapshot(devices=devices, count=len(devices))

    def push_to(self, conn_id: str) -> bool:
        """Send the device list to one connection, if it is still there."""
        conn = self.registry.get(conn_id)
        if conn is None:
            return False
        return conn.send(SYS_DEVICE_LIST, self.snapshot().to_payload())

    def broadcast_all(self) -> int:
        """
        Send the device list to every web client registered right now.

        Returns:
            Number of web clients the list was queued for
        """
        payload = self.snapshot().to_payload()
        delivered = 0
        for conn_id in self.registry.web_client_ids():
            conn = self.registry.get(conn_id)
            if conn is not None and conn.send(SYS_DEVICE_LIST, payload):
                delivered += 1
        self.broadcasts += 1
        logger.debug(f"Device list ({payload['count']}) broadcast to {delivered} web clients")
        return delivered


class SessionProtocolHandler:
    """
    Login protocol for devices and web clients.

    A connection starts anonymous and logs in at most once, as either a
    device or a web client. A second login on an identified connection is
    rejected.
    """

    def __init__(self, registry: RelayRegistry, presence: PresenceBroadcaster):
        self.registry = registry
        self.presence = presence
        self.evictions = 0

    def _already_logged_in(self, conn_id: str) -> Optional[str]:
        identity = self.registry.identity_of(conn_id)
        if identity is IdentityClass.DEVICE:
            return f"Connection already logged in as device {self.registry.resolve_device_id(conn_id)}"
        if identity is IdentityClass.WEB:
            return "Connection already logged in as web client"
        return None

    def device_login(self, conn, msg: DeviceLogin) -> bool:
        """Handle ``device:login``. Returns True if the device is registered."""
        if not msg.device_id:
            logger.warning(f"Device login without deviceId from {conn.conn_id}")
            conn.send(DEVICE_LOGIN_RESULT, {
                "success": False,
                "message": "Device ID must not be empty",
            })
            return False

        already = self._already_logged_in(conn.conn_id)
        if already:
            logger.warning(f"Repeated login from {conn.conn_id}: {already}")
            conn.send(DEVICE_LOGIN_RESULT, {"success": False, "message": already})
            return False

        result = self.registry.login_device(conn.conn_id, msg.device_id)
        if result.outcome is LoginOutcome.EVICTED:
            self.evictions += 1

        conn.send(DEVICE_LOGIN_RESULT, {
            "success": True,
            "message": result.message,
            "deviceId": msg.device_id,
        })
        self.presence.broadcast_all()
        return True

    def web_login(self, conn, msg: WebLogin) -> bool:
        """Handle ``web:login``. Returns True if the client is registered."""
        already = self._already_logged_in(conn.conn_id)
        if already:
            logger.warning(f"Repeated login from {conn.conn_id}: {already}")
            conn.send(WEB_LOGIN_RESULT, {"success": False, "message": already})
            return False

        result = self.registry.login_web(conn.conn_id, msg.username, msg.password)
        if result.outcome is LoginOutcome.REJECTED:
            conn.send(WEB_LOGIN_RESULT, {"success": False, "message": result.message})
            return False

        conn.send(WEB_LOGIN_RESULT, {
            "success": True,
            "message": result.message,
            "user": {"username": msg.username},
        })
        self.presence.push_to(conn.conn_id)
        return True

    def disconnect(self, conn_id: str) -> Optional[str]:
        """
        Purge a connection from the registry and notify web clients if it
        was a device.

        Returns:
            The device id the connection held, if any
        """
        device_id = self.registry.remove(conn_id)
        if device_id is not None:
            logger.info(f"Device {device_id} disconnected ({conn_id})")
            self.presence.broadcast_all()
        return device_id


class CommandRouter:
    """
    Forwards commands from web clients to devices and results back.

    Fire-and-forget: the caller is told the command was sent, never that
    it completed. Results are correlated by the caller's connection id
    only, so concurrent commands from one caller to one device are not
    told apart.
    """

    def __init__(self, registry: RelayRegistry):
        self.registry = registry
        self.commands_routed = 0
        self.commands_rejected = 0
        self.results_forwarded = 0
        self.results_dropped = 0

    def _validate(self, device_id: Optional[str], command: Optional[str], params: Any) -> str:
        """Return the target connection id or raise why the command can't go."""
        if not device_id or not command or params is None:
            raise MalformedRequest("Malformed command")

        target = self.registry.resolve_device(device_id)
        if target is None:
            raise TargetUnavailable(device_id)
        return target

    def dispatch(
        self,
        from_conn_id: str,
        device_id: Optional[str],
        command: Optional[str],
        params: Any,
    ) -> CommandOutcome:
        """
        Send a command to a device.

        Args:
            from_conn_id: Connection of the issuing web client
            device_id: Addressed device
            command: Command name
            params: Command parameters, forwarded untouched

        Returns:
            CommandOutcome; rejected when malformed or the device is offline
        """
        try:
            target = self._validate(device_id, command, params)
        except (MalformedRequest, TargetUnavailable) as e:
            self.commands_rejected += 1
            logger.warning(f"Command from {from_conn_id} rejected: {e}")
            return CommandOutcome(accepted=False, message=str(e))

        self.registry.get(target).send(DEVICE_CMD, {
            "command": command,
            "params": params,
            "from": from_conn_id,
        })
        self.commands_routed += 1
        logger.info(f"Command {command} routed from {from_conn_id} to device {device_id}")
        return CommandOutcome(accepted=True, message=f"Command sent to device {device_id}")

    def handle_command(self, conn, msg: WebDeviceCommand) -> CommandOutcome:
        """Handle ``web:device_cmd`` and acknowledge to the caller."""
        if self.registry.identity_of(conn.conn_id) is not IdentityClass.WEB:
            self.commands_rejected += 1
            outcome = CommandOutcome(accepted=False, message="Web login required")
        else:
            outcome = self.dispatch(conn.conn_id, msg.device_id, msg.command, msg.params)

        conn.send(WEB_CMD_RESULT, {"success": outcome.accepted, "message": outcome.message})
        return outcome

    def forward_result(self, from_conn_id: str, msg: DeviceCommandResult) -> bool:
        """
        Relay a device's command result to the web client that asked.

        Results for a caller that has gone away, or from a connection that
        no longer holds a device identity, are dropped without reply.
        """
        device_id = self.registry.resolve_device_id(from_conn_id)
        if device_id is None:
            self.results_dropped += 1
            logger.debug(f"Dropping result from non-device connection {from_conn_id}")
            return False

        caller = self.registry.get(msg.to)
        if caller is None:
            self.results_dropped += 1
            logger.debug(f"Dropping result from {device_id}: caller {msg.to} is gone")
            return False

        caller.send(WEB_DEVICE_CMD_RESULT, {
            "deviceId": device_id,
            "command": msg.command,
            "success": msg.success,
            "result": msg.result,
            "message": msg.message,
        })
        self.results_forwarded += 1
        return True


class RelayBroker:
    """
    Entry point for the transport: connect, message, disconnect.

    Owns the registry and the three handlers sharing it.
    """

    def __init__(self, registry: Optional[RelayRegistry] = None):
        self.registry = registry or RelayRegistry()
        self.presence = PresenceBroadcaster(self.registry)
        self.sessions = SessionProtocolHandler(self.registry, self.presence)
        self.router = CommandRouter(self.registry)

        self._total_messages = 0
        self._invalid_messages = 0

    def connect(self, conn) -> None:
        """Register a freshly accepted connection and greet it."""
        self.registry.register(conn.conn_id, conn)
        logger.info(f"Connection opened: {conn.conn_id}")
        conn.send(SYS_MESSAGE, {
            "type": "connect",
            "message": f"Connected: {conn.conn_id}",
            "connId": conn.conn_id,
        })

    def disconnect(self, conn_id: str) -> Optional[str]:
        """Run the disconnect path. Safe to call more than once."""
        if self.registry.get(conn_id) is None:
            return None
        logger.info(f"Connection closed: {conn_id}")
        return self.sessions.disconnect(conn_id)

    def handle_frame(self, conn, raw: Union[str, bytes]) -> None:
        """Decode a raw frame and dispatch it; bad frames get an error notice."""
        self._total_messages += 1
        try:
            msg = decode_frame(raw)
        except MalformedRequest as e:
            self._invalid_messages += 1
            logger.warning(f"Invalid frame from {conn.conn_id}: {e}")
            conn.send(SYS_MESSAGE, {"type": "error", "message": str(e)})
            return
        self.dispatch(conn, msg)

    def dispatch(self, conn, msg: InboundMessage) -> None:
        """Route one decoded message from ``conn``."""
        if conn.closing or self.registry.get(conn.conn_id) is None:
            logger.debug(f"Ignoring {type(msg).__name__} from closed connection {conn.conn_id}")
            return

        logger.debug(f"{type(msg).__name__} from {conn.conn_id}")

        if isinstance(msg, DeviceLogin):
            self.sessions.device_login(conn, msg)
        elif isinstance(msg, WebLogin):
            self.sessions.web_login(conn, msg)
        elif isinstance(msg, WebGetDeviceList):
            self.presence.push_to(conn.conn_id)
        elif isinstance(msg, WebDeviceCommand):
            self.router.handle_command(conn, msg)
        elif isinstance(msg, DeviceCommandResult):
            self.router.forward_result(conn.conn_id, msg)
        elif isinstance(msg, Ping):
            conn.send(PONG, {"type": "pong"})
        else:
            raise TypeError(f"Unhandled message type: {type(msg).__name__}")

    def close_all(self, reason: str = "Server shutting down") -> None:
        """Ask every live connection to close."""
        for conn in list(self.registry.connections.values()):
            conn.close(reason)

    def get_stats(self) -> dict:
        """Get broker statistics."""
        stats = self.registry.get_stats()
        stats.update({
            "total_messages": self._total_messages,
            "invalid_messages": self._invalid_messages,
            "commands_routed": self.router.commands_routed,
            "commands_rejected": self.router.commands_rejected,
            "results_forwarded": self.router.results_forwarded,
            "results_dropped": self.router.results_dropped,
            "evictions": self.sessions.evictions,
            "broadcasts": self.presence.broadcasts,
        })
        return stats
