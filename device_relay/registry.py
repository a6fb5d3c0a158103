"""
Connection registry and identity resolver.

Both live in one ``RelayRegistry`` so the four mappings always change
together:

- ``connections``: conn-id -> Connection
- ``devices``: device-id -> conn-id (insertion ordered)
- ``device_by_conn``: conn-id -> device-id
- ``web_clients``: conn-ids that completed web login (insertion ordered)

No method awaits. On a single event loop a mutation therefore never
interleaves with another handler, and cross-map invariants are never
observed half-applied.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .errors import AuthRejected, IdentityConflict
from .message import SYS_MESSAGE

logger = logging.getLogger(__name__)


class LoginOutcome(enum.Enum):
    """Result of a login attempt against the identity resolver."""
    REGISTERED = "registered"
    EVICTED = "evicted"
    REJECTED = "rejected"


class IdentityClass(enum.Enum):
    """Identity a connection holds. Device and web are terminal."""
    ANONYMOUS = "anonymous"
    DEVICE = "device"
    WEB = "web"


@dataclass
class LoginResult:
    """Outcome of a login plus the human-readable message for the caller."""
    outcome: LoginOutcome
    message: str
    evicted_conn_id: Optional[str] = None


class RelayRegistry:
    """
    In-memory bookkeeping for one broker process.

    Created when the broker starts and discarded when it stops; nothing
    is persisted.
    """

    def __init__(self):
        self.connections: Dict[str, object] = {}
        self.devices: Dict[str, str] = {}
        self.device_by_conn: Dict[str, str] = {}
        # dict keys as an insertion-ordered set
        self.web_clients: Dict[str, None] = {}

    # -- connection registry -------------------------------------------------

    def register(self, conn_id: str, conn) -> None:
        """Add a live connection; visible to lookups immediately."""
        self.connections[conn_id] = conn
        logger.debug(f"Registered connection {conn_id}")

    def unregister(self, conn_id: str) -> None:
        """Remove a connection. Unknown ids are ignored."""
        if self.connections.pop(conn_id, None) is not None:
            logger.debug(f"Unregistered connection {conn_id}")

    def get(self, conn_id: Optional[str]):
        """Look up a connection; ``None`` means it is gone."""
        if conn_id is None:
            return None
        return self.connections.get(conn_id)

    # -- identity resolver ---------------------------------------------------

    def identity_of(self, conn_id: str) -> IdentityClass:
        """Which identity class a connection currently holds."""
        if conn_id in self.device_by_conn:
            return IdentityClass.DEVICE
        if conn_id in self.web_clients:
            return IdentityClass.WEB
        return IdentityClass.ANONYMOUS

    def login_device(self, conn_id: str, device_id: str) -> LoginResult:
        """
        Bind ``device_id`` to ``conn_id``, evicting any previous holder.

        The previous holder is detached from the identity, sent a notice
        and asked to close before the new mapping is installed. Its own
        disconnect later finds no identity to clean up, so it can never
        remove the new binding.

        Args:
            conn_id: Connection claiming the identity
            device_id: Caller-chosen device identifier

        Returns:
            LoginResult with REGISTERED or EVICTED
        """
        outcome = LoginOutcome.REGISTERED
        evicted = None

        previous = self.devices.get(device_id)
        if previous is not None and previous != conn_id:
            self._evict(previous, IdentityConflict(device_id))
            outcome = LoginOutcome.EVICTED
            evicted = previous

        self.devices[device_id] = conn_id
        self.device_by_conn[conn_id] = device_id
        logger.info(f"Device {device_id} logged in on {conn_id}")

        return LoginResult(
            outcome=outcome,
            message="Device login successful",
            evicted_conn_id=evicted,
        )

    def _evict(self, conn_id: str, conflict: IdentityConflict) -> None:
        """Detach a superseded device connection and close it."""
        self.devices.pop(conflict.device_id, None)
        self.device_by_conn.pop(conn_id, None)

        conn = self.get(conn_id)
        logger.warning(f"Evicting {conn_id}: {conflict}")
        if conn is None:
            return
        conn.close(
            str(conflict),
            notice=(SYS_MESSAGE, {"type": "error", "message": str(conflict)}),
        )

    def login_web(
        self,
        conn_id: str,
        username: Optional[str],
        password: Optional[str],
    ) -> LoginResult:
        """
        Mark ``conn_id`` as a web client.

        Credentials are checked for presence only; nothing is verified
        against a user store.
        """
        try:
            self._check_credentials(username, password)
        except AuthRejected as e:
            logger.warning(f"Web login rejected for {conn_id}: {e}")
            return LoginResult(outcome=LoginOutcome.REJECTED, message=str(e))

        self.web_clients[conn_id] = None
        logger.info(f"Web client {username} logged in on {conn_id}")
        return LoginResult(outcome=LoginOutcome.REGISTERED, message="Login successful")

    @staticmethod
    def _check_credentials(username: Optional[str], password: Optional[str]) -> None:
        if not username or not password:
            raise AuthRejected("Username and password must not be empty")

    def is_device_online(self, device_id: Optional[str]) -> bool:
        """Whether ``device_id`` resolves to a registered connection."""
        return self.resolve_device(device_id) is not None

    def resolve_device(self, device_id: Optional[str]) -> Optional[str]:
        """Connection id holding ``device_id``, if it is still registered."""
        if device_id is None:
            return None
        conn_id = self.devices.get(device_id)
        if conn_id is None or conn_id not in self.connections:
            return None
        return conn_id

    def resolve_device_id(self, conn_id: str) -> Optional[str]:
        """Device id held by ``conn_id`` (inverse lookup)."""
        return self.device_by_conn.get(conn_id)

    def device_ids(self) -> List[str]:
        """Device ids in registration order."""
        return list(self.devices)

    def web_client_ids(self) -> List[str]:
        """Web client connection ids in login order."""
        return list(self.web_clients)

    def cleanup(self, conn_id: str) -> Optional[str]:
        """
        Remove ``conn_id`` from every identity mapping.

        Idempotent, and safe for connections that never logged in.

        Returns:
            The device id the connection held, if any
        """
        self.web_clients.pop(conn_id, None)
        device_id = self.device_by_conn.pop(conn_id, None)
        if device_id is not None and self.devices.get(device_id) == conn_id:
            del self.devices[device_id]
        return device_id

    def remove(self, conn_id: str) -> Optional[str]:
        """
        Identity cleanup and unregister as one step.

        Returns:
            The device id the connection held, if any
        """
        device_id = self.cleanup(conn_id)
        self.unregister(conn_id)
        return device_id

    def get_stats(self) -> dict:
        """Get registry sizes."""
        return {
            "connections": len(self.connections),
            "devices": len(self.devices),
            "web_clients": len(self.web_clients),
        }
