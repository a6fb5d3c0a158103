"""
Exception classes for the relay broker.

Every failure here is scoped to a single connection. None of them stop
the broker; the dispatcher turns them into a reply on the offending
connection (or drops the action) and keeps serving.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for relay broker errors."""

    pass


class MalformedRequest(RelayError):
    """
    Inbound frame or payload is invalid.

    Raised when a frame is not a JSON object, names an unknown event, or
    a required field is missing. Reported to the originating connection
    only, with no state change.
    """

    pass


class IdentityConflict(RelayError):
    """
    Device ID is already held by another live connection.

    Never raised to the new claimant: the conflict is resolved by evicting
    the previous holder, and the message of this error is used as the
    eviction notice.
    """

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device {device_id} has logged in from another connection")


class TargetUnavailable(RelayError):
    """
    Addressed connection is not available.

    Either the device a command targets is offline, or the web client a
    result is addressed to has disconnected.
    """

    def __init__(self, target: str, message: Optional[str] = None):
        self.target = target
        super().__init__(message or f"Device {target} is offline")


class AuthRejected(RelayError):
    """
    Login credentials were rejected.

    The connection stays open and the client may retry.
    """

    pass
