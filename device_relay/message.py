"""
Message schema for relay traffic.

Every frame on the wire, in both directions, is a JSON text frame of the
form ``{"event": "<name>", "data": {...}}``. Inbound frames are decoded
into one dataclass variant per event name so the dispatcher can match
them exhaustively. Outbound payloads always carry a server timestamp.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .errors import MalformedRequest


# Inbound events
DEVICE_LOGIN = "device:login"
DEVICE_CMD_RESULT = "device:cmd_result"
WEB_LOGIN = "web:login"
WEB_GET_DEVICE_LIST = "web:get_device_list"
WEB_DEVICE_CMD = "web:device_cmd"
PING = "ping"

# Outbound events
DEVICE_LOGIN_RESULT = "device:login_result"
DEVICE_CMD = "device:cmd"
WEB_LOGIN_RESULT = "web:login_result"
WEB_CMD_RESULT = "web:cmd_result"
WEB_DEVICE_CMD_RESULT = "web:device_cmd_result"
SYS_DEVICE_LIST = "sys:device_list"
SYS_MESSAGE = "sys:message"
PONG = "pong"


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    """Read a string field, treating missing, null and empty as absent."""
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Numeric ids are accepted and normalized to strings
        return str(value)
    if not isinstance(value, str):
        raise MalformedRequest(f"Field '{key}' must be a string")
    return value


@dataclass(frozen=True)
class DeviceLogin:
    """A device claims an identity."""
    device_id: Optional[str]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeviceLogin':
        return cls(device_id=_optional_str(data, "deviceId"))


@dataclass(frozen=True)
class DeviceCommandResult:
    """A device reports the outcome of a command back to its caller."""
    to: Optional[str]
    command: Optional[str]
    success: Any
    result: Any
    message: Any

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeviceCommandResult':
        return cls(
            to=_optional_str(data, "to"),
            command=_optional_str(data, "command"),
            success=data.get("success"),
            result=data.get("result"),
            message=data.get("message"),
        )


@dataclass(frozen=True)
class WebLogin:
    """An operator console logs in."""
    username: Optional[str]
    password: Optional[str]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WebLogin':
        return cls(
            username=_optional_str(data, "username"),
            password=_optional_str(data, "password"),
        )


@dataclass(frozen=True)
class WebGetDeviceList:
    """An operator console asks for the current device list."""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WebGetDeviceList':
        return cls()


@dataclass(frozen=True)
class WebDeviceCommand:
    """
    An operator console sends a command to a device.

    ``params`` keeps whatever JSON value the caller supplied; an empty
    object counts as present, only a missing or null value does not.
    """
    device_id: Optional[str]
    command: Optional[str]
    params: Any

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WebDeviceCommand':
        return cls(
            device_id=_optional_str(data, "deviceId"),
            command=_optional_str(data, "command"),
            params=data.get("params"),
        )


@dataclass(frozen=True)
class Ping:
    """Application-level heartbeat."""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Ping':
        return cls()


InboundMessage = Union[
    DeviceLogin,
    DeviceCommandResult,
    WebLogin,
    WebGetDeviceList,
    WebDeviceCommand,
    Ping,
]

INBOUND_VARIANTS = {
    DEVICE_LOGIN: DeviceLogin,
    DEVICE_CMD_RESULT: DeviceCommandResult,
    WEB_LOGIN: WebLogin,
    WEB_GET_DEVICE_LIST: WebGetDeviceList,
    WEB_DEVICE_CMD: WebDeviceCommand,
    PING: Ping,
}


def decode_frame(raw: Union[str, bytes]) -> InboundMessage:
    """
    Decode a raw frame into its message variant.

    Args:
        raw: JSON text received from a connection; binary frames must
            carry UTF-8 encoded JSON

    Returns:
        One of the inbound message dataclasses

    Raises:
        MalformedRequest: if the frame is not valid UTF-8 JSON, has no
            event name, names an unknown event, or carries a non-object
            payload
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedRequest(f"Binary frame is not UTF-8: {e}") from e

    try:
        frame = json.loads(raw)
    except (ValueError, TypeError, RecursionError) as e:
        # JSONDecodeError is a ValueError; deep nesting exhausts the recursion limit
        raise MalformedRequest(f"Frame is not valid JSON: {e}") from e

    if not isinstance(frame, dict):
        raise MalformedRequest("Frame must be a JSON object")

    event = frame.get("event")
    if not isinstance(event, str) or not event:
        raise MalformedRequest("Frame has no event name")

    variant = INBOUND_VARIANTS.get(event)
    if variant is None:
        raise MalformedRequest(f"Unknown event: {event}")

    data = frame.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedRequest(f"Payload of {event} must be a JSON object")

    return variant.from_dict(data)


def encode_frame(event: str, payload: Dict[str, Any]) -> str:
    """Serialize an event and payload to a JSON text frame."""
    return json.dumps({"event": event, "data": payload})


def stamp(payload: Dict[str, Any], timestamp: Optional[int] = None) -> Dict[str, Any]:
    """Return a copy of ``payload`` carrying a server timestamp."""
    stamped = dict(payload)
    stamped["timestamp"] = now_ms() if timestamp is None else timestamp
    return stamped
