"""
Device Relay Broker - WebSocket relay between devices and web clients.

This package runs the broker process and:
- Accepts WebSocket connections from devices and operator consoles
- Keeps the device-id to connection mapping (last login wins)
- Routes commands to devices and their results back to the caller
- Pushes the live device list to web clients
"""

__version__ = "1.0.0"
