"""
Pytest configuration and fixtures for testing.

Provides a fresh broker per test and helpers for connecting fake
devices and web clients to it.
"""

import itertools

import pytest

from device_relay.broker import RelayBroker
from device_relay.message import DeviceLogin, WebLogin
from tests.mocks.connection_mocks import FakeConnection


@pytest.fixture
def broker():
    """
    Provides a broker with an empty registry.

    Returns:
        RelayBroker: Fresh broker instance
    """
    return RelayBroker()


@pytest.fixture
def connect(broker):
    """
    Provides a factory that opens an anonymous fake connection.

    Returns:
        Callable: ``connect(conn_id=None) -> FakeConnection``
    """
    counter = itertools.count(1)

    def _connect(conn_id=None):
        conn = FakeConnection(conn_id or f"conn-{next(counter)}")
        broker.connect(conn)
        conn.clear()
        return conn

    return _connect


@pytest.fixture
def device(broker, connect):
    """
    Provides a factory that opens a connection and logs in a device.

    Returns:
        Callable: ``device(device_id, conn_id=None) -> FakeConnection``
    """

    def _device(device_id, conn_id=None):
        conn = connect(conn_id)
        broker.dispatch(conn, DeviceLogin(device_id=device_id))
        conn.clear()
        return conn

    return _device


@pytest.fixture
def web_client(broker, connect):
    """
    Provides a factory that opens a connection and logs in a web client.

    Returns:
        Callable: ``web_client(conn_id=None, username="operator") -> FakeConnection``
    """

    def _web_client(conn_id=None, username="operator"):
        conn = connect(conn_id)
        broker.dispatch(conn, WebLogin(username=username, password="secret"))
        conn.clear()
        return conn

    return _web_client
