"""
Tests for the relay broker: login protocol, command routing and
device list broadcasts.
"""

import json

from device_relay.message import (
    DeviceCommandResult,
    DeviceLogin,
    Ping,
    WebDeviceCommand,
    WebGetDeviceList,
    WebLogin,
)


class TestConnect:
    """Tests for connection setup and teardown."""

    def test_connect_greets_with_connection_id(self, broker):
        from tests.mocks.connection_mocks import FakeConnection

        conn = FakeConnection("c1")
        broker.connect(conn)

        greeting = conn.last("sys:message")
        assert greeting["type"] == "connect"
        assert greeting["connId"] == "c1"
        assert broker.registry.get("c1") is conn

    def test_disconnect_anonymous(self, broker, connect, web_client):
        web = web_client()
        conn = connect()

        assert broker.disconnect(conn.conn_id) is None

        assert broker.registry.get(conn.conn_id) is None
        assert web.events("sys:device_list") == []

    def test_disconnect_twice_is_noop(self, broker, device, web_client):
        web = web_client()
        dev = device("dev1")
        web.clear()

        assert broker.disconnect(dev.conn_id) == "dev1"
        assert broker.disconnect(dev.conn_id) is None

        assert len(web.events("sys:device_list")) == 1

    def test_ping(self, broker, connect):
        conn = connect()
        broker.dispatch(conn, Ping())
        assert conn.last("pong") == {"type": "pong"}


class TestDeviceLogin:
    """Tests for device:login."""

    def test_success_acknowledges_and_broadcasts(self, broker, connect, web_client):
        web1 = web_client()
        web2 = web_client()
        conn = connect()

        broker.dispatch(conn, DeviceLogin(device_id="dev1"))

        ack = conn.last("device:login_result")
        assert ack["success"] is True
        assert ack["deviceId"] == "dev1"
        for web in (web1, web2):
            assert web.events("sys:device_list") == [{"devices": ["dev1"], "count": 1}]

    def test_missing_device_id(self, broker, connect, web_client):
        web = web_client()
        conn = connect()

        broker.dispatch(conn, DeviceLogin(device_id=None))

        ack = conn.last("device:login_result")
        assert ack["success"] is False
        assert "deviceId" not in ack
        assert broker.registry.devices == {}
        assert web.events("sys:device_list") == []

    def test_broadcast_skips_devices_and_anonymous(self, broker, connect, device):
        other = device("dev0")
        anon = connect()
        conn = connect()

        broker.dispatch(conn, DeviceLogin(device_id="dev1"))

        assert other.events("sys:device_list") == []
        assert anon.events("sys:device_list") == []

    def test_takeover_evicts_previous_connection(self, broker, device, web_client):
        web = web_client()
        first = device("dev1")
        second = device("dev1")

        assert first.closing
        assert first.close_calls == 1
        notices = [p for p in first.events("sys:message") if p["type"] == "error"]
        assert len(notices) == 1
        assert broker.registry.resolve_device("dev1") == second.conn_id
        assert broker.get_stats()["evictions"] == 1

        # The evicted socket closing later must not unregister the new holder
        web.clear()
        broker.disconnect(first.conn_id)
        assert broker.registry.resolve_device("dev1") == second.conn_id
        assert web.events("sys:device_list") == []

    def test_repeated_takeovers_keep_one_holder(self, broker, device):
        conns = [device("dev1") for _ in range(5)]

        assert list(broker.registry.devices.values()) == [conns[-1].conn_id]
        for conn in conns[:-1]:
            assert conn.close_calls == 1
            assert broker.registry.resolve_device_id(conn.conn_id) is None

    def test_evicted_connection_is_ignored(self, broker, device, web_client):
        web = web_client()
        first = device("dev1")
        device("dev1")
        web.clear()

        broker.dispatch(first, DeviceCommandResult(
            to=web.conn_id, command="reboot", success=True, result="ok", message=None,
        ))

        assert web.events("web:device_cmd_result") == []

    def test_second_login_on_device_is_rejected(self, broker, device):
        conn = device("dev1")

        broker.dispatch(conn, DeviceLogin(device_id="dev2"))

        ack = conn.last("device:login_result")
        assert ack["success"] is False
        assert "already logged in" in ack["message"]
        assert broker.registry.device_ids() == ["dev1"]

    def test_device_cannot_become_web_client(self, broker, device):
        conn = device("dev1")

        broker.dispatch(conn, WebLogin(username="alice", password="pw"))

        assert conn.last("web:login_result")["success"] is False
        assert broker.registry.web_client_ids() == []


class TestWebLogin:
    """Tests for web:login and web:get_device_list."""

    def test_success_then_device_list(self, broker, connect, device):
        device("dev1")
        conn = connect()

        broker.dispatch(conn, WebLogin(username="alice", password="pw"))

        assert [event for event, _ in conn.sent] == ["web:login_result", "sys:device_list"]
        ack = conn.last("web:login_result")
        assert ack["success"] is True
        assert ack["user"] == {"username": "alice"}
        assert conn.last("sys:device_list") == {"devices": ["dev1"], "count": 1}

    def test_login_pushes_only_to_new_client(self, broker, connect, web_client):
        existing = web_client()
        conn = connect()

        broker.dispatch(conn, WebLogin(username="alice", password="pw"))

        assert existing.events("sys:device_list") == []

    def test_empty_credentials_rejected_and_retry_allowed(self, broker, connect):
        conn = connect()

        broker.dispatch(conn, WebLogin(username="alice", password=None))
        assert conn.last("web:login_result")["success"] is False
        assert conn.events("sys:device_list") == []

        broker.dispatch(conn, WebLogin(username="alice", password="pw"))
        assert conn.last("web:login_result")["success"] is True

    def test_second_web_login_rejected(self, broker, web_client):
        conn = web_client()

        broker.dispatch(conn, WebLogin(username="bob", password="pw"))

        assert conn.last("web:login_result")["success"] is False
        assert broker.registry.web_client_ids() == [conn.conn_id]

    def test_get_device_list(self, broker, device, web_client):
        device("dev1")
        device("dev2")
        web = web_client()

        broker.dispatch(web, WebGetDeviceList())

        assert web.last("sys:device_list") == {"devices": ["dev1", "dev2"], "count": 2}


class TestCommandRouting:
    """Tests for web:device_cmd and device:cmd_result."""

    def test_command_reaches_device(self, broker, device, web_client):
        dev = device("dev1")
        web = web_client()

        broker.dispatch(web, WebDeviceCommand(device_id="dev1", command="reboot", params={}))

        assert dev.last("device:cmd") == {"command": "reboot", "params": {}, "from": web.conn_id}
        ack = web.last("web:cmd_result")
        assert ack["success"] is True
        assert "dev1" in ack["message"]

    def test_malformed_command(self, broker, device, web_client):
        dev = device("dev1")
        web = web_client()

        for msg in (
            WebDeviceCommand(device_id=None, command="reboot", params={}),
            WebDeviceCommand(device_id="dev1", command=None, params={}),
            WebDeviceCommand(device_id="dev1", command="reboot", params=None),
        ):
            broker.dispatch(web, msg)
            ack = web.last("web:cmd_result")
            assert ack["success"] is False
            assert ack["message"] == "Malformed command"

        assert dev.sent == []

    def test_malformed_checked_before_offline(self, broker, web_client):
        web = web_client()

        broker.dispatch(web, WebDeviceCommand(device_id="ghost", command=None, params={}))

        assert web.last("web:cmd_result")["message"] == "Malformed command"

    def test_offline_device(self, broker, device, web_client):
        other = device("dev2")
        web = web_client()

        broker.dispatch(web, WebDeviceCommand(device_id="dev1", command="reboot", params={}))

        ack = web.last("web:cmd_result")
        assert ack["success"] is False
        assert "offline" in ack["message"]
        assert other.sent == []

    def test_disconnected_device_is_offline(self, broker, device, web_client):
        dev = device("dev1")
        web = web_client()
        broker.disconnect(dev.conn_id)

        outcome = broker.router.dispatch(web.conn_id, "dev1", "reboot", {})

        assert outcome.accepted is False
        assert dev.sent == []

    def test_anonymous_connection_cannot_command(self, broker, connect, device):
        dev = device("dev1")
        conn = connect()

        broker.dispatch(conn, WebDeviceCommand(device_id="dev1", command="reboot", params={}))

        assert conn.last("web:cmd_result") == {"success": False, "message": "Web login required"}
        assert dev.sent == []

    def test_result_forwarded_with_device_id(self, broker, device, web_client):
        dev = device("dev1")
        web = web_client()

        broker.dispatch(dev, DeviceCommandResult(
            to=web.conn_id, command="status", success=False, result=None, message="busy",
        ))

        assert web.last("web:device_cmd_result") == {
            "deviceId": "dev1",
            "command": "status",
            "success": False,
            "result": None,
            "message": "busy",
        }

    def test_result_for_gone_caller_is_dropped(self, broker, device, web_client):
        dev = device("dev1")
        web = web_client()
        other = web_client()
        broker.disconnect(web.conn_id)

        broker.dispatch(dev, DeviceCommandResult(
            to=web.conn_id, command="reboot", success=True, result="ok", message=None,
        ))

        assert dev.sent == []
        assert other.events("web:device_cmd_result") == []
        assert broker.get_stats()["results_dropped"] == 1

    def test_result_without_destination_is_dropped(self, broker, device):
        dev = device("dev1")

        assert broker.router.forward_result(dev.conn_id, DeviceCommandResult(
            to=None, command="reboot", success=True, result="ok", message=None,
        )) is False

    def test_result_from_non_device_is_dropped(self, broker, connect, web_client):
        conn = connect()
        web = web_client()

        broker.dispatch(conn, DeviceCommandResult(
            to=web.conn_id, command="reboot", success=True, result="ok", message=None,
        ))

        assert web.events("web:device_cmd_result") == []


class TestDisconnectBroadcast:
    """Tests for device list updates on disconnect."""

    def test_device_disconnect_broadcasts_updated_list(self, broker, device, web_client):
        dev1 = device("dev1")
        device("dev2")
        webs = [web_client(), web_client()]

        broker.disconnect(dev1.conn_id)

        for web in webs:
            assert web.events("sys:device_list") == [{"devices": ["dev2"], "count": 1}]
        registry = broker.registry
        assert dev1.conn_id not in registry.connections
        assert dev1.conn_id not in registry.device_by_conn
        assert dev1.conn_id not in registry.web_clients
        assert dev1.conn_id not in registry.devices.values()

    def test_web_disconnect_does_not_broadcast(self, broker, web_client):
        web = web_client()
        other = web_client()

        broker.disconnect(web.conn_id)

        assert other.events("sys:device_list") == []
        assert broker.registry.web_client_ids() == [other.conn_id]


class TestFrames:
    """Tests for raw frame handling."""

    def test_invalid_frame_reports_error(self, broker, connect):
        conn = connect()

        broker.handle_frame(conn, "{oops")

        assert conn.last("sys:message")["type"] == "error"
        stats = broker.get_stats()
        assert stats["total_messages"] == 1
        assert stats["invalid_messages"] == 1

    def test_valid_frame_dispatched(self, broker, connect):
        conn = connect()

        broker.handle_frame(conn, json.dumps({"event": "device:login", "data": {"deviceId": "d"}}))

        assert conn.last("device:login_result")["success"] is True


class TestScenario:
    """End-to-end flow over fake connections."""

    def test_login_command_result_round(self, broker, connect):
        a = connect("A")
        b = connect("B")

        broker.dispatch(a, DeviceLogin(device_id="dev1"))
        broker.dispatch(b, WebLogin(username="operator", password="secret"))
        assert b.last("sys:device_list") == {"devices": ["dev1"], "count": 1}

        broker.dispatch(b, WebDeviceCommand(device_id="dev1", command="reboot", params={}))
        assert a.last("device:cmd") == {"command": "reboot", "params": {}, "from": "B"}
        assert b.last("web:cmd_result")["success"] is True

        broker.dispatch(a, DeviceCommandResult(
            to="B", command="reboot", success=True, result="ok", message=None,
        ))
        result = b.last("web:device_cmd_result")
        assert result["deviceId"] == "dev1"
        assert result["command"] == "reboot"
        assert result["success"] is True
        assert result["result"] == "ok"

        stats = broker.get_stats()
        assert stats["commands_routed"] == 1
        assert stats["results_forwarded"] == 1
