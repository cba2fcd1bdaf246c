from __future__ import annotations

import json
import re
import threading

import pytest

from fakes import FakePahoClient, FakeReasonCode
from gateway.client import ConnectionState, MQTTClient
from gateway.errors import NotConnectedError, TransportError
from gateway.router import TopicRouter
from type import BrokerConfig


def _client(paho: FakePahoClient, **overrides: object) -> MQTTClient:
    config = BrokerConfig(client_id_base="gw", **overrides)
    return MQTTClient(config, TopicRouter(), paho_client=paho)


def _connected(paho: FakePahoClient, **overrides: object) -> MQTTClient:
    client = _client(paho, **overrides)
    client.initialize()
    paho.fire_connect()
    return client


def test_client_id_is_unique_per_process_instance(paho: FakePahoClient) -> None:
    first = _client(paho)
    second = _client(FakePahoClient())
    assert re.fullmatch(r"gw-\d+-[0-9a-f]{4}", first.client_id)
    assert first.client_id.rsplit("-", 1)[0] == second.client_id.rsplit("-", 1)[0]


def test_last_will_and_session_options(paho: FakePahoClient) -> None:
    _client(paho, will_topic="backend/status", service_name="backend", reconnect_ms=5000,
            connect_timeout_ms=15000, username="user", password="secret")

    topic, payload, qos, retain = paho.will
    assert topic == "backend/status"
    body = json.loads(payload)
    assert body["service"] == "backend"
    assert body["status"] == "offline"
    assert isinstance(body["timestamp"], int)
    assert paho.reconnect_delay[0] == 5
    assert paho.connect_timeout == 15
    assert paho.credentials == ("user", "secret")


def test_credentials_are_optional(paho: FakePahoClient) -> None:
    _client(paho)
    assert paho.credentials is None


def test_connect_failure_raises_transport_error(paho: FakePahoClient) -> None:
    paho.connect_error = ConnectionRefusedError("refused")
    client = _client(paho)

    with pytest.raises(TransportError):
        client.initialize()
    assert client.state == ConnectionState.DISCONNECTED
    assert paho.loop_running is False


def test_connect_publishes_online_status_and_notifies(paho: FakePahoClient) -> None:
    client = _client(paho)
    events: list[str] = []
    client.add_listener("connect", lambda: events.append("connect"))

    client.initialize()
    assert client.state == ConnectionState.CONNECTING
    paho.fire_connect()

    assert client.state == ConnectionState.CONNECTED
    assert events == ["connect"]
    assert paho.published_to("backend/status")[-1]["status"] == "online"


def test_refused_connection_goes_offline(paho: FakePahoClient) -> None:
    client = _client(paho)
    client.initialize()
    paho.fire_connect(rc=0x86)
    assert client.state == ConnectionState.OFFLINE


def test_subscribe_while_disconnected_is_ignored(paho: FakePahoClient) -> None:
    client = _client(paho)
    assert client.subscribe("resp/+", lambda topic, payload: None) is None
    assert paho.subscribed == []


def test_subscription_recorded_only_after_confirmation(paho: FakePahoClient) -> None:
    client = _connected(paho)
    client.subscribe("resp/+", lambda topic, payload: None)

    assert paho.subscribed == [("resp/+", 1)]
    assert client.router.has("resp/+") is False
    paho.ack_subscriptions()
    assert client.router.has("resp/+") is True


def test_rejected_subscription_is_not_recorded(paho: FakePahoClient) -> None:
    client = _connected(paho)
    client.subscribe("forbidden/#", lambda topic, payload: None)
    paho.ack_subscriptions(rc=0x80)
    assert client.router.has("forbidden/#") is False


def test_unsubscribe_removes_after_confirmation(paho: FakePahoClient) -> None:
    client = _connected(paho)
    client.subscribe("resp/+", lambda topic, payload: None)
    paho.ack_subscriptions()

    client.unsubscribe("resp/+")
    assert client.router.has("resp/+") is True
    paho.ack_unsubscriptions()
    assert client.router.has("resp/+") is False


def test_messages_reach_the_router(paho: FakePahoClient) -> None:
    client = _connected(paho)
    received: list[tuple[str, bytes]] = []
    client.subscribe("resp/+", lambda topic, payload: received.append((topic, payload)))
    paho.ack_subscriptions()

    paho.deliver("resp/b1", {"type": "heartbeat"})
    assert received == [("resp/b1", b'{"type": "heartbeat"}')]


def test_publish_fails_fast_when_offline(paho: FakePahoClient) -> None:
    client = _connected(paho)
    offline: list[str] = []
    client.add_listener("offline", lambda: offline.append("offline"))

    paho.fire_connection_lost()
    assert client.state == ConnectionState.OFFLINE
    assert offline == ["offline"]

    sent_before = len(paho.published)
    with pytest.raises(NotConnectedError):
        client.publish("cmd/b1", {"action": "gpio"})
    assert len(paho.published) == sent_before


def test_publish_error_code_raises(paho: FakePahoClient) -> None:
    client = _connected(paho)
    paho.publish_rc = 4
    with pytest.raises(TransportError):
        client.publish("cmd/b1", "x")


def test_publish_serialises_dicts(paho: FakePahoClient) -> None:
    client = _connected(paho)
    client.publish("cmd/b1", {"action": "gpio", "pin": 2}, qos=2)
    topic, payload, qos, retain = paho.published[-1]
    assert (topic, qos, retain) == ("cmd/b1", 2, False)
    assert json.loads(payload) == {"action": "gpio", "pin": 2}


def test_reconnect_reissues_active_subscriptions(paho: FakePahoClient) -> None:
    client = _connected(paho)
    client.subscribe("resp/+", lambda topic, payload: None)
    client.subscribe("register", lambda topic, payload: None)
    paho.ack_subscriptions()
    paho.subscribed.clear()

    paho.fire_connection_lost()
    paho.fire_connect()

    assert sorted(topic for topic, _qos in paho.subscribed) == ["register", "resp/+"]
    assert client.state == ConnectionState.CONNECTED


def test_disconnect_is_terminal(paho: FakePahoClient) -> None:
    client = _connected(paho)
    closed: list[str] = []
    client.add_listener("close", lambda: closed.append("close"))

    client.disconnect()
    client.disconnect()

    assert client.state == ConnectionState.CLOSED
    assert closed == ["close"]
    assert paho.published_to("backend/status")[-1]["status"] == "offline"
    assert paho.loop_running is False
    assert client.wait_closed(timeout=0) is True
    with pytest.raises(TransportError):
        client.initialize()


def test_unknown_listener_event_rejected(paho: FakePahoClient) -> None:
    client = _client(paho)
    with pytest.raises(ValueError):
        client.add_listener("message", lambda: None)


def test_close_fires_once_when_broker_drop_races_disconnect() -> None:
    for _ in range(50):
        paho = FakePahoClient()
        client = _connected(paho)
        closed: list[str] = []
        client.add_listener("close", lambda: closed.append("close"))
        start = threading.Barrier(2)

        def network_thread() -> None:
            start.wait()
            paho.on_disconnect(paho, None, None, FakeReasonCode(0), None)

        thread = threading.Thread(target=network_thread)
        thread.start()
        start.wait()
        client.disconnect()
        thread.join(timeout=5)

        assert client.state == ConnectionState.CLOSED
        assert closed == ["close"]


def test_late_callbacks_do_not_reopen_closed_client(paho: FakePahoClient) -> None:
    client = _connected(paho)
    client.disconnect()

    paho.fire_connection_lost()
    paho.fire_connect()

    assert client.state == ConnectionState.CLOSED
