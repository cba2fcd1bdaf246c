from __future__ import annotations

import pytest

from fakes import FakePahoClient, RecordingBroadcaster
from gateway.dispatcher import CommandStatus
from gateway.handlers.response import EventKind, classify
from gateway.server import GatewayServer
from gateway.store import BOARDS, DEVICE_DATA, DEVICES, InMemoryStore


@pytest.mark.parametrize(
    ("payload", "kind"),
    [
        ({"type": "ack", "commandId": "cmd_1_0", "success": True}, EventKind.ACK),
        ({"type": "ack", "success": True}, EventKind.UNCLASSIFIED),
        ({"type": "gpio_change", "details": {"pin": 2, "state": "HIGH"}}, EventKind.GPIO_CHANGE),
        ({"type": "gpio_change", "details": {}}, EventKind.UNCLASSIFIED),
        ({"type": "state", "state": {"on": True}}, EventKind.STATE_CHANGE),
        ({"type": "heartbeat"}, EventKind.HEARTBEAT),
        ({"type": "status", "status": "online"}, EventKind.HEARTBEAT),
        ({"type": "sensor", "data": [1]}, EventKind.SENSOR),
        ({"type": "device_sync", "devices": []}, EventKind.DEVICE_SYNC),
        ({"type": "device_request"}, EventKind.DEVICE_REQUEST),
        ({"type": "error", "error": "boom"}, EventKind.ERROR),
        ({"status": "success", "action": "gpio", "details": {"pin": 2}}, EventKind.COMMAND_RESPONSE),
        ({"status": "success"}, EventKind.UNCLASSIFIED),
        ({"raw_message": "hello"}, EventKind.UNCLASSIFIED),
    ],
)
def test_classify(payload: dict, kind: str) -> None:
    assert classify(payload) == kind


def test_type_wins_over_firmware_shape() -> None:
    payload = {"type": "heartbeat", "status": "online", "action": "report"}
    assert classify(payload) == EventKind.HEARTBEAT


def _register_board(store: InMemoryStore, board_id: str = "board1") -> None:
    store.put(BOARDS, board_id, {
        "board_id": board_id,
        "user_id": 1,
        "is_online": False,
        "mqtt_topic_cmd": f"cmd/{board_id}",
        "mqtt_topic_resp": f"resp/{board_id}",
    })


def test_non_json_payload_is_recorded_raw(server: GatewayServer, paho: FakePahoClient, store: InMemoryStore) -> None:
    paho.deliver("resp/board1", "not json at all")

    rows = store.read(DEVICE_DATA)
    assert rows[-1]["data_type"] == "unclassified"
    assert rows[-1]["value"] == {"raw_message": "not json at all"}


def test_ack_resolves_command_and_broadcasts(
    server: GatewayServer, paho: FakePahoClient, broadcaster: RecordingBroadcaster
) -> None:
    command_id = server.send_command("board1", "config", {"cmd": "update_board"})
    paho.deliver("resp/board1", {"type": "ack", "commandId": command_id, "success": True})

    assert server.dispatcher.get_pending(command_id) is None
    assert broadcaster.of("command_response")[-1][0] == "board1"


def test_gpio_change_updates_derived_device(
    server: GatewayServer, paho: FakePahoClient, store: InMemoryStore, broadcaster: RecordingBroadcaster
) -> None:
    store.put(DEVICES, "board1_GPIO2", {"device_id": "board1_GPIO2", "board_id": "board1"})

    paho.deliver("resp/board1", {"type": "gpio_change", "details": {"pin": "2", "state": "HIGH", "reason": "button"}})

    assert store.get(DEVICES, "board1_GPIO2")["state"] == {"state": True}
    row = store.read(DEVICE_DATA)[-1]
    assert row["device_id"] == "board1_GPIO2"
    assert row["value"] == {"pin": 2, "state": True, "reason": "button"}
    assert broadcaster.of("device_update")[-1] == ("board1_GPIO2", {"state": True})


def test_gpio_change_for_unknown_device_still_broadcasts(
    server: GatewayServer, paho: FakePahoClient, store: InMemoryStore, broadcaster: RecordingBroadcaster
) -> None:
    paho.deliver("resp/board1", {"type": "gpio_change", "details": {"pin": 4, "state": "LOW"}})

    assert store.read(DEVICE_DATA) == []
    assert broadcaster.of("device_update") == [("board1_GPIO4", {"state": False})]


def test_state_change_emits_to_device(
    server: GatewayServer, paho: FakePahoClient, store: InMemoryStore, broadcaster: RecordingBroadcaster
) -> None:
    store.put(DEVICES, "lamp", {"device_id": "lamp", "board_id": "board1"})

    paho.deliver("resp/board1", {"type": "state", "deviceId": "lamp", "state": {"brightness": 40}})

    assert store.get(DEVICES, "lamp")["state"] == {"brightness": 40}
    assert broadcaster.of("state_change") == [("lamp", {"brightness": 40})]


def test_heartbeat_updates_board(
    server: GatewayServer, paho: FakePahoClient, store: InMemoryStore, broadcaster: RecordingBroadcaster
) -> None:
    _register_board(store)

    paho.deliver("resp/board1", {
        "type": "heartbeat",
        "status": "online",
        "details": {"version": "1.2.0", "mac": "AA:BB", "ip": "10.0.0.5"},
    })

    board = store.get(BOARDS, "board1")
    assert board["is_online"] is True
    assert board["firmware_version"] == "1.2.0"
    assert board["mac_address"] == "AA:BB"
    assert board["ip_address"] == "10.0.0.5"
    assert board["last_seen"] is not None
    assert broadcaster.of("device_status")[-1] == ("board1", {"is_online": True, "firmware_version": "1.2.0"})


def test_offline_status_marks_board_offline(server: GatewayServer, paho: FakePahoClient, store: InMemoryStore) -> None:
    _register_board(store)
    paho.deliver("resp/board1", {"type": "status", "status": "online"})
    paho.deliver("resp/board1", {"type": "status", "status": "offline"})
    assert store.get(BOARDS, "board1")["is_online"] is False


def test_sensor_readings_recorded_and_broadcast(
    server: GatewayServer, paho: FakePahoClient, store: InMemoryStore, broadcaster: RecordingBroadcaster
) -> None:
    readings = [{"type": "temperature", "value": 21.5}]
    paho.deliver("resp/board1", {"type": "sensor", "details": {"sensors": readings}})

    row = store.read(DEVICE_DATA)[-1]
    assert (row["device_id"], row["data_type"], row["value"]) == ("board1", "sensor", readings)
    assert broadcaster.of("sensor_data") == [("board1", readings)]


def test_error_is_recorded(server: GatewayServer, paho: FakePahoClient, store: InMemoryStore) -> None:
    paho.deliver("resp/board1", {"type": "error", "error": "sensor read failed"})

    row = store.read(DEVICE_DATA)[-1]
    assert row["data_type"] == "error"
    assert row["value"]["error"] == "sensor read failed"


def test_device_sync_on_response_topic_pushes_configuration(
    server: GatewayServer, paho: FakePahoClient, store: InMemoryStore
) -> None:
    store.put(DEVICES, "board1_GPIO2", {
        "device_id": "board1_GPIO2",
        "board_id": "board1",
        "name": "Lamp",
        "device_type": "switch",
        "gpio_pin": 2,
        "is_enabled": True,
    })

    paho.deliver("resp/board1", {"type": "device_sync", "devices": []})

    commands = paho.published_to("cmd/board1")
    assert commands[-1]["type"] == "sync_devices"
    devices = commands[-1]["data"]["data"]["devices"]
    assert [d["device_id"] for d in devices] == ["board1_GPIO2"]


def test_device_request_on_response_topic_sends_list(server: GatewayServer, paho: FakePahoClient) -> None:
    paho.deliver("resp/board1", {"type": "device_request"})

    response = paho.published_to("cmd/board1")[-1]
    assert response["action"] == "device_list_response"
    assert response["devices"] == []


def test_firmware_response_resolves_and_broadcasts(
    server: GatewayServer, paho: FakePahoClient, broadcaster: RecordingBroadcaster
) -> None:
    command_id = server.send_command("board1", "gpio", {"pin": 2, "state": "on"})
    pending = server.dispatcher.get_pending(command_id)

    paho.deliver("resp/board1", {"status": "error", "action": "gpio", "details": {"pin": 2}})

    assert pending.status == CommandStatus.FAILED
    assert broadcaster.of("command_response")[-1][1]["action"] == "gpio"


def test_unknown_board_with_owner_hint_is_registered(
    server: GatewayServer, paho: FakePahoClient, store: InMemoryStore
) -> None:
    paho.deliver("resp/board9", {"type": "heartbeat", "status": "online", "shortId": "XYZ789", "mac": "11:22"})

    board = store.get(BOARDS, "board9")
    assert board["user_id"] == 2
    assert board["mac_address"] == "11:22"
    assert board["is_online"] is True
    # resp/+ already covers the board, no extra subscription
    assert [t for t, _ in paho.subscribed if t == "resp/board9"] == []


def test_unknown_board_without_owner_hint_is_not_registered(
    server: GatewayServer, paho: FakePahoClient, store: InMemoryStore
) -> None:
    paho.deliver("resp/board9", {"type": "heartbeat", "status": "online"})
    assert store.get(BOARDS, "board9") is None


def test_unknown_board_with_unknown_owner_is_not_registered(
    server: GatewayServer, paho: FakePahoClient, store: InMemoryStore
) -> None:
    paho.deliver("resp/board9", {"type": "heartbeat", "shortId": "NOPE"})
    assert store.get(BOARDS, "board9") is None


def test_first_contact_registration_is_acknowledged(server: GatewayServer, paho: FakePahoClient) -> None:
    paho.deliver("resp/board9", {"type": "heartbeat", "status": "online", "shortId": "XYZ789"})

    ack = paho.published_to("cmd/board9")[-1]
    assert ack["action"] == "registered"
    assert ack["status"] == "success"
    assert ack["user_short_id"] == "XYZ789"


def test_first_contact_with_unknown_owner_gets_failed_ack(
    server: GatewayServer, paho: FakePahoClient, store: InMemoryStore
) -> None:
    paho.deliver("resp/board8", {"type": "heartbeat", "shortId": "NOPE", "replyTopic": "provision/board8"})

    assert store.get(BOARDS, "board8") is None
    ack = paho.published_to("provision/board8")[-1]
    assert ack["status"] == "failed"
    assert ack["error"] == "link_failed"


def test_known_board_gets_no_registration_ack(
    server: GatewayServer, paho: FakePahoClient, store: InMemoryStore
) -> None:
    _register_board(store)
    paho.deliver("resp/board1", {"type": "heartbeat", "status": "online", "shortId": "ABC123"})
    assert paho.published_to("cmd/board1") == []
