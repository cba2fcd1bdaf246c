"""
Classifier for messages boards publish on resp/{boardId}
"""
from pydantic import ValidationError

from log import setup_logger
from type import IdentityClaim
from gateway.broadcast import Broadcaster
from gateway.store import BOARDS, DEVICES, Store
from gateway.utils.helpers import decode_payload, device_id_from_topic, to_int

logger = setup_logger(__name__)


class EventKind:
    ACK = "ack"
    GPIO_CHANGE = "gpio_change"
    STATE_CHANGE = "state"
    HEARTBEAT = "heartbeat"
    SENSOR = "sensor"
    DEVICE_SYNC = "device_sync"
    DEVICE_REQUEST = "device_request"
    ERROR = "error"
    COMMAND_RESPONSE = "command_response"
    UNCLASSIFIED = "unclassified"


def _details(data):
    details = data.get("details")
    return details if isinstance(details, dict) else {}


def is_firmware_response(data):
    """{status, action, details} responses from firmware that cannot echo a command id"""
    return bool(data.get("status")) and bool(data.get("action"))


def classify(data):
    """
    Decide the event kind of a decoded payload. Precedence: ack, GPIO /
    state change, heartbeat/status, sensor, configuration sync/request,
    error, firmware response, unclassified.
    """
    kind = data.get("type")
    if kind == "ack" and data.get("commandId"):
        return EventKind.ACK
    if kind == "gpio_change" and _details(data).get("pin") is not None:
        return EventKind.GPIO_CHANGE
    if kind == "state":
        return EventKind.STATE_CHANGE
    if kind in ("heartbeat", "status"):
        return EventKind.HEARTBEAT
    if kind == "sensor":
        return EventKind.SENSOR
    if kind == "device_sync":
        return EventKind.DEVICE_SYNC
    if kind == "device_request":
        return EventKind.DEVICE_REQUEST
    if kind == "error":
        return EventKind.ERROR
    if is_firmware_response(data):
        return EventKind.COMMAND_RESPONSE
    return EventKind.UNCLASSIFIED


class ResponseHandler:
    def __init__(self, dispatcher, device_handler, registration_handler, store: Store,
                 broadcaster: Broadcaster):
        self.dispatcher = dispatcher
        self.device_handler = device_handler
        self.registration_handler = registration_handler
        self.store = store
        self.broadcaster = broadcaster

        self._handlers = {
            EventKind.ACK: self._on_ack,
            EventKind.GPIO_CHANGE: self._on_gpio_change,
            EventKind.STATE_CHANGE: self._on_state_change,
            EventKind.HEARTBEAT: self._on_heartbeat,
            EventKind.SENSOR: self._on_sensor,
            EventKind.DEVICE_SYNC: self._on_device_sync,
            EventKind.DEVICE_REQUEST: self._on_device_request,
            EventKind.ERROR: self._on_error,
            EventKind.COMMAND_RESPONSE: self._on_command_response,
            EventKind.UNCLASSIFIED: self._on_unclassified,
        }

    def handle_response(self, topic, message):
        """Router entry point for resp/+"""
        board_id = device_id_from_topic(topic)
        if not board_id:
            logger.warning(f"Response on topic without board id: {topic}")
            return None
        return self.process(board_id, decode_payload(message))

    def handler_for_board(self, board_id):
        """Router handler for a response topic that does not carry the board id"""
        def handle(topic, message):
            return self.process(board_id, decode_payload(message))
        return handle

    def process(self, board_id, data):
        """
        Correlate and dispatch one decoded response

        Returns:
            str: The EventKind the payload was handled as
        """
        if "raw_message" not in data:
            self._auto_register_if_unknown(board_id, data)

        kind = classify(data)

        # Firmware responses may also carry a type; correlate them first
        if kind != EventKind.ACK and is_firmware_response(data):
            self.dispatcher.resolve_firmware_response(
                board_id,
                data["action"],
                _details(data).get("pin"),
                data["status"] == "success",
            )

        self._handlers[kind](board_id, data)
        return kind

    def _auto_register_if_unknown(self, board_id, data):
        if self.store.get(BOARDS, board_id) is not None:
            return
        try:
            claim = IdentityClaim.model_validate({**data, "deviceId": board_id})
        except ValidationError:
            return
        if claim.has_owner_hint():
            logger.info(f"First contact from unknown board {board_id}, auto-registering")
            ok = self.registration_handler.auto_register(claim)
            self.registration_handler.send_ack(claim, ok)

    def _on_ack(self, board_id, data):
        self.dispatcher.resolve_ack(data["commandId"], bool(data.get("success")), data.get("error"))
        self.broadcaster.broadcast_command_response(board_id, data)

    def _on_gpio_change(self, board_id, data):
        details = _details(data)
        pin = to_int(details.get("pin"))
        is_on = str(details.get("state")).upper() == "HIGH"
        derived_id = f"{board_id}_GPIO{pin}"

        if self.device_handler.update_device_state(derived_id, {"state": is_on}):
            self.store.record_device_data(derived_id, "state", {
                "pin": pin,
                "state": is_on,
                "reason": details.get("reason"),
            })
        self.broadcaster.broadcast_device_update(derived_id, {"state": is_on})

    def _on_state_change(self, board_id, data):
        device_id = data.get("deviceId") or board_id
        state = data.get("state")
        self.device_handler.update_device_state(device_id, state)
        self.store.record_device_data(device_id, "state", state)
        self.broadcaster.emit_to_device(device_id, "state_change", state)

    def _on_heartbeat(self, board_id, data):
        self.device_handler.update_board_status(board_id, data)
        if self.store.get(DEVICES, board_id) is not None:
            self.store.record_device_data(board_id, "heartbeat", data)

    def _on_sensor(self, board_id, data):
        device_id = data.get("deviceId") or board_id
        readings = data.get("data")
        if readings is None:
            readings = _details(data).get("sensors") or data.get("sensors") or []
        self.store.record_device_data(device_id, "sensor", readings)
        self.broadcaster.broadcast_sensor_data(device_id, readings)

    def _on_device_sync(self, board_id, data):
        self.device_handler.sync_configuration(board_id, data.get("devices"))

    def _on_device_request(self, board_id, data):
        self.device_handler.send_device_list(board_id)

    def _on_error(self, board_id, data):
        logger.error(f"Board {board_id} reported error: {data.get('error')}")
        self.store.record_device_data(board_id, "error", data)

    def _on_command_response(self, board_id, data):
        self.broadcaster.broadcast_command_response(board_id, data)

    def _on_unclassified(self, board_id, data):
        logger.debug(f"Unclassified message from {board_id}: {data}")
        self.store.record_device_data(board_id, "unclassified", data)
