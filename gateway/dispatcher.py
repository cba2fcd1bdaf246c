"""
Command dispatcher and acknowledgment correlator
"""
import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from log import setup_logger
from gateway.errors import CommandError, TransportError
from gateway.store import DEVICE_COMMANDS, DEVICES, BOARDS, Store
from gateway.utils.helpers import now_iso, to_int

logger = setup_logger(__name__)


class CommandStatus:
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class PendingCommand:
    id: str
    target_id: str
    kind: str
    sent_at: float
    status: str = CommandStatus.PENDING
    acknowledged_at: Optional[float] = None
    expected_action: Optional[str] = None
    expected_pin: Optional[int] = None
    error: Optional[str] = None
    waiter: Optional[threading.Event] = field(default=None, repr=False)


@dataclass
class WireCommand:
    """Device-specific shape of a command plus what its response will look like"""
    payload: Dict[str, Any]
    expected_action: Optional[str] = None
    expected_pin: Optional[int] = None


# ===== FIRMWARE TRANSLATION TABLE =====
# Each translator gets (command_id, command_data) and returns a WireCommand,
# or None to fall back to the generic envelope.

SENSOR_TYPES = {
    "sensor_dht22": "dht22",
    "sensor_ds18b20": "ds18b20",
    "sensor_analog": "analog",
}


def translate_add_device(command_id, command_data):
    data = (command_data or {}).get("data") or {}
    device_type = data.get("device_type")
    pin = data.get("gpio_pin")
    name = data.get("name")

    if device_type in ("switch", "dimmer"):
        return WireCommand(
            payload={
                "id": command_id,
                "action": "gpio_config",
                "cmd": "add",
                "pin": pin,
                "type": "output" if device_type == "switch" else "pwm",
                "name": name,
            },
            expected_action="gpio_config",
            expected_pin=to_int(pin),
        )
    if device_type in SENSOR_TYPES:
        return WireCommand(
            payload={
                "id": command_id,
                "action": "sensor_config",
                "cmd": "add",
                "pin": pin,
                "type": SENSOR_TYPES[device_type],
                "name": name,
            },
            expected_action="sensor_config",
            expected_pin=to_int(pin),
        )
    return None


def translate_gpio(command_id, command_data):
    command_data = command_data or {}
    return WireCommand(
        payload={"id": command_id, "action": "gpio", **command_data},
        expected_action="gpio",
        expected_pin=to_int(command_data.get("pin")),
    )


Translator = Callable[[str, Dict[str, Any]], Optional[WireCommand]]

DEFAULT_TRANSLATORS: Dict[str, Translator] = {
    "add_device": translate_add_device,
    "gpio": translate_gpio,
}


class CommandDispatcher:
    def __init__(self, mqtt_client, store: Store, command_qos=2):
        """
        Args:
            mqtt_client (MQTTClient): Connection used to publish commands
            store (Store): Command bookkeeping
            command_qos (int): QoS used for every command publish
        """
        self.mqtt_client = mqtt_client
        self.store = store
        self.command_qos = command_qos

        self.translators: Dict[str, Translator] = dict(DEFAULT_TRANSLATORS)
        self._pending: Dict[str, PendingCommand] = {}
        self._lock = threading.Lock()
        self._counter = itertools.count(1)

    def register_translator(self, kind, translator: Translator):
        self.translators[kind] = translator

    def next_command_id(self):
        return f"cmd_{next(self._counter)}_{int(time.time() * 1000)}"

    def build_wire_command(self, command_id, kind, command_data):
        message = {
            "id": command_id,
            "type": kind,
            "data": command_data,
            "timestamp": now_iso(),
        }
        translator = self.translators.get(kind)
        wire = translator(command_id, command_data) if translator else None
        if wire is None:
            wire = WireCommand(payload=message)
        return message, wire

    def send_command(self, target_id, kind, command_data):
        """
        Send a command to a board and start tracking its acknowledgment

        Args:
            target_id (str): Board id; the command goes to cmd/{target_id}
            kind (str): Command category, selects the firmware translation
            command_data (dict): Command body

        Returns:
            str: Correlation id to pass to wait_for_ack

        Raises:
            TransportError: The command could not be published
        """
        command_id = self.next_command_id()
        topic = f"cmd/{target_id}"
        message, wire = self.build_wire_command(command_id, kind, command_data)

        # Track before publishing so an immediate response finds its command
        pending = PendingCommand(
            id=command_id,
            target_id=target_id,
            kind=kind,
            sent_at=time.time(),
            expected_action=wire.expected_action,
            expected_pin=wire.expected_pin,
        )
        with self._lock:
            self._pending[command_id] = pending

        self._record_command(command_id, kind, command_data, message)

        try:
            self.mqtt_client.publish(topic, wire.payload, qos=self.command_qos)
        except TransportError as e:
            self._finish(command_id, CommandStatus.FAILED, error=str(e))
            logger.error(f"[CMD] Failed to send command {command_id} to board {target_id}: {e}")
            raise

        logger.info(f"[CMD] Sent command {command_id} to board {target_id}: {kind}")
        return command_id

    def _record_command(self, command_id, kind, command_data, message):
        # Only commands about an already stored device get a history row
        device_id = ((command_data or {}).get("data") or {}).get("device_id")
        if not device_id or kind == "add_device":
            return
        if self.store.get(DEVICES, device_id) is None:
            return
        self.store.put(DEVICE_COMMANDS, command_id, {
            "id": command_id,
            "device_id": device_id,
            "command_type": kind,
            "command_data": message,
            "status": "sent",
            "sent_at": time.time(),
        })

    def send_device_command(self, device_id, command):
        """
        Publish a command addressed to a stored device (voice assistant and
        REST path)

        Returns:
            dict: {"command_id", "topic", "command"}

        Raises:
            CommandError: Device unknown or without a command topic
            TransportError: Publish failed
        """
        device = self.store.get(DEVICES, device_id)
        if device is None:
            raise CommandError(f"Device not found: {device_id}")

        topic = device.get("mqtt_topic_cmd")
        if not topic and device.get("board_id"):
            board = self.store.get(BOARDS, device["board_id"]) or {}
            topic = board.get("mqtt_topic_cmd")
        if not topic:
            raise CommandError(f"Device command topic not configured: {device_id}")

        command_id = self.next_command_id()
        record = {
            "id": command_id,
            "device_id": device_id,
            "user_id": command.get("userId"),
            "command_data": command,
            "status": "pending",
        }
        self.store.put(DEVICE_COMMANDS, command_id, record)

        try:
            self.mqtt_client.publish(topic, command, qos=self.command_qos)
        except TransportError as e:
            record.update(status=CommandStatus.FAILED, error_message=str(e))
            self.store.put(DEVICE_COMMANDS, command_id, record)
            logger.error(f"[CMD] Failed to send device command {command_id} to {topic}: {e}")
            raise

        record.update(status="sent", sent_at=time.time())
        self.store.put(DEVICE_COMMANDS, command_id, record)
        logger.info(f"[CMD] Sent device command {command_id} to {topic}")
        return {"command_id": command_id, "topic": topic, "command": command}

    def get_pending(self, command_id) -> Optional[PendingCommand]:
        with self._lock:
            return self._pending.get(command_id)

    def pending_commands(self) -> List[PendingCommand]:
        with self._lock:
            return list(self._pending.values())

    def wait_for_ack(self, command_id, timeout_ms=10000):
        """
        Block the calling thread until the command is acknowledged or the
        timeout elapses

        Only one waiter per command is supported; a second concurrent
        caller gets False without observing the outcome.

        Returns:
            bool: True if the device acknowledged success in time
        """
        with self._lock:
            pending = self._pending.get(command_id)
            if pending is None:
                return False
            if pending.waiter is not None:
                logger.warning(f"[CMD] Command {command_id} already has a waiter")
                return False
            waiter = pending.waiter = threading.Event()

        waiter.wait(timeout_ms / 1000)

        with self._lock:
            if pending.status == CommandStatus.PENDING:
                pending.status = CommandStatus.TIMED_OUT
                self._pending.pop(command_id, None)
                logger.warning(f"[CMD] Command {command_id} timed out after {timeout_ms}ms")
                return False
            return pending.status == CommandStatus.ACKNOWLEDGED

    def _finish(self, command_id, status, error=None) -> Optional[PendingCommand]:
        """Single terminal transition point: the first caller wins, later ones get None"""
        with self._lock:
            pending = self._pending.pop(command_id, None)
            if pending is None or pending.status != CommandStatus.PENDING:
                return None
            pending.status = status
            pending.error = error
            if status in (CommandStatus.ACKNOWLEDGED, CommandStatus.FAILED):
                pending.acknowledged_at = time.time()
            if pending.waiter is not None:
                pending.waiter.set()
        return pending

    def resolve_ack(self, command_id, success, error=None):
        """
        Resolve a command from an explicit {type: "ack", commandId, success}

        Returns:
            bool: True if a pending command was resolved
        """
        status = CommandStatus.ACKNOWLEDGED if success else CommandStatus.FAILED
        pending = self._finish(command_id, status, error=error)
        if pending is None:
            logger.debug(f"[CMD] Ack for unknown or expired command {command_id}")
            return False

        record = self.store.get(DEVICE_COMMANDS, command_id)
        if record is not None:
            record.update(status=status, acknowledged_at=pending.acknowledged_at, error_message=error)
            self.store.put(DEVICE_COMMANDS, command_id, record)

        logger.info(f"[CMD] Command {command_id} acknowledged: {'SUCCESS' if success else 'FAILED'}")
        return True

    def resolve_firmware_response(self, target_id, action, pin, success):
        """
        Resolve the first pending command for this board whose expected
        action and pin match a {status, action, details: {pin}} response.

        Firmware of this style cannot echo a command id. Two in-flight
        commands with the same action and pin on one board are
        indistinguishable; the oldest one is resolved.

        Returns:
            str | None: The resolved command id
        """
        response_pin = to_int(pin)
        with self._lock:
            candidates = [
                p for p in self._pending.values()
                if p.target_id == target_id
                and (p.expected_action is None or p.expected_action == action)
                and (p.expected_pin is None or p.expected_pin == response_pin)
            ]
        candidates.sort(key=lambda p: p.sent_at)

        status = CommandStatus.ACKNOWLEDGED if success else CommandStatus.FAILED
        for candidate in candidates:
            if self._finish(candidate.id, status) is not None:
                logger.info(f"[CMD] Command {candidate.id} resolved by firmware response ({action}): "
                            f"{'success' if success else 'failed'}")
                return candidate.id
        return None

    def expire_stale(self, max_age_s, now=None):
        """
        Time out pending commands older than max_age_s that nobody waits on

        Returns:
            list[str]: Expired command ids
        """
        now = now if now is not None else time.time()
        with self._lock:
            stale = [
                p.id for p in self._pending.values()
                if p.waiter is None and now - p.sent_at > max_age_s
            ]
        expired = [cid for cid in stale if self._finish(cid, CommandStatus.TIMED_OUT) is not None]
        if expired:
            logger.info(f"[CMD] Expired {len(expired)} unanswered commands")
        return expired
