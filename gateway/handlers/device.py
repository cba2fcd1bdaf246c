"""
Handlers for board status, device state and device-list synchronisation
"""
import threading
import time

from log import setup_logger
from gateway.broadcast import Broadcaster
from gateway.errors import TransportError
from gateway.store import BOARDS, DEVICES, Store
from gateway.utils.helpers import decode_payload, device_id_from_topic, now_ms

logger = setup_logger(__name__)


def _first(*values):
    for value in values:
        if value not in (None, ""):
            return value
    return None


class DeviceHandler:
    def __init__(self, mqtt_client, dispatcher, store: Store, broadcaster: Broadcaster,
                 offline_after_s=90, stale_command_age_s=300, check_interval_s=5):
        """
        Args:
            mqtt_client (MQTTClient): Used to answer device list requests
            dispatcher (CommandDispatcher): Used to push configuration to boards
            store (Store): Boards and devices
            broadcaster (Broadcaster): Real-time fan-out
        """
        self.mqtt_client = mqtt_client
        self.dispatcher = dispatcher
        self.store = store
        self.broadcaster = broadcaster

        self.offline_after_s = offline_after_s
        self.stale_command_age_s = stale_command_age_s
        self.check_interval_s = check_interval_s

        self.status_thread = None
        self.is_running = False
        self._stop_event = threading.Event()

    # ===== STATE UPDATES =====

    def update_board_status(self, board_id, data):
        """
        Apply a heartbeat/status report to the board record
        """
        board = self.store.get(BOARDS, board_id)
        if board is None:
            logger.debug(f"Status from unknown board {board_id}")
            return None

        details = data.get("details") if isinstance(data.get("details"), dict) else {}
        version = _first(details.get("version"), data.get("version"), data.get("firmware_version"))
        mac = _first(details.get("mac"), data.get("mac"))
        ip = _first(details.get("ip"), data.get("ip"))
        status = str(data.get("status") or "").lower()

        board["is_online"] = status != "offline"
        board["last_seen"] = time.time()
        board["firmware_version"] = _first(version, board.get("firmware_version"))
        board["mac_address"] = _first(mac, board.get("mac_address"))
        if ip:
            board["ip_address"] = ip
        self.store.put(BOARDS, board_id, board)

        self.broadcaster.broadcast_device_status(board_id, {
            "is_online": board["is_online"],
            "firmware_version": board["firmware_version"],
        })
        return board

    def update_device_state(self, device_id, state):
        device = self.store.get(DEVICES, device_id)
        if device is None:
            logger.debug(f"State for unknown device {device_id}: {state}")
            return False

        device["state"] = state
        device["updated_at"] = time.time()
        self.store.put(DEVICES, device_id, device)
        logger.info(f"Device {device_id} state updated: {state}")
        return True

    # ===== DEVICE SYNC =====

    def handle_device_command(self, topic, message):
        """
        Handle device-originated requests published on cmd/{boardId}
        """
        board_id = device_id_from_topic(topic)
        data = decode_payload(message)
        if "raw_message" in data:
            logger.warning(f"Invalid device command JSON from {board_id}")
            return

        action = data.get("action")
        if action == "device_sync":
            self.handle_device_sync(board_id, data)
        elif action == "device_request":
            logger.info(f"Device list request from {board_id}")
            self.send_device_list(board_id)
        else:
            # Our own commands come back on this topic too
            logger.debug(f"Ignoring device command action from {board_id}: {action}")

    def handle_device_sync(self, board_id, data):
        devices = data.get("devices")
        if not isinstance(devices, list):
            devices = []
        logger.info(f"Device sync from {board_id}: {len(devices)} devices")

        for device in devices:
            if isinstance(device, dict) and device.get("device_id"):
                self.save_device(board_id, device)

        self.send_device_list(board_id)

    def save_device(self, board_id, device):
        device_id = device["device_id"]
        existing = self.store.get(DEVICES, device_id)
        now = time.time()

        record = dict(existing) if existing and existing.get("board_id") == board_id else {
            "device_id": device_id,
            "board_id": board_id,
            "is_enabled": device.get("is_enabled") is not False,
            "created_at": now,
        }
        record.update(
            name=device.get("name"),
            device_type=device.get("device_type"),
            gpio_pin=device.get("gpio_pin"),
            config=device.get("config") or {},
            state=device.get("state") or {},
            updated_at=now,
        )
        self.store.put(DEVICES, device_id, record)
        logger.info(f"Device {'updated' if existing else 'added'}: {device_id}")

    def enabled_devices(self, board_id):
        devices = [d for d in self.store.find(DEVICES, board_id=board_id) if d.get("is_enabled", True)]
        devices.sort(key=lambda d: d.get("created_at") or 0)
        return devices

    def send_device_list(self, board_id):
        """
        Publish the stored device list for a board to cmd/{boardId}
        """
        device_list = [
            {
                "device_id": d["device_id"],
                "name": d.get("name"),
                "device_type": d.get("device_type"),
                "gpio_pin": d.get("gpio_pin"),
                "is_enabled": bool(d.get("is_enabled", True)),
                "config": d.get("config") or {},
                "state": d.get("state") or {},
            }
            for d in self.enabled_devices(board_id)
        ]
        response = {
            "action": "device_list_response",
            "device_id": board_id,
            "timestamp": now_ms(),
            "devices": device_list,
        }
        try:
            self.mqtt_client.publish(f"cmd/{board_id}", response, qos=1)
        except TransportError as e:
            logger.error(f"Could not send device list to {board_id}: {e}")
            return False
        logger.info(f"Device list sent to {board_id}: {len(device_list)} devices")
        return True

    def sync_configuration(self, board_id, reported_devices=None):
        """
        Push the stored device configuration down to a board as a
        sync_devices command
        """
        logger.info(f"Syncing device configuration for board {board_id}: {reported_devices}")
        sync_command = {
            "cmd": "sync_devices",
            "data": {
                "devices": [
                    {
                        "device_id": d["device_id"],
                        "gpio_pin": d.get("gpio_pin"),
                        "device_type": d.get("device_type"),
                        "name": d.get("name"),
                        "config": d.get("config") or {},
                    }
                    for d in self.enabled_devices(board_id)
                ]
            },
        }
        try:
            return self.dispatcher.send_command(board_id, "sync_devices", sync_command)
        except TransportError as e:
            logger.error(f"Could not sync configuration to {board_id}: {e}")
            return None

    # ===== PRESENCE MONITOR =====

    def check_presence(self, now=None):
        """
        Mark boards offline when they stopped reporting, and drop
        unanswered commands nobody waits for

        Returns:
            list[str]: Boards marked offline in this pass
        """
        now = now if now is not None else time.time()
        went_offline = []
        for board in self.store.find(BOARDS, is_online=True):
            last_seen = board.get("last_seen")
            if last_seen is None or now - last_seen <= self.offline_after_s:
                continue
            board["is_online"] = False
            self.store.put(BOARDS, board["board_id"], board)
            went_offline.append(board["board_id"])
            logger.warning(f"[SERVER] Board {board['board_id']} stopped reporting (> {self.offline_after_s}s)")
            self.broadcaster.broadcast_device_status(board["board_id"], {
                "is_online": False,
                "reason": "heartbeat_timeout",
            })

        self.dispatcher.expire_stale(self.stale_command_age_s, now=now)
        return went_offline

    def start_status_check_thread(self):
        if self.status_thread is None or not self.status_thread.is_alive():
            self.is_running = True
            self._stop_event.clear()
            self.status_thread = threading.Thread(target=self._status_loop, daemon=True)
            self.status_thread.start()
            logger.info("Board status check thread started")

    def stop_status_check_thread(self):
        self.is_running = False
        self._stop_event.set()
        if self.status_thread and self.status_thread.is_alive():
            self.status_thread.join(timeout=1)
            logger.info("Board status check thread stopped")

    def _status_loop(self):
        while self.is_running:
            try:
                self.check_presence()
            except Exception:
                logger.exception("Board status check failed")
            self._stop_event.wait(self.check_interval_s)
