"""
Real-time fan-out collaborator.

The socket layer that pushes updates to front-ends lives outside the
gateway; the gateway only calls these methods.
"""
from log import setup_logger

logger = setup_logger(__name__)


class Broadcaster:
    def emit_to_device(self, device_id, event, data):
        raise NotImplementedError("Subclass must implement this method")

    def broadcast_device_update(self, device_id, data):
        self.emit_to_device(device_id, "device_update", data)

    def broadcast_sensor_data(self, device_id, sensor_data):
        self.emit_to_device(device_id, "sensor_data", sensor_data)

    def broadcast_command_response(self, device_id, response):
        self.emit_to_device(device_id, "command_response", response)

    def broadcast_device_status(self, device_id, status):
        self.emit_to_device(device_id, "device_status", status)


class LoggingBroadcaster(Broadcaster):
    """Default broadcaster when no socket layer is attached"""

    def emit_to_device(self, device_id, event, data):
        logger.debug(f"[BROADCAST] {event} -> {device_id}: {data}")
