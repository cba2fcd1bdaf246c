"""
Gateway operations for callers outside the MQTT layer (REST handlers,
the voice assistant, timers)

Collaborators are looked up in the service container, where a running
GatewayServer registers them.
"""
import config
from container import container
from log import setup_logger
from gateway.errors import GatewayError

logger = setup_logger(__name__)


def send_command(target_id, kind, payload):
    """
    Send a command to a board without waiting

    Returns:
        str: Correlation id for wait_for_ack
    """
    dispatcher = container.get("dispatcher")
    return dispatcher.send_command(target_id, kind, payload)


def wait_for_ack(command_id, timeout_ms=None):
    dispatcher = container.get("dispatcher")
    return dispatcher.wait_for_ack(command_id, timeout_ms or config.ACK_TIMEOUT_MS)


def send_command_and_wait(target_id, kind, payload, timeout_ms=None):
    """
    Send a command and block until the board acknowledges it

    Args:
        target_id (str): Board id
        kind (str): Command category
        payload (dict): Command body
        timeout_ms (int): Defaults to ACK_TIMEOUT_MS

    Returns:
        dict: {"status": "success" | "timeout" | "error", ...}
    """
    try:
        command_id = send_command(target_id, kind, payload)
    except GatewayError as e:
        logger.error(f"Could not send {kind} to {target_id}: {e}")
        return {"status": "error", "message": str(e)}

    if wait_for_ack(command_id, timeout_ms):
        return {"status": "success", "command_id": command_id}

    logger.warning(f"No acknowledgment from {target_id} for command {command_id}")
    return {"status": "timeout", "command_id": command_id}


def send_device_command(device_id, command):
    """
    Publish a command to a stored device (voice assistant path)

    Returns:
        dict: {"status": "success", "command_id", "topic"} or
        {"status": "error", "message"}
    """
    dispatcher = container.get("dispatcher")
    try:
        result = dispatcher.send_device_command(device_id, command)
    except GatewayError as e:
        logger.error(f"Device command for {device_id} failed: {e}")
        return {"status": "error", "message": str(e)}
    return {"status": "success", "command_id": result["command_id"], "topic": result["topic"]}


def publish(topic, payload, qos=0, retain=False):
    mqtt_client = container.get("mqtt_client")
    return mqtt_client.publish(topic, payload, qos=qos, retain=retain)
