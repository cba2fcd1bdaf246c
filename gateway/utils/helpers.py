"""
Helper functions shared by the gateway handlers
"""
import json
import time
from datetime import datetime, timezone

from log import setup_logger

logger = setup_logger(__name__)


def decode_payload(message):
    """
    Decode an inbound MQTT payload

    Args:
        message (bytes | str): Raw payload

    Returns:
        dict: The parsed JSON object, or {"raw_message": ...} when the
        payload is not a JSON object
    """
    if isinstance(message, (bytes, bytearray)):
        text = message.decode("utf-8", errors="replace")
    else:
        text = str(message)

    try:
        data = json.loads(text)
    except ValueError:
        logger.warning(f"Payload is not JSON, keeping it raw: {text[:200]}")
        return {"raw_message": text}

    if not isinstance(data, dict):
        return {"raw_message": text}
    return data


def encode_payload(payload):
    if isinstance(payload, (bytes, bytearray, str)):
        return payload
    return json.dumps(payload)


def device_id_from_topic(topic):
    """Return the second topic level: resp/ESP32_XXX -> ESP32_XXX"""
    parts = topic.split("/")
    return parts[1] if len(parts) > 1 else None


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def now_ms():
    return int(time.time() * 1000)


def to_int(value):
    """Best-effort int conversion for pin numbers; None when not numeric"""
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
