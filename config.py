import os
import socket

import dotenv

from type import BrokerConfig

dotenv.load_dotenv()


def _env_bool(name, default):
    return os.getenv(name, default).lower() in ("1", "true", "yes")


# Broker
BROKER_HOST = os.getenv("BROKER_HOST", "localhost")
BROKER_PORT = int(os.getenv("BROKER_PORT", "1883"))
BROKER_TRANSPORT = os.getenv("BROKER_TRANSPORT", "tcp")
BROKER_USE_TLS = _env_bool("BROKER_USE_TLS", "false")
BROKER_WS_PATH = os.getenv("BROKER_WS_PATH", "/")

MQTT_USER = os.getenv("MQTT_USER") or None
MQTT_PASS = os.getenv("MQTT_PASS") or None
MQTT_CLIENT_ID = os.getenv("MQTT_CLIENT_ID", f"iot-gateway-{socket.gethostname()}")
MQTT_KEEPALIVE = int(os.getenv("MQTT_KEEPALIVE", "30"))
MQTT_RECONNECT_MS = int(os.getenv("MQTT_RECONNECT_MS", "5000"))
MQTT_CONNECT_TIMEOUT_MS = int(os.getenv("MQTT_CONNECT_TIMEOUT_MS", "15000"))
MQTT_CLEAN_SESSION = _env_bool("MQTT_CLEAN_SESSION", "true")
MQTT_WILL_TOPIC = os.getenv("MQTT_WILL_TOPIC", "backend/status")
MQTT_SERVICE_NAME = os.getenv("MQTT_SERVICE_NAME", "backend")

# Commands
COMMAND_QOS = int(os.getenv("COMMAND_QOS", "2"))
SUBSCRIBE_QOS = int(os.getenv("SUBSCRIBE_QOS", "1"))
ACK_TIMEOUT_MS = int(os.getenv("ACK_TIMEOUT_MS", "10000"))

# Presence monitor
BOARD_OFFLINE_AFTER_S = int(os.getenv("BOARD_OFFLINE_AFTER_S", "90"))
PENDING_COMMAND_MAX_AGE_S = int(os.getenv("PENDING_COMMAND_MAX_AGE_S", "300"))
STATUS_CHECK_INTERVAL_S = int(os.getenv("STATUS_CHECK_INTERVAL_S", "5"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG").upper()
LOG_FILE = os.getenv("LOG_FILE", "app.log")


def load_broker_config() -> BrokerConfig:
    """
    Build the broker connection settings from the environment
    """
    return BrokerConfig(
        host=BROKER_HOST,
        port=BROKER_PORT,
        transport=BROKER_TRANSPORT,
        use_tls=BROKER_USE_TLS,
        ws_path=BROKER_WS_PATH,
        username=MQTT_USER,
        password=MQTT_PASS,
        client_id_base=MQTT_CLIENT_ID,
        keepalive=MQTT_KEEPALIVE,
        reconnect_ms=MQTT_RECONNECT_MS,
        connect_timeout_ms=MQTT_CONNECT_TIMEOUT_MS,
        clean_session=MQTT_CLEAN_SESSION,
        will_topic=MQTT_WILL_TOPIC,
        service_name=MQTT_SERVICE_NAME,
        command_qos=COMMAND_QOS,
        subscribe_qos=SUBSCRIBE_QOS,
    )
