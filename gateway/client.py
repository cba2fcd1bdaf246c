"""
MQTT client: the gateway's single connection to the broker
"""
import json
import os
import secrets
import threading

import paho.mqtt.client as mqtt

from log import setup_logger
from type import BrokerConfig
from gateway.errors import NotConnectedError, TransportError
from gateway.router import Handler, TopicRouter
from gateway.utils.helpers import encode_payload, now_ms

logger = setup_logger(__name__)


class ConnectionState:
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    OFFLINE = "offline"
    CLOSED = "closed"


EVENTS = ("connect", "offline", "close")


def build_client_id(base):
    """Client id unique per process instance: base + pid + random suffix"""
    return f"{base}-{os.getpid()}-{secrets.token_hex(2)}"


class MQTTClient:
    def __init__(self, broker_config: BrokerConfig, router: TopicRouter = None, paho_client=None):
        """
        Set up the broker connection (not yet connected)

        Args:
            broker_config (BrokerConfig): Broker address, credentials and session options
            router (TopicRouter): Receives every inbound message
            paho_client: Pre-built paho client, mainly for tests
        """
        self.config = broker_config
        self.router = router or TopicRouter()
        self.client_id = build_client_id(broker_config.client_id_base)
        self.state = ConnectionState.DISCONNECTED

        self._listeners = {event: [] for event in EVENTS}
        self._pending_subscriptions = {}
        self._pending_unsubscriptions = {}
        self._lock = threading.RLock()
        self._closed = threading.Event()
        self._closing = False

        self.client = paho_client or mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=broker_config.clean_session,
            protocol=mqtt.MQTTv311,
            transport=broker_config.transport,
        )
        self._configure()

    def _configure(self):
        cfg = self.config
        if cfg.username:
            self.client.username_pw_set(cfg.username, cfg.password)

        # Published by the broker if this process disappears uncleanly
        self.client.will_set(
            cfg.will_topic,
            json.dumps(self.status_payload("offline")),
            qos=0,
            retain=False,
        )

        reconnect_s = max(1, round(cfg.reconnect_ms / 1000))
        self.client.reconnect_delay_set(min_delay=reconnect_s, max_delay=max(reconnect_s, 60))
        self.client.connect_timeout = cfg.connect_timeout_ms / 1000

        if cfg.transport == "websockets":
            self.client.ws_set_options(path=cfg.ws_path)
        if cfg.use_tls:
            self.client.tls_set()

        self.client.on_connect = self.on_connect
        self.client.on_connect_fail = self.on_connect_fail
        self.client.on_disconnect = self.on_disconnect
        self.client.on_message = self.on_message
        self.client.on_subscribe = self.on_subscribe
        self.client.on_unsubscribe = self.on_unsubscribe

    def status_payload(self, status):
        return {
            "service": self.config.service_name,
            "status": status,
            "timestamp": now_ms(),
        }

    @property
    def is_connected(self):
        return self.state == ConnectionState.CONNECTED

    def add_listener(self, event, callback):
        """
        Register a callback for a connection event

        Events for one connection are delivered in order on the network
        thread: "connect" after subscriptions were re-issued, "offline"
        on connection loss, "close" once after disconnect().
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown connection event: {event}")
        self._listeners[event].append(callback)

    def _transition(self, new_state, event=None):
        with self._lock:
            # Closed is terminal
            if self.state in (new_state, ConnectionState.CLOSED):
                return
            old_state, self.state = self.state, new_state
        logger.debug(f"[MQTT] State {old_state} -> {new_state}")
        if new_state == ConnectionState.CLOSED:
            self._closed.set()
        if event:
            for callback in list(self._listeners[event]):
                try:
                    callback()
                except Exception:
                    logger.exception(f"[MQTT] '{event}' listener failed")

    def initialize(self):
        """
        Connect to the broker and start the network thread

        Raises:
            TransportError: The broker could not be reached
        """
        if self.state == ConnectionState.CLOSED:
            raise TransportError("MQTT client was closed")

        cfg = self.config
        self._transition(ConnectionState.CONNECTING)
        logger.info(f"[MQTT] Connecting to {cfg.host}:{cfg.port} as {self.client_id}")
        try:
            self.client.connect(cfg.host, cfg.port, keepalive=cfg.keepalive)
        except (OSError, ValueError) as e:
            self._transition(ConnectionState.DISCONNECTED)
            raise TransportError(f"Cannot connect to MQTT broker {cfg.host}:{cfg.port}: {e}") from e

        self.client.loop_start()
        return True

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.error(f"[MQTT] Broker refused connection: {reason_code}")
            self._transition(ConnectionState.OFFLINE, "offline")
            return

        logger.info(f"[MQTT] Connected to broker ({reason_code})")
        with self._lock:
            if self.state == ConnectionState.CLOSED:
                return
            self.state = ConnectionState.CONNECTED

        for pattern in self.router.patterns():
            self._request_subscribe(pattern, self.router.handler_for(pattern))

        try:
            self.publish(self.config.will_topic, self.status_payload("online"))
        except TransportError as e:
            logger.warning(f"[MQTT] Could not announce online status: {e}")

        for callback in list(self._listeners["connect"]):
            try:
                callback()
            except Exception:
                logger.exception("[MQTT] 'connect' listener failed")

    def on_connect_fail(self, client, userdata):
        logger.warning("[MQTT] Connection attempt failed, retrying")
        self._transition(ConnectionState.OFFLINE, "offline")

    def on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        if self._closing:
            logger.info("[MQTT] Connection closed")
            self._transition(ConnectionState.CLOSED, "close")
            return

        logger.warning(f"[MQTT] Connection lost ({reason_code}), client offline")
        self._transition(ConnectionState.OFFLINE, "offline")

    def on_message(self, client, userdata, msg):
        logger.debug(f"[MQTT] Received message on {msg.topic}")
        self.router.dispatch(msg.topic, msg.payload)

    def subscribe(self, pattern, handler: Handler):
        """
        Subscribe to a topic pattern; the handler is recorded once the
        broker confirms.

        Returns:
            int | None: Message id of the request, None if not sent
        """
        if not self.is_connected:
            logger.warning(f"[MQTT] Not connected, ignoring subscription: {pattern}")
            return None
        return self._request_subscribe(pattern, handler)

    def _request_subscribe(self, pattern, handler):
        with self._lock:
            result, mid = self.client.subscribe(pattern, qos=self.config.subscribe_qos)
            if result != mqtt.MQTT_ERR_SUCCESS:
                logger.error(f"[MQTT] Failed to subscribe to {pattern}: {mqtt.error_string(result)}")
                return None
            self._pending_subscriptions[mid] = (pattern, handler)
        return mid

    def on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        with self._lock:
            entry = self._pending_subscriptions.pop(mid, None)
        if entry is None:
            return

        pattern, handler = entry
        if any(rc.is_failure for rc in reason_code_list):
            logger.error(f"[MQTT] Broker rejected subscription to {pattern}")
            return

        self.router.add(pattern, handler)
        logger.info(f"[MQTT] Subscribed to topic: {pattern}")

    def unsubscribe(self, pattern):
        if not self.is_connected:
            logger.warning(f"[MQTT] Not connected, ignoring unsubscribe: {pattern}")
            return None

        with self._lock:
            result, mid = self.client.unsubscribe(pattern)
            if result != mqtt.MQTT_ERR_SUCCESS:
                logger.error(f"[MQTT] Failed to unsubscribe from {pattern}: {mqtt.error_string(result)}")
                return None
            self._pending_unsubscriptions[mid] = pattern
        return mid

    def on_unsubscribe(self, client, userdata, mid, reason_code_list, properties=None):
        with self._lock:
            pattern = self._pending_unsubscriptions.pop(mid, None)
        if pattern is None:
            return
        self.router.remove(pattern)
        logger.info(f"[MQTT] Unsubscribed from topic: {pattern}")

    def publish(self, topic, payload, qos=0, retain=False):
        """
        Send a message to the broker

        Args:
            topic (str): Destination topic
            payload (dict | str | bytes): Dicts are sent as JSON
            qos (int): Quality of Service (0, 1, 2)
            retain (bool): Retain flag

        Returns:
            int: Message id assigned by the client

        Raises:
            NotConnectedError: The client is not connected; nothing is queued
            TransportError: The client refused the message
        """
        if not self.is_connected:
            raise NotConnectedError(f"MQTT client not connected, cannot publish to {topic}")

        info = self.client.publish(topic, encode_payload(payload), qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"[MQTT] Failed to publish to {topic}: {mqtt.error_string(info.rc)}")
            raise TransportError(f"Failed to publish to {topic}: {mqtt.error_string(info.rc)}")

        logger.debug(f"[MQTT] Published to topic: {topic}")
        return info.mid

    def wait_closed(self, timeout=None):
        return self._closed.wait(timeout)

    def disconnect(self):
        """
        Close the connection for good; no reconnect is attempted afterwards
        """
        if self.state == ConnectionState.CLOSED:
            return

        self._closing = True
        if self.is_connected:
            try:
                self.publish(self.config.will_topic, self.status_payload("offline"))
            except TransportError as e:
                logger.warning(f"[MQTT] Could not announce offline status: {e}")

        self.client.disconnect()
        self.client.loop_stop()
        self._transition(ConnectionState.CLOSED, "close")
        logger.info("[MQTT] Client disconnected")
