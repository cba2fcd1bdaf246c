"""
Gateway server: wires the broker connection, router, dispatcher and
device handlers together
"""
import sys

import config
from container import container
from log import setup_logger
from type import BrokerConfig
from gateway.broadcast import Broadcaster, LoggingBroadcaster
from gateway.client import MQTTClient
from gateway.dispatcher import CommandDispatcher
from gateway.errors import TransportError
from gateway.handlers.device import DeviceHandler
from gateway.handlers.registration import RegistrationHandler
from gateway.handlers.response import ResponseHandler
from gateway.router import TopicRouter
from gateway.store import InMemoryStore, Store

logger = setup_logger(__name__)

RESPONSE_TOPIC = "resp/+"
DEVICE_COMMAND_TOPIC = "cmd/+"
REGISTER_TOPIC = "register"


class GatewayServer:
    def __init__(self, broker_config: BrokerConfig = None, store: Store = None,
                 broadcaster: Broadcaster = None, paho_client=None):
        """
        Build every gateway component (nothing connects until start())

        Args:
            broker_config (BrokerConfig): Defaults to config.load_broker_config()
            store (Store): Defaults to an InMemoryStore
            broadcaster (Broadcaster): Defaults to a LoggingBroadcaster
            paho_client: Pre-built paho client, mainly for tests
        """
        self.broker_config = broker_config or config.load_broker_config()
        self.store = store or InMemoryStore()
        self.broadcaster = broadcaster or LoggingBroadcaster()

        self.router = TopicRouter()
        self.client = MQTTClient(self.broker_config, self.router, paho_client=paho_client)
        self.dispatcher = CommandDispatcher(self.client, self.store, command_qos=self.broker_config.command_qos)
        self.device_handler = DeviceHandler(
            self.client,
            self.dispatcher,
            self.store,
            self.broadcaster,
            offline_after_s=config.BOARD_OFFLINE_AFTER_S,
            stale_command_age_s=config.PENDING_COMMAND_MAX_AGE_S,
            check_interval_s=config.STATUS_CHECK_INTERVAL_S,
        )
        self.registration_handler = RegistrationHandler(self.client, self.store)
        self.response_handler = ResponseHandler(
            self.dispatcher,
            self.device_handler,
            self.registration_handler,
            self.store,
            self.broadcaster,
        )
        self.registration_handler.response_handler = self.response_handler

        self.client.add_listener("connect", self.subscribe_device_topics)

        # Looked up by gateway.services
        container.register("mqtt_client", self.client)
        container.register("dispatcher", self.dispatcher)

    def subscribe_device_topics(self):
        """
        Subscribe the device-facing topics; patterns the router already
        holds were re-issued by the client on reconnect
        """
        topics = {
            RESPONSE_TOPIC: self.response_handler.handle_response,
            DEVICE_COMMAND_TOPIC: self.device_handler.handle_device_command,
            REGISTER_TOPIC: self.registration_handler.handle_registration,
        }
        for pattern, handler in topics.items():
            if not self.router.has(pattern):
                self.client.subscribe(pattern, handler)

    # ===== COLLABORATOR API =====

    def publish(self, topic, payload, qos=0, retain=False):
        return self.client.publish(topic, payload, qos=qos, retain=retain)

    def subscribe(self, pattern, handler):
        return self.client.subscribe(pattern, handler)

    def unsubscribe(self, pattern):
        return self.client.unsubscribe(pattern)

    def send_command(self, target_id, kind, payload):
        return self.dispatcher.send_command(target_id, kind, payload)

    def wait_for_ack(self, command_id, timeout_ms=None):
        if timeout_ms is None:
            timeout_ms = config.ACK_TIMEOUT_MS
        return self.dispatcher.wait_for_ack(command_id, timeout_ms)

    def send_device_command(self, device_id, command):
        return self.dispatcher.send_device_command(device_id, command)

    # ===== LIFECYCLE =====

    def start(self):
        """
        Connect to the broker and start background work

        Raises:
            TransportError: The broker could not be reached
        """
        logger.info("=" * 60)
        logger.info("    IoT Device Gateway - MQTT Server    ")
        logger.info("=" * 60)

        self.client.initialize()
        self.device_handler.start_status_check_thread()
        logger.info(f"[SERVER] Gateway started with client ID: {self.client.client_id}")

    def run_forever(self):
        """
        Start and block until the connection is closed or Ctrl+C
        """
        try:
            self.start()
        except TransportError as e:
            logger.error(f"[SERVER] {e}")
            sys.exit(1)

        logger.info("[SERVER] Listening for devices, press Ctrl+C to exit")
        try:
            while not self.client.wait_closed(timeout=1):
                pass
        except KeyboardInterrupt:
            self.stop()

    def stop(self):
        logger.info("[SERVER] Shutting down gateway...")
        self.device_handler.stop_status_check_thread()
        self.client.disconnect()
        container.clear()
        logger.info("[SERVER] Gateway stopped")
