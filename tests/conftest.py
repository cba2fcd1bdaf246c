from __future__ import annotations

import os

# No log files from test runs
os.environ["LOG_FILE"] = ""

from typing import Iterator

import pytest

from container import container
from fakes import FakePahoClient, RecordingBroadcaster
from gateway.server import GatewayServer
from gateway.store import USERS, InMemoryStore
from type import BrokerConfig


@pytest.fixture
def broker_config() -> BrokerConfig:
    return BrokerConfig(client_id_base="test-gateway", service_name="backend")


@pytest.fixture
def paho() -> FakePahoClient:
    return FakePahoClient()


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    store.put(USERS, 1, {"id": 1, "short_id": "ABC123", "email": "owner@example.com"})
    store.put(USERS, 2, {"id": 2, "short_id": "XYZ789", "email": "second@example.com"})
    return store


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def server(
    broker_config: BrokerConfig,
    store: InMemoryStore,
    broadcaster: RecordingBroadcaster,
    paho: FakePahoClient,
) -> Iterator[GatewayServer]:
    server = GatewayServer(broker_config, store=store, broadcaster=broadcaster, paho_client=paho)
    server.client.initialize()
    paho.fire_connect()
    paho.ack_subscriptions()
    yield server
    container.clear()
