import logging
import os
import threading
import time
import uuid

import pytest
from dotenv import load_dotenv
from pydantic_core import ValidationError

from mqtt5_async import ClientConfig, MQTTBrokerConfig, MQTTClient
from .fake_broker import FakeBroker

# === Load Environment and Configure Logging ===
load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(levelname)-8s %(message)s")


# === Utility ===
def generate_uuid() -> str:
    return str(uuid.uuid4())


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it returns True or timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def client_threads(client_id: str) -> list[threading.Thread]:
    """Live threads whose name carries the client identifier."""
    return [thread for thread in threading.enumerate() if client_id in thread.name]


class MessageCollector:
    """Thread-safe sink for message callbacks."""

    def __init__(self):
        self.messages: list[tuple[str, bytes, int, bool]] = []
        self._condition = threading.Condition()

    def __call__(self, topic: str, payload: bytes, qos: int, retained: bool) -> None:
        with self._condition:
            self.messages.append((topic, payload, qos, retained))
            self._condition.notify_all()

    def wait_for(self, count: int, timeout: float = 5.0) -> bool:
        with self._condition:
            return self._condition.wait_for(lambda: len(self.messages) >= count, timeout)

    @property
    def payloads(self) -> list[bytes]:
        with self._condition:
            return [payload for _, payload, _, _ in self.messages]


# === MQTT Broker Config (integration tests against a real broker) ===
try:
    BROKER_CONFIG = MQTTBrokerConfig(
        username=os.getenv("MQTT_BROKER_USERNAME"),
        password=os.getenv("MQTT_BROKER_PASSWORD"),
        hostname=os.getenv("MQTT_BROKER_HOSTNAME", "localhost"),
        port=int(os.getenv("MQTT_BROKER_PORT", 1883)),
    )
except ValidationError as e:
    logging.error(f"Invalid MQTT Broker configuration: {e.json()}")
    raise

BROKER_AVAILABLE = bool(os.getenv("MQTT_BROKER_HOSTNAME"))


# === Engine tuning for fast tests ===
def fast_config(**overrides) -> ClientConfig:
    values = dict(
        tick_interval=0.02,
        read_poll_interval=0.02,
        retry_interval=5.0,
        max_retries=3,
        quiesce_timeout=2.0,
        disconnect_timeout=5.0,
    )
    values.update(overrides)
    return ClientConfig(**values)


@pytest.fixture(scope="function")
def broker():
    with FakeBroker() as fake_broker:
        yield fake_broker


@pytest.fixture(scope="function")
def make_client(broker):
    """Factory for clients wired to the fake broker; torn down after the test."""
    clients: list[MQTTClient] = []

    def _make(identifier: str = "basic", config: ClientConfig | None = None, **kwargs) -> MQTTClient:
        client = MQTTClient(
            broker="127.0.0.1",
            port=broker.port,
            identifier=identifier,
            ensure_unique_identifier=True,
            config=config or fast_config(),
            **kwargs,
        )
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.disconnect_forcibly(5)
        if client.wait_for_quiescence(5):
            client.close()
