"""
Interoperability with a real MQTT v5 broker.

Configure the broker through .env or the environment (MQTT_BROKER_HOSTNAME,
MQTT_BROKER_PORT, MQTT_BROKER_USERNAME, MQTT_BROKER_PASSWORD). A paho-mqtt
client acts as the independent peer on the other side of the broker.
"""
import queue
import threading

import paho.mqtt.client as paho
import pytest
from paho.mqtt.enums import CallbackAPIVersion

from mqtt5_async import MQTTClient
from mqtt5_async.core.base import secret_value
from tests.conftest import BROKER_AVAILABLE, BROKER_CONFIG, MessageCollector, client_threads, generate_uuid, wait_until

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not BROKER_AVAILABLE, reason="MQTT_BROKER_HOSTNAME not set"),
]


@pytest.fixture(scope="function")
def topic():
    return f"mqtt5_async/tests/{generate_uuid()}"


@pytest.fixture(scope="function")
def client():
    client = MQTTClient.from_config(BROKER_CONFIG, identifier="interop", ensure_unique_identifier=True)
    yield client
    client.disconnect_forcibly(10)
    if client.wait_for_quiescence(10):
        client.close()


@pytest.fixture(scope="function")
def peer():
    """paho-mqtt client collecting every message it receives."""
    received: queue.Queue = queue.Queue()
    connected = threading.Event()
    subscribed = threading.Event()

    peer = paho.Client(CallbackAPIVersion.VERSION2, client_id=f"peer-{generate_uuid()}", protocol=paho.MQTTv5)
    if BROKER_CONFIG.username:
        peer.username_pw_set(BROKER_CONFIG.username, secret_value(BROKER_CONFIG.password))
    peer.on_connect = lambda c, userdata, flags, reason_code, properties: connected.set()
    peer.on_subscribe = lambda c, userdata, mid, reason_codes, properties: subscribed.set()
    peer.on_message = lambda c, userdata, message: received.put(message)
    peer.connect(BROKER_CONFIG.hostname, BROKER_CONFIG.port)
    peer.loop_start()
    assert connected.wait(10)

    peer.received = received
    peer.subscribed = subscribed
    yield peer

    peer.disconnect()
    peer.loop_stop()


# ============================================================================
# THREAD ACCOUNTING
# ============================================================================


class TestBrokerThreads:
    def test_thread_lifecycle(self, client):
        client.connect().wait_for_completion(10)
        assert len(client_threads(client.identifier)) == 4

        client.disconnect_forcibly(10)
        assert client_threads(client.identifier) == []

        client.connect().wait_for_completion(10)
        assert len(client.worker_threads()) == 4

        client.disconnect().wait_for_completion(10)
        assert wait_until(lambda: not client_threads(client.identifier), timeout=10)


# ============================================================================
# MESSAGE EXCHANGE
# ============================================================================


class TestMessageExchange:
    @pytest.mark.parametrize("qos", [0, 1, 2])
    def test_self_round_trip(self, client, topic, qos):
        collector = MessageCollector()
        client.connect().wait_for_completion(10)
        client.subscribe(topic, qos=qos, callback=collector).wait_for_completion(10)

        client.publish(topic, f"qos {qos}", qos=qos).wait_for_completion(10)

        assert collector.wait_for(1, timeout=10)
        assert collector.payloads == [f"qos {qos}".encode()]

    @pytest.mark.parametrize("qos", [0, 1, 2])
    def test_peer_receives_our_publish(self, client, peer, topic, qos):
        peer.subscribe(topic, qos=qos)
        assert peer.subscribed.wait(10)
        client.connect().wait_for_completion(10)

        client.publish(topic, {"qos": qos}, qos=qos).wait_for_completion(10)

        message = peer.received.get(timeout=10)
        assert message.topic == topic
        assert message.payload == f'{{"qos":{qos}}}'.encode()
        assert message.qos == qos

    @pytest.mark.parametrize("qos", [0, 1, 2])
    def test_we_receive_peer_publish(self, client, peer, topic, qos):
        collector = MessageCollector()
        client.connect().wait_for_completion(10)
        client.subscribe(topic, qos=qos, callback=collector).wait_for_completion(10)

        peer.publish(topic, b"from paho", qos=qos).wait_for_publish(10)

        assert collector.wait_for(1, timeout=10)
        assert collector.messages[0][:3] == (topic, b"from paho", qos)
