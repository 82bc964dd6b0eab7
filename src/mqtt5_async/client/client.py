"""
Threaded MQTT v5 client.

Every operation returns a Token immediately; callers block on
``token.wait_for_completion(timeout)`` only when they want to. Network I/O,
keep-alive, retransmission and callbacks run on the connection's four workers.
"""
import logging
import ssl
from typing import Any, Callable, Self

from paho.mqtt.packettypes import PacketTypes
from pydantic import SecretStr

from ..core.base import MQTTClientBase, encode_payload, secret_value
from ..core.models import ClientConfig, ConnectionState, ConnectOptions, MQTTBrokerConfig, MQTTMessage, QoS
from ..core.packets import MAX_REMAINING_LENGTH, Connect, make_properties
from ..core.subscriptions import MessageCallback, Subscription, validate_topic_filter, validate_topic_name
from ..core.tokens import Token
from ..core.transport import SocketTransport, Transport
from .callbacks import MqttCallbackProtocol
from .connection import ConnectionManager

logger = logging.getLogger(__name__)


class MQTTClient(MQTTClientBase):
    """
    Token based MQTT v5 client.

    Example:
        >>> client = MQTTClient("localhost", identifier="sensor", ensure_unique_identifier=True)
        >>> client.connect().wait_for_completion(10)
        >>> client.subscribe("sensors/#", qos=1).wait_for_completion(5)
        >>> client.publish("sensors/kitchen", b"21.5", qos=2).wait_for_completion(5)
        >>> client.disconnect().wait_for_completion(10)
        >>> client.close()
    """

    def __init__(
        self,
        broker: str = "localhost",
        port: int | None = None,
        timeout: float = 5,
        identifier: str | None = None,
        username: str | None = None,
        password: str | SecretStr | None = None,
        ensure_unique_identifier: bool = False,
        logger: logging.LoggerAdapter | None = None,
        qos_default: int = 0,
        config: ClientConfig | None = None,
        callback: MqttCallbackProtocol | None = None,
        tls_context: ssl.SSLContext | None = None,
        transport_factory: Callable[[], Transport] | None = None,
    ):
        """
        Initialize the client. No connection is made until connect().

        Args:
            broker: MQTT broker hostname
            port: MQTT broker port (default: 1883, or 8883 with a TLS context)
            timeout: Default timeout for blocking convenience waits in seconds
            identifier: Client identifier (auto-generated if None)
            username: MQTT username for authentication
            password: MQTT password for authentication
            ensure_unique_identifier: If True, append UUID to identifier
            logger: Custom logger adapter (creates default if None)
            qos_default: Default QoS level for publish/subscribe
            config: Engine tuning (in-flight window, retries, worker tick)
            callback: Client-level on_message/on_disconnected callback
            tls_context: SSL context used to wrap the TCP connection
            transport_factory: Alternative transport, called once per connect
        """
        super().__init__(
            broker=broker,
            port=port or (8883 if tls_context is not None else 1883),
            timeout=timeout,
            identifier=identifier,
            username=username,
            password=password,
            ensure_unique_identifier=ensure_unique_identifier,
            logger=logger,
            qos_default=qos_default,
        )
        self.config = config or ClientConfig()
        self._tls_context = tls_context
        self._connection = ConnectionManager(
            client_id=self.identifier,
            transport_factory=transport_factory or self._default_transport,
            config=self.config,
            callback=callback,
            logger=self.logger,
        )

    @classmethod
    def from_config(cls, broker_config: MQTTBrokerConfig, **kwargs) -> Self:
        """Build a client from an MQTTBrokerConfig."""
        if broker_config.tls and "tls_context" not in kwargs:
            kwargs["tls_context"] = ssl.create_default_context()
        return cls(
            broker=broker_config.hostname,
            port=broker_config.port,
            timeout=broker_config.timeout,
            username=broker_config.username,
            password=broker_config.password,
            **kwargs,
        )

    def _default_transport(self) -> Transport:
        return SocketTransport(
            self.broker,
            self._port,
            tls_context=self._tls_context,
            poll_interval=self.config.read_poll_interval,
        )

    # Lifecycle

    def connect(self, options: ConnectOptions | None = None, timeout: float | None = None) -> Token:
        """
        Start connecting and return the connect token.

        The token resolves with a ConnectResult once the CONNACK arrives, or fails
        with ConnectionLostError / NegativeAckError. Workers are running only
        while the session is connecting or connected.

        Raises:
            InvalidStateError: Client is not disconnected or has been closed
        """
        options = options or ConnectOptions()
        timeout = timeout if timeout is not None else options.connection_timeout
        username = options.username if options.username is not None else self._username
        password = secret_value(options.password if options.password is not None else self._password)

        packet = Connect(
            client_id=self.identifier,
            keep_alive=options.keep_alive,
            clean_start=options.clean_start,
            username=username,
            password=password.encode("utf-8") if password is not None else None,
            properties=make_properties(
                PacketTypes.CONNECT,
                SessionExpiryInterval=options.session_expiry_interval or None,
                ReceiveMaximum=options.receive_maximum,
            ),
        )
        self.logger.debug(f"Connecting to broker {self.broker}:{self._port}")
        return self._connection.connect(packet, timeout)

    def disconnect(self, timeout: float | None = None) -> Token:
        """
        Start a graceful disconnect and return its token.

        The token resolves after pending operations finished (or the quiesce
        timeout passed), DISCONNECT was flushed and all workers have stopped.

        Raises:
            InvalidStateError: Client is not connected
        """
        timeout = timeout if timeout is not None else self.config.disconnect_timeout
        return self._connection.disconnect(timeout)

    def disconnect_forcibly(self, timeout: float | None = None) -> None:
        """
        Drop the connection without a DISCONNECT packet.

        Every pending token fails with ConnectionLostError. Returns once all
        workers stopped, or after timeout with any stragglers abandoned.
        """
        timeout = timeout if timeout is not None else self.config.disconnect_timeout
        self._connection.disconnect_forcibly(timeout)

    def close(self) -> None:
        """Release client resources. Only valid once disconnected; idempotent."""
        self._connection.close()

    # Messaging

    def publish(self, topic: str, payload: Any, qos: int | None = None, retain: bool = False) -> Token:
        """
        Publish a message.

        Args:
            topic: Topic name (no wildcards)
            payload: bytes, str, None or a JSON-serialisable value
            qos: Quality of Service level (uses qos_default if None)
            retain: Ask the broker to retain the message

        Returns:
            Token completing when the QoS handshake finishes (at once for QoS 0)

        Raises:
            ValueError: Invalid topic, QoS or oversized payload
            InvalidStateError: Client is not connected
            ResourceExhaustedError: The in-flight window is full
        """
        validate_topic_name(topic)
        qos = QoS(qos if qos is not None else self.qos_default)
        data = encode_payload(payload)
        if len(data) > MAX_REMAINING_LENGTH:
            raise ValueError(f"Payload of {len(data)} bytes exceeds the MQTT packet size limit")

        token = self._connection.publish(MQTTMessage(topic=topic, payload=data, qos=qos, retain=retain))
        self.logger.debug(
            f"Published to topic {topic}: {self._truncate_str(data)}",
            extra={"topic": topic, "qos": int(qos), "packet_id": token.packet_id},
        )
        return token

    def subscribe(self, topic: str, qos: int | None = None, callback: MessageCallback | None = None) -> Token:
        """
        Subscribe to a topic filter.

        Args:
            topic: Topic filter, "+" and "#" wildcards allowed
            qos: Requested QoS (uses qos_default if None)
            callback: Called as callback(topic, payload, qos, retained) for
                      messages routed to this subscription; falls back to the
                      client-level callback when None

        Returns:
            Token resolving with the granted QoS
        """
        validate_topic_filter(topic)
        qos = QoS(qos if qos is not None else self.qos_default)
        token = self._connection.subscribe(Subscription(topic_filter=topic, qos=int(qos), callback=callback))
        self.logger.debug(f"Subscribing to topic {topic}", extra={"topic": topic, "packet_id": token.packet_id})
        return token

    def unsubscribe(self, topic: str) -> Token:
        """
        Remove a subscription. The filter keeps routing messages until the
        UNSUBACK arrives.
        """
        validate_topic_filter(topic)
        token = self._connection.unsubscribe(topic)
        self.logger.debug(f"Unsubscribing from topic {topic}", extra={"topic": topic, "packet_id": token.packet_id})
        return token

    # Introspection

    def set_callback(self, callback: MqttCallbackProtocol | None) -> None:
        self._connection.callback = callback

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self._connection.state is ConnectionState.CONNECTED

    @property
    def subscriptions(self) -> list[Subscription]:
        return self._connection.subscriptions.active()

    @property
    def pending_tokens(self) -> list[Token]:
        return self._connection.registry.outstanding()

    def worker_threads(self):
        """Live worker threads of the current session (4 while connected)."""
        return self._connection.worker_threads()

    def is_quiescent(self) -> bool:
        """True once the last session fully stopped and no worker is alive."""
        return self._connection.is_quiescent()

    def wait_for_quiescence(self, timeout: float | None = None) -> bool:
        return self._connection.wait_for_quiescence(timeout)

    def __enter__(self) -> Self:
        self.connect().wait_for_completion()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if self.is_connected:
            self.disconnect().wait_for_completion()
        else:
            self.disconnect_forcibly()
        self.close()
