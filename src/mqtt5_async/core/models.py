"""
Data Models for the MQTT v5 Client Engine.

This module defines the configuration and value types shared by every layer of the
engine. Configuration models use Pydantic for validation so that a bad keep-alive
or an out-of-range in-flight window is rejected before a socket is ever opened.

Key Models:
    - MQTTBrokerConfig: Broker address, credentials and TLS switch
    - ConnectOptions: Per-connection CONNECT parameters (keep-alive, clean start, ...)
    - ClientConfig: Engine tuning (in-flight window, retry policy, worker tick)
    - ConnectResult: Outcome of a successful CONNECT, carried by the connect token
    - MQTTMessage: An inbound or outbound application message

Enumerations:
    - QoS: Delivery guarantee levels 0, 1 and 2
    - ConnectionState: Session lifecycle states
    - OperationKind: The kind of asynchronous operation a token tracks
    - TokenState: Token completion states
    - DeliveryState: QoS handshake sub-states of an in-flight message

Example:
    >>> from mqtt5_async.core.models import ConnectOptions, QoS
    >>> options = ConnectOptions(keep_alive=30, clean_start=True)
    >>> QoS(2).name
    'EXACTLY_ONCE'
"""
from enum import Enum, IntEnum, StrEnum
from typing import Any, Optional

import orjson
from pydantic import BaseModel, Field, SecretStr, model_validator


class MQTTBrokerConfig(BaseModel):
    """
    MQTT broker connection configuration.

    Attributes:
        hostname: MQTT broker hostname or IP address (default: "localhost")
        port: MQTT broker port (default: 1883, or 8883 when tls is set)
        timeout: Connection timeout in seconds (default: 5)
        username: Optional MQTT username for authentication
        password: Optional MQTT password (can be SecretStr for secure storage)
        tls: Wrap the connection in TLS using the default SSL context

    Example:
        >>> config = MQTTBrokerConfig(
        ...     hostname="mqtt.example.com",
        ...     port=8883,
        ...     tls=True,
        ...     username="device-001",
        ...     password="secret123"
        ... )
    """
    hostname: str = "localhost"
    port: Optional[int] = None
    timeout: Optional[float] = 5
    username: Optional[str] = None
    password: Optional[str | SecretStr] = None
    tls: bool = False

    @model_validator(mode="after")
    def set_defaults_if_none(self) -> "MQTTBrokerConfig":
        """
        Ensure port and timeout have default values even if explicitly set to None.

        Returns:
            Self with defaults applied
        """
        if self.port is None:
            self.port = 8883 if self.tls else 1883
        if self.timeout is None:
            self.timeout = 5
        return self


class ConnectOptions(BaseModel):
    """
    Options carried by a single CONNECT.

    Attributes:
        keep_alive: Keep-alive interval in seconds, 0 disables pings (default: 60)
        clean_start: Discard any session state held by the broker (default: True)
        session_expiry_interval: Seconds the broker keeps the session after disconnect
        receive_maximum: Inbound QoS 1/2 window announced to the broker
        username: MQTT username, overrides the client's credentials when set
        password: MQTT password, overrides the client's credentials when set
        connection_timeout: Seconds to wait for the CONNACK (default: 30)
    """
    keep_alive: int = Field(60, ge=0, le=65535)
    clean_start: bool = True
    session_expiry_interval: int = Field(0, ge=0, le=0xFFFFFFFF)
    receive_maximum: Optional[int] = Field(None, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[str | SecretStr] = None
    connection_timeout: float = Field(30.0, gt=0)


class ClientConfig(BaseModel):
    """
    Engine tuning knobs.

    Attributes:
        max_inflight: Outbound QoS 1/2 publishes allowed in flight (default: 10)
        retry_interval: Seconds before an unacknowledged packet is retransmitted
        max_retries: Retransmissions before a delivery fails with DeliveryTimeoutError
        tick_interval: Period of the keep-alive/retry worker in seconds
        read_poll_interval: Socket read timeout used by the reader to poll for stop
        quiesce_timeout: Seconds a graceful disconnect waits for pending tokens
        disconnect_timeout: Default join deadline for disconnect operations
    """
    max_inflight: int = Field(10, ge=1, le=65535)
    retry_interval: float = Field(20.0, gt=0)
    max_retries: int = Field(3, ge=0)
    tick_interval: float = Field(0.1, gt=0)
    read_poll_interval: float = Field(0.1, gt=0)
    quiesce_timeout: float = Field(30.0, ge=0)
    disconnect_timeout: float = Field(10.0, gt=0)


class QoS(IntEnum):
    """MQTT delivery guarantee levels."""
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


class ConnectionState(StrEnum):
    """
    Session lifecycle states.

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTING -> DISCONNECTED
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"

    def __str__(self):
        return self.name


class OperationKind(StrEnum):
    """Asynchronous operations tracked by a token."""
    CONNECT = "connect"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PUBLISH = "publish"
    DISCONNECT = "disconnect"

    def __str__(self):
        return self.name


class TokenState(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DeliveryState(Enum):
    """
    QoS handshake sub-states.

    Outbound QoS 1 waits in AWAITING_PUBACK, outbound QoS 2 moves from
    AWAITING_PUBREC to AWAITING_PUBCOMP. Inbound QoS 2 waits in AWAITING_PUBREL.
    """
    AWAITING_PUBACK = "awaiting_puback"
    AWAITING_PUBREC = "awaiting_pubrec"
    AWAITING_PUBCOMP = "awaiting_pubcomp"
    AWAITING_PUBREL = "awaiting_pubrel"


class ConnectResult(BaseModel):
    """Outcome of an accepted CONNECT, used as the connect token's result."""
    session_present: bool = False
    reason_code: int = 0
    assigned_client_id: Optional[str] = None
    keep_alive: int = 0
    receive_maximum: int = 65535


class MQTTMessage(BaseModel):
    """
    An application message, as published or as delivered to a callback.

    Attributes:
        topic: Topic name the message was published on
        payload: Raw payload bytes
        qos: Delivery guarantee level
        retain: Retain flag as seen on the wire
        dup: Duplicate delivery flag as seen on the wire
        packet_id: Packet identifier for QoS 1/2 flows, None for QoS 0
    """
    topic: str
    payload: bytes = b""
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False
    dup: bool = False
    packet_id: Optional[int] = None

    def decode_json(self) -> Any:
        """Decode the payload as JSON."""
        return orjson.loads(self.payload)

    def __str__(self):
        return f"MQTTMessage(topic={self.topic!r}, qos={int(self.qos)}, {len(self.payload)} bytes)"
