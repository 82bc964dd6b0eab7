# Core components
from .core import (
    MQTTClientBase,
    MessageLogger,
    ClientFormatter,
    MQTTBrokerConfig,
    ConnectOptions,
    ClientConfig,
    ConnectResult,
    MQTTMessage,
    QoS,
    ConnectionState,
    OperationKind,
    TokenState,
    MQTTException,
    InvalidStateError,
    MQTTTimeoutError,
    DeliveryTimeoutError,
    ConnectionLostError,
    DuplicateKeyError,
    ResourceExhaustedError,
    ProtocolError,
    NegativeAckError,
    Token,
    Subscription,
    Transport,
    SocketTransport,
    setup_mqtt_logging,
)

# Threaded client and callbacks
from .client import (
    MQTTClient,
    MqttCallbackProtocol,
    MqttCallbackBase,
)

# asyncio facade
from .async_client import AsyncMQTTClient

__all__ = [
    # Core
    "MQTTClientBase",
    "MessageLogger",
    "ClientFormatter",
    "MQTTBrokerConfig",
    "ConnectOptions",
    "ClientConfig",
    "ConnectResult",
    "MQTTMessage",
    "QoS",
    "ConnectionState",
    "OperationKind",
    "TokenState",
    # Exceptions
    "MQTTException",
    "InvalidStateError",
    "MQTTTimeoutError",
    "DeliveryTimeoutError",
    "ConnectionLostError",
    "DuplicateKeyError",
    "ResourceExhaustedError",
    "ProtocolError",
    "NegativeAckError",
    # Engine
    "Token",
    "Subscription",
    "Transport",
    "SocketTransport",
    "setup_mqtt_logging",
    # Threaded client
    "MQTTClient",
    "MqttCallbackProtocol",
    "MqttCallbackBase",
    # asyncio client
    "AsyncMQTTClient",
]
