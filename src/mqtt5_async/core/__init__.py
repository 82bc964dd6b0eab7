"""
Core components shared by the engine client and the asyncio facade.
"""
from .base import MQTTClientBase, MessageLogger, ClientFormatter, generate_unique_id, encode_payload
from .models import (
    MQTTBrokerConfig,
    ConnectOptions,
    ClientConfig,
    ConnectResult,
    MQTTMessage,
    QoS,
    ConnectionState,
    OperationKind,
    TokenState,
    DeliveryState,
)
from .exceptions import (
    MQTTException,
    InvalidStateError,
    MQTTTimeoutError,
    DeliveryTimeoutError,
    ConnectionLostError,
    DuplicateKeyError,
    ResourceExhaustedError,
    ProtocolError,
    NegativeAckError,
)
from .tokens import Token, TokenRegistry
from .delivery import DeliveryStateMachine, PacketIdAllocator
from .subscriptions import Subscription, SubscriptionTable, validate_topic_filter, validate_topic_name
from .transport import Transport, SocketTransport
from .log_formatting import (
    MQTTLogFormatConfig,
    MQTTLogFormatter,
    StructuredMQTTFormatter,
    setup_mqtt_logging,
)

__all__ = [
    # Base
    "MQTTClientBase",
    "MessageLogger",
    "ClientFormatter",
    "generate_unique_id",
    "encode_payload",
    # Models
    "MQTTBrokerConfig",
    "ConnectOptions",
    "ClientConfig",
    "ConnectResult",
    "MQTTMessage",
    "QoS",
    "ConnectionState",
    "OperationKind",
    "TokenState",
    "DeliveryState",
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
    # Engine components
    "Token",
    "TokenRegistry",
    "DeliveryStateMachine",
    "PacketIdAllocator",
    "Subscription",
    "SubscriptionTable",
    "validate_topic_filter",
    "validate_topic_name",
    "Transport",
    "SocketTransport",
    # Logging
    "MQTTLogFormatConfig",
    "MQTTLogFormatter",
    "StructuredMQTTFormatter",
    "setup_mqtt_logging",
]
