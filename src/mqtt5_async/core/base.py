"""
Abstract Base Class for MQTT Clients.

This module provides the foundational abstract base class (MQTTClientBase) that defines
the common interface and shared functionality for the threaded engine client and its
asyncio facade.

Key Components:
    - MQTTClientBase: Abstract base class defining the client interface
    - MessageLogger: Custom logger adapter with contextual logging support
    - ClientFormatter: Log formatter that appends contextual fields
    - Utility functions: generate_unique_id(), encode_payload()

The base class handles:
    - Client configuration and initialization
    - Credential management
    - Logging infrastructure with contextual information
    - Abstract method definitions for subclass implementation

Subclasses decide how operations complete: the engine client hands back tokens,
the asyncio facade awaits them.
"""
import uuid
import logging
from abc import ABC, abstractmethod
from typing import Any

import orjson
from pydantic import SecretStr


logger = logging.getLogger(__name__)


class ClientFormatter(logging.Formatter):
    """
    Log formatter that appends contextual metadata to log messages.

    Any of the configured fields present on the record (normally injected through
    the 'extra' mapping of a MessageLogger) are appended as key=value pairs.

    Example:
        >>> formatter = ClientFormatter("%(levelname)s %(message)s")
        >>> handler.setFormatter(formatter)
        >>> logger.info("PUBACK received", extra={"client_id": "dev-1", "packet_id": 7})
        # Output: "INFO PUBACK received client_id=dev-1 packet_id=7"
    """

    default_fields = ("client_id", "packet_id", "topic", "qos", "reason_code")

    def __init__(self, fmt: str | None = None, datefmt: str | None = None, fields: tuple[str, ...] | None = None):
        super().__init__(fmt, datefmt)
        self.fields = fields or self.default_fields

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record and append the contextual fields it carries.

        Args:
            record: LogRecord instance containing the log event information

        Returns:
            Formatted log message string with extra fields appended
        """
        message = super().format(record)
        extra_info = " ".join(
            f"{name}={getattr(record, name)}"
            for name in self.fields
            if getattr(record, name, None) is not None
        )
        return f"{message} {extra_info}" if extra_info else message


class MessageLogger(logging.LoggerAdapter):
    """
    Logger adapter that provides contextual logging with flexible extra field management.

    Attributes:
        logger: The underlying Logger instance
        extra: Base context dictionary attached to all log records
        merge_extra: If True, merge call-time extras with base extras; if False, replace
        exclude_extras: List of field names to exclude from the extra context

    Example:
        >>> logger = MessageLogger(
        ...     logging.getLogger(__name__),
        ...     extra={"client_id": "device-001"},
        ...     merge_extra=True
        ... )
        >>> logger.info("Connected to broker", extra={"broker": "mqtt.example.com"})
        # Logs with both client_id and broker in the context
    """

    def __init__(
        self,
        logger: logging.Logger,
        extra: dict[str, Any] | None = None,
        merge_extra: bool = False,
        exclude_extras: list[str] | None = None
    ):
        super().__init__(logger, extra or {})
        self.logger = logger
        self.extra = extra or {}
        self.merge_extra = merge_extra
        self.exclude_extras = exclude_extras or []

    def process(self, msg, kwargs):
        """
        Inject the base context into the logging call.

        Args:
            msg: The log message string
            kwargs: Keyword arguments passed to the logging call

        Returns:
            Tuple of (message, modified_kwargs) ready for the underlying logger
        """
        # Merge or replace extra fields based on configuration
        if self.merge_extra and "extra" in kwargs:
            kwargs["extra"] = {**self.extra, **kwargs["extra"]}
        else:
            kwargs["extra"] = dict(self.extra)

        # Apply exclusion filters to remove unwanted fields
        for key in self.exclude_extras:
            kwargs["extra"].pop(key, None)

        return msg, kwargs


def generate_unique_id(prefix: str | None = "mqtt_client") -> str:
    """
    Generate a globally unique identifier with an optional prefix.

    Args:
        prefix: Optional prefix string. If None, returns raw UUID.
                Default is "mqtt_client".

    Returns:
        Unique identifier string in format "{prefix}-{uuid}" or just "{uuid}"

    Example:
        >>> generate_unique_id("device")
        "device-a7f3c8d9-1234-5678-9abc-def012345678"
    """
    if prefix is None:
        return str(uuid.uuid4())
    return f"{prefix}-{uuid.uuid4()}"


def encode_payload(payload: Any) -> bytes:
    """
    Convert an application payload into wire bytes.

    Bytes-like values are sent as-is, strings are UTF-8 encoded, None becomes an
    empty payload and anything else is serialised as JSON.
    """
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return orjson.dumps(payload)


def secret_value(value: str | SecretStr | None) -> str | None:
    """Unwrap a SecretStr; plain strings and None pass through."""
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    return value


class MQTTClientBase(ABC):
    """
    Abstract base class for MQTT clients.

    Provides shared functionality for the engine client and the asyncio facade:
    - Configuration management
    - Identifier generation
    - Credential management
    - Logging utilities

    Subclasses must implement the connection and messaging operations.
    """

    def __init__(
        self,
        broker: str,
        port: int | None = None,
        timeout: float = 5,
        identifier: str | None = None,
        username: str | None = None,
        password: str | SecretStr | None = None,
        ensure_unique_identifier: bool = False,
        logger: logging.LoggerAdapter | None = None,
        qos_default: int = 0,
    ):
        """
        Initialize the MQTT client base.

        Args:
            broker: MQTT broker hostname
            port: MQTT broker port (default depends on implementation)
            timeout: Default timeout for blocking waits in seconds
            identifier: Client identifier (auto-generated if None)
            username: MQTT username for authentication
            password: MQTT password for authentication
            ensure_unique_identifier: If True, append UUID to identifier
            logger: Custom logger adapter (creates default if None)
            qos_default: Default QoS level for publish/subscribe
        """
        self.broker = broker
        self._port = port
        self.timeout = timeout
        self._username = username
        self._password = password

        # Generate or use provided identifier
        if ensure_unique_identifier:
            identifier = generate_unique_id(identifier)
        else:
            identifier = identifier or generate_unique_id()
        self.identifier = identifier

        self.qos_default = qos_default

        # Set up logging
        self.logger = logger or MessageLogger(
            logging.getLogger(self.__class__.__module__),
            extra={"client_id": self.identifier},
            merge_extra=True
        )

        self.logger.debug(
            f"Initialized MQTT client to broker {self.broker}:{self._port} "
            f"with identifier '{self.identifier}'"
        )

    @property
    def port(self) -> int | None:
        return self._port

    def set_credentials(self, username: str, password: str | SecretStr):
        """Set MQTT authentication credentials used by the next connect."""
        self._username = username
        self._password = password
        self.logger.debug(
            "Credentials set for username",
            extra={"username": username, "password": "***"},
        )

    def _truncate_str(self, input_string: Any, output_length: int = 50) -> str:
        """
        Truncate a string to specified length, appending '...' if truncated.

        Args:
            input_string: String (or bytes) to truncate
            output_length: Maximum length

        Returns:
            Truncated string
        """
        if isinstance(input_string, (bytes, bytearray)):
            input_string = bytes(input_string).decode("utf-8", errors="replace")
        elif not isinstance(input_string, str):
            input_string = str(input_string)
        if len(input_string) > output_length:
            return input_string[:output_length] + "..."
        return input_string

    # Abstract methods that subclasses must implement

    @abstractmethod
    def connect(self, options=None, timeout=None):
        """Connect to the MQTT broker."""

    @abstractmethod
    def disconnect(self, timeout=None):
        """Disconnect gracefully from the MQTT broker."""

    @abstractmethod
    def disconnect_forcibly(self, timeout=None):
        """Tear the session down without a DISCONNECT packet."""

    @abstractmethod
    def publish(self, topic: str, payload: Any, qos: int | None = None, retain: bool = False):
        """
        Publish a message to a topic.

        Args:
            topic: MQTT topic to publish to
            payload: Message payload (bytes, str, or JSON-serialisable value)
            qos: Quality of Service level (uses qos_default if None)
            retain: Ask the broker to retain the message
        """

    @abstractmethod
    def subscribe(self, topic: str, qos: int | None = None, callback=None):
        """
        Subscribe to an MQTT topic filter.

        Args:
            topic: MQTT topic filter to subscribe to
            qos: Quality of Service level (uses qos_default if None)
            callback: Optional per-subscription message callback
        """

    @abstractmethod
    def unsubscribe(self, topic: str):
        """Remove a subscription."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if client is currently connected to broker."""
