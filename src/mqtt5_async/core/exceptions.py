from typing import Optional


class MQTTException(Exception):
    """
    Base for all client engine errors. Carries:
      - detail: human readable description
      - reason_code: MQTT v5 reason code reported by the broker, if any
      - packet_id: packet identifier of the affected flow, if any
      - client_id: identifier of the client that raised it
    """
    default_code: Optional[int] = None

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        reason_code: Optional[int] = None,
        packet_id: Optional[int] = None,
        client_id: Optional[str] = None,
    ):
        self.reason_code = reason_code if reason_code is not None else self.default_code
        self.detail = detail
        self.packet_id = packet_id
        self.client_id = client_id

        parts = []
        if self.reason_code is not None:
            parts.append(f"reason_code=0x{self.reason_code:02X}")
        if packet_id is not None:
            parts.append(f"packet_id={packet_id}")
        if client_id:
            parts.append(f"client_id={client_id!r}")

        message = detail or self.__class__.__name__
        if parts:
            message = f"{message} ({', '.join(parts)})"
        super().__init__(message)

    def __repr__(self):
        return (
            f"{self.__class__.__name__}("
            f"detail={self.detail!r}, "
            f"reason_code={self.reason_code!r}, "
            f"packet_id={self.packet_id!r}, "
            f"client_id={self.client_id!r}"
            f")"
        )


class InvalidStateError(MQTTException):
    """Operation is not allowed in the current connection state."""


class MQTTTimeoutError(MQTTException, TimeoutError):
    """A local wait expired; the underlying operation is still outstanding."""


class DeliveryTimeoutError(MQTTException):
    """A QoS 1/2 handshake ran out of retransmission attempts."""


class ConnectionLostError(MQTTException):
    """The transport failed or was torn down while operations were pending."""


class DuplicateKeyError(MQTTException):
    """A pending token already exists for this correlation key."""


class ResourceExhaustedError(MQTTException):
    """The in-flight window or the packet identifier space is full."""


class ProtocolError(MQTTException):
    """Malformed or out-of-sequence packet received from the broker."""


class NegativeAckError(MQTTException):
    """The broker answered with a failure reason code (0x80 or above)."""
