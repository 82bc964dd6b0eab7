"""
MQTT v5 control packet codec.

Packets are plain dataclasses with an ``encode()`` method producing the complete
wire frame and a ``decode(flags, body)`` classmethod parsing the variable header
and payload. Properties are carried as paho ``Properties`` objects so that both
directions share paho's property tables and validation.

``PacketReader`` turns an arbitrary chunked byte stream into whole packets.
Malformed input raises ``ProtocolError``.
"""
import struct
import logging
from dataclasses import dataclass, field
from typing import ClassVar, Iterator, Self

from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import MQTTException as PropertiesError
from paho.mqtt.properties import Properties, VariableByteIntegers
from paho.mqtt.reasoncodes import ReasonCode

from .exceptions import ProtocolError

logger = logging.getLogger(__name__)

PROTOCOL_NAME = "MQTT"
PROTOCOL_LEVEL = 5
MAX_REMAINING_LENGTH = 268_435_455

# Reason codes used by the engine itself
SUCCESS = 0x00
NORMAL_DISCONNECTION = 0x00
UNSPECIFIED_ERROR = 0x80
MALFORMED_PACKET = 0x81
PROTOCOL_ERROR = 0x82
KEEP_ALIVE_TIMEOUT = 0x8D
PACKET_ID_NOT_FOUND = 0x92


def reason_name(packet_type: int, code: int) -> str:
    """Readable name of a reason code in the context of a packet type."""
    try:
        return ReasonCode(packet_type, identifier=code).getName()
    except (KeyError, ValueError):
        return f"0x{code:02X}"


def make_properties(packet_type: int, **values) -> Properties | None:
    """
    Build a paho Properties object, skipping values that are None.

    Returns None when no property is set.

    Example:
        >>> make_properties(PacketTypes.CONNECT, SessionExpiryInterval=0, ReceiveMaximum=None)
    """
    values = {name: value for name, value in values.items() if value is not None}
    if not values:
        return None
    properties = Properties(packet_type)
    for name, value in values.items():
        setattr(properties, name, value)
    return properties


def _pack_properties(properties: Properties | None) -> bytes:
    if properties is None:
        return b"\x00"
    return bytes(properties.pack())


def _string(value: str) -> bytes:
    data = value.encode("utf-8")
    return struct.pack("!H", len(data)) + data


def _binary(value: bytes) -> bytes:
    return struct.pack("!H", len(value)) + value


def _frame(packet_type: int, flags: int, body: bytes) -> bytes:
    if len(body) > MAX_REMAINING_LENGTH:
        raise ValueError(f"Packet too large: {len(body)} bytes")
    return bytes([(packet_type << 4) | flags]) + VariableByteIntegers.encode(len(body)) + body


class _Cursor:
    """Sequential reader over a packet body."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def byte(self) -> int:
        if self.remaining < 1:
            raise ProtocolError("Unexpected end of packet")
        value = self.data[self.pos]
        self.pos += 1
        return value

    def uint16(self) -> int:
        if self.remaining < 2:
            raise ProtocolError("Unexpected end of packet")
        (value,) = struct.unpack_from("!H", self.data, self.pos)
        self.pos += 2
        return value

    def binary(self) -> bytes:
        length = self.uint16()
        if self.remaining < length:
            raise ProtocolError("Length-prefixed field overruns packet")
        value = self.data[self.pos:self.pos + length]
        self.pos += length
        return bytes(value)

    def string(self) -> str:
        try:
            return self.binary().decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Invalid UTF-8 string: {e}") from e

    def properties(self, packet_type: int) -> Properties:
        properties = Properties(packet_type)
        try:
            _, consumed = properties.unpack(self.data[self.pos:])
        except (PropertiesError, KeyError, IndexError, struct.error, UnicodeDecodeError) as e:
            raise ProtocolError(f"Malformed properties: {e}") from e
        if consumed > self.remaining:
            raise ProtocolError("Properties overrun packet")
        self.pos += consumed
        return properties

    def rest(self) -> bytes:
        value = bytes(self.data[self.pos:])
        self.pos = len(self.data)
        return value


@dataclass
class Packet:
    packet_type: ClassVar[int] = 0
    fixed_flags: ClassVar[int] = 0

    @property
    def name(self) -> str:
        return PacketTypes.Names[self.packet_type].upper()

    def encode(self) -> bytes:
        return _frame(self.packet_type, self.fixed_flags, self._body())

    def _body(self) -> bytes:
        return b""

    @classmethod
    def decode(cls, flags: int, body: bytes) -> Self:
        if body:
            raise ProtocolError(f"{PacketTypes.Names[cls.packet_type].upper()} must have an empty body")
        return cls()


@dataclass
class Connect(Packet):
    packet_type: ClassVar[int] = PacketTypes.CONNECT

    client_id: str = ""
    keep_alive: int = 60
    clean_start: bool = True
    username: str | None = None
    password: bytes | None = None
    properties: Properties | None = None

    def _body(self) -> bytes:
        flags = 0
        if self.clean_start:
            flags |= 0x02
        if self.password is not None:
            flags |= 0x40
        if self.username is not None:
            flags |= 0x80
        body = _string(PROTOCOL_NAME) + bytes([PROTOCOL_LEVEL, flags])
        body += struct.pack("!H", self.keep_alive)
        body += _pack_properties(self.properties)
        body += _string(self.client_id)
        if self.username is not None:
            body += _string(self.username)
        if self.password is not None:
            body += _binary(self.password)
        return body

    @classmethod
    def decode(cls, flags: int, body: bytes) -> Self:
        cursor = _Cursor(body)
        if cursor.string() != PROTOCOL_NAME:
            raise ProtocolError("Unknown protocol name")
        level = cursor.byte()
        if level != PROTOCOL_LEVEL:
            raise ProtocolError(f"Unsupported protocol level {level}")
        connect_flags = cursor.byte()
        keep_alive = cursor.uint16()
        properties = cursor.properties(PacketTypes.CONNECT)
        client_id = cursor.string()
        if connect_flags & 0x04:
            # Will properties, topic and payload are accepted and discarded
            cursor.properties(PacketTypes.WILLMESSAGE)
            cursor.string()
            cursor.binary()
        username = cursor.string() if connect_flags & 0x80 else None
        password = cursor.binary() if connect_flags & 0x40 else None
        return cls(
            client_id=client_id,
            keep_alive=keep_alive,
            clean_start=bool(connect_flags & 0x02),
            username=username,
            password=password,
            properties=properties,
        )


@dataclass
class Connack(Packet):
    packet_type: ClassVar[int] = PacketTypes.CONNACK

    session_present: bool = False
    reason_code: int = SUCCESS
    properties: Properties | None = None

    def _body(self) -> bytes:
        return bytes([0x01 if self.session_present else 0x00, self.reason_code]) + _pack_properties(self.properties)

    @classmethod
    def decode(cls, flags: int, body: bytes) -> Self:
        cursor = _Cursor(body)
        ack_flags = cursor.byte()
        if ack_flags & 0xFE:
            raise ProtocolError("Reserved CONNACK flags set")
        reason_code = cursor.byte()
        properties = cursor.properties(PacketTypes.CONNACK) if cursor.remaining else None
        return cls(session_present=bool(ack_flags & 0x01), reason_code=reason_code, properties=properties)


@dataclass
class Publish(Packet):
    packet_type: ClassVar[int] = PacketTypes.PUBLISH

    topic: str = ""
    payload: bytes = b""
    qos: int = 0
    retain: bool = False
    dup: bool = False
    packet_id: int | None = None
    properties: Properties | None = None

    def encode(self) -> bytes:
        flags = (self.qos << 1) | (0x08 if self.dup else 0) | (0x01 if self.retain else 0)
        return _frame(self.packet_type, flags, self._body())

    def _body(self) -> bytes:
        body = _string(self.topic)
        if self.qos > 0:
            if not self.packet_id:
                raise ValueError("QoS 1/2 PUBLISH requires a packet identifier")
            body += struct.pack("!H", self.packet_id)
        return body + _pack_properties(self.properties) + self.payload

    @classmethod
    def decode(cls, flags: int, body: bytes) -> Self:
        qos = (flags >> 1) & 0x03
        if qos == 3:
            raise ProtocolError("PUBLISH with QoS 3")
        cursor = _Cursor(body)
        topic = cursor.string()
        packet_id = None
        if qos > 0:
            packet_id = cursor.uint16()
            if packet_id == 0:
                raise ProtocolError("PUBLISH with packet identifier 0")
        properties = cursor.properties(PacketTypes.PUBLISH)
        return cls(
            topic=topic,
            payload=cursor.rest(),
            qos=qos,
            retain=bool(flags & 0x01),
            dup=bool(flags & 0x08),
            packet_id=packet_id,
            properties=properties,
        )


@dataclass
class _Ack(Packet):
    packet_id: int = 0
    reason_code: int = SUCCESS
    properties: Properties | None = None

    def _body(self) -> bytes:
        body = struct.pack("!H", self.packet_id)
        if self.reason_code != SUCCESS or self.properties is not None:
            body += bytes([self.reason_code])
            if self.properties is not None:
                body += _pack_properties(self.properties)
        return body

    @classmethod
    def decode(cls, flags: int, body: bytes) -> Self:
        cursor = _Cursor(body)
        packet_id = cursor.uint16()
        reason_code = cursor.byte() if cursor.remaining else SUCCESS
        properties = cursor.properties(cls.packet_type) if cursor.remaining else None
        return cls(packet_id=packet_id, reason_code=reason_code, properties=properties)


@dataclass
class PubAck(_Ack):
    packet_type: ClassVar[int] = PacketTypes.PUBACK


@dataclass
class PubRec(_Ack):
    packet_type: ClassVar[int] = PacketTypes.PUBREC


@dataclass
class PubRel(_Ack):
    packet_type: ClassVar[int] = PacketTypes.PUBREL
    fixed_flags: ClassVar[int] = 0x02


@dataclass
class PubComp(_Ack):
    packet_type: ClassVar[int] = PacketTypes.PUBCOMP


@dataclass
class Subscribe(Packet):
    packet_type: ClassVar[int] = PacketTypes.SUBSCRIBE
    fixed_flags: ClassVar[int] = 0x02

    packet_id: int = 0
    # (topic filter, requested QoS)
    topics: list[tuple[str, int]] = field(default_factory=list)
    properties: Properties | None = None

    def _body(self) -> bytes:
        body = struct.pack("!H", self.packet_id) + _pack_properties(self.properties)
        for topic_filter, qos in self.topics:
            body += _string(topic_filter) + bytes([qos & 0x03])
        return body

    @classmethod
    def decode(cls, flags: int, body: bytes) -> Self:
        cursor = _Cursor(body)
        packet_id = cursor.uint16()
        properties = cursor.properties(PacketTypes.SUBSCRIBE)
        topics = []
        while cursor.remaining:
            topic_filter = cursor.string()
            topics.append((topic_filter, cursor.byte() & 0x03))
        if not topics:
            raise ProtocolError("SUBSCRIBE without topic filters")
        return cls(packet_id=packet_id, topics=topics, properties=properties)


@dataclass
class Suback(Packet):
    packet_type: ClassVar[int] = PacketTypes.SUBACK

    packet_id: int = 0
    reason_codes: list[int] = field(default_factory=list)
    properties: Properties | None = None

    def _body(self) -> bytes:
        return struct.pack("!H", self.packet_id) + _pack_properties(self.properties) + bytes(self.reason_codes)

    @classmethod
    def decode(cls, flags: int, body: bytes) -> Self:
        cursor = _Cursor(body)
        packet_id = cursor.uint16()
        properties = cursor.properties(cls.packet_type)
        return cls(packet_id=packet_id, reason_codes=list(cursor.rest()), properties=properties)


@dataclass
class Unsubscribe(Packet):
    packet_type: ClassVar[int] = PacketTypes.UNSUBSCRIBE
    fixed_flags: ClassVar[int] = 0x02

    packet_id: int = 0
    topics: list[str] = field(default_factory=list)
    properties: Properties | None = None

    def _body(self) -> bytes:
        body = struct.pack("!H", self.packet_id) + _pack_properties(self.properties)
        for topic_filter in self.topics:
            body += _string(topic_filter)
        return body

    @classmethod
    def decode(cls, flags: int, body: bytes) -> Self:
        cursor = _Cursor(body)
        packet_id = cursor.uint16()
        properties = cursor.properties(PacketTypes.UNSUBSCRIBE)
        topics = []
        while cursor.remaining:
            topics.append(cursor.string())
        if not topics:
            raise ProtocolError("UNSUBSCRIBE without topic filters")
        return cls(packet_id=packet_id, topics=topics, properties=properties)


@dataclass
class Unsuback(Suback):
    packet_type: ClassVar[int] = PacketTypes.UNSUBACK


@dataclass
class PingReq(Packet):
    packet_type: ClassVar[int] = PacketTypes.PINGREQ


@dataclass
class PingResp(Packet):
    packet_type: ClassVar[int] = PacketTypes.PINGRESP


@dataclass
class Disconnect(Packet):
    packet_type: ClassVar[int] = PacketTypes.DISCONNECT

    reason_code: int = NORMAL_DISCONNECTION
    properties: Properties | None = None

    def _body(self) -> bytes:
        if self.reason_code == NORMAL_DISCONNECTION and self.properties is None:
            return b""
        return bytes([self.reason_code]) + _pack_properties(self.properties)

    @classmethod
    def decode(cls, flags: int, body: bytes) -> Self:
        cursor = _Cursor(body)
        reason_code = cursor.byte() if cursor.remaining else NORMAL_DISCONNECTION
        properties = cursor.properties(PacketTypes.DISCONNECT) if cursor.remaining else None
        return cls(reason_code=reason_code, properties=properties)


_PACKET_CLASSES: dict[int, type[Packet]] = {
    cls.packet_type: cls
    for cls in (
        Connect, Connack, Publish, PubAck, PubRec, PubRel, PubComp,
        Subscribe, Suback, Unsubscribe, Unsuback, PingReq, PingResp, Disconnect,
    )
}


def decode_packet(first_byte: int, body: bytes) -> Packet:
    """
    Decode one control packet from its fixed header byte and body.

    Raises:
        ProtocolError: Unknown packet type, bad fixed header flags or malformed body
    """
    packet_type, flags = first_byte >> 4, first_byte & 0x0F
    cls = _PACKET_CLASSES.get(packet_type)
    if cls is None:
        raise ProtocolError(f"Unsupported packet type {packet_type}")
    if cls is not Publish and flags != cls.fixed_flags:
        raise ProtocolError(f"Malformed fixed header flags 0x{flags:X} for {cls.__name__.upper()}")
    try:
        return cls.decode(flags, body)
    except ProtocolError:
        raise
    except (IndexError, struct.error, ValueError) as e:
        raise ProtocolError(f"Malformed {cls.__name__.upper()}: {e}") from e


class PacketReader:
    """
    Incremental framer for a byte stream.

    Example:
        >>> reader = PacketReader()
        >>> reader.feed(b"\\xd0")
        >>> list(reader.packets())
        []
        >>> reader.feed(b"\\x00")
        >>> list(reader.packets())
        [PingResp()]
    """

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def packets(self) -> Iterator[Packet]:
        while True:
            frame = self._next_frame()
            if frame is None:
                return
            first_byte, body = frame
            yield decode_packet(first_byte, body)

    def _next_frame(self) -> tuple[int, bytes] | None:
        buffer = self._buffer
        if len(buffer) < 2:
            return None

        remaining_length = 0
        multiplier = 1
        index = 1
        while True:
            if index >= len(buffer):
                return None
            digit = buffer[index]
            remaining_length += (digit & 0x7F) * multiplier
            index += 1
            if not digit & 0x80:
                break
            multiplier *= 128
            if index > 4:
                raise ProtocolError("Malformed remaining length")

        end = index + remaining_length
        if len(buffer) < end:
            return None
        first_byte = buffer[0]
        body = bytes(buffer[index:end])
        del buffer[:end]
        return first_byte, body
