"""
Wire format tests for the MQTT v5 packet codec.

Encodings are checked against hand-assembled frames; decoding is checked against
frames as a broker would send them, including malformed ones.
"""
import pytest
from paho.mqtt.packettypes import PacketTypes

from mqtt5_async.core.exceptions import ProtocolError
from mqtt5_async.core.packets import (
    Connack,
    Connect,
    Disconnect,
    PacketReader,
    PingReq,
    PingResp,
    PubAck,
    PubRel,
    Publish,
    Suback,
    Subscribe,
    Unsuback,
    Unsubscribe,
    decode_packet,
    make_properties,
    reason_name,
)


def decode_one(frame: bytes):
    reader = PacketReader()
    reader.feed(frame)
    packets = list(reader.packets())
    assert len(packets) == 1
    return packets[0]


# ============================================================================
# ENCODING
# ============================================================================


class TestEncoding:
    """Outbound packets produce the exact MQTT v5 frames."""

    def test_connect_minimal(self):
        frame = Connect(client_id="c", keep_alive=60).encode()
        assert frame == b"\x10\x0e\x00\x04MQTT\x05\x02\x00\x3c\x00\x00\x01c"

    def test_connect_with_credentials(self):
        frame = Connect(client_id="c", keep_alive=60, username="u", password=b"p").encode()
        assert frame[0:2] == b"\x10\x14"
        # Connect flags: username, password, clean start
        assert frame[9] == 0xC2
        assert frame.endswith(b"\x00\x01c\x00\x01u\x00\x01p")

    def test_connect_without_clean_start(self):
        frame = Connect(client_id="c", keep_alive=0, clean_start=False).encode()
        assert frame[9] == 0x00
        assert frame[10:12] == b"\x00\x00"

    def test_connect_with_session_expiry(self):
        properties = make_properties(PacketTypes.CONNECT, SessionExpiryInterval=10)
        frame = Connect(client_id="c", properties=properties).encode()
        assert b"\x05\x11\x00\x00\x00\x0a" in frame

    def test_publish_qos0(self):
        assert Publish(topic="t", payload=b"x").encode() == b"\x30\x05\x00\x01t\x00x"

    def test_publish_qos1(self):
        frame = Publish(topic="a/b", payload=b"hi", qos=1, packet_id=10).encode()
        assert frame == b"\x32\x0a\x00\x03a/b\x00\x0a\x00hi"

    def test_publish_dup_and_retain_flags(self):
        frame = Publish(topic="a/b", payload=b"hi", qos=1, packet_id=10, dup=True, retain=True).encode()
        assert frame[0] == 0x3B

    def test_publish_qos1_requires_packet_id(self):
        with pytest.raises(ValueError):
            Publish(topic="t", payload=b"x", qos=1).encode()

    def test_publish_multi_byte_remaining_length(self):
        frame = Publish(topic="t", payload=b"a" * 200).encode()
        # 204 bytes of body: 0xCC 0x01 as a variable byte integer
        assert frame[1:3] == b"\xcc\x01"
        assert len(frame) == 3 + 204

    def test_puback_success_omits_reason_code(self):
        assert PubAck(packet_id=7).encode() == b"\x40\x02\x00\x07"

    def test_puback_with_reason_code(self):
        assert PubAck(packet_id=7, reason_code=0x10).encode() == b"\x40\x03\x00\x07\x10"

    def test_pubrel_fixed_flags(self):
        assert PubRel(packet_id=1).encode() == b"\x62\x02\x00\x01"

    def test_subscribe(self):
        frame = Subscribe(packet_id=1, topics=[("a/+", 2)]).encode()
        assert frame == b"\x82\x09\x00\x01\x00\x00\x03a/+\x02"

    def test_unsubscribe(self):
        frame = Unsubscribe(packet_id=2, topics=["a/#"]).encode()
        assert frame == b"\xa2\x08\x00\x02\x00\x00\x03a/#"

    def test_ping_packets(self):
        assert PingReq().encode() == b"\xc0\x00"
        assert PingResp().encode() == b"\xd0\x00"

    def test_disconnect_normal_has_empty_body(self):
        assert Disconnect().encode() == b"\xe0\x00"

    def test_disconnect_with_reason(self):
        assert Disconnect(reason_code=0x8D).encode() == b"\xe0\x02\x8d\x00"

    def test_packet_names(self):
        assert PubRel().name == "PUBREL"
        assert Connack().name == "CONNACK"


# ============================================================================
# DECODING
# ============================================================================


class TestDecoding:
    """Inbound frames decode into the matching packet objects."""

    def test_connack_session_present(self):
        packet = decode_one(b"\x20\x03\x01\x00\x00")
        assert isinstance(packet, Connack)
        assert packet.session_present is True
        assert packet.reason_code == 0

    def test_connack_refused(self):
        packet = decode_one(b"\x20\x03\x00\x86\x00")
        assert packet.reason_code == 0x86

    def test_connack_server_keep_alive_property(self):
        packet = decode_one(b"\x20\x06\x00\x00\x03\x13\x00\x05")
        assert packet.properties.ServerKeepAlive == 5

    def test_connack_properties_from_make_properties(self):
        properties = make_properties(PacketTypes.CONNACK, ReceiveMaximum=3, ServerKeepAlive=None)
        packet = decode_one(Connack(properties=properties).encode())
        assert packet.properties.ReceiveMaximum == 3
        assert not hasattr(packet.properties, "ServerKeepAlive")

    def test_publish_qos2_flags(self):
        packet = decode_one(b"\x3d\x0a\x00\x03a/b\x00\x0a\x00hi")
        assert isinstance(packet, Publish)
        assert packet.qos == 2
        assert packet.dup is True
        assert packet.retain is True
        assert packet.packet_id == 10
        assert packet.topic == "a/b"
        assert packet.payload == b"hi"

    def test_puback_short_form(self):
        packet = decode_one(b"\x40\x02\x00\x07")
        assert isinstance(packet, PubAck)
        assert packet.packet_id == 7
        assert packet.reason_code == 0
        assert packet.properties is None

    def test_puback_with_failure_code(self):
        packet = decode_one(b"\x40\x03\x00\x07\x87")
        assert packet.reason_code == 0x87

    def test_suback(self):
        packet = decode_one(b"\x90\x04\x00\x05\x00\x01")
        assert isinstance(packet, Suback)
        assert packet.packet_id == 5
        assert packet.reason_codes == [1]

    def test_unsuback(self):
        packet = decode_one(b"\xb0\x04\x00\x02\x00\x11")
        assert isinstance(packet, Unsuback)
        assert packet.reason_codes == [0x11]

    def test_disconnect_reason(self):
        packet = decode_one(b"\xe0\x01\x8b")
        assert isinstance(packet, Disconnect)
        assert packet.reason_code == 0x8B

    def test_connect_as_seen_by_a_broker(self):
        packet = decode_one(b"\x10\x14\x00\x04MQTT\x05\xc2\x00\x3c\x00\x00\x01c\x00\x01u\x00\x01p")
        assert isinstance(packet, Connect)
        assert packet.client_id == "c"
        assert packet.username == "u"
        assert packet.password == b"p"
        assert packet.clean_start is True


# ============================================================================
# STREAM FRAMING
# ============================================================================


class TestPacketReader:
    """Framing across arbitrary chunk boundaries."""

    def test_byte_at_a_time(self):
        frame = Publish(topic="t", payload=b"a" * 200).encode()
        reader = PacketReader()
        packets = []
        for index in range(len(frame)):
            reader.feed(frame[index:index + 1])
            packets.extend(reader.packets())
        assert len(packets) == 1
        assert packets[0].payload == b"a" * 200

    def test_several_packets_in_one_chunk(self):
        reader = PacketReader()
        reader.feed(b"\xd0\x00" + b"\x40\x02\x00\x07" + b"\x90")
        packets = list(reader.packets())
        assert [type(packet) for packet in packets] == [PingResp, PubAck]
        # The trailing byte waits for the rest of its frame
        reader.feed(b"\x04\x00\x01\x00")
        assert list(reader.packets()) == []
        reader.feed(b"\x02")
        assert list(reader.packets())[0].reason_codes == [2]


# ============================================================================
# MALFORMED INPUT
# ============================================================================


class TestMalformedPackets:
    """Malformed frames raise ProtocolError rather than crashing the reader."""

    @pytest.mark.parametrize("first_byte, body", [
        (0x00, b""),                    # reserved packet type
        (0xF0, b""),                    # AUTH is not supported
        (0x60, b"\x00\x01"),            # PUBREL without its fixed flags
        (0x80, b"\x00\x01\x00\x00\x01a\x00"),  # SUBSCRIBE without its fixed flags
        (0x36, b"\x00\x01t\x00\x01\x00"),      # PUBLISH with QoS 3
        (0x32, b"\x00\x01t\x00\x00\x00"),      # PUBLISH with packet id 0
        (0x40, b"\x00"),                # truncated PUBACK
        (0xD0, b"\x00"),                # PINGRESP with a body
        (0x20, b"\x02\x00\x00"),        # reserved CONNACK flag
        (0x20, b"\x00\x00\x01\x7f"),    # unknown property identifier
        (0x30, b"\x00\x05ab"),          # topic length overruns the packet
    ])
    def test_decode_rejects(self, first_byte, body):
        with pytest.raises(ProtocolError):
            decode_packet(first_byte, body)

    def test_invalid_utf8_topic(self):
        with pytest.raises(ProtocolError):
            decode_packet(0x30, b"\x00\x02\xff\xfe\x00")

    def test_malformed_remaining_length(self):
        reader = PacketReader()
        reader.feed(b"\x30\xff\xff\xff\xff\x01")
        with pytest.raises(ProtocolError):
            list(reader.packets())


class TestReasonNames:
    def test_known_code(self):
        assert reason_name(PacketTypes.CONNACK, 0x86) == "Bad user name or password"

    def test_unknown_code_falls_back_to_hex(self):
        assert reason_name(PacketTypes.CONNACK, 0xFE) == "0xFE"

    def test_make_properties_empty(self):
        assert make_properties(PacketTypes.CONNECT, ReceiveMaximum=None) is None
