"""
QoS Delivery State Machine.

Tracks the acknowledgment handshake of every QoS 1/2 message, independently per
direction, and allocates outbound packet identifiers.

Outbound:
    QoS 0: PUBLISH is queued and the token completes at once.
    QoS 1: PUBLISH -> AWAITING_PUBACK -> PUBACK completes the token.
    QoS 2: PUBLISH -> AWAITING_PUBREC -> PUBREL -> AWAITING_PUBCOMP -> PUBCOMP
           completes the token.
    Unacknowledged packets are retransmitted by tick() every retry_interval
    (PUBLISH with the DUP flag, or PUBREL once PUBREC has been seen). After
    max_retries retransmissions the token fails with DeliveryTimeoutError.

Inbound:
    QoS 0: delivered.
    QoS 1: delivered, then PUBACK. Duplicates are delivered again.
    QoS 2: recorded and answered with PUBREC. A repeated PUBLISH only repeats the
           PUBREC. The message is delivered once, when PUBREL arrives, and PUBCOMP
           is sent after delivery.

Acknowledgments for unknown packet identifiers are logged and ignored.
"""
import time
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable

from .exceptions import DeliveryTimeoutError, NegativeAckError, ProtocolError, ResourceExhaustedError
from .models import DeliveryState, MQTTMessage, OperationKind, QoS
from .packets import PACKET_ID_NOT_FOUND, Packet, PubAck, PubComp, PubRec, PubRel, Publish, reason_name
from .tokens import Token, TokenRegistry

logger = logging.getLogger(__name__)

MAX_PACKET_ID = 65535


class Direction(StrEnum):
    OUTBOUND = "outgoing"
    INBOUND = "incoming"


@dataclass
class DeliveryRecord:
    packet_id: int
    direction: Direction
    qos: int
    state: DeliveryState
    message: MQTTMessage
    retries: int = 0
    sent_at: float = 0.0


class PacketIdAllocator:
    """
    Hands out packet identifiers 1..65535, wrapping around and skipping
    identifiers that are still in use.
    """

    def __init__(self):
        self._next = 1
        self._in_use: set[int] = set()
        self._lock = threading.Lock()

    def allocate(self) -> int:
        with self._lock:
            for _ in range(MAX_PACKET_ID):
                candidate = self._next
                self._next = candidate % MAX_PACKET_ID + 1
                if candidate not in self._in_use:
                    self._in_use.add(candidate)
                    return candidate
        raise ResourceExhaustedError("All packet identifiers are in use")

    def release(self, packet_id: int) -> None:
        with self._lock:
            self._in_use.discard(packet_id)

    def in_use(self, packet_id: int) -> bool:
        with self._lock:
            return packet_id in self._in_use

    def reset(self) -> None:
        with self._lock:
            self._in_use.clear()

    def __len__(self):
        with self._lock:
            return len(self._in_use)


class DeliveryStateMachine:
    """
    Per-session QoS handshake tracker.

    Args:
        send: Queues a packet for the writer; must not block
        deliver: Hands an inbound message to the dispatcher; must not block
        registry: Token registry shared with the connection manager
        max_inflight: Outbound QoS 1/2 publishes allowed in flight
        retry_interval: Seconds before an unacknowledged packet is retransmitted
        max_retries: Retransmissions before the delivery fails
        clock: Monotonic time source
        logger: Logger or adapter carrying the client context
    """

    def __init__(
        self,
        send: Callable[[Packet], None],
        deliver: Callable[[MQTTMessage], None],
        registry: TokenRegistry,
        max_inflight: int = 10,
        retry_interval: float = 20.0,
        max_retries: int = 3,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self._send = send
        self._deliver = deliver
        self._registry = registry
        self._configured_inflight = max_inflight
        self.max_inflight = max_inflight
        self.retry_interval = retry_interval
        self.max_retries = max_retries
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)

        self._allocator = PacketIdAllocator()
        self._outbound: dict[int, DeliveryRecord] = {}
        self._inbound: dict[int, DeliveryRecord] = {}
        self._lock = threading.Lock()

    # Packet identifiers

    def allocate_packet_id(self) -> int:
        return self._allocator.allocate()

    def release_packet_id(self, packet_id: int) -> None:
        self._allocator.release(packet_id)

    def set_receive_maximum(self, receive_maximum: int) -> None:
        """Cap the in-flight window at the broker's Receive Maximum."""
        self.max_inflight = min(self._configured_inflight, receive_maximum)

    @property
    def inflight(self) -> int:
        with self._lock:
            return len(self._outbound)

    def outbound_records(self) -> list[DeliveryRecord]:
        with self._lock:
            return list(self._outbound.values())

    def inbound_records(self) -> list[DeliveryRecord]:
        with self._lock:
            return list(self._inbound.values())

    # Outbound

    def publish(self, message: MQTTMessage) -> Token:
        """
        Start an outbound delivery and return its token.

        Raises:
            ResourceExhaustedError: The in-flight window or identifier space is full
        """
        if message.qos == QoS.AT_MOST_ONCE:
            token = self._registry.register(OperationKind.PUBLISH, message=message)
            self._send(self._publish_packet(message))
            self._registry.resolve(token.key)
            return token

        with self._lock:
            if len(self._outbound) >= self.max_inflight:
                raise ResourceExhaustedError(
                    f"In-flight window of {self.max_inflight} QoS {int(message.qos)} publishes is full"
                )
            packet_id = self._allocator.allocate()
            message = message.model_copy(update={"packet_id": packet_id})
            try:
                token = self._registry.register(OperationKind.PUBLISH, packet_id, message)
            except Exception:
                self._allocator.release(packet_id)
                raise
            state = (
                DeliveryState.AWAITING_PUBACK
                if message.qos == QoS.AT_LEAST_ONCE
                else DeliveryState.AWAITING_PUBREC
            )
            self._outbound[packet_id] = DeliveryRecord(
                packet_id=packet_id,
                direction=Direction.OUTBOUND,
                qos=int(message.qos),
                state=state,
                message=message,
                sent_at=self._clock(),
            )
            self._send(self._publish_packet(message))

        self.logger.debug(
            f"PUBLISH queued on '{message.topic}'",
            extra={"packet_id": packet_id, "qos": int(message.qos), "direction": Direction.OUTBOUND},
        )
        return token

    def handle_puback(self, packet: PubAck) -> None:
        record = self._take_outbound(packet, DeliveryState.AWAITING_PUBACK)
        if record is not None:
            self._finish(record, packet)

    def handle_pubrec(self, packet: PubRec) -> None:
        packet_id = packet.packet_id
        with self._lock:
            record = self._outbound.get(packet_id)
            if record is None:
                self._log_unknown(packet)
                return
            if record.state is DeliveryState.AWAITING_PUBACK:
                self._log_out_of_sequence(packet, record)
                return
            if packet.reason_code >= 0x80:
                del self._outbound[packet_id]
            elif record.state is DeliveryState.AWAITING_PUBREC:
                record.state = DeliveryState.AWAITING_PUBCOMP
                record.retries = 0
                record.sent_at = self._clock()
                self._send(PubRel(packet_id=packet_id))
                return
            else:
                # PUBREC retransmitted by the broker; our PUBREL may have been lost
                self.logger.debug(
                    "Duplicate PUBREC, resending PUBREL",
                    extra={"packet_id": packet_id},
                )
                record.sent_at = self._clock()
                self._send(PubRel(packet_id=packet_id))
                return
        self._finish(record, packet)

    def handle_pubcomp(self, packet: PubComp) -> None:
        record = self._take_outbound(packet, DeliveryState.AWAITING_PUBCOMP)
        if record is not None:
            self._finish(record, packet)

    def _take_outbound(self, packet: PubAck | PubComp, expected: DeliveryState) -> DeliveryRecord | None:
        with self._lock:
            record = self._outbound.get(packet.packet_id)
            if record is None:
                self._log_unknown(packet)
                return None
            if record.state is not expected:
                self._log_out_of_sequence(packet, record)
                return None
            del self._outbound[packet.packet_id]
            return record

    def _finish(self, record: DeliveryRecord, packet: PubAck | PubRec | PubComp) -> None:
        packet_id = record.packet_id
        if packet.reason_code >= 0x80:
            self.logger.warning(
                f"Delivery on '{record.message.topic}' refused: {reason_name(packet.packet_type, packet.reason_code)}",
                extra={"packet_id": packet_id, "reason_code": packet.reason_code},
            )
            self._registry.fail(
                packet_id,
                NegativeAckError(
                    f"{packet.name} {reason_name(packet.packet_type, packet.reason_code)}",
                    reason_code=packet.reason_code,
                    packet_id=packet_id,
                ),
            )
        else:
            self._registry.resolve(packet_id, packet.reason_code)
        # Released after the token left the registry so the id cannot be reissued early
        self._allocator.release(packet_id)

    def _log_out_of_sequence(self, packet: PubAck | PubRec | PubComp, record: DeliveryRecord) -> None:
        error = ProtocolError(f"{packet.name} while {record.state.name}", packet_id=packet.packet_id)
        self.logger.warning(
            f"Ignoring acknowledgment: {error}",
            exc_info=error,
            extra={"packet_id": packet.packet_id, "packet": packet.name},
        )

    def _log_unknown(self, packet: Packet) -> None:
        self.logger.debug(
            f"{packet.name} for unknown packet id, ignoring",
            extra={"packet_id": getattr(packet, "packet_id", None), "packet": packet.name},
        )

    # Inbound

    def handle_publish(self, packet: Publish) -> None:
        message = MQTTMessage(
            topic=packet.topic,
            payload=packet.payload,
            qos=QoS(packet.qos),
            retain=packet.retain,
            dup=packet.dup,
            packet_id=packet.packet_id,
        )
        if packet.qos == QoS.AT_MOST_ONCE:
            self._deliver(message)
        elif packet.qos == QoS.AT_LEAST_ONCE:
            self._deliver(message)
            self._send(PubAck(packet_id=packet.packet_id))
        else:
            with self._lock:
                duplicate = packet.packet_id in self._inbound
                if not duplicate:
                    self._inbound[packet.packet_id] = DeliveryRecord(
                        packet_id=packet.packet_id,
                        direction=Direction.INBOUND,
                        qos=packet.qos,
                        state=DeliveryState.AWAITING_PUBREL,
                        message=message,
                        sent_at=self._clock(),
                    )
                self._send(PubRec(packet_id=packet.packet_id))
            if duplicate:
                self.logger.debug(
                    f"Duplicate QoS 2 PUBLISH on '{packet.topic}', PUBREC resent",
                    extra={"packet_id": packet.packet_id, "direction": Direction.INBOUND},
                )

    def handle_pubrel(self, packet: PubRel) -> None:
        with self._lock:
            record = self._inbound.pop(packet.packet_id, None)
        if record is None:
            self._log_unknown(packet)
            self._send(PubComp(packet_id=packet.packet_id, reason_code=PACKET_ID_NOT_FOUND))
            return
        self._deliver(record.message)
        self._send(PubComp(packet_id=packet.packet_id))

    # Retries

    def tick(self, now: float | None = None) -> int:
        """
        Retransmit overdue packets and expire deliveries out of retries.

        Returns:
            Number of packets retransmitted
        """
        now = self._clock() if now is None else now
        expired: list[DeliveryRecord] = []
        retransmit: list[Packet] = []

        with self._lock:
            for packet_id, record in list(self._outbound.items()):
                if now - record.sent_at < self.retry_interval:
                    continue
                if record.retries >= self.max_retries:
                    del self._outbound[packet_id]
                    expired.append(record)
                    continue
                record.retries += 1
                record.sent_at = now
                if record.state is DeliveryState.AWAITING_PUBCOMP:
                    retransmit.append(PubRel(packet_id=packet_id))
                else:
                    retransmit.append(self._publish_packet(record.message, dup=True))
            for packet in retransmit:
                self._send(packet)

        for packet in retransmit:
            self.logger.debug(f"Retransmitting {packet.name}", extra={"packet_id": packet.packet_id})

        for record in expired:
            self.logger.warning(
                f"Delivery on '{record.message.topic}' failed after {record.retries} retries",
                extra={"packet_id": record.packet_id, "qos": record.qos},
            )
            self._registry.fail(
                record.packet_id,
                DeliveryTimeoutError(
                    f"No acknowledgment while {record.state.name} after {record.retries} retries",
                    packet_id=record.packet_id,
                ),
            )
            self._allocator.release(record.packet_id)
        return len(retransmit)

    def reset(self) -> None:
        """Drop all delivery state. Tokens are failed by the registry owner."""
        with self._lock:
            self._outbound.clear()
            self._inbound.clear()
            self.max_inflight = self._configured_inflight
        self._allocator.reset()

    @staticmethod
    def _publish_packet(message: MQTTMessage, dup: bool = False) -> Publish:
        return Publish(
            topic=message.topic,
            payload=message.payload,
            qos=int(message.qos),
            retain=message.retain,
            dup=dup,
            packet_id=message.packet_id,
        )
