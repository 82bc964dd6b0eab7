"""
Connection Manager.

Owns one session's lifecycle and its four worker threads:

    MQTT Rec:  <id>   reads and decodes packets, drives CONNACK/SUBACK/UNSUBACK
                      handling and the inbound/outbound QoS handshakes
    MQTT Snd:  <id>   drains the outbound queue onto the transport
    MQTT Ping: <id>   CONNACK deadline, keep-alive pings and QoS retransmission
    MQTT Call: <id>   runs application callbacks

State machine:

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTING -> DISCONNECTED

Teardown paths:
    - disconnect(): graceful. Waits for outstanding tokens, sends DISCONNECT,
      flushes the writer, lets the dispatcher drain, joins every worker and only
      then resolves its token. Runs on a short-lived "MQTT Disc: <id>" thread.
    - disconnect_forcibly(): no DISCONNECT packet. Closes the transport at once,
      drops queued message callbacks, fails every pending token with
      ConnectionLostError and joins the workers with a hard deadline before
      returning.
    - connection loss: transport errors, protocol errors, a refused or missing
      CONNACK, keep-alive expiry and a broker DISCONNECT all run the forced path
      on an "MQTT Disc: <id>" thread, so no worker ever joins itself.

Application operations are admitted under the state lock and only while
CONNECTED. Teardown leaves CONNECTED under the same lock before it fails tokens,
so no token can be registered after the final fail_all.
"""
import logging
import queue
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator

from ..core.delivery import DeliveryStateMachine
from ..core.exceptions import (
    ConnectionLostError,
    InvalidStateError,
    NegativeAckError,
    ProtocolError,
)
from ..core.models import ClientConfig, ConnectionState, ConnectResult, MQTTMessage, OperationKind
from ..core.packets import (
    KEEP_ALIVE_TIMEOUT,
    UNSPECIFIED_ERROR,
    Connack,
    Connect,
    Disconnect,
    Packet,
    PacketReader,
    PingReq,
    PingResp,
    PubAck,
    PubComp,
    PubRec,
    PubRel,
    Publish,
    Suback,
    Subscribe,
    Unsuback,
    Unsubscribe,
    reason_name,
)
from ..core.subscriptions import Subscription, SubscriptionTable
from ..core.tokens import Token, TokenRegistry
from ..core.transport import Transport
from .callbacks import MqttCallbackProtocol

logger = logging.getLogger(__name__)

CONNECT_KEY = "connect"
DISCONNECT_KEY = "disconnect"

_STOP = object()
_MESSAGE = "message"
_DISCONNECTED = "disconnected"


class ConnectionManager:
    """
    Session state machine and worker set for one client.

    Args:
        client_id: Client identifier, used in thread names and log context
        transport_factory: Returns a fresh, unopened Transport per connect
        config: Engine tuning
        callback: Client-level application callback
        logger: Logger or adapter carrying the client context
    """

    def __init__(
        self,
        client_id: str,
        transport_factory: Callable[[], Transport],
        config: ClientConfig | None = None,
        callback: MqttCallbackProtocol | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.client_id = client_id
        self.config = config or ClientConfig()
        self.callback = callback
        self.logger = logger or logging.getLogger(__name__)
        self._transport_factory = transport_factory

        self.registry = TokenRegistry()
        self.delivery = DeliveryStateMachine(
            send=self.send,
            deliver=self._deliver,
            registry=self.registry,
            max_inflight=self.config.max_inflight,
            retry_interval=self.config.retry_interval,
            max_retries=self.config.max_retries,
            logger=self.logger,
        )
        self.subscriptions = SubscriptionTable(logger=self.logger)

        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.RLock()
        self._closed = False

        self._transport: Transport | None = None
        self._outbound: queue.Queue = queue.Queue()
        self._callbacks: queue.Queue = queue.Queue()
        self._workers: list[threading.Thread] = []
        self._stop = threading.Event()
        self._stopped = threading.Event()
        self._stopped.set()

        self._teardown_started = False
        self._was_connected = False
        self._notified = False
        self._requested_keep_alive = 0
        self._keep_alive = 0
        self._last_sent = 0.0
        self._ping_sent_at: float | None = None
        self._connack_deadline: float | None = None

        self._handlers: dict[type[Packet], Callable[[Packet], None]] = {
            Connack: self._on_connack,
            Publish: self.delivery.handle_publish,
            PubAck: self.delivery.handle_puback,
            PubRec: self.delivery.handle_pubrec,
            PubRel: self.delivery.handle_pubrel,
            PubComp: self.delivery.handle_pubcomp,
            Suback: self._on_suback,
            Unsuback: self._on_unsuback,
            PingResp: self._on_pingresp,
            Disconnect: self._on_disconnect,
        }

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def keep_alive(self) -> int:
        """Negotiated keep-alive interval of the current session."""
        return self._keep_alive

    def worker_threads(self) -> list[threading.Thread]:
        """Live worker threads of the current session."""
        return [worker for worker in self._workers if worker.is_alive()]

    def is_quiescent(self) -> bool:
        """True once a session has fully stopped and no worker is alive."""
        return self._stopped.is_set() and not self.worker_threads()

    def wait_for_quiescence(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        if not self._stopped.wait(timeout):
            return False
        for worker in list(self._workers):
            worker.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        return self.is_quiescent()

    @contextmanager
    def operation(self, name: str) -> Iterator[None]:
        """Admit an application operation only while CONNECTED."""
        with self._state_lock:
            if self._closed:
                raise InvalidStateError(f"{name}() on a closed client", client_id=self.client_id)
            if self._state is not ConnectionState.CONNECTED:
                raise InvalidStateError(
                    f"{name}() not allowed while {self._state}", client_id=self.client_id
                )
            yield

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    def connect(self, packet: Connect, timeout: float) -> Token:
        """
        Open the transport, start the workers and send CONNECT.

        A transport that cannot be opened yields an already failed token and no
        workers are started. A forced disconnect while the transport is opening
        also leaves no workers behind.

        Raises:
            InvalidStateError: Not DISCONNECTED, closed, or workers still alive
        """
        with self._state_lock:
            if self._closed:
                raise InvalidStateError("connect() on a closed client", client_id=self.client_id)
            if self._state is not ConnectionState.DISCONNECTED:
                raise InvalidStateError(
                    f"connect() not allowed while {self._state}", client_id=self.client_id
                )
            if self.worker_threads():
                raise InvalidStateError(
                    "Workers of the previous session are still running", client_id=self.client_id
                )
            transport = self._transport_factory()
            self._state = ConnectionState.CONNECTING
            token = self.registry.register(OperationKind.CONNECT, CONNECT_KEY)
            self._transport = transport
            self._outbound = queue.Queue()
            self._callbacks = queue.Queue()
            self._stop.clear()
            self._stopped.clear()
            self._teardown_started = False
            self._was_connected = False
            self._notified = False

        try:
            transport.open(timeout)
        except OSError as e:
            self.logger.error(f"Failed to open connection: {e}")
            cause = ConnectionLostError(f"Could not connect: {e}", client_id=self.client_id)
            cause.__cause__ = e
            with self._state_lock:
                if not self._teardown_started:
                    self._state = ConnectionState.DISCONNECTED
                    self._stopped.set()
            self.registry.fail(CONNECT_KEY, cause)
            return token

        with self._state_lock:
            if self._teardown_started or self._state is not ConnectionState.CONNECTING:
                self.logger.info("Disconnected while opening the connection")
                transport.close()
                return token
            self._start_session(transport, packet.keep_alive, timeout)
            self.send(packet)
        return token

    def _start_session(self, transport: Transport, keep_alive: int, timeout: float) -> None:
        self._transport = transport
        self._requested_keep_alive = keep_alive
        self._keep_alive = keep_alive
        self._last_sent = time.monotonic()
        self._ping_sent_at = None
        self._connack_deadline = time.monotonic() + timeout

        self._workers = [
            threading.Thread(target=self._run_reader, name=f"MQTT Rec: {self.client_id}", daemon=True),
            threading.Thread(target=self._run_writer, name=f"MQTT Snd: {self.client_id}", daemon=True),
            threading.Thread(target=self._run_ticker, name=f"MQTT Ping: {self.client_id}", daemon=True),
            threading.Thread(target=self._run_dispatcher, name=f"MQTT Call: {self.client_id}", daemon=True),
        ]
        for worker in self._workers:
            worker.start()
        self.logger.debug(f"Started {len(self._workers)} workers")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def send(self, packet: Packet) -> None:
        """Queue a packet for the writer."""
        self._outbound.put((packet.name, packet.encode()))

    def publish(self, message: MQTTMessage) -> Token:
        with self.operation("publish"):
            return self.delivery.publish(message)

    def subscribe(self, subscription: Subscription) -> Token:
        with self.operation("subscribe"):
            packet_id = self.delivery.allocate_packet_id()
            try:
                token = self.registry.register(OperationKind.SUBSCRIBE, packet_id)
            except Exception:
                self.delivery.release_packet_id(packet_id)
                raise
            self.subscriptions.stage_subscribe(packet_id, subscription)
            self.send(Subscribe(packet_id=packet_id, topics=[(subscription.topic_filter, subscription.qos)]))
        return token

    def unsubscribe(self, topic_filter: str) -> Token:
        with self.operation("unsubscribe"):
            packet_id = self.delivery.allocate_packet_id()
            try:
                token = self.registry.register(OperationKind.UNSUBSCRIBE, packet_id)
            except Exception:
                self.delivery.release_packet_id(packet_id)
                raise
            self.subscriptions.stage_unsubscribe(packet_id, topic_filter)
            self.send(Unsubscribe(packet_id=packet_id, topics=[topic_filter]))
        return token

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _run_reader(self) -> None:
        transport = self._transport
        framer = PacketReader()
        try:
            while not self._stop.is_set():
                data = transport.receive()
                if data is None:
                    continue
                if not data:
                    if self._stop.is_set():
                        break
                    raise ConnectionLostError("Connection closed by broker", client_id=self.client_id)
                framer.feed(data)
                for packet in framer.packets():
                    self._handle_packet(packet)
        except ConnectionLostError as e:
            self._connection_lost(e)
        except NegativeAckError as e:
            self._connection_lost(e)
        except ProtocolError as e:
            self.logger.error(f"Protocol error: {e}")
            cause = ConnectionLostError(f"Protocol error: {e.detail}", client_id=self.client_id)
            cause.__cause__ = e
            self._connection_lost(cause)
        except OSError as e:
            if self._stop.is_set():
                return
            self.logger.warning(f"Read failed: {e}")
            cause = ConnectionLostError(f"Read failed: {e}", client_id=self.client_id)
            cause.__cause__ = e
            self._connection_lost(cause)

    def _handle_packet(self, packet: Packet) -> None:
        handler = self._handlers.get(type(packet))
        if handler is None:
            raise ProtocolError(f"Unexpected {packet.name} from broker")
        self.logger.debug(
            f"Received {packet.name}",
            extra={"packet": packet.name, "packet_id": getattr(packet, "packet_id", None), "direction": "incoming"},
        )
        handler(packet)

    def _run_writer(self) -> None:
        transport = self._transport
        while True:
            item = self._outbound.get()
            if item is _STOP:
                break
            name, data = item
            try:
                transport.send(data)
            except OSError as e:
                if not self._stop.is_set():
                    self.logger.warning(f"Write of {name} failed: {e}")
                    cause = ConnectionLostError(f"Write failed: {e}", client_id=self.client_id)
                    cause.__cause__ = e
                    self._connection_lost(cause)
                break
            self._last_sent = time.monotonic()

    def _run_ticker(self) -> None:
        while not self._stop.wait(self.config.tick_interval):
            now = time.monotonic()
            state = self._state
            if state is ConnectionState.CONNECTING:
                if self._connack_deadline is not None and now >= self._connack_deadline:
                    self.logger.error("Timed out waiting for CONNACK")
                    self._connection_lost(
                        ConnectionLostError("Timed out waiting for CONNACK", client_id=self.client_id)
                    )
                continue
            if state in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTING):
                self.delivery.tick(now)
                self._check_keep_alive(now)

    def _check_keep_alive(self, now: float) -> None:
        keep_alive = self._keep_alive
        if not keep_alive:
            return
        if self._ping_sent_at is not None:
            if now - self._ping_sent_at >= keep_alive:
                self.logger.error(f"No PINGRESP within {keep_alive} seconds")
                self._connection_lost(
                    ConnectionLostError(
                        "Keep-alive timeout", reason_code=KEEP_ALIVE_TIMEOUT, client_id=self.client_id
                    )
                )
            return
        if now - self._last_sent >= keep_alive:
            self._ping_sent_at = now
            self.send(PingReq())

    def _run_dispatcher(self) -> None:
        while True:
            item = self._callbacks.get()
            if item is _STOP:
                break
            kind, value = item
            try:
                if kind == _MESSAGE:
                    self._dispatch_message(value)
                elif self.callback is not None:
                    self.callback.on_disconnected(value)
            except Exception as e:
                self.logger.error(f"Error in {kind} callback: {e}", exc_info=True)

    def _deliver(self, message: MQTTMessage) -> None:
        self._callbacks.put((_MESSAGE, message))

    def _dispatch_message(self, message: MQTTMessage) -> None:
        subscription = self.subscriptions.route(message.topic)
        if subscription is None:
            self.logger.warning(
                f"No subscription matches '{message.topic}', dropping message",
                extra={"topic": message.topic, "packet_id": message.packet_id},
            )
            return
        if subscription.callback is not None:
            subscription.callback(message.topic, message.payload, int(message.qos), message.retain)
        elif self.callback is not None:
            self.callback.on_message(message.topic, message.payload, int(message.qos), message.retain)
        else:
            self.logger.debug(f"No callback for message on '{message.topic}'")

    # ------------------------------------------------------------------
    # Packet handlers (reader thread)
    # ------------------------------------------------------------------

    def _on_connack(self, packet: Connack) -> None:
        if self._state is not ConnectionState.CONNECTING:
            raise ProtocolError("CONNACK outside of connect")
        if packet.reason_code >= 0x80:
            name = reason_name(packet.packet_type, packet.reason_code)
            self.logger.error(f"Connection refused: {name}", extra={"reason_code": packet.reason_code})
            raise NegativeAckError(
                f"Connection refused: {name}", reason_code=packet.reason_code, client_id=self.client_id
            )

        properties = packet.properties
        keep_alive = getattr(properties, "ServerKeepAlive", self._requested_keep_alive)
        receive_maximum = getattr(properties, "ReceiveMaximum", 65535)
        result = ConnectResult(
            session_present=packet.session_present,
            reason_code=packet.reason_code,
            assigned_client_id=getattr(properties, "AssignedClientIdentifier", None),
            keep_alive=keep_alive,
            receive_maximum=receive_maximum,
        )

        self.delivery.set_receive_maximum(receive_maximum)
        if not packet.session_present:
            self.subscriptions.clear()

        with self._state_lock:
            if self._teardown_started:
                return
            self._keep_alive = keep_alive
            self._connack_deadline = None
            self._was_connected = True
            self._state = ConnectionState.CONNECTED

        self.logger.info(
            f"Connected (session_present={packet.session_present}, keep_alive={keep_alive}, "
            f"receive_maximum={receive_maximum})"
        )
        self.registry.resolve(CONNECT_KEY, result)

    def _on_suback(self, packet: Suback) -> None:
        packet_id = packet.packet_id
        token = self.registry.get(packet_id)
        if token is None or token.kind is not OperationKind.SUBSCRIBE:
            self.logger.debug("SUBACK for unknown packet id, ignoring", extra={"packet_id": packet_id})
            return
        code = packet.reason_codes[0] if packet.reason_codes else UNSPECIFIED_ERROR
        if code >= 0x80:
            subscription = self.subscriptions.abandon(packet_id)
            topic_filter = subscription.topic_filter if subscription else None
            self.logger.warning(
                f"Subscription to '{topic_filter}' refused: {reason_name(packet.packet_type, code)}",
                extra={"packet_id": packet_id, "reason_code": code},
            )
            self.registry.fail(
                packet_id,
                NegativeAckError(
                    f"Subscription to '{topic_filter}' refused", reason_code=code, packet_id=packet_id
                ),
            )
        else:
            self.subscriptions.confirm_subscribe(packet_id, code)
            self.registry.resolve(packet_id, code)
        self.delivery.release_packet_id(packet_id)

    def _on_unsuback(self, packet: Unsuback) -> None:
        packet_id = packet.packet_id
        token = self.registry.get(packet_id)
        if token is None or token.kind is not OperationKind.UNSUBSCRIBE:
            self.logger.debug("UNSUBACK for unknown packet id, ignoring", extra={"packet_id": packet_id})
            return
        topic_filter = self.subscriptions.confirm_unsubscribe(packet_id)
        code = packet.reason_codes[0] if packet.reason_codes else UNSPECIFIED_ERROR
        if code >= 0x80:
            self.registry.fail(
                packet_id,
                NegativeAckError(
                    f"Unsubscribe from '{topic_filter}' refused", reason_code=code, packet_id=packet_id
                ),
            )
        else:
            self.registry.resolve(packet_id, code)
        self.delivery.release_packet_id(packet_id)

    def _on_pingresp(self, packet: PingResp) -> None:
        self._ping_sent_at = None

    def _on_disconnect(self, packet: Disconnect) -> None:
        name = reason_name(packet.packet_type, packet.reason_code)
        self.logger.warning(f"Broker sent DISCONNECT: {name}", extra={"reason_code": packet.reason_code})
        raise ConnectionLostError(
            f"Disconnected by broker: {name}", reason_code=packet.reason_code, client_id=self.client_id
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _claim_teardown(self) -> bool:
        """Mark the session as stopping. Returns False if a teardown already owns it."""
        with self._state_lock:
            if self._teardown_started:
                return False
            self._teardown_started = True
            if self._state is not ConnectionState.DISCONNECTED:
                self._state = ConnectionState.DISCONNECTING
            return True

    def _connection_lost(self, cause: BaseException) -> None:
        if self._stop.is_set():
            return
        if not self._claim_teardown():
            # A graceful disconnect owns the teardown; release its waiters
            self._stop.set()
            self.registry.fail_all(cause, keep=(DISCONNECT_KEY,))
            return
        self._stop.set()
        threading.Thread(
            target=self._teardown,
            args=(cause, self.config.disconnect_timeout),
            name=f"MQTT Disc: {self.client_id}",
            daemon=True,
        ).start()

    def disconnect(self, timeout: float) -> Token:
        """
        Start a graceful disconnect.

        Raises:
            InvalidStateError: Not CONNECTED
        """
        with self._state_lock:
            if self._state is not ConnectionState.CONNECTED or self._teardown_started:
                raise InvalidStateError(
                    f"disconnect() not allowed while {self._state}", client_id=self.client_id
                )
            token = self.registry.register(OperationKind.DISCONNECT, DISCONNECT_KEY)
            self._claim_teardown()

        self.logger.debug("Disconnecting")
        threading.Thread(
            target=self._graceful_teardown,
            args=(timeout,),
            name=f"MQTT Disc: {self.client_id}",
            daemon=True,
        ).start()
        return token

    def _graceful_teardown(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        quiesce = min(self.config.quiesce_timeout, timeout)
        if not self.registry.wait_until_idle(quiesce, exclude=(DISCONNECT_KEY,)):
            self.logger.warning(
                f"{len(self.registry) - 1} operation(s) still pending, disconnecting anyway"
            )

        if not self._stop.is_set():
            self.send(Disconnect())
            self._outbound.put(_STOP)
            writer = self._workers[1]
            writer.join(max(0.0, deadline - time.monotonic()))

        self._interrupt(None, drop_messages=False)
        self._join_workers(deadline)
        self._finish(ConnectionLostError("Client disconnected", client_id=self.client_id))
        self.registry.resolve(DISCONNECT_KEY)
        self.logger.info("Disconnected")

    def disconnect_forcibly(self, timeout: float) -> None:
        """
        Tear the session down immediately, from any state.

        Returns once every worker has stopped or the deadline has passed.
        """
        deadline = time.monotonic() + timeout
        cause = ConnectionLostError("Client disconnected forcibly", client_id=self.client_id)
        with self._state_lock:
            if self._state is ConnectionState.DISCONNECTED and not self.worker_threads():
                return
        if self._claim_teardown():
            self._teardown(cause, timeout)
            return

        # Another teardown is running; cut it short and wait for it
        self._stop.set()
        self.registry.fail_all(cause, keep=(DISCONNECT_KEY,))
        self._interrupt(cause, drop_messages=True)
        self._join_workers(deadline)
        self._stopped.wait(max(0.0, deadline - time.monotonic()))

    def _teardown(self, cause: BaseException, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        self._interrupt(cause, drop_messages=True)
        self._join_workers(deadline)
        self._finish(cause)
        self.logger.info(f"Session ended: {cause}")

    def _interrupt(self, cause: BaseException | None, drop_messages: bool) -> None:
        self._stop.set()
        if self._transport is not None:
            self._transport.close()

        if drop_messages:
            kept = []
            while True:
                try:
                    item = self._callbacks.get_nowait()
                except queue.Empty:
                    break
                if item is not _STOP and item[0] != _MESSAGE:
                    kept.append(item)
            for item in kept:
                self._callbacks.put(item)

        with self._state_lock:
            notify = self._was_connected and not self._notified
            self._notified = self._notified or notify
        if notify:
            self._callbacks.put((_DISCONNECTED, cause))
        self._callbacks.put(_STOP)
        self._outbound.put(_STOP)

    def _join_workers(self, deadline: float) -> None:
        current = threading.current_thread()
        for worker in self._workers:
            if worker is current or worker.ident is None:
                continue
            worker.join(max(0.0, deadline - time.monotonic()))
            if worker.is_alive():
                self.logger.warning(f"Worker '{worker.name}' did not stop in time, abandoning it")

    def _finish(self, cause: BaseException) -> None:
        with self._state_lock:
            self._state = ConnectionState.DISCONNECTED
        self.registry.fail_all(cause, keep=(DISCONNECT_KEY,))
        self.delivery.reset()
        self.subscriptions.discard_staged()
        self._stopped.set()

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    def close(self) -> None:
        """
        Release session resources. Idempotent.

        Raises:
            InvalidStateError: A session is still active or workers are alive
        """
        with self._state_lock:
            if self._closed:
                return
            if self._state is not ConnectionState.DISCONNECTED or self.worker_threads():
                raise InvalidStateError(
                    "close() requires a disconnected client with no running workers",
                    client_id=self.client_id,
                )
            self._closed = True
        self.subscriptions.clear()
        self._transport = None
        self._workers = []
        self.logger.debug("Client closed")
