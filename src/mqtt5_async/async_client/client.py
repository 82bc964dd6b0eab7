import asyncio
import inspect
import logging
import ssl
from typing import Any, AsyncIterator, Callable, Self

from pydantic import SecretStr

from ..client.callbacks import MqttCallbackBase
from ..client.client import MQTTClient
from ..core.base import MQTTClientBase
from ..core.exceptions import MQTTTimeoutError
from ..core.models import ClientConfig, ConnectionState, ConnectOptions, ConnectResult, MQTTMessage, QoS
from ..core.tokens import Token
from ..core.transport import Transport

logger = logging.getLogger(__name__)


class AsyncMQTTClient(MQTTClientBase):
    """
    asyncio facade over MQTTClient.

    Operations await the engine's tokens; messages routed to subscriptions
    without their own callback are exposed through ``messages()``.

    Example:
        >>> async with AsyncMQTTClient("localhost", identifier="probe", ensure_unique_identifier=True) as client:
        ...     await client.subscribe("sensors/#", qos=1)
        ...     await client.publish("sensors/kitchen", {"temp": 21.5}, qos=1)
        ...     async for message in client.messages():
        ...         print(message.topic, message.decode_json())
        ...         break
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
        tls_context: ssl.SSLContext | None = None,
        transport_factory: Callable[[], Transport] | None = None,
    ):
        super().__init__(
            broker=broker,
            port=port,
            timeout=timeout,
            identifier=identifier,
            username=username,
            password=password,
            ensure_unique_identifier=ensure_unique_identifier,
            logger=logger,
            qos_default=qos_default,
        )
        self._client = MQTTClient(
            broker=broker,
            port=port,
            timeout=timeout,
            identifier=self.identifier,
            username=username,
            password=password,
            logger=self.logger,
            qos_default=qos_default,
            config=config,
            callback=MqttCallbackBase(on_message=self._on_message, on_disconnected=self._on_disconnected),
            tls_context=tls_context,
            transport_factory=transport_factory,
        )
        self._port = self._client.port
        self._loop: asyncio.AbstractEventLoop | None = None
        self._messages: asyncio.Queue | None = None
        self.disconnect_cause: BaseException | None = None

    @property
    def client(self) -> MQTTClient:
        """The underlying token based client."""
        return self._client

    def set_credentials(self, username: str, password: str | SecretStr):
        super().set_credentials(username, password)
        self._client.set_credentials(username, password)

    async def _wait(self, token: Token, timeout: float | None = None) -> Any:
        future = asyncio.wrap_future(token.as_future())
        if timeout is None:
            return await future
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except TimeoutError:
            # The operation keeps running; consume its eventual outcome
            future.add_done_callback(lambda f: f.cancelled() or f.exception())
            raise MQTTTimeoutError(
                f"{token.kind} did not complete within {timeout} seconds",
                packet_id=token.packet_id,
                client_id=self.identifier,
            ) from None

    # Callbacks from the dispatcher thread

    def _on_message(self, topic: str, payload: bytes, qos: int, retained: bool) -> None:
        message = MQTTMessage(topic=topic, payload=payload, qos=QoS(qos), retain=retained)
        self._loop.call_soon_threadsafe(self._messages.put_nowait, message)

    def _on_disconnected(self, cause: BaseException | None) -> None:
        self.disconnect_cause = cause
        if cause is not None:
            self.logger.warning(f"Connection lost: {cause}")
        self._loop.call_soon_threadsafe(self._messages.put_nowait, None)

    def _bridge(self, callback: Callable[..., Any]) -> Callable[[str, bytes, int, bool], None]:
        """Run a coroutine function callback on the event loop."""
        loop = self._loop

        def _schedule(topic: str, payload: bytes, qos: int, retained: bool) -> None:
            future = asyncio.run_coroutine_threadsafe(callback(topic, payload, qos, retained), loop)
            future.add_done_callback(self._log_callback_failure)

        return _schedule

    def _log_callback_failure(self, future) -> None:
        if not future.cancelled() and future.exception() is not None:
            self.logger.error(f"Async message callback failed: {future.exception()}", exc_info=future.exception())

    # Lifecycle

    async def connect(self, options: ConnectOptions | None = None, timeout: float | None = None) -> ConnectResult:
        """
        Connect and wait for the CONNACK.

        Raises:
            ConnectionLostError: Transport failure or CONNACK timeout
            NegativeAckError: The broker refused the connection
        """
        self._loop = asyncio.get_running_loop()
        self._messages = asyncio.Queue()
        self.disconnect_cause = None
        token = self._client.connect(options, timeout)
        return await self._wait(token)

    async def disconnect(self, timeout: float | None = None) -> None:
        """Disconnect gracefully; returns once every worker has stopped."""
        await self._wait(self._client.disconnect(timeout))

    async def disconnect_forcibly(self, timeout: float | None = None) -> None:
        await asyncio.to_thread(self._client.disconnect_forcibly, timeout)

    async def close(self) -> None:
        self._client.close()

    # Messaging

    async def publish(
        self,
        topic: str,
        payload: Any,
        qos: int | None = None,
        retain: bool = False,
        timeout: float | None = None,
    ) -> Token:
        """Publish and wait until the QoS handshake completes."""
        token = self._client.publish(topic, payload, qos=qos, retain=retain)
        await self._wait(token, timeout if timeout is not None else self.timeout)
        return token

    async def subscribe(
        self,
        topic: str,
        qos: int | None = None,
        callback: Callable[..., Any] | None = None,
        timeout: float | None = None,
    ) -> int:
        """
        Subscribe and return the granted QoS.

        ``callback`` may be a plain function (run on the dispatcher thread) or a
        coroutine function (scheduled on this event loop).
        """
        if callback is not None and inspect.iscoroutinefunction(callback):
            callback = self._bridge(callback)
        token = self._client.subscribe(topic, qos=qos, callback=callback)
        return await self._wait(token, timeout if timeout is not None else self.timeout)

    async def unsubscribe(self, topic: str, timeout: float | None = None) -> None:
        token = self._client.unsubscribe(topic)
        await self._wait(token, timeout if timeout is not None else self.timeout)

    async def messages(self) -> AsyncIterator[MQTTMessage]:
        """Yield inbound messages until the session ends."""
        if self._messages is None:
            return
        while True:
            message = await self._messages.get()
            if message is None:
                return
            yield message

    # Introspection

    @property
    def state(self) -> ConnectionState:
        return self._client.state

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected

    def worker_threads(self):
        return self._client.worker_threads()

    def is_quiescent(self) -> bool:
        return self._client.is_quiescent()

    async def wait_for_quiescence(self, timeout: float | None = None) -> bool:
        return await asyncio.to_thread(self._client.wait_for_quiescence, timeout)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        if self.is_connected:
            await self.disconnect()
        else:
            await self.disconnect_forcibly()
        await self.close()
