"""
Application callback boundary.

Callbacks run only on the dispatcher worker ("MQTT Call: <id>"), never on the
network threads, so a slow callback cannot hold up acknowledgments.
"""
import logging
from typing import Any, Callable, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class MqttCallbackProtocol(Protocol):
    """
    Protocol for client-level callbacks.
    """
    def on_message(self, topic: str, payload: bytes, qos: int, retained: bool) -> Any:
        ...

    def on_disconnected(self, cause: Optional[BaseException]) -> Any:
        ...


class MqttCallbackBase:
    """
    Callback built from plain functions.

    Example:
        >>> received = []
        >>> callback = MqttCallbackBase(
        ...     on_message=lambda topic, payload, qos, retained: received.append(payload)
        ... )
    """
    def __init__(
        self,
        on_message: Optional[Callable[[str, bytes, int, bool], Any]] = None,
        on_disconnected: Optional[Callable[[Optional[BaseException]], Any]] = None,
    ):
        self._on_message = on_message
        self._on_disconnected = on_disconnected

    def on_message(self, topic: str, payload: bytes, qos: int, retained: bool) -> Any:
        if self._on_message is None:
            logger.debug(f"No message callback set, dropping message on '{topic}'")
            return None
        return self._on_message(topic, payload, qos, retained)

    def on_disconnected(self, cause: Optional[BaseException]) -> Any:
        if self._on_disconnected is None:
            return None
        return self._on_disconnected(cause)
