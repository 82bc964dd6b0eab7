"""
Operation tokens and the registry that owns them.

Every asynchronous request (connect, subscribe, unsubscribe, publish, disconnect)
returns a Token. The TokenRegistry maps correlation keys (packet identifiers, or
synthetic string keys for operations without one) to pending tokens and is the only
place tokens are resolved. Resolution happens at most once: the entry is removed
from the map under the registry lock, so a retransmitted acknowledgment finds
nothing to resolve.

Waiting on a token never cancels it. A wait that times out raises
MQTTTimeoutError and leaves the token pending.
"""
import itertools
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Hashable, Iterable

from .exceptions import DuplicateKeyError, MQTTTimeoutError
from .models import MQTTMessage, OperationKind, TokenState

logger = logging.getLogger(__name__)

TokenKey = Hashable


class Token:
    """
    Completion handle for one asynchronous operation.

    Attributes:
        kind: The operation this token tracks
        key: Correlation key in the registry (packet id or synthetic string)
        message: The outbound message, for publish tokens
    """

    def __init__(self, kind: OperationKind, key: TokenKey, message: MQTTMessage | None = None):
        self.kind = kind
        self.key = key
        self.message = message
        self._condition = threading.Condition()
        self._state = TokenState.PENDING
        self._result: Any = None
        self._exception: BaseException | None = None
        self._callbacks: list[Callable[["Token"], None]] = []

    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def is_complete(self) -> bool:
        return self._state is not TokenState.PENDING

    @property
    def succeeded(self) -> bool:
        return self._state is TokenState.SUCCEEDED

    @property
    def result(self) -> Any:
        return self._result

    @property
    def exception(self) -> BaseException | None:
        return self._exception

    @property
    def packet_id(self) -> int | None:
        return self.key if isinstance(self.key, int) else None

    @property
    def granted_qos(self) -> int | None:
        """Broker-granted QoS of a completed subscribe token."""
        if self.kind is OperationKind.SUBSCRIBE and self.succeeded:
            return self._result
        return None

    def _complete(self, state: TokenState, result: Any = None, exception: BaseException | None = None) -> bool:
        with self._condition:
            if self._state is not TokenState.PENDING:
                return False
            self._state = state
            self._result = result
            self._exception = exception
            callbacks, self._callbacks = self._callbacks, []
            self._condition.notify_all()

        for callback in callbacks:
            self._run_callback(callback)
        return True

    def _run_callback(self, callback: Callable[["Token"], None]) -> None:
        try:
            callback(self)
        except Exception as e:
            logger.error(f"Token callback failed for {self!r}: {e}", exc_info=True)

    def add_done_callback(self, callback: Callable[["Token"], None]) -> None:
        """Run callback(token) once the token completes, immediately if it already has."""
        with self._condition:
            if self._state is TokenState.PENDING:
                self._callbacks.append(callback)
                return
        self._run_callback(callback)

    def wait_for_completion(self, timeout: float | None = None) -> Any:
        """
        Block until the token completes.

        Args:
            timeout: Seconds to wait, None waits forever

        Returns:
            The operation result (ConnectResult, granted QoS, ...)

        Raises:
            MQTTTimeoutError: The token is still pending after timeout
            MQTTException: The failure cause of a failed operation
        """
        with self._condition:
            if not self._condition.wait_for(lambda: self._state is not TokenState.PENDING, timeout):
                raise MQTTTimeoutError(
                    f"{self.kind} did not complete within {timeout} seconds",
                    packet_id=self.packet_id,
                )
        if self._state is TokenState.FAILED:
            raise self._exception
        return self._result

    def as_future(self) -> Future:
        """Mirror the token into a concurrent.futures.Future."""
        future: Future = Future()

        def _transfer(token: "Token") -> None:
            if not future.set_running_or_notify_cancel():
                return
            if token.state is TokenState.FAILED:
                future.set_exception(token.exception)
            else:
                future.set_result(token.result)

        self.add_done_callback(_transfer)
        return future

    def __repr__(self):
        return f"Token(kind={self.kind}, key={self.key!r}, state={self._state.name})"


class TokenRegistry:
    """
    Authoritative map from correlation key to pending Token.

    Example:
        >>> registry = TokenRegistry()
        >>> token = registry.register(OperationKind.PUBLISH, 7)
        >>> registry.resolve(7)
        True
        >>> registry.resolve(7)
        False
    """

    def __init__(self):
        self._tokens: dict[TokenKey, Token] = {}
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._sequence = itertools.count(1)

    def register(
        self,
        kind: OperationKind,
        key: TokenKey | None = None,
        message: MQTTMessage | None = None,
    ) -> Token:
        """
        Register a new pending token.

        Args:
            kind: Operation kind
            key: Correlation key; a synthetic "<kind>-<n>" key is generated when None
            message: Outbound message for publish tokens

        Raises:
            DuplicateKeyError: A pending token already uses key
        """
        with self._lock:
            if key is None:
                key = f"{kind.value}-{next(self._sequence)}"
            existing = self._tokens.get(key)
            if existing is not None and not existing.is_complete:
                raise DuplicateKeyError(
                    f"Pending {existing.kind} token already registered for key {key!r}",
                    packet_id=key if isinstance(key, int) else None,
                )
            token = Token(kind, key, message)
            self._tokens[key] = token
            self._changed.notify_all()
        return token

    def get(self, key: TokenKey) -> Token | None:
        with self._lock:
            return self._tokens.get(key)

    def _pop(self, key: TokenKey) -> Token | None:
        with self._lock:
            token = self._tokens.pop(key, None)
            if token is not None:
                self._changed.notify_all()
            return token

    def resolve(self, key: TokenKey, result: Any = None) -> bool:
        """Complete the token for key successfully. Absent or resolved keys are ignored."""
        token = self._pop(key)
        if token is None:
            logger.debug(f"No pending token for key {key!r}, ignoring resolution")
            return False
        return token._complete(TokenState.SUCCEEDED, result=result)

    def fail(self, key: TokenKey, cause: BaseException) -> bool:
        """Fail the token for key. Absent or resolved keys are ignored."""
        token = self._pop(key)
        if token is None:
            logger.debug(f"No pending token for key {key!r}, ignoring failure {cause!r}")
            return False
        return token._complete(TokenState.FAILED, exception=cause)

    def fail_all(self, cause: BaseException, keep: Iterable[TokenKey] = ()) -> int:
        """
        Fail every pending token except those whose key is in keep.

        Returns:
            Number of tokens failed
        """
        keep = set(keep)
        with self._lock:
            doomed = [token for key, token in self._tokens.items() if key not in keep]
            for token in doomed:
                del self._tokens[token.key]
            self._changed.notify_all()

        failed = sum(1 for token in doomed if token._complete(TokenState.FAILED, exception=cause))
        if failed:
            logger.debug(f"Failed {failed} pending token(s) with {cause!r}")
        return failed

    def wait_for_completion(self, token: Token, timeout: float | None = None) -> Any:
        return token.wait_for_completion(timeout)

    def wait_until_idle(self, timeout: float | None = None, exclude: Iterable[TokenKey] = ()) -> bool:
        """
        Wait until no tokens other than those in exclude are pending.

        Returns:
            True if the registry drained, False on timeout
        """
        exclude = set(exclude)
        with self._changed:
            return self._changed.wait_for(
                lambda: all(key in exclude for key in self._tokens), timeout
            )

    def outstanding(self) -> list[Token]:
        with self._lock:
            return list(self._tokens.values())

    def __len__(self):
        with self._lock:
            return len(self._tokens)

    def __contains__(self, key: TokenKey) -> bool:
        with self._lock:
            return key in self._tokens
