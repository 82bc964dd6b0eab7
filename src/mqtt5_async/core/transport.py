"""
Byte stream transports.

The engine only needs an ordered, reliable duplex stream. ``receive()`` returns
``None`` when no data arrived within the poll interval so that the reader worker
can check its stop flag, and ``b""`` at end of stream.
"""
import socket
import ssl
import logging
import threading
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class Transport(Protocol):
    """Duplex byte stream to a broker."""

    def open(self, timeout: float | None = None) -> None:
        ...

    def send(self, data: bytes) -> None:
        ...

    def receive(self) -> bytes | None:
        ...

    def close(self) -> None:
        ...


class SocketTransport:
    """
    TCP transport with optional TLS.

    ``close()`` shuts the socket down before closing it so that a thread blocked
    in ``recv`` or ``sendall`` returns immediately. It is safe to call from any
    thread and more than once.
    """

    def __init__(
        self,
        host: str,
        port: int,
        tls_context: ssl.SSLContext | None = None,
        poll_interval: float = 0.1,
        read_size: int = 65536,
    ):
        self.host = host
        self.port = port
        self.tls_context = tls_context
        self.poll_interval = poll_interval
        self.read_size = read_size
        self._sock: socket.socket | None = None
        self._send_lock = threading.Lock()
        self._closed = False

    def open(self, timeout: float | None = None) -> None:
        sock = socket.create_connection((self.host, self.port), timeout=timeout)
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            if self.tls_context is not None:
                sock = self.tls_context.wrap_socket(sock, server_hostname=self.host)
            sock.settimeout(self.poll_interval)
        except Exception:
            sock.close()
            raise
        self._sock = sock
        self._closed = False
        logger.debug(f"Opened connection to {self.host}:{self.port}")

    def send(self, data: bytes) -> None:
        sock = self._sock
        if sock is None or self._closed:
            raise ConnectionError("Transport is closed")
        with self._send_lock:
            # sendall on a socket with a timeout may time out on a full buffer; retry
            view = memoryview(data)
            while view:
                try:
                    sent = sock.send(view)
                except socket.timeout:
                    if self._closed:
                        raise ConnectionError("Transport is closed")
                    continue
                view = view[sent:]

    def receive(self) -> bytes | None:
        sock = self._sock
        if sock is None or self._closed:
            return b""
        try:
            return sock.recv(self.read_size)
        except socket.timeout:
            return None
        except ssl.SSLWantReadError:
            return None
        except OSError:
            if self._closed:
                return b""
            raise

    def close(self) -> None:
        sock = self._sock
        if sock is None or self._closed:
            return
        self._closed = True
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Peer may already have reset the connection
            pass
        sock.close()
        logger.debug(f"Closed connection to {self.host}:{self.port}")

    def __repr__(self):
        return f"SocketTransport({self.host!r}, {self.port})"
