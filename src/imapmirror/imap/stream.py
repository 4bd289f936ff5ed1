from __future__ import annotations

import logging
import socket
import ssl
from typing import Callable, Optional, Protocol

from imapmirror.config import ServerConfig
from imapmirror.errors import CommandTimeout, TransportError

logger = logging.getLogger(__name__)

READ_SIZE = 65536


class Stream(Protocol):
    """The byte stream a Session talks over."""

    secure: bool

    def read(self, timeout: Optional[float] = None) -> bytes:
        """Return the next available bytes; b"" once the peer has closed."""
        ...

    def write(self, data: bytes) -> None: ...

    def start_tls(self, context: ssl.SSLContext, server_hostname: str) -> None: ...

    def close(self) -> None: ...


Connector = Callable[[ServerConfig], Stream]


class SocketStream:
    def __init__(self, sock: socket.socket, *, server: str, transport: str, secure: bool = False) -> None:
        self._sock: Optional[socket.socket] = sock
        self.server = server
        self.transport = transport
        self.secure = secure

    def _require(self) -> socket.socket:
        if self._sock is None:
            raise TransportError("stream is closed", server=self.server, transport=self.transport)
        return self._sock

    def read(self, timeout: Optional[float] = None) -> bytes:
        sock = self._require()
        try:
            sock.settimeout(timeout)
            return sock.recv(READ_SIZE)
        except socket.timeout as e:
            raise CommandTimeout(
                f"no data within {timeout}s", server=self.server, transport=self.transport
            ) from e
        except (OSError, ssl.SSLError) as e:
            raise TransportError(f"read failed: {e}", server=self.server, transport=self.transport) from e

    def write(self, data: bytes) -> None:
        sock = self._require()
        try:
            sock.sendall(data)
        except (OSError, ssl.SSLError) as e:
            raise TransportError(f"write failed: {e}", server=self.server, transport=self.transport) from e

    def start_tls(self, context: ssl.SSLContext, server_hostname: str) -> None:
        sock = self._require()
        try:
            self._sock = context.wrap_socket(sock, server_hostname=server_hostname)
        except (OSError, ssl.SSLError) as e:
            raise TransportError(
                f"TLS upgrade failed: {e}", server=self.server, transport=self.transport
            ) from e
        self.secure = True

    def close(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.close()
        except OSError:
            pass
        self._sock = None


def make_ssl_context(verify: bool = True) -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    if not verify:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    return ctx


def socket_connector(ssl_context: Optional[ssl.SSLContext] = None) -> Connector:
    """
    Build a connector opening real TCP connections. `ssl` transports are
    wrapped before the greeting; `starttls` is upgraded later by the
    session manager.
    """

    def connect(config: ServerConfig) -> Stream:
        host = config.address or config.name
        try:
            sock = socket.create_connection((host, config.port), timeout=config.connect_timeout)
        except OSError as e:
            raise TransportError(f"connect failed: {e}", server=config.name, transport=config.transport) from e

        stream = SocketStream(sock, server=config.name, transport=config.transport)
        if config.transport == "ssl":
            stream.start_tls(ssl_context or make_ssl_context(), host)
        logger.debug(f"Connected to {host}:{config.port} via {config.transport}")
        return stream

    return connect
