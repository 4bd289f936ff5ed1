from __future__ import annotations

from typing import Optional


class IMAPError(Exception):
    """Base class for every error raised by imapmirror."""


class ConfigError(IMAPError):
    pass


class TransportError(IMAPError):
    """
    Connect/handshake/stream failure. Fatal to the operation that hit it;
    nothing is retried here.
    """

    def __init__(self, message: str, *, server: Optional[str] = None, transport: Optional[str] = None):
        self.server = server
        self.transport = transport
        where = ""
        if server:
            where = f" [{server}/{transport}]" if transport else f" [{server}]"
        super().__init__(f"{message}{where}")


class CommandTimeout(TransportError):
    pass


class AuthError(IMAPError):
    pass


class ProtocolError(IMAPError):
    """A command completed with NO or BAD. The session stays usable."""

    def __init__(self, status: str, text: str, *, command: Optional[str] = None):
        self.status = status
        self.text = text
        self.command = command
        prefix = f"{command}: " if command else ""
        super().__init__(f"{prefix}{status} {text}".strip())


class ParseError(IMAPError):
    pass
