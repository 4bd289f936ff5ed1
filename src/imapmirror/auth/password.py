from __future__ import annotations

import base64
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional, Sequence, Tuple, Union

from imapmirror.auth.base import AuthContext, Credentials
from imapmirror.errors import AuthError
from imapmirror.utils import quote_string

if TYPE_CHECKING:
    from imapmirror.imap.session import Session


@dataclass(frozen=True)
class PasswordAuth:
    username: str
    password: str

    def apply_imap(self, session: "Session", ctx: AuthContext) -> None:
        """
        Log in with AUTHENTICATE PLAIN when the server refuses LOGIN but
        offers PLAIN, otherwise with LOGIN.
        """
        if session.has_capability("AUTH=PLAIN") and session.has_capability("LOGINDISABLED"):
            token = base64.b64encode(
                b"\0" + self.username.encode("utf-8") + b"\0" + self.password.encode("utf-8")
            ).decode("ascii")
            ok, unit = session.run_command("AUTHENTICATE PLAIN %s", token, kind="authenticate")
        else:
            ok, unit = session.run_command(
                "LOGIN %s %s", quote_string(self.username), quote_string(self.password), kind="login"
            )
        if not ok:
            raise AuthError(f"IMAP login to {ctx.host}:{ctx.port} rejected: {unit.status} {unit.text}")


class StaticCredentials:
    """Credentials supplied up front, keyed by (host, port)."""

    def __init__(self, entries: Optional[Dict[Tuple[str, str], Credentials]] = None) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], Credentials] = dict(entries or {})

    def add(self, host: str, port: str, user: str, secret: str) -> None:
        with self._lock:
            self._entries[(host, str(port))] = (user, secret)

    def lookup(self, host: str, ports: Sequence[str], user: Optional[str] = None) -> Optional[Credentials]:
        with self._lock:
            for port in ports:
                found = self._entries.get((host, str(port)))
                if found and (user is None or found[0] == user):
                    return found
        return None

    def forget(self, host: str, port: Union[int, str]) -> None:
        with self._lock:
            self._entries.pop((host, str(port)), None)
