from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Tuple, Union

Credentials = Tuple[str, str]


@dataclass(frozen=True)
class AuthContext:
    host: str
    port: int
    user: Optional[str] = None


class CredentialSource(Protocol):
    def lookup(self, host: str, ports: Sequence[str], user: Optional[str] = None) -> Optional[Credentials]:
        """Return (user, secret) for `host` under any of `ports`, or None."""
        ...

    def forget(self, host: str, port: Union[int, str]) -> None:
        """Drop anything cached for host/port after the server rejected it."""
        ...
