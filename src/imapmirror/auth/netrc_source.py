from __future__ import annotations

import logging
import netrc
import os
import threading
from typing import Optional, Sequence, Set, Tuple, Union

from imapmirror.auth.base import Credentials

logger = logging.getLogger(__name__)

DEFAULT_FILES = ("~/.authinfo", "~/.netrc")


class NetrcCredentials:
    """
    Credentials read from a netrc-format file. Entries are per machine;
    `forget` hides a host/port for the rest of the process.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path or self._default_path()
        self._lock = threading.Lock()
        self._forgotten: Set[Tuple[str, str]] = set()

    @staticmethod
    def _default_path() -> Optional[str]:
        for candidate in DEFAULT_FILES:
            full = os.path.expanduser(candidate)
            if os.path.exists(full):
                return full
        return None

    def _load(self) -> Optional[netrc.netrc]:
        if not self.path:
            return None
        try:
            return netrc.netrc(self.path)
        except (OSError, netrc.NetrcParseError) as e:
            logger.warning(f"Could not read credentials from {self.path}: {e}")
            return None

    def lookup(self, host: str, ports: Sequence[str], user: Optional[str] = None) -> Optional[Credentials]:
        with self._lock:
            if any((host, str(p)) in self._forgotten for p in ports):
                return None
        data = self._load()
        if data is None:
            return None
        entry = data.authenticators(host)
        if not entry:
            return None
        login, _account, password = entry
        if not login or password is None:
            return None
        if user is not None and login != user:
            return None
        return login, password

    def forget(self, host: str, port: Union[int, str]) -> None:
        with self._lock:
            self._forgotten.add((host, str(port)))
