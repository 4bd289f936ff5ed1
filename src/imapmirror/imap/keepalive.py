from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, List, Optional

from imapmirror.errors import IMAPError

if TYPE_CHECKING:
    from imapmirror.imap.manager import SessionManager

logger = logging.getLogger(__name__)


class KeepaliveScheduler:
    """
    Periodically sends NOOP on every registered session that has been
    idle longer than `idle` seconds, so servers do not time it out.
    """

    def __init__(
        self,
        manager: "SessionManager",
        *,
        interval: Optional[float] = None,
        idle: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.manager = manager
        self.interval = interval if interval is not None else manager.settings.keepalive_interval
        self.idle = idle if idle is not None else manager.settings.keepalive_idle
        self.clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self) -> List[str]:
        """Ping idle sessions once; returns the names that were pinged."""
        now = self.clock()
        pinged: List[str] = []
        for session in self.manager.sessions():
            if session.idle_seconds(now) <= self.idle:
                continue
            try:
                session.noop()
                pinged.append(session.server)
            except IMAPError as e:
                logger.warning(f"Keepalive NOOP to {session.server} failed, dropping session: {e}")
                self.manager.drop(session)
        return pinged

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.sweep()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="imapmirror-keepalive", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def __enter__(self) -> "KeepaliveScheduler":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
