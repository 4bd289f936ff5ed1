from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

from imapmirror.config import ClientSettings, ServerConfig
from imapmirror.errors import ParseError, ProtocolError, TransportError
from imapmirror.imap.parser import (
    Reply,
    ResponseUnit,
    failed_unit,
    parse_line,
    unit_from_text,
    unit_texts,
)
from imapmirror.imap.stream import Stream
from imapmirror.utils import format_mailbox_arg

logger = logging.getLogger(__name__)

# Commands whose arguments must never reach the log.
_SECRET_KINDS = {"login", "authenticate"}

TAGGED_LINE_RE = re.compile(rb"^(\d+) (OK|NO|BAD)\b[^\n]*\n", re.MULTILINE | re.IGNORECASE)


@dataclass(frozen=True)
class PendingCommand:
    tag: int
    text: str
    kind: Optional[str] = None
    sent_at: float = 0.0


@dataclass
class Session:
    """
    One connection to one server.

    All mutable state is guarded by `_lock`; commands may be pipelined
    (several sent before any is awaited) but every completion is kept
    under its own tag.
    """

    config: ServerConfig
    stream: Stream
    settings: ClientSettings = field(default_factory=ClientSettings)

    greeting: str = ""
    capabilities: FrozenSet[str] = frozenset()
    resync_enabled: bool = False
    last_command_time: float = field(default_factory=time.time)
    last_error: Optional[str] = None

    _sequence: int = field(default=0, init=False, repr=False)
    _buffer: bytearray = field(default_factory=bytearray, init=False, repr=False)
    _pending: Dict[int, PendingCommand] = field(default_factory=dict, init=False, repr=False)
    _completed: Dict[int, ResponseUnit] = field(default_factory=dict, init=False, repr=False)
    _selected_mailbox: Optional[str] = field(default=None, init=False, repr=False)
    _selected_readonly: Optional[bool] = field(default=None, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    # -----------------------
    # Identity / state
    # -----------------------

    @property
    def server(self) -> str:
        return self.config.name

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def selected_mailbox(self) -> Optional[str]:
        return self._selected_mailbox

    @property
    def line_ending(self) -> bytes:
        return self.config.terminator

    def pending(self) -> List[PendingCommand]:
        with self._lock:
            return [self._pending[t] for t in sorted(self._pending)]

    def has_capability(self, name: str) -> bool:
        return name.upper() in self.capabilities

    def set_capabilities(self, words: List[str]) -> None:
        self.capabilities = frozenset(w.upper() for w in words if w)

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.last_command_time

    # -----------------------
    # Reading
    # -----------------------

    def _fill(self, timeout: Optional[float]) -> bool:
        # Must be called with self._lock held
        data = self.stream.read(timeout)
        if not data:
            self._closed = True
            return False
        self._buffer.extend(data)
        return True

    def read_line(self) -> Reply:
        """Read one raw line (used for the greeting, before any command)."""
        with self._lock:
            while b"\n" not in self._buffer:
                if self._closed or not self._fill(self.config.command_timeout):
                    raise TransportError("connection closed before a line arrived", server=self.server,
                                         transport=self.config.transport)
            idx = self._buffer.index(b"\n") + 1
            raw = bytes(self._buffer[:idx])
            del self._buffer[:idx]
        return parse_line(raw.decode("latin-1"))

    def _collect(self, end: int) -> None:
        # Must be called with self._lock held
        head = bytes(self._buffer[:end])
        del self._buffer[:end]
        units: List[Optional[ResponseUnit]] = []
        try:
            texts = unit_texts(head)
        except ParseError as e:
            # Unit boundaries are unknown: fail every completion in the chunk.
            logger.warning(f"Unparseable reply from {self.server}: {e}")
            texts = []
            units = [
                failed_unit(m.group(0).decode("latin-1"), f"unparseable reply: {e}")
                for m in TAGGED_LINE_RE.finditer(head)
            ]
        for text in texts:
            try:
                units.append(unit_from_text(text))
            except ParseError as e:
                logger.warning(f"Unparseable reply from {self.server}: {e}")
                units.append(failed_unit(text, f"unparseable reply: {e}"))
        for unit in units:
            if unit is None or not unit.tag.isdigit():
                continue
            tag = int(unit.tag)
            self._pending.pop(tag, None)
            self._completed[tag] = unit

    def await_tag(self, tag: int, timeout: Optional[float] = None) -> bool:
        """
        Block until the completion line for `tag` has been read.

        Returns False if the stream closed first. Raises CommandTimeout if
        no data arrives within `timeout` (default: the server's
        command_timeout).
        """
        if timeout is None:
            timeout = self.config.command_timeout
        pattern = re.compile(rb"^%d (?:OK|NO|BAD)\b[^\n]*\n" % tag, re.MULTILINE | re.IGNORECASE)
        window = self.settings.streaming_window

        with self._lock:
            if tag in self._completed:
                return True
            scanned = 0
            while True:
                start = max(0, scanned - window) if self.config.streaming else 0
                m = pattern.search(self._buffer, start)
                if m:
                    self._collect(m.end())
                    return tag in self._completed
                scanned = len(self._buffer)
                if self._closed or not self._fill(timeout):
                    return False

    def response(self, tag: int) -> ResponseUnit:
        with self._lock:
            try:
                return self._completed.pop(tag)
            except KeyError:
                raise ProtocolError("BAD", f"no completion seen for tag {tag}") from None

    # -----------------------
    # Writing
    # -----------------------

    def send(self, template: str, *args: object, kind: Optional[str] = None) -> int:
        """Write one tagged command and return its tag without waiting."""
        text = template % args if args else template
        with self._lock:
            if self._closed:
                raise TransportError("session is closed", server=self.server, transport=self.config.transport)
            self._sequence += 1
            tag = self._sequence
            now = time.time()
            self.stream.write(f"{tag} {text}".encode("utf-8") + self.line_ending)
            self.last_command_time = now
            self._pending[tag] = PendingCommand(tag=tag, text=text, kind=kind, sent_at=now)

        if self.settings.record_commands:
            shown = text.split(" ", 1)[0] + " ..." if kind in _SECRET_KINDS else text
            logger.debug(f"[{self.server}] >> {tag} {shown}")
        return tag

    def run_command(self, template: str, *args: object, kind: Optional[str] = None) -> Tuple[bool, ResponseUnit]:
        tag = self.send(template, *args, kind=kind)
        if not self.await_tag(tag):
            raise TransportError("connection closed while waiting for a reply", server=self.server,
                                 transport=self.config.transport)
        unit = self.response(tag)
        if not unit.ok:
            self.last_error = f"{unit.status} {unit.text}".strip()
            logger.info(f"[{self.server}] command {template.split(' ', 1)[0]!r} failed: {self.last_error}")
            return False, unit
        return True, unit

    def command(self, template: str, *args: object, kind: Optional[str] = None) -> ResponseUnit:
        """run_command, raising ProtocolError on NO/BAD."""
        ok, unit = self.run_command(template, *args, kind=kind)
        if not ok:
            raise ProtocolError(unit.status, unit.text, command=(kind or template.split(" ", 1)[0]).upper())
        return unit

    # -----------------------
    # Mailbox selection
    # -----------------------

    def send_select(self, mailbox: str, *, readonly: bool = False) -> int:
        verb = "EXAMINE" if readonly else "SELECT"
        tag = self.send("%s %s", verb, format_mailbox_arg(mailbox), kind="select")
        self._selected_mailbox = mailbox
        self._selected_readonly = readonly
        return tag

    def select(self, mailbox: str, *, readonly: bool = False, force: bool = False) -> Optional[ResponseUnit]:
        """
        SELECT/EXAMINE `mailbox` unless it is already selected in a
        compatible mode. Returns the reply when a command was sent.
        A read-write selection satisfies read-only requests.
        """
        with self._lock:
            if not force and self._selected_mailbox == mailbox:
                if self._selected_readonly is False:
                    return None
                if readonly and self._selected_readonly is True:
                    return None

            tag = self.send_select(mailbox, readonly=readonly)
            if not self.await_tag(tag):
                raise TransportError("connection closed during SELECT", server=self.server,
                                     transport=self.config.transport)
            unit = self.response(tag)
            if not unit.ok:
                self._selected_mailbox = None
                self._selected_readonly = None
                raise ProtocolError(unit.status, unit.text, command="SELECT")
            return unit

    def forget_selection(self) -> None:
        self._selected_mailbox = None
        self._selected_readonly = None

    # -----------------------
    # Misc
    # -----------------------

    def noop(self) -> bool:
        ok, _ = self.run_command("NOOP")
        return ok

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._pending.clear()
            self.stream.close()
