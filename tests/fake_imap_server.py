from __future__ import annotations

import base64
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set

from imapmirror.config import ServerConfig
from imapmirror.errors import CommandTimeout, TransportError

ARG_RE = re.compile(r'"((?:[^"\\]|\\.)*)"|\(([^)]*)\)|(\S+)')
SECTION_RE = re.compile(r"^BODY(?:\.PEEK)?\[([^\]]*)\]$", re.IGNORECASE)

DEFAULT_PERMANENT = r"(\Answered \Flagged \Deleted \Seen \Draft \*)"


@dataclass
class FakeMessage:
    uid: int
    raw: bytes
    flags: Set[str] = field(default_factory=set)
    # BODYSTRUCTURE text as the server would send it, e.g. '(("TEXT" ...) "MIXED")'
    structure: Optional[str] = None
    # part id -> bytes, for multipart messages
    parts: Dict[str, bytes] = field(default_factory=dict)

    def header(self) -> bytes:
        for sep in (b"\r\n\r\n", b"\n\n"):
            idx = self.raw.find(sep)
            if idx != -1:
                return self.raw[: idx + len(sep)]
        return self.raw

    def section(self, name: str) -> Optional[bytes]:
        name = name.upper()
        if name == "":
            return self.raw
        if name == "HEADER":
            return self.header()
        if name in self.parts:
            return self.parts[name]
        if name == "1" and not self.parts:
            return self.raw[len(self.header()):]
        return None


@dataclass
class FakeMailbox:
    uidvalidity: int = 1
    uidnext: int = 1
    messages: Dict[int, FakeMessage] = field(default_factory=dict)
    # None: do not send PERMANENTFLAGS at all
    permanent_flags: Optional[str] = DEFAULT_PERMANENT

    def add(
        self,
        raw: bytes = b"Subject: test\r\n\r\nbody\r\n",
        flags: Sequence[str] = (),
        *,
        structure: Optional[str] = None,
        parts: Optional[Dict[str, bytes]] = None,
        uid: Optional[int] = None,
    ) -> int:
        uid = uid if uid is not None else self.uidnext
        self.messages[uid] = FakeMessage(uid=uid, raw=raw, flags=set(flags), structure=structure,
                                         parts=dict(parts or {}))
        self.uidnext = max(self.uidnext, uid + 1)
        return uid

    def uids(self) -> List[int]:
        return sorted(self.messages)

    def seq(self, uid: int) -> int:
        return self.uids().index(uid) + 1


@dataclass
class FakeBackend:
    """
    The server-side mail store plus knobs shared by every connection
    made through `connector`.
    """

    capabilities: List[str] = field(default_factory=lambda: ["IMAP4rev1", "UIDPLUS"])
    users: Dict[str, str] = field(default_factory=lambda: {"alice": "secret"})
    mailboxes: Dict[str, FakeMailbox] = field(default_factory=lambda: {"INBOX": FakeMailbox()})
    greeting: str = "* OK fake IMAP server ready"
    starttls_ok: bool = True
    tls_handshake_fails: bool = False
    # command-text prefix -> forced completion ("NO ...", "BAD ...")
    failures: Dict[str, str] = field(default_factory=dict)
    commands: List[str] = field(default_factory=list)
    connections: List["FakeIMAPServer"] = field(default_factory=list)

    def mailbox(self, name: str) -> FakeMailbox:
        return self.mailboxes.setdefault(name, FakeMailbox())

    def connector(self, config: ServerConfig) -> "FakeIMAPServer":
        server = FakeIMAPServer(self, secure=config.transport == "ssl")
        self.connections.append(server)
        return server

    def sent(self, prefix: str) -> List[str]:
        return [c for c in self.commands if c.upper().startswith(prefix.upper())]


def _unquote(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)


def _args(text: str) -> List[str]:
    out: List[str] = []
    for m in ARG_RE.finditer(text):
        if m.group(1) is not None:
            out.append(_unquote(m.group(1)))
        elif m.group(2) is not None:
            out.append("(" + m.group(2) + ")")
        else:
            out.append(m.group(3))
    return out


def _uid_set(text: str, mailbox: FakeMailbox) -> List[int]:
    uids = mailbox.uids()
    top = uids[-1] if uids else 0
    wanted: Set[int] = set()
    for chunk in text.split(","):
        if ":" in chunk:
            a, b = chunk.split(":", 1)
            lo = top if a == "*" else int(a)
            hi = top if b == "*" else int(b)
            lo, hi = min(lo, hi), max(lo, hi)
        else:
            lo = hi = top if chunk == "*" else int(chunk)
        wanted.update(u for u in uids if lo <= u <= hi)
    return sorted(wanted)


def _literal(data: bytes) -> bytes:
    return b"{%d}\r\n" % len(data) + data


class FakeIMAPServer:
    """One connection to the fake server; implements the Stream protocol."""

    def __init__(self, backend: FakeBackend, *, secure: bool = False) -> None:
        self.backend = backend
        self.secure = secure
        self.closed = False
        self.selected: Optional[str] = None
        self.readonly = False
        self.chunk_size: Optional[int] = None
        self.hold_replies = False
        self.commands: List[str] = []
        self._inbound = b""
        self._out = bytearray()
        self._held: List[bytes] = []
        self._close_after_flush = False
        self._out.extend(backend.greeting.encode("latin-1") + b"\r\n")

    # -----------------------
    # Stream protocol
    # -----------------------

    def read(self, timeout: Optional[float] = None) -> bytes:
        if self._out:
            n = self.chunk_size or len(self._out)
            data = bytes(self._out[:n])
            del self._out[:n]
            return data
        if self.closed or self._close_after_flush:
            self.closed = True
            return b""
        raise CommandTimeout(f"fake server idle after {timeout}s")

    def write(self, data: bytes) -> None:
        if self.closed:
            raise TransportError("write to closed fake server")
        self._inbound += data
        while b"\n" in self._inbound:
            line, self._inbound = self._inbound.split(b"\n", 1)
            self._dispatch(line.rstrip(b"\r").decode("utf-8"))

    def start_tls(self, context, server_hostname: str) -> None:
        if self.backend.tls_handshake_fails:
            raise TransportError("fake TLS handshake failed")
        self.secure = True

    def close(self) -> None:
        self.closed = True

    # -----------------------
    # Test controls
    # -----------------------

    def release(self, order: Optional[Callable[[List[bytes]], List[bytes]]] = None) -> None:
        """Emit held replies, optionally reordered."""
        held, self._held = self._held, []
        for unit in (order(held) if order else held):
            self._out.extend(unit)

    def push(self, raw: bytes) -> None:
        self._out.extend(raw)

    def hang_up(self) -> None:
        self._close_after_flush = True

    # -----------------------
    # Command handling
    # -----------------------

    def _dispatch(self, line: str) -> None:
        if self._close_after_flush:
            return
        tag, _, text = line.partition(" ")
        self.commands.append(text)
        self.backend.commands.append(text)

        lines: List[bytes] = []
        forced = next((v for k, v in self.backend.failures.items() if text.upper().startswith(k.upper())), None)
        if forced is not None:
            status = forced
        else:
            status = self._handle(text, lines)
        unit = b"".join(l + b"\r\n" for l in lines) + f"{tag} {status}".encode("latin-1") + b"\r\n"
        if self.hold_replies:
            self._held.append(unit)
        else:
            self._out.extend(unit)

    def _capabilities(self) -> List[str]:
        caps = list(self.backend.capabilities)
        if self.secure:
            caps = [c for c in caps if c.upper() != "STARTTLS"]
        return caps

    def _handle(self, text: str, out: List[bytes]) -> str:
        args = _args(text)
        if not args:
            return "BAD empty command"
        verb = args[0].upper()
        uid = False
        if verb == "UID" and len(args) > 1:
            uid = True
            verb = args[1].upper()
            args = args[1:]
        handler = getattr(self, f"_cmd_{verb.lower()}", None)
        if handler is None:
            return f"BAD unknown command {verb}"
        if verb in ("FETCH", "STORE", "COPY", "EXPUNGE") and uid:
            return handler(args[1:], out, uid=True)
        return handler(args[1:], out)

    def _cmd_capability(self, args, out) -> str:
        out.append(("* CAPABILITY " + " ".join(self._capabilities())).encode())
        return "OK CAPABILITY completed"

    def _cmd_starttls(self, args, out) -> str:
        if not self.backend.starttls_ok:
            return "NO STARTTLS unavailable"
        return "OK Begin TLS negotiation now"

    def _check_login(self, user: str, password: str) -> str:
        if self.backend.users.get(user) == password:
            return "OK LOGIN completed"
        return "NO [AUTHENTICATIONFAILED] Invalid credentials"

    def _cmd_login(self, args, out) -> str:
        if "LOGINDISABLED" in {c.upper() for c in self._capabilities()}:
            return "NO LOGIN disabled"
        if len(args) != 2:
            return "BAD LOGIN needs two arguments"
        return self._check_login(args[0], args[1])

    def _cmd_authenticate(self, args, out) -> str:
        if len(args) != 2 or args[0].upper() != "PLAIN":
            return "NO unsupported mechanism"
        _, user, password = base64.b64decode(args[1]).decode("utf-8").split("\0")
        return self._check_login(user, password)

    def _cmd_enable(self, args, out) -> str:
        enabled = [a for a in args if a.upper() in {c.upper() for c in self._capabilities()}]
        out.append(("* ENABLED " + " ".join(enabled)).encode())
        return "OK ENABLE completed"

    def _cmd_noop(self, args, out) -> str:
        return "OK NOOP completed"

    def _cmd_logout(self, args, out) -> str:
        out.append(b"* BYE logging out")
        self._close_after_flush = True
        return "OK LOGOUT completed"

    def _select(self, args, out, readonly: bool) -> str:
        name = args[0] if args else ""
        mailbox = self.backend.mailboxes.get(name)
        if mailbox is None:
            self.selected = None
            return "NO Mailbox does not exist"
        self.selected = name
        self.readonly = readonly
        out.append(b"* %d EXISTS" % len(mailbox.messages))
        out.append(b"* 0 RECENT")
        out.append(rb"* FLAGS (\Answered \Flagged \Deleted \Seen \Draft)")
        if mailbox.permanent_flags is not None:
            out.append(f"* OK [PERMANENTFLAGS {mailbox.permanent_flags}] Limited".encode("latin-1"))
        out.append(b"* OK [UIDVALIDITY %d] UIDs valid" % mailbox.uidvalidity)
        out.append(b"* OK [UIDNEXT %d] Predicted next UID" % mailbox.uidnext)
        return "OK [READ-ONLY] EXAMINE completed" if readonly else "OK [READ-WRITE] SELECT completed"

    def _cmd_select(self, args, out) -> str:
        return self._select(args, out, readonly=False)

    def _cmd_examine(self, args, out) -> str:
        return self._select(args, out, readonly=True)

    def _current(self) -> Optional[FakeMailbox]:
        if self.selected is None:
            return None
        return self.backend.mailboxes.get(self.selected)

    def _cmd_fetch(self, args, out, uid: bool = False) -> str:
        mailbox = self._current()
        if mailbox is None:
            return "BAD no mailbox selected"
        if not uid or len(args) < 2:
            return "BAD only UID FETCH is supported"
        items = args[1].strip("()").split()
        for u in _uid_set(args[0], mailbox):
            msg = mailbox.messages[u]
            body = b"UID %d" % u
            for item in items:
                upper = item.upper()
                if upper == "UID":
                    continue
                if upper == "FLAGS":
                    body += (" FLAGS (" + " ".join(sorted(msg.flags)) + ")").encode("latin-1")
                elif upper == "BODYSTRUCTURE":
                    body += b" BODYSTRUCTURE " + (msg.structure or "NIL").encode("latin-1")
                else:
                    m = SECTION_RE.match(item)
                    if m is None:
                        return f"BAD unknown fetch item {item}"
                    data = msg.section(m.group(1))
                    body += f" BODY[{m.group(1)}] ".encode("latin-1")
                    body += _literal(data) if data is not None else b"NIL"
            out.append(b"* %d FETCH (" % mailbox.seq(u) + body + b")")
        return "OK FETCH completed"

    def _cmd_store(self, args, out, uid: bool = False) -> str:
        mailbox = self._current()
        if mailbox is None or not uid:
            return "BAD no mailbox selected"
        if self.readonly:
            return "NO mailbox is read-only"
        op = args[1].upper()
        flags = set(args[2].strip("()").split())
        for u in _uid_set(args[0], mailbox):
            msg = mailbox.messages[u]
            if op.startswith("+"):
                msg.flags |= flags
            elif op.startswith("-"):
                msg.flags -= flags
            else:
                msg.flags = set(flags)
            if not op.endswith(".SILENT"):
                out.append(f"* {mailbox.seq(u)} FETCH (UID {u} FLAGS ({' '.join(sorted(msg.flags))}))".encode())
        return "OK STORE completed"

    def _expunge(self, mailbox: FakeMailbox, uids: Sequence[int], out) -> None:
        for u in sorted(uids, reverse=True):
            if "\\Deleted" in mailbox.messages[u].flags:
                out.append(b"* %d EXPUNGE" % mailbox.seq(u))
                del mailbox.messages[u]

    def _cmd_expunge(self, args, out, uid: bool = False) -> str:
        mailbox = self._current()
        if mailbox is None:
            return "BAD no mailbox selected"
        if self.readonly:
            return "NO mailbox is read-only"
        if uid:
            if "UIDPLUS" not in {c.upper() for c in self._capabilities()}:
                return "BAD UID EXPUNGE needs UIDPLUS"
            self._expunge(mailbox, _uid_set(args[0], mailbox), out)
        else:
            self._expunge(mailbox, mailbox.uids(), out)
        return "OK EXPUNGE completed"

    def _cmd_copy(self, args, out, uid: bool = False) -> str:
        mailbox = self._current()
        if mailbox is None or not uid:
            return "BAD no mailbox selected"
        dest = self.backend.mailboxes.get(args[1])
        if dest is None:
            return "NO [TRYCREATE] destination does not exist"
        for u in _uid_set(args[0], mailbox):
            msg = mailbox.messages[u]
            dest.add(msg.raw, sorted(msg.flags), structure=msg.structure, parts=msg.parts)
        return "OK COPY completed"

    def _cmd_create(self, args, out) -> str:
        name = args[0]
        if name in self.backend.mailboxes:
            return "NO mailbox already exists"
        self.backend.mailboxes[name] = FakeMailbox()
        return "OK CREATE completed"

    def _cmd_list(self, args, out) -> str:
        for name in sorted(self.backend.mailboxes):
            out.append(f'* LIST (\\HasNoChildren) "/" "{name}"'.encode("latin-1"))
        return "OK LIST completed"


def reverse_units(units: List[bytes]) -> List[bytes]:
    return list(reversed(units))


