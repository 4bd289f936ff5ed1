from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union

from imapmirror.errors import ParseError

# A literal announcement must be the last thing on its line.
LITERAL_RE = re.compile(rb"\{(\d+)\+?\}\r?\n")

STATUSES = ("OK", "NO", "BAD")

# Tag and status word of a status response; what follows is free text.
STATUS_LINE_RE = re.compile(r"^(\S+) (OK|NO|BAD|BYE|PREAUTH)(?= |$)", re.IGNORECASE)


# -----------------------
# Reply tree
# -----------------------


@dataclass(frozen=True)
class Atom:
    value: str
    quoted: bool = False

    @property
    def is_nil(self) -> bool:
        return not self.quoted and self.value.upper() == "NIL"

    def as_bytes(self) -> bytes:
        # Reply text is decoded as latin-1, so this restores the wire bytes.
        return self.value.encode("latin-1")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AttrList:
    """A bracketed ``[...]`` section, split on whitespace."""

    items: Tuple[str, ...]

    def __str__(self) -> str:
        return "[" + " ".join(self.items) + "]"


@dataclass(frozen=True)
class ListNode:
    items: Tuple["Node", ...]

    def __iter__(self) -> Iterator["Node"]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, idx: int) -> "Node":
        return self.items[idx]

    def __str__(self) -> str:
        return "(" + " ".join(str(x) for x in self.items) + ")"


Node = Union[Atom, AttrList, ListNode]


@dataclass(frozen=True)
class Reply:
    """One parsed response line."""

    line: str
    tokens: Tuple[Node, ...]

    @property
    def tag(self) -> str:
        first = self.tokens[0] if self.tokens else None
        return first.value if isinstance(first, Atom) else ""

    @property
    def untagged(self) -> bool:
        return self.tag == "*"

    @property
    def continuation(self) -> bool:
        return self.tag == "+"

    def atom(self, idx: int) -> Optional[str]:
        if idx < len(self.tokens):
            tok = self.tokens[idx]
            if isinstance(tok, Atom):
                return tok.value
        return None

    @property
    def status(self) -> Optional[str]:
        word = self.atom(1)
        if word and word.upper() in STATUSES:
            return word.upper()
        return None

    @property
    def text(self) -> str:
        """Everything after the tag and status word."""
        parts = self.line.split(" ", 2)
        return parts[2] if len(parts) > 2 else ""

    def response_code(self) -> Optional[AttrList]:
        if len(self.tokens) > 2 and isinstance(self.tokens[2], AttrList):
            return self.tokens[2]
        return None


@dataclass(frozen=True)
class ResponseUnit:
    """Every line a single command produced, ending with its completion."""

    tag: str
    status: str
    text: str
    untagged: Tuple[Reply, ...]
    completion: Reply

    @property
    def ok(self) -> bool:
        return self.status == "OK"

    def by_keyword(self, keyword: str) -> List[Reply]:
        """Untagged replies whose first data word (or second, after a number) is `keyword`."""
        keyword = keyword.upper()
        out: List[Reply] = []
        for r in self.untagged:
            w1 = (r.atom(1) or "").upper()
            w2 = (r.atom(2) or "").upper()
            if w1 == keyword or (w1.isdigit() and w2 == keyword):
                out.append(r)
        return out


# -----------------------
# Literals
# -----------------------


def _quote_internal(raw: bytes) -> str:
    text = raw.decode("latin-1")
    text = (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\r", "\\r")
        .replace("\n", "\\n")
    )
    return f'"{text}"'


def unfold_literals(buffer: Union[bytes, bytearray, str]) -> str:
    """
    Replace every ``{N}`` literal announcement plus its N raw bytes with an
    equivalent quoted string, so each logical response becomes one line.

    CR and LF inside the payload are escaped as ``\\r``/``\\n``; the
    tokenizer reverses this.
    """
    if isinstance(buffer, str):
        buffer = buffer.encode("latin-1")
    buf = bytes(buffer)

    out: List[str] = []
    pos = 0
    while True:
        m = LITERAL_RE.search(buf, pos)
        if not m:
            out.append(buf[pos:].decode("latin-1"))
            break
        out.append(buf[pos : m.start()].decode("latin-1"))
        size = int(m.group(1))
        start = m.end()
        end = start + size
        if end > len(buf):
            raise ParseError(f"Literal of {size} bytes truncated after {len(buf) - start}")
        out.append(_quote_internal(buf[start:end]))
        pos = end
    return "".join(out)


# -----------------------
# Tokenizer
# -----------------------


def _matching_bracket(s: str, i: int) -> int:
    depth = 0
    n = len(s)
    while i < n:
        if s[i] == "[":
            depth += 1
        elif s[i] == "]":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise ParseError(f"Unbalanced '[' in reply: {s!r}")


def _read_quoted(s: str, i: int) -> Tuple[str, int]:
    # s[i] is the opening quote
    buf: List[str] = []
    i += 1
    n = len(s)
    while i < n:
        c = s[i]
        if c == "\\" and i + 1 < n:
            nxt = s[i + 1]
            buf.append({"r": "\r", "n": "\n"}.get(nxt, nxt))
            i += 2
            continue
        if c == '"':
            return "".join(buf), i + 1
        buf.append(c)
        i += 1
    raise ParseError(f"Unterminated quoted string in reply: {s!r}")


def _parse_tokens(s: str, i: int, nested: bool) -> Tuple[List[Node], int]:
    items: List[Node] = []
    n = len(s)
    while i < n:
        c = s[i]
        if c in " \r\n":
            i += 1
            continue
        if c == ")":
            if not nested:
                raise ParseError(f"Unbalanced ')' in reply: {s!r}")
            return items, i + 1
        if c == "(":
            sub, i = _parse_tokens(s, i + 1, nested=True)
            items.append(ListNode(tuple(sub)))
            continue
        if c == "[":
            end = _matching_bracket(s, i)
            items.append(AttrList(tuple(s[i + 1 : end].split())))
            i = end + 1
            continue
        if c == '"':
            value, i = _read_quoted(s, i)
            items.append(Atom(value, quoted=True))
            continue

        j = i
        while j < n and s[j] not in " ()\r\n":
            if s[j] == "[":
                j = _matching_bracket(s, j) + 1
                continue
            j += 1
        items.append(Atom(s[i:j]))
        i = j

    if nested:
        raise ParseError(f"Unbalanced '(' in reply: {s!r}")
    return items, i


def _status_reply(line: str, m: "re.Match[str]") -> Reply:
    tokens: List[Node] = [Atom(m.group(1)), Atom(m.group(2))]
    rest = line[m.end() :].lstrip(" ")
    if rest.startswith("["):
        try:
            end = _matching_bracket(rest, 0)
        except ParseError:
            end = -1
        if end > 0:
            tokens.append(AttrList(tuple(rest[1:end].split())))
            rest = rest[end + 1 :].lstrip(" ")
    if rest:
        tokens.append(Atom(rest))
    return Reply(line=line, tokens=tuple(tokens))


def parse_line(line: str) -> Reply:
    line = line.rstrip("\r\n")
    m = STATUS_LINE_RE.match(line)
    if m:
        return _status_reply(line, m)
    tokens, _ = _parse_tokens(line, 0, nested=False)
    return Reply(line=line, tokens=tuple(tokens))


def _lines(text: str) -> List[str]:
    return [ln.rstrip("\r") for ln in text.split("\n") if ln.strip()]


def parse_reply(raw: Union[bytes, bytearray, str]) -> List[Reply]:
    """Parse a response unit (possibly carrying literals) into one Reply per line."""
    return [parse_line(ln) for ln in _lines(unfold_literals(raw))]


# -----------------------
# Response units
# -----------------------


def _is_untagged(line: str) -> bool:
    return line.startswith("* ") or line.startswith("+ ") or line in ("*", "+")


def isolate_last_response_unit(text: str) -> Tuple[str, str]:
    """
    Split unfolded reply text that ends with a tagged completion line
    into ``(preceding, last_unit)``, where `last_unit` is that completion
    plus the untagged lines directly above it.
    """
    body = text.rstrip("\r\n")
    if not body:
        return "", ""

    cut = body.rfind("\n")
    start = cut + 1
    while cut != -1:
        prev = body.rfind("\n", 0, cut)
        line = body[prev + 1 : cut].rstrip("\r")
        if line and not _is_untagged(line):
            break
        start = prev + 1
        cut = prev
    return text[:start], text[start:]


def unit_from_text(text: str) -> ResponseUnit:
    """Parse the unfolded text of one response unit."""
    replies = [parse_line(ln) for ln in _lines(text)]
    if not replies:
        raise ParseError("Empty response unit")
    completion = replies[-1]
    if completion.untagged or completion.continuation or completion.status is None:
        raise ParseError(f"Response unit does not end in a completion line: {completion.line!r}")
    return ResponseUnit(
        tag=completion.tag,
        status=completion.status,
        text=completion.text,
        untagged=tuple(r for r in replies[:-1] if not r.continuation),
        completion=completion,
    )


def failed_unit(text: str, reason: str) -> Optional[ResponseUnit]:
    """
    A BAD unit for the completion line that ends `text`, built without
    the tokenizer. None if the last line is not a status response.
    """
    lines = _lines(text)
    if not lines:
        return None
    m = STATUS_LINE_RE.match(lines[-1])
    if not m or m.group(1) in ("*", "+"):
        return None
    return ResponseUnit(
        tag=m.group(1),
        status="BAD",
        text=reason,
        untagged=(),
        completion=_status_reply(lines[-1], m),
    )


def unit_texts(raw: Union[bytes, bytearray, str]) -> List[str]:
    """
    Cut a buffer holding one or more complete responses into the
    unfolded text of each unit, in the order they arrived.
    """
    text = unfold_literals(raw)
    out: List[str] = []
    while text.strip():
        text, last = isolate_last_response_unit(text)
        if not last.strip():
            break
        out.append(last)
    out.reverse()
    return out


def split_response_units(raw: Union[bytes, bytearray, str]) -> List[ResponseUnit]:
    return [unit_from_text(text) for text in unit_texts(raw)]


def parse_response_unit(raw: Union[bytes, bytearray, str]) -> ResponseUnit:
    _, last = isolate_last_response_unit(unfold_literals(raw))
    return unit_from_text(last)
