from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set

from imapmirror.imap.parser import Atom, ListNode, Node, Reply, ResponseUnit
from imapmirror.utils import decode_mailbox_name


@dataclass(frozen=True)
class FetchData:
    """
    One ``* <seq> FETCH (...)`` reply, as an item-name -> value mapping.

    Item names are upper-cased; section names keep their brackets
    (``BODY[HEADER]``, ``BODY[1.2]``).
    """

    seq: int
    items: Dict[str, Node]

    @property
    def uid(self) -> Optional[int]:
        v = self.items.get("UID")
        if isinstance(v, Atom) and v.value.isdigit():
            return int(v.value)
        return None

    @property
    def flags(self) -> Set[str]:
        v = self.items.get("FLAGS")
        if not isinstance(v, ListNode):
            return set()
        return {str(f) for f in v if isinstance(f, Atom) and f.value}

    def section(self, name: str) -> Optional[bytes]:
        """
        Payload of BODY[<name>], ignoring any ``<origin>`` suffix.
        Returns None when absent or NIL.
        """
        want = f"BODY[{name}]".upper()
        for key, value in self.items.items():
            base = key.split("<", 1)[0]
            if base == want and isinstance(value, Atom) and not value.is_nil:
                return value.as_bytes()
        return None

    def get(self, name: str) -> Optional[Node]:
        return self.items.get(name.upper())


def fetch_data(reply: Reply) -> Optional[FetchData]:
    if not reply.untagged or len(reply.tokens) < 4:
        return None
    seq = reply.atom(1) or ""
    if not seq.isdigit() or (reply.atom(2) or "").upper() != "FETCH":
        return None
    body = reply.tokens[3]
    if not isinstance(body, ListNode):
        return None

    items: Dict[str, Node] = {}
    toks = body.items
    i = 0
    while i + 1 < len(toks):
        key = toks[i]
        if isinstance(key, Atom):
            items[key.value.upper()] = toks[i + 1]
        i += 2
    return FetchData(seq=int(seq), items=items)


def iter_fetch(unit: ResponseUnit) -> Iterator[FetchData]:
    for reply in unit.by_keyword("FETCH"):
        data = fetch_data(reply)
        if data is not None:
            yield data


# -----------------------
# SELECT / EXAMINE
# -----------------------


def _strip_parens(words: List[str]) -> List[str]:
    out = []
    for w in words:
        w = w.strip("()")
        if w:
            out.append(w)
    return out


def response_codes(unit: ResponseUnit) -> Dict[str, List[str]]:
    """Collect ``[CODE args...]`` from the untagged OK lines and the completion."""
    codes: Dict[str, List[str]] = {}
    for reply in list(unit.untagged) + [unit.completion]:
        code = reply.response_code()
        if code is None or not code.items:
            continue
        codes[code.items[0].upper()] = list(code.items[1:])
    return codes


@dataclass(frozen=True)
class SelectStatus:
    exists: Optional[int] = None
    uidnext: Optional[int] = None
    uidvalidity: Optional[int] = None
    highestmodseq: Optional[int] = None
    # None: server did not say which flags it can store.
    permanent_flags: Optional[frozenset] = None
    readonly: bool = False


def _int(words: Optional[List[str]]) -> Optional[int]:
    if not words:
        return None
    try:
        return int(words[0])
    except ValueError:
        return None


def select_status(unit: ResponseUnit) -> SelectStatus:
    codes = response_codes(unit)

    exists: Optional[int] = None
    for reply in unit.untagged:
        if (reply.atom(2) or "").upper() == "EXISTS" and (reply.atom(1) or "").isdigit():
            exists = int(reply.atom(1) or 0)

    perm = codes.get("PERMANENTFLAGS")
    return SelectStatus(
        exists=exists,
        uidnext=_int(codes.get("UIDNEXT")),
        uidvalidity=_int(codes.get("UIDVALIDITY")),
        highestmodseq=_int(codes.get("HIGHESTMODSEQ")),
        permanent_flags=frozenset(_strip_parens(perm)) if perm is not None else None,
        readonly="READ-ONLY" in codes,
    )


# -----------------------
# LIST
# -----------------------


def list_mailboxes(unit: ResponseUnit) -> List[str]:
    """Selectable mailbox names from a LIST reply, decoded from modified UTF-7."""
    names: List[str] = []
    for reply in unit.by_keyword("LIST"):
        if len(reply.tokens) < 5:
            continue
        attrs = reply.tokens[2]
        if isinstance(attrs, ListNode):
            flags = {str(a).upper() for a in attrs}
            if r"\NOSELECT" in flags:
                continue
        name = reply.tokens[4]
        if isinstance(name, Atom):
            names.append(decode_mailbox_name(name.value))
    return names

