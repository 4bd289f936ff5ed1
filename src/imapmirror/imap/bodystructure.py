from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Pattern, Set, Tuple, Union

from imapmirror.errors import ParseError
from imapmirror.imap.parser import Atom, ListNode, Node

FIRST_PART = "first"

WantedPolicy = Union[str, Pattern[str]]


@dataclass(frozen=True)
class BodyLeaf:
    part: str
    maintype: str
    subtype: str
    params: Dict[str, str] = field(default_factory=dict)
    content_id: Optional[str] = None
    description: Optional[str] = None
    encoding: str = "7BIT"
    size: int = 0

    @property
    def content_type(self) -> str:
        return f"{self.maintype}/{self.subtype}"

    @property
    def charset(self) -> Optional[str]:
        return self.params.get("charset")


@dataclass(frozen=True)
class BodyMultipart:
    part: str
    subtype: str
    children: Tuple["BodyPart", ...]
    params: Dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> str:
        return f"multipart/{self.subtype}"

    @property
    def boundary(self) -> Optional[str]:
        return self.params.get("boundary")


BodyPart = Union[BodyLeaf, BodyMultipart]


# -----------------------
# Parsing
# -----------------------


def _text(node: Node) -> Optional[str]:
    if isinstance(node, Atom) and not node.is_nil:
        return node.value
    return None


def _parse_param_list(node: Node) -> Dict[str, str]:
    if not isinstance(node, ListNode):
        return {}
    out: Dict[str, str] = {}
    items = node.items
    i = 0
    while i + 1 < len(items):
        k, v = _text(items[i]), _text(items[i + 1])
        if k is not None and v is not None:
            out[k.lower()] = v
        i += 2
    return out


def _child_part(prefix: str, idx: int) -> str:
    return f"{prefix}.{idx}" if prefix else str(idx)


def _parse(node: Node, part: str) -> BodyPart:
    if not isinstance(node, ListNode) or not node.items:
        raise ParseError(f"BODYSTRUCTURE node is not a list: {node}")

    if isinstance(node.items[0], ListNode):
        # Multipart: leading list children, then the subtype atom and extensions.
        children: List[BodyPart] = []
        idx = 0
        while idx < len(node.items) and isinstance(node.items[idx], ListNode):
            children.append(_parse(node.items[idx], _child_part(part, idx + 1)))
            idx += 1
        subtype = _text(node.items[idx]) if idx < len(node.items) else None
        if subtype is None:
            raise ParseError("multipart BODYSTRUCTURE without subtype")
        params = _parse_param_list(node.items[idx + 1]) if idx + 1 < len(node.items) else {}
        return BodyMultipart(part=part, subtype=subtype.lower(), children=tuple(children), params=params)

    items = node.items
    if len(items) < 7:
        raise ParseError(f"BODYSTRUCTURE leaf has {len(items)} fields, expected at least 7")
    maintype, subtype = _text(items[0]), _text(items[1])
    if maintype is None or subtype is None:
        raise ParseError("BODYSTRUCTURE leaf without type/subtype")
    try:
        size = int(_text(items[6]) or 0)
    except ValueError:
        size = 0
    return BodyLeaf(
        part=part or "1",
        maintype=maintype.lower(),
        subtype=subtype.lower(),
        params=_parse_param_list(items[2]),
        content_id=_text(items[3]),
        description=_text(items[4]),
        encoding=_text(items[5]) or "7BIT",
        size=size,
    )


def parse_bodystructure(node: Optional[Node]) -> BodyPart:
    """
    Build a typed tree from a BODYSTRUCTURE value. Leaves are numbered
    1-based per level and dotted for nesting; a non-multipart message
    is the single leaf "1".
    """
    if node is None:
        raise ParseError("missing BODYSTRUCTURE")
    return _parse(node, "")


def iter_leaves(structure: BodyPart) -> Iterator[BodyLeaf]:
    if isinstance(structure, BodyLeaf):
        yield structure
        return
    for child in structure.children:
        yield from iter_leaves(child)


# -----------------------
# Part selection
# -----------------------


def select_wanted_parts(structure: BodyPart, policy: WantedPolicy) -> Set[str]:
    """
    With FIRST_PART only leaf "1" is wanted; any other policy is a regular
    expression searched (case-insensitively) in each leaf's "type/subtype".
    """
    wanted: Set[str] = set()
    if isinstance(policy, str) and policy == FIRST_PART:
        for leaf in iter_leaves(structure):
            if leaf.part == "1":
                wanted.add(leaf.part)
        return wanted

    pattern = policy if not isinstance(policy, str) else re.compile(policy, re.IGNORECASE)
    for leaf in iter_leaves(structure):
        if pattern.search(leaf.content_type):
            wanted.add(leaf.part)
    return wanted


# -----------------------
# Reconstruction
# -----------------------


def _leaf_headers(leaf: BodyLeaf, eol: bytes) -> bytes:
    line = f"Content-type: {leaf.content_type}"
    if leaf.charset:
        line += f'; charset="{leaf.charset}"'
    out = line.encode("latin-1") + eol
    out += f"Content-transfer-encoding: {leaf.encoding}".encode("latin-1") + eol
    return out + eol


def _insert_multipart(node: BodyMultipart, parts: Dict[str, bytes], eol: bytes, nested: bool) -> bytes:
    boundary = node.boundary
    if not boundary:
        raise ParseError(f"multipart part {node.part or '<top>'} has no boundary parameter")

    out = b""
    if nested:
        out += f'Content-type: {node.content_type}; boundary="{boundary}"'.encode("latin-1") + eol + eol

    marker = f"--{boundary}".encode("latin-1")
    for child in node.children:
        out += eol + marker + eol
        if isinstance(child, BodyMultipart):
            out += _insert_multipart(child, parts, eol, nested=True)
        else:
            out += _leaf_headers(child, eol)
            body = parts.get(child.part)
            if body is not None:
                out += body
    out += eol + marker + b"--" + eol
    return out


def reconstruct_partial(header: bytes, structure: BodyPart, parts: Dict[str, bytes]) -> bytes:
    """
    Rebuild a message from its header block and the fetched bytes of some
    leaves. Every leaf gets its MIME headers; only fetched leaves get a body.
    """
    eol = b"\r\n" if b"\r\n" in header else b"\n"
    if isinstance(structure, BodyLeaf):
        return header + parts.get(structure.part, b"")
    return header + _insert_multipart(structure, parts, eol, nested=False)
