from __future__ import annotations

import base64
from typing import List


def _b64_utf16(chunk: List[str]) -> bytes:
    raw = "".join(chunk).encode("utf-16-be")
    return b"&" + base64.b64encode(raw).rstrip(b"=").replace(b"/", b",") + b"-"


def encode_mailbox_name(name: str) -> str:
    """
    Encode a mailbox name with the IMAP modified UTF-7 transform so it is
    7-bit safe on the wire.
    """
    out = bytearray()
    pending: List[str] = []
    for ch in name:
        if 0x20 <= ord(ch) <= 0x7E:
            if pending:
                out += _b64_utf16(pending)
                pending = []
            out += b"&-" if ch == "&" else ch.encode("ascii")
        else:
            pending.append(ch)
    if pending:
        out += _b64_utf16(pending)
    return out.decode("ascii")


def decode_mailbox_name(name: str) -> str:
    out: List[str] = []
    i = 0
    n = len(name)
    while i < n:
        ch = name[i]
        if ch != "&":
            out.append(ch)
            i += 1
            continue
        end = name.find("-", i + 1)
        if end == -1:
            # unterminated shift: keep the rest verbatim
            out.append(name[i:])
            break
        if end == i + 1:
            out.append("&")
        else:
            b64 = name[i + 1 : end].replace(",", "/")
            b64 += "=" * (-len(b64) % 4)
            out.append(base64.b64decode(b64).decode("utf-16-be"))
        i = end + 1
    return "".join(out)


def quote_string(value: str) -> str:
    """Render an IMAP quoted string."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_mailbox_arg(mailbox: str) -> str:
    if mailbox.upper() == "INBOX":
        return "INBOX"
    return quote_string(encode_mailbox_name(mailbox))
