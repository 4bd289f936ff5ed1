from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

SEEN = r"\Seen"
ANSWERED = r"\Answered"
FLAGGED = r"\Flagged"
DELETED = r"\Deleted"
DRAFT = r"\Draft"


@dataclass(frozen=True)
class Mark:
    """A local article label and the server flag it is stored as."""

    name: str
    flag: str
    # Older servers/clients spell system flags with a '%' prefix.
    alternate: Optional[str] = None


MARKS: Tuple[Mark, ...] = (
    Mark("read", SEEN, "%Seen"),
    Mark("flagged", FLAGGED, "%Flagged"),
    Mark("replied", ANSWERED, "%Answered"),
    Mark("expired", "$Expired"),
    Mark("dormant", "$Dormant"),
    Mark("scored", "$Scored"),
    Mark("saved", "$Saved"),
    Mark("downloaded", "$Downloaded"),
    Mark("forwarded", "$Forwarded"),
)

_BY_NAME: Dict[str, Mark] = {m.name: m for m in MARKS}
_BY_FLAG: Dict[str, Mark] = {}
for _m in MARKS:
    _BY_FLAG[_m.flag.lower()] = _m
    if _m.alternate:
        _BY_FLAG[_m.alternate.lower()] = _m


def mark_for_name(name: str) -> Mark:
    try:
        return _BY_NAME[name]
    except KeyError:
        raise KeyError(f"Unknown mark {name!r}") from None


def mark_for_flag(flag: str) -> Optional[Mark]:
    return _BY_FLAG.get(flag.lower())


def flag_for_mark(name: str) -> str:
    return mark_for_name(name).flag
