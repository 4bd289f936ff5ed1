from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from imapmirror.imap.fetch_response import FetchData, SelectStatus
from imapmirror.ranges import Range


@dataclass
class MailboxState:
    """What the server told us about one mailbox in one sync pass."""

    mailbox: str
    existing: Range = field(default_factory=Range)
    # protocol flag -> UIDs carrying it
    flags: Dict[str, Range] = field(default_factory=dict)
    uidnext: Optional[int] = None
    uidvalidity: Optional[int] = None
    highestmodseq: Optional[int] = None
    permanent_flags: Optional[frozenset] = None
    # lowest UID requested in this pass; 1 means a complete listing
    start_article: int = 1

    @classmethod
    def from_fetch(
        cls,
        mailbox: str,
        status: SelectStatus,
        fetched: Iterable[FetchData],
        *,
        start_article: int = 1,
    ) -> "MailboxState":
        uids = []
        by_flag: Dict[str, list] = {}
        for data in fetched:
            uid = data.uid
            if uid is None or uid < start_article:
                continue
            uids.append(uid)
            for flag in data.flags:
                by_flag.setdefault(flag, []).append(uid)
        return cls(
            mailbox=mailbox,
            existing=Range.from_ints(uids),
            flags={f: Range.from_ints(v) for f, v in by_flag.items()},
            uidnext=status.uidnext,
            uidvalidity=status.uidvalidity,
            highestmodseq=status.highestmodseq,
            permanent_flags=status.permanent_flags,
            start_article=max(1, start_article),
        )

    # -----------------------
    # Bounds
    # -----------------------

    @property
    def high(self) -> int:
        top = self.existing.last if self.existing else 0
        if self.uidnext is not None:
            return max(self.uidnext - 1, top)
        return top

    @property
    def low(self) -> int:
        if self.existing:
            return self.existing.first
        if self.uidnext is not None:
            return self.uidnext
        return 1

    @property
    def complete(self) -> bool:
        return self.start_article <= 1

    # -----------------------
    # Flags
    # -----------------------

    def uids_with_flag(self, flag: str) -> Range:
        for name, uids in self.flags.items():
            if name.lower() == flag.lower():
                return uids
        return Range()

    def add_flag(self, flag: str, uids: Range) -> None:
        key = next((n for n in self.flags if n.lower() == flag.lower()), flag)
        self.flags[key] = self.flags.get(key, Range()) | (uids & self.existing)

    def can_store(self, flag: str) -> bool:
        if self.permanent_flags is None:
            return True
        perm = {f.lower() for f in self.permanent_flags}
        return "\\*" in perm or flag.lower() in perm

    def remove(self, uids: Range) -> None:
        """Drop expunged UIDs from the existing set and every flag."""
        self.existing = self.existing - uids
        self.flags = {f: r - uids for f, r in self.flags.items() if r - uids}

    def new_articles(self, deleted: str, seen: str) -> Range:
        """UIDs with no flags, or with neither `deleted` nor `seen` set."""
        return self.existing - self.uids_with_flag(deleted) - self.uids_with_flag(seen)
