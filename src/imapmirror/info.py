from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, Tuple

from imapmirror.ranges import Range

Active = Tuple[int, int]


class InfoStore(Protocol):
    """
    Read/write accessors for the mailbox metadata owned by the reading
    application. Keys are mailbox short names.

    An active range is ``(low, high)``; an empty mailbox is stored as
    ``(uidnext, uidnext - 1)``.
    """

    def get_active(self, mailbox: str) -> Optional[Active]: ...

    def set_active(self, mailbox: str, active: Active) -> None: ...

    def get_read(self, mailbox: str) -> Range: ...

    def set_read(self, mailbox: str, read: Range) -> None: ...

    def get_marks(self, mailbox: str) -> Dict[str, Range]: ...

    def set_marks(self, mailbox: str, marks: Dict[str, Range]) -> None: ...

    def get_uidvalidity(self, mailbox: str) -> Optional[int]: ...

    def set_uidvalidity(self, mailbox: str, uidvalidity: Optional[int]) -> None: ...


@dataclass
class _Record:
    active: Optional[Active] = None
    read: Range = field(default_factory=Range)
    marks: Dict[str, Range] = field(default_factory=dict)
    uidvalidity: Optional[int] = None


class MemoryInfoStore:
    """Thread-safe in-memory InfoStore."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: Dict[str, _Record] = {}

    def _record(self, mailbox: str) -> _Record:
        return self._records.setdefault(mailbox, _Record())

    def mailboxes(self) -> list[str]:
        with self._lock:
            return sorted(self._records)

    def get_active(self, mailbox: str) -> Optional[Active]:
        with self._lock:
            rec = self._records.get(mailbox)
            return rec.active if rec else None

    def set_active(self, mailbox: str, active: Active) -> None:
        with self._lock:
            self._record(mailbox).active = (int(active[0]), int(active[1]))

    def get_read(self, mailbox: str) -> Range:
        with self._lock:
            rec = self._records.get(mailbox)
            return rec.read if rec else Range()

    def set_read(self, mailbox: str, read: Range) -> None:
        with self._lock:
            self._record(mailbox).read = read

    def get_marks(self, mailbox: str) -> Dict[str, Range]:
        with self._lock:
            rec = self._records.get(mailbox)
            return dict(rec.marks) if rec else {}

    def set_marks(self, mailbox: str, marks: Dict[str, Range]) -> None:
        with self._lock:
            self._record(mailbox).marks = {k: v for k, v in marks.items() if v}

    def get_uidvalidity(self, mailbox: str) -> Optional[int]:
        with self._lock:
            rec = self._records.get(mailbox)
            return rec.uidvalidity if rec else None

    def set_uidvalidity(self, mailbox: str, uidvalidity: Optional[int]) -> None:
        with self._lock:
            self._record(mailbox).uidvalidity = uidvalidity

    def snapshot(self, mailbox: str) -> Tuple[Optional[Active], Range, Dict[str, Range]]:
        with self._lock:
            return self.get_active(mailbox), self.get_read(mailbox), self.get_marks(mailbox)
