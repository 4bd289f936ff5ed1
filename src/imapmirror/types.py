from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from imapmirror.ranges import Range


@dataclass(frozen=True)
class ArticleRef:
    uid: int
    mailbox: str = "INBOX"

    def to_dict(self) -> dict:
        return {
            "uid": self.uid,
            "mailbox": self.mailbox,
        }


@dataclass(frozen=True)
class DeleteResult:
    mailbox: str
    marked: Range
    # "scoped" (UID EXPUNGE), "full" (EXPUNGE) or None when left marked.
    expunge: Optional[str] = None

    @property
    def expunged(self) -> bool:
        return self.expunge is not None

    def to_dict(self) -> dict:
        return {
            "mailbox": self.mailbox,
            "marked": self.marked.to_imap(),
            "expunge": self.expunge,
        }


@dataclass(frozen=True)
class SplitResult:
    inbox: str
    copied: Dict[str, Range] = field(default_factory=dict)
    failed: Dict[str, Range] = field(default_factory=dict)
    discarded: Range = field(default_factory=Range)
    deletion: Optional[DeleteResult] = None

    @property
    def partial_failure(self) -> bool:
        return bool(self.failed)

    def to_dict(self) -> dict:
        return {
            "inbox": self.inbox,
            "copied": {k: v.to_imap() for k, v in self.copied.items()},
            "failed": {k: v.to_imap() for k, v in self.failed.items()},
            "discarded": self.discarded.to_imap(),
            "deletion": self.deletion.to_dict() if self.deletion else None,
        }


@dataclass(frozen=True)
class SyncRequest:
    """Fetch flags for `mailbox` from UID `start_article` upward."""

    mailbox: str
    start_article: int = 1


@dataclass
class SyncReport:
    updated: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
