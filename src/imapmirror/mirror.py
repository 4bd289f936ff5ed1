from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from imapmirror.config import ServerConfig
from imapmirror.errors import IMAPError
from imapmirror.imap.articles import request_article
from imapmirror.imap.bodystructure import WantedPolicy
from imapmirror.imap.expunge import delete_articles
from imapmirror.imap.fetch_response import list_mailboxes
from imapmirror.imap.manager import SessionManager
from imapmirror.imap.session import Session
from imapmirror.info import InfoStore
from imapmirror.ranges import Range
from imapmirror.split import Classifier, split_incoming
from imapmirror.sync import DEFAULT_WINDOW, mark_articles, sync_mailboxes
from imapmirror.types import ArticleRef, DeleteResult, SplitResult, SyncReport


@dataclass(frozen=True)
class MailMirror:
    """
    One server's mailboxes, mirrored into an InfoStore.

    The session is opened lazily through `manager` and reused until it
    is closed or dropped.
    """

    manager: SessionManager
    config: ServerConfig
    store: InfoStore

    @property
    def session(self) -> Session:
        return self.manager.open(self.config)

    def sync(self, mailboxes: Sequence[str], *, window: int = DEFAULT_WINDOW) -> SyncReport:
        """Refresh active range, read range and marks for `mailboxes`."""
        return sync_mailboxes(self.session, self.store, mailboxes, window=window)

    def fetch_article(
        self,
        uid: int,
        mailbox: Optional[str] = None,
        *,
        policy: Optional[WantedPolicy] = None,
    ) -> Optional[bytes]:
        """
        Raw bytes of one article; with `policy`, only the wanted MIME
        parts carry bodies. None if the UID does not exist.
        """
        ref = ArticleRef(uid=uid, mailbox=mailbox or self.config.inbox)
        return request_article(self.session, ref, policy=policy)

    def delete(self, mailbox: str, uids: Range) -> DeleteResult:
        return delete_articles(self.session, mailbox, uids)

    def add_mark(self, mailbox: str, uids: Range, mark: str) -> None:
        mark_articles(self.session, mailbox, uids, mark, add=True)

    def remove_mark(self, mailbox: str, uids: Range, mark: str) -> None:
        mark_articles(self.session, mailbox, uids, mark, add=False)

    def split(self, classify: Classifier, *, inbox: Optional[str] = None) -> SplitResult:
        return split_incoming(self.session, classify, inbox=inbox)

    def list_mailboxes(self) -> List[str]:
        return list_mailboxes(self.session.command('LIST "" "*"', kind="list"))

    def health_check(self) -> Dict[str, bool]:
        try:
            ok = self.session.noop()
        except IMAPError:
            ok = False
        return {"imap": ok}

    def close(self) -> None:
        live = self.manager.get(self.config.name)
        if live is not None:
            self.manager.close(live)

    def __enter__(self) -> MailMirror:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
