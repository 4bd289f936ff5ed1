from __future__ import annotations

import logging
from typing import Optional

from imapmirror.imap.session import Session
from imapmirror.marks import DELETED
from imapmirror.ranges import Range
from imapmirror.state import MailboxState
from imapmirror.types import DeleteResult

logger = logging.getLogger(__name__)


def delete_articles(
    session: Session,
    mailbox: str,
    uids: Range,
    *,
    state: Optional[MailboxState] = None,
    allow_unscoped: Optional[bool] = None,
) -> DeleteResult:
    """
    Mark `uids` \\Deleted, then expunge as narrowly as the server allows:

    - UIDPLUS: ``UID EXPUNGE`` of exactly `uids`;
    - otherwise a full ``EXPUNGE`` if unscoped expunging is allowed
      (every \\Deleted article in the mailbox goes);
    - otherwise leave them marked and report that nothing was expunged.

    `state`, when given, is updated to match.
    """
    if not uids:
        return DeleteResult(mailbox=mailbox, marked=uids)

    if allow_unscoped is None:
        allow_unscoped = session.config.allow_unscoped_expunge == "always"

    session.select(mailbox, readonly=False)
    session.command("UID STORE %s +FLAGS.SILENT (%s)", uids.to_imap(), DELETED, kind="store")
    if state is not None:
        state.add_flag(DELETED, uids)

    if session.has_capability("UIDPLUS"):
        session.command("UID EXPUNGE %s", uids.to_imap(), kind="expunge")
        if state is not None:
            state.remove(uids)
        return DeleteResult(mailbox=mailbox, marked=uids, expunge="scoped")

    if allow_unscoped:
        session.command("EXPUNGE", kind="expunge")
        if state is not None:
            state.remove(state.uids_with_flag(DELETED) | uids)
        return DeleteResult(mailbox=mailbox, marked=uids, expunge="full")

    logger.warning(
        f"{session.server}: {mailbox} articles {uids.to_imap()} marked deleted but not expunged "
        "(no UIDPLUS and unscoped expunge disabled)"
    )
    return DeleteResult(mailbox=mailbox, marked=uids, expunge=None)
