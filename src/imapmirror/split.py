from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from imapmirror.errors import ProtocolError, TransportError
from imapmirror.imap.expunge import delete_articles
from imapmirror.imap.fetch_response import FetchData, iter_fetch, list_mailboxes, select_status
from imapmirror.imap.session import Session
from imapmirror.marks import DELETED, SEEN
from imapmirror.ranges import Range
from imapmirror.state import MailboxState
from imapmirror.types import SplitResult
from imapmirror.utils import format_mailbox_arg

logger = logging.getLogger(__name__)

DISCARD = "discard"

# classify(raw message bytes) -> destination names, or DISCARD
Classifier = Callable[[bytes], Union[str, Iterable[str]]]


def _message_bytes(data: FetchData, whole: bool) -> bytes:
    if whole:
        return data.section("") or b""
    return (data.section("HEADER") or b"") + (data.section("1") or b"")


def classify_articles(
    session: Session,
    uids: Range,
    classify: Classifier,
    *,
    whole: bool = False,
) -> Tuple[Dict[str, Range], Range]:
    """
    Fetch header + first part (or the whole body) of `uids` in one command
    and run `classify` on each. Returns (destination -> UIDs, discarded UIDs).
    """
    items = "BODY.PEEK[]" if whole else "BODY.PEEK[HEADER] BODY.PEEK[1]"
    unit = session.command("UID FETCH %s (UID %s)", uids.to_imap(), items, kind="fetch")

    routes: Dict[str, List[int]] = {}
    discarded: List[int] = []
    for data in iter_fetch(unit):
        uid = data.uid
        if uid is None or uid not in uids:
            continue
        verdict = classify(_message_bytes(data, whole))
        if verdict == DISCARD:
            discarded.append(uid)
            continue
        targets = [verdict] if isinstance(verdict, str) else list(verdict)
        if DISCARD in targets:
            # Copied to the other destinations first, then deleted.
            discarded.append(uid)
            targets = [t for t in targets if t != DISCARD]
        for target in targets:
            routes.setdefault(target, []).append(uid)
    return {k: Range.from_ints(v) for k, v in routes.items()}, Range.from_ints(discarded)


def ensure_mailboxes(session: Session, names: Iterable[str]) -> List[str]:
    """CREATE every name missing from a ``LIST "" "*"`` snapshot. Returns those created."""
    wanted = sorted(set(names))
    if not wanted:
        return []
    existing: Set[str] = set(list_mailboxes(session.command('LIST "" "*"', kind="list")))
    created: List[str] = []
    for name in wanted:
        if name in existing:
            continue
        ok, unit = session.run_command("CREATE %s", format_mailbox_arg(name), kind="create")
        if ok:
            created.append(name)
        else:
            logger.warning(f"{session.server}: could not create {name!r}: {unit.status} {unit.text}")
    return created


def copy_articles(session: Session, routes: Dict[str, Range]) -> Tuple[Dict[str, Range], Dict[str, Range]]:
    """
    Pipeline one UID COPY per destination, await the last, then judge each
    copy by its own tag. Returns (copied, failed).
    """
    sent: List[Tuple[str, int]] = []
    for name in sorted(routes):
        tag = session.send("UID COPY %s %s", routes[name].to_imap(), format_mailbox_arg(name), kind="copy")
        sent.append((name, tag))

    copied: Dict[str, Range] = {}
    failed: Dict[str, Range] = {}
    if not sent:
        return copied, failed

    if not session.await_tag(sent[-1][1]):
        raise TransportError("connection closed during COPY", server=session.server,
                             transport=session.config.transport)
    for name, tag in sent:
        if not session.await_tag(tag):
            raise TransportError("connection closed during COPY", server=session.server,
                                 transport=session.config.transport)
        unit = session.response(tag)
        if unit.ok:
            copied[name] = routes[name]
        else:
            failed[name] = routes[name]
            logger.warning(f"{session.server}: copy to {name!r} failed: {unit.status} {unit.text}")
    return copied, failed


def split_incoming(
    session: Session,
    classify: Classifier,
    *,
    inbox: Optional[str] = None,
) -> SplitResult:
    """
    Move new articles out of `inbox` (default: the server's configured
    inbox) into the mailboxes `classify` names for them.

    An article is deleted from the inbox only when every copy it took part
    in succeeded, or when it was discarded with no copy failing. Articles
    with a failed copy stay put and are picked up again on the next pass.
    """
    inbox = inbox or session.config.inbox
    select_unit = session.select(inbox, readonly=False, force=True)
    unit = session.command("UID FETCH 1:* (UID FLAGS)", kind="fetch")
    state = MailboxState.from_fetch(inbox, select_status(select_unit), iter_fetch(unit))

    new = state.new_articles(DELETED, SEEN)
    if not new:
        return SplitResult(inbox=inbox)

    routes, discarded = classify_articles(session, new, classify, whole=session.config.split_download_body)
    ensure_mailboxes(session, routes)
    copied, failed = copy_articles(session, routes)

    blocked = Range()
    for uids in failed.values():
        blocked = blocked | uids
    delivered = Range()
    for uids in copied.values():
        delivered = delivered | uids
    to_delete = (delivered | discarded) - blocked

    deletion = None
    if to_delete:
        try:
            deletion = delete_articles(session, inbox, to_delete, state=state)
        except ProtocolError as e:
            logger.warning(f"{session.server}: could not delete split articles from {inbox!r}: {e}")

    result = SplitResult(inbox=inbox, copied=copied, failed=failed, discarded=discarded, deletion=deletion)
    if result.partial_failure:
        logger.warning(
            f"{session.server}: split of {inbox!r} partially failed for "
            f"{', '.join(sorted(failed))}; those articles stay in {inbox!r}"
        )
    logger.info(
        f"{session.server}: split {len(new)} new articles from {inbox!r} "
        f"into {len(copied)} mailboxes, {len(discarded)} discarded"
    )
    return result
