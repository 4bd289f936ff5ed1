from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from imapmirror.errors import IMAPError, ProtocolError, TransportError
from imapmirror.imap.fetch_response import iter_fetch, select_status
from imapmirror.imap.session import Session
from imapmirror.info import Active, InfoStore
from imapmirror.marks import FLAGGED, MARKS, SEEN, mark_for_name
from imapmirror.ranges import Range
from imapmirror.state import MailboxState
from imapmirror.types import SyncReport, SyncRequest

logger = logging.getLogger(__name__)

# How many UIDs below the known top a routine sync re-reads.
DEFAULT_WINDOW = 100


# -----------------------
# Retrieval
# -----------------------


def plan_request(store: InfoStore, mailbox: str, *, window: int = DEFAULT_WINDOW) -> SyncRequest:
    """
    Re-read only the last `window` UIDs when the mailbox has been synced
    before under a known UIDVALIDITY; otherwise read everything.
    """
    active = store.get_active(mailbox)
    if active is None or store.get_uidvalidity(mailbox) is None:
        return SyncRequest(mailbox=mailbox, start_article=1)
    return SyncRequest(mailbox=mailbox, start_article=max(1, active[1] - window))


def retrieve_states(
    session: Session,
    requests: Sequence[SyncRequest],
) -> Tuple[Dict[str, MailboxState], Dict[str, str]]:
    """
    Pipeline EXAMINE + ``UID FETCH start:* (UID FLAGS)`` for every request
    before reading any reply, then match each completion by its own tag.

    Returns (states, failures) keyed by mailbox.
    """
    sent: List[Tuple[SyncRequest, int, int]] = []
    for req in requests:
        sel = session.send_select(req.mailbox, readonly=True)
        fetch = session.send("UID FETCH %d:* (UID FLAGS)", req.start_article, kind="fetch")
        sent.append((req, sel, fetch))

    states: Dict[str, MailboxState] = {}
    failures: Dict[str, str] = {}
    for req, sel_tag, fetch_tag in sent:
        for tag in (sel_tag, fetch_tag):
            if not session.await_tag(tag):
                raise TransportError("connection closed during flag retrieval", server=session.server,
                                     transport=session.config.transport)
        sel_unit = session.response(sel_tag)
        fetch_unit = session.response(fetch_tag)
        if not sel_unit.ok:
            failures[req.mailbox] = f"{sel_unit.status} {sel_unit.text}".strip()
            if session.selected_mailbox == req.mailbox:
                session.forget_selection()
            continue
        if not fetch_unit.ok:
            failures[req.mailbox] = f"{fetch_unit.status} {fetch_unit.text}".strip()
            continue
        states[req.mailbox] = MailboxState.from_fetch(
            req.mailbox,
            select_status(sel_unit),
            iter_fetch(fetch_unit),
            start_article=req.start_article,
        )
    return states, failures


# -----------------------
# Reconciliation
# -----------------------


def _new_active(state: MailboxState, stored: Optional[Active]) -> Active:
    high = state.high
    if state.complete or stored is None:
        if state.existing:
            return (state.low, high)
        anchor = state.uidnext if state.uidnext is not None else high + 1
        return (anchor, anchor - 1)
    return (stored[0], high)


def _fresh_for(state: MailboxState, flag: str, alternate: Optional[str]) -> Range:
    fresh = state.uids_with_flag(flag)
    if not fresh and alternate:
        fresh = state.uids_with_flag(alternate)
    return fresh


def update_info(store: InfoStore, state: MailboxState) -> None:
    """
    Fold one mailbox's fresh flag listing into the stored active range,
    read range and mark ranges.

    Only [start_article, high] is taken from the server; below the window
    the stored read/mark data is kept. Applying the same state twice
    leaves the store unchanged.
    """
    mailbox = state.mailbox
    start = state.start_article
    high = state.high

    store.set_active(mailbox, _new_active(state, store.get_active(mailbox)))

    read_mark = mark_for_name("read")
    flagged_mark = mark_for_name("flagged")
    unread = (
        state.existing
        - _fresh_for(state, SEEN, read_mark.alternate)
        - _fresh_for(state, FLAGGED, flagged_mark.alternate)
    )
    read = unread.complement(start, high)
    if start > 1:
        read = store.get_read(mailbox).clip(1, start - 1) | read
    store.set_read(mailbox, read)

    marks = store.get_marks(mailbox)
    for mark in MARKS:
        if mark.name == "read" or not state.can_store(mark.flag):
            continue
        fresh = _fresh_for(state, mark.flag, mark.alternate)
        old = marks.pop(mark.name, Range())
        new = fresh
        if start > 1:
            new = (old - Range.span(start, high)) | fresh
        if new:
            marks[mark.name] = new
    store.set_marks(mailbox, marks)
    store.set_uidvalidity(mailbox, state.uidvalidity)


def _reset(store: InfoStore, mailbox: str) -> None:
    store.set_read(mailbox, Range())
    store.set_marks(mailbox, {})


def sync_mailboxes(
    session: Session,
    store: InfoStore,
    mailboxes: Sequence[str],
    *,
    window: int = DEFAULT_WINDOW,
) -> SyncReport:
    """
    Bring the stored metadata of `mailboxes` up to date with the server.

    A mailbox whose UIDVALIDITY changed is re-read from UID 1 and its
    stored read/mark data discarded first.
    """
    report = SyncReport()
    requests = [plan_request(store, m, window=window) for m in mailboxes]
    states, failures = retrieve_states(session, requests)
    report.failed.update(failures)

    stale = [
        name
        for name, st in states.items()
        if store.get_uidvalidity(name) is not None and st.uidvalidity != store.get_uidvalidity(name)
    ]
    if stale:
        logger.info(f"{session.server}: UIDVALIDITY changed for {', '.join(stale)}; doing a full resync")
        for name in stale:
            _reset(store, name)
        redo = [SyncRequest(mailbox=name, start_article=1) for name in stale]
        states_again, failures_again = retrieve_states(session, redo)
        report.failed.update(failures_again)
        for name in stale:
            states.pop(name, None)
        states.update(states_again)

    for name in mailboxes:
        state = states.get(name)
        if state is None:
            continue
        try:
            update_info(store, state)
        except IMAPError as e:
            report.failed[name] = str(e)
            continue
        report.updated.append(name)

    for name, why in report.failed.items():
        logger.warning(f"{session.server}: could not sync {name}: {why}")
    return report


def mark_articles(
    session: Session,
    mailbox: str,
    uids: Range,
    mark: str,
    *,
    add: bool = True,
) -> None:
    """Set or clear a mark on the server."""
    if not uids:
        return
    flag = mark_for_name(mark).flag
    session.select(mailbox, readonly=False)
    ok, unit = session.run_command(
        "UID STORE %s %sFLAGS.SILENT (%s)", uids.to_imap(), "+" if add else "-", flag, kind="store"
    )
    if not ok:
        raise ProtocolError(unit.status, unit.text, command="STORE")
