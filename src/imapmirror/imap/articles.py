from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from imapmirror.errors import ParseError
from imapmirror.imap.bodystructure import (
    BodyPart,
    WantedPolicy,
    parse_bodystructure,
    reconstruct_partial,
    select_wanted_parts,
)
from imapmirror.imap.fetch_response import FetchData, iter_fetch
from imapmirror.imap.parser import ResponseUnit
from imapmirror.imap.session import Session
from imapmirror.types import ArticleRef

logger = logging.getLogger(__name__)


def _fetch_for_uid(unit: ResponseUnit, uid: int) -> Optional[FetchData]:
    for data in iter_fetch(unit):
        if data.uid == uid:
            return data
    return None


def fetch_whole(session: Session, ref: ArticleRef) -> Optional[bytes]:
    """
    The complete raw message, or None when the server has no such UID.
    """
    session.select(ref.mailbox, readonly=True)
    unit = session.command("UID FETCH %d (BODY.PEEK[])", ref.uid, kind="fetch")
    data = _fetch_for_uid(unit, ref.uid)
    if data is None:
        return None
    return data.section("")


def fetch_structure(session: Session, ref: ArticleRef) -> BodyPart:
    session.select(ref.mailbox, readonly=True)
    unit = session.command("UID FETCH %d (BODYSTRUCTURE)", ref.uid, kind="fetch")
    data = _fetch_for_uid(unit, ref.uid)
    if data is None:
        raise ParseError(f"no BODYSTRUCTURE for uid {ref.uid} in {ref.mailbox!r}")
    return parse_bodystructure(data.get("BODYSTRUCTURE"))


def fetch_partial(
    session: Session,
    ref: ArticleRef,
    structure: BodyPart,
    wanted_parts: Iterable[str],
) -> Optional[bytes]:
    """
    Header block plus the bodies of `wanted_parts`, stitched back into a
    MIME message following `structure`. None when the UID is gone.
    """
    wanted = sorted(set(wanted_parts))
    items = " ".join(["BODY.PEEK[HEADER]"] + [f"BODY.PEEK[{p}]" for p in wanted])

    session.select(ref.mailbox, readonly=True)
    unit = session.command("UID FETCH %d (%s)", ref.uid, items, kind="fetch")
    data = _fetch_for_uid(unit, ref.uid)
    if data is None:
        return None

    header = data.section("HEADER") or b""
    parts: Dict[str, bytes] = {}
    for part in wanted:
        body = data.section(part)
        if body is not None:
            parts[part] = body
    return reconstruct_partial(header, structure, parts)


def request_article(
    session: Session,
    ref: ArticleRef,
    *,
    policy: Optional[WantedPolicy] = None,
) -> Optional[bytes]:
    """
    Fetch an article, partially when `policy` is given. A missing or
    malformed BODYSTRUCTURE falls back to the whole article.
    """
    if policy is None:
        return fetch_whole(session, ref)
    try:
        structure = fetch_structure(session, ref)
    except ParseError as e:
        logger.info(f"Partial fetch of {ref.mailbox}:{ref.uid} not possible ({e}); fetching whole article")
        return fetch_whole(session, ref)
    return fetch_partial(session, ref, structure, select_wanted_parts(structure, policy))
