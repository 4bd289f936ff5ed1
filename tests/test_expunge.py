from __future__ import annotations

import logging

import pytest

from imapmirror.config import ServerConfig
from imapmirror.imap.expunge import delete_articles
from imapmirror.marks import DELETED
from imapmirror.ranges import Range
from imapmirror.state import MailboxState
from tests.conftest import HOST


@pytest.fixture
def inbox(backend):
    box = backend.mailbox("INBOX")
    box.add(flags=[DELETED])  # marked by someone else
    for _ in range(4):
        box.add()
    return box


def _state() -> MailboxState:
    return MailboxState(mailbox="INBOX", existing=Range.span(1, 5), flags={DELETED: Range.parse("1")})


def test_scoped_expunge_with_uidplus(session, backend, inbox):
    state = _state()
    result = delete_articles(session, "INBOX", Range.parse("3:4"), state=state)

    assert result.expunge == "scoped" and result.expunged
    assert backend.sent("UID STORE") == ["UID STORE 3:4 +FLAGS.SILENT (\\Deleted)"]
    assert backend.sent("UID EXPUNGE") == ["UID EXPUNGE 3:4"]
    assert inbox.uids() == [1, 2, 5]
    assert state.existing == Range.parse("1:2,5")


def test_unscoped_expunge_when_allowed(backend, manager, inbox):
    backend.capabilities = ["IMAP4rev1"]
    session = manager.open(ServerConfig(name=HOST, allow_unscoped_expunge="always"))
    state = _state()

    result = delete_articles(session, "INBOX", Range.parse("3:4"), state=state)

    assert result.expunge == "full"
    assert backend.sent("EXPUNGE") == ["EXPUNGE"]
    # the article someone else marked goes too
    assert inbox.uids() == [2, 5]
    assert state.existing == Range.parse("2,5")


def test_no_expunge_without_uidplus_or_permission(backend, manager, config, inbox, caplog):
    backend.capabilities = ["IMAP4rev1"]
    session = manager.open(config)
    state = _state()

    with caplog.at_level(logging.WARNING, logger="imapmirror.imap.expunge"):
        result = delete_articles(session, "INBOX", Range.parse("3:4"), state=state)

    assert result.expunge is None and not result.expunged
    assert result.to_dict() == {"mailbox": "INBOX", "marked": "3:4", "expunge": None}
    assert backend.sent("UID EXPUNGE") == [] and backend.sent("EXPUNGE") == []
    assert inbox.uids() == [1, 2, 3, 4, 5]
    assert DELETED in inbox.messages[3].flags
    assert state.existing == Range.span(1, 5)
    assert state.uids_with_flag(DELETED) == Range.parse("1,3:4")
    assert "not expunged" in caplog.text


def test_explicit_override_beats_config(backend, manager, config, inbox):
    backend.capabilities = ["IMAP4rev1"]
    session = manager.open(config)
    result = delete_articles(session, "INBOX", Range.parse("2"), allow_unscoped=True)
    assert result.expunge == "full"


def test_empty_range_sends_nothing(session, backend, inbox):
    before = list(backend.commands)
    result = delete_articles(session, "INBOX", Range())
    assert not result.expunged
    assert backend.commands == before
